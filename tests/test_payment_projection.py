import pytest

from app.models.enums import BookingStatus, PayType
from app.services.payment_projection import (
    project_booking_payment,
    remaining_amount,
    tier_amount,
    total_paid,
)


@pytest.mark.parametrize("paid,expected", [
    ([300_000], PayType.PREPAY_30.value),
    ([499_000], PayType.PREPAY_50.value),
    ([500_000], PayType.PREPAY_50.value),
    ([300_000, 700_000], PayType.FULL.value),
    ([999_000], PayType.FULL.value),
])
def test_projection_thresholds(paid, expected):
    p = project_booking_payment(1_000_000, paid)
    assert p.pay_type == expected
    assert p.status == BookingStatus.CONFIRMED.value
    assert p.total_paid == sum(paid)


def test_below_deposit_threshold_leaves_booking_unchanged():
    assert project_booking_payment(1_000_000, [298_999]) is None
    assert project_booking_payment(1_000_000, []) is None


def test_threshold_is_exact_at_29_9_percent():
    assert project_booking_payment(1_000_000, [299_000]).pay_type == PayType.PREPAY_30.value


def test_zero_final_amount_has_no_projection():
    assert project_booking_payment(0, [0]) is None


@pytest.mark.parametrize("final_amount", [1_000, 1_001, 333_333, 999_999, 1_234_567])
def test_each_tier_clears_its_own_threshold(final_amount):
    for pct, pay_type in ((30, PayType.PREPAY_30.value), (50, PayType.PREPAY_50.value), (100, PayType.FULL.value)):
        amount = tier_amount(final_amount, pct)
        assert project_booking_payment(final_amount, [amount]).pay_type == pay_type


def test_tier_amount_rounds_up():
    assert tier_amount(1_000_000, 30) == 300_000
    assert tier_amount(1_001, 30) == 301
    assert tier_amount(1_001, 100) == 1_001


def test_remaining_and_total():
    assert total_paid([300_000, 200_000]) == 500_000
    assert remaining_amount(1_000_000, [300_000]) == 700_000
