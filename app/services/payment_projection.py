"""Booking payment projection.

Pure functions over integer VND amounts. The confirmation thresholds sit just below the
nominal tiers (29.9 / 49.9 / 99.9 percent) so a tier paid as `ceil(final * p / 100)`
always clears its own threshold; they are compared as integer per-mille products, never
as floats.
"""
from dataclasses import dataclass
from typing import Iterable

from app.models.enums import BookingStatus, PayType

# (threshold in tenths of a percent, pay type), highest first
THRESHOLDS = (
    (999, PayType.FULL.value),
    (499, PayType.PREPAY_50.value),
    (299, PayType.PREPAY_30.value),
)

TIERS = (
    (30, PayType.PREPAY_30.value, "Deposit"),
    (50, PayType.PREPAY_50.value, "Partial Payment"),
    (100, PayType.FULL.value, "Full Payment"),
)


@dataclass(frozen=True)
class Projection:
    pay_type: str
    status: str
    total_paid: int


def tier_amount(final_amount: int, percentage: int) -> int:
    if percentage == 100:
        return final_amount
    return -(-final_amount * percentage // 100)  # ceil without floats


def total_paid(paid_amounts: Iterable[int]) -> int:
    return sum(int(a) for a in paid_amounts)


def remaining_amount(final_amount: int, paid_amounts: Iterable[int]) -> int:
    return final_amount - total_paid(paid_amounts)


def project_booking_payment(final_amount: int, paid_amounts: Iterable[int]) -> Projection | None:
    """Pay type and status implied by what has been paid, or None below the deposit threshold."""
    paid = total_paid(paid_amounts)
    if final_amount <= 0:
        return None
    for per_mille, pay_type in THRESHOLDS:
        if paid * 1000 >= final_amount * per_mille:
            return Projection(pay_type=pay_type, status=BookingStatus.CONFIRMED.value, total_paid=paid)
    return None
