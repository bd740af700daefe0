import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import NotFoundError, ValidationError
from app.models.booking import BookingEvent
from app.models.enums import BookingEventType, PaymentStatus, RefundStatus
from app.models.notification import Notification
from app.models.refund import Refund
from app.services import refund_service
from app.services.refund_service import enqueue_refund_processing
from app.services.payos_client import GatewayError


def _completed_refund(db, payment, amount):
    r = Refund(
        id=str(uuid.uuid4()),
        payment_id=payment.id,
        booking_id=payment.booking_id,
        amount=amount,
        reason="earlier refund",
        status=RefundStatus.COMPLETED.value,
        gateway_response={},
    )
    db.add(r)
    db.commit()
    return r


def test_create_refund_defaults_to_full_amount(db, make_booking, make_payment, enqueue):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)

    r = refund_service.create_refund(db, p.id, reason="schedule clash", actor_id=b.user_id)

    assert r.status == RefundStatus.PENDING.value
    assert r.amount == 500_000
    assert r.booking_id == b.id
    enqueue.assert_called_once_with(r.id)
    db.refresh(p)
    assert p.status == PaymentStatus.PAID.value


def test_refund_cannot_exceed_remaining(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    _completed_refund(db, p, 200_000)

    with pytest.raises(ValidationError, match=r"exceeds remaining amount \(300000\)"):
        refund_service.create_refund(db, p.id, amount=400_000)

    r = refund_service.create_refund(db, p.id)
    assert r.amount == 300_000


def test_second_active_refund_rejected(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    refund_service.create_refund(db, p.id, amount=100_000)

    with pytest.raises(ValidationError, match="Refund already exists for this payment"):
        refund_service.create_refund(db, p.id, amount=100_000)


def test_active_refund_is_per_booking(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p1 = make_payment(b, 300_000)
    p2 = make_payment(b, 700_000)
    refund_service.create_refund(db, p1.id)

    with pytest.raises(ValidationError, match="Refund already exists for this booking"):
        refund_service.create_refund(db, p2.id)


def test_only_paid_payments_refundable(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p = make_payment(b, 300_000, status=PaymentStatus.PENDING.value)
    with pytest.raises(ValidationError, match="Only paid payments"):
        refund_service.create_refund(db, p.id)
    with pytest.raises(NotFoundError):
        refund_service.create_refund(db, "missing")


def test_non_positive_amount_rejected(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p = make_payment(b, 300_000)
    with pytest.raises(ValidationError):
        refund_service.create_refund(db, p.id, amount=0)


def test_process_refund_completes(db, make_booking, make_payment, gateway):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)

    done = refund_service.process_refund(db, r.id)

    assert done.status == RefundStatus.COMPLETED.value
    assert done.gateway_refund_id.startswith("mock_refund_")
    assert done.processed_at is not None
    db.refresh(p)
    db.refresh(b)
    assert p.status == PaymentStatus.REFUNDED.value
    assert b.refund_amount == 500_000
    events = db.query(BookingEvent).filter_by(booking_id=b.id).all()
    assert [e.type for e in events] == [BookingEventType.REFUND_PROCESSED.value]
    note = db.query(Notification).filter_by(user_id=b.user_id).one()
    assert note.type == "success"


def test_partial_refund_keeps_payment_paid(db, make_booking, make_payment, gateway):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r1 = refund_service.create_refund(db, p.id, amount=200_000)
    refund_service.process_refund(db, r1.id)
    db.refresh(p)
    assert p.status == PaymentStatus.PAID.value

    r2 = refund_service.create_refund(db, p.id)
    assert r2.amount == 300_000
    refund_service.process_refund(db, r2.id)
    db.refresh(p)
    assert p.status == PaymentStatus.REFUNDED.value

    completed = db.query(Refund).filter_by(payment_id=p.id, status=RefundStatus.COMPLETED.value).all()
    assert sum(x.amount for x in completed) <= p.amount


def test_gateway_failure_then_retry(db, make_booking, make_payment, gateway, mocker):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)

    real_refund = gateway.refund_payment
    mocker.patch.object(gateway, "refund_payment", side_effect=GatewayError("PayOS error 20: insufficient balance"))
    failed = refund_service.process_refund(db, r.id)

    assert failed.status == RefundStatus.FAILED.value
    assert "insufficient balance" in failed.failure_reason
    assert failed.retry_count == 1
    db.refresh(p)
    assert p.status == PaymentStatus.PAID.value
    assert db.query(Notification).filter_by(type="error").count() == 1

    gateway.refund_payment = real_refund
    retried = refund_service.retry_refund(db, r.id, actor_id="staff-1")
    assert retried.status == RefundStatus.COMPLETED.value
    assert retried.failure_reason is None


def test_retry_only_failed(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)
    with pytest.raises(ValidationError, match="cannot be retried"):
        refund_service.retry_refund(db, r.id)


def test_retry_limit(db, make_booking, make_payment, gateway):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)
    r.status = RefundStatus.FAILED.value
    r.retry_count = refund_service.MAX_REFUND_ATTEMPTS
    db.commit()
    with pytest.raises(ValidationError, match="manually"):
        refund_service.retry_refund(db, r.id)


def test_process_skips_non_pending(db, make_booking, make_payment, gateway, mocker):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = _completed_refund(db, p, 100_000)
    spy = mocker.spy(gateway, "refund_payment")

    assert refund_service.process_refund(db, r.id).status == RefundStatus.COMPLETED.value
    spy.assert_not_called()


@pytest.mark.parametrize("current,target", [
    (RefundStatus.PENDING.value, RefundStatus.COMPLETED.value),
    (RefundStatus.COMPLETED.value, RefundStatus.PENDING.value),
    (RefundStatus.PROCESSING.value, RefundStatus.PENDING.value),
    (RefundStatus.FAILED.value, RefundStatus.COMPLETED.value),
])
def test_state_machine_rejects_illegal_moves(current, target):
    r = Refund(id="r1", status=current)
    with pytest.raises(ValidationError):
        refund_service.update_refund_status(r, target)


def test_state_machine_sets_processed_at_on_terminal():
    r = Refund(id="r1", status=RefundStatus.PROCESSING.value)
    refund_service.update_refund_status(r, RefundStatus.FAILED.value, failure_reason="boom")
    assert r.processed_at is not None
    assert r.failure_reason == "boom"


def test_refund_stats(db, make_booking, make_payment):
    b1, b2 = make_booking(1_000_000), make_booking(800_000)
    p1, p2 = make_payment(b1, 500_000), make_payment(b2, 800_000)
    _completed_refund(db, p1, 100_000)
    _completed_refund(db, p1, 50_000)
    refund_service.create_refund(db, p2.id, amount=20_000)

    stats = refund_service.get_refund_stats(db)

    assert stats["byStatus"]["completed"] == {"count": 2, "totalAmount": 150_000}
    assert stats["byStatus"]["pending"] == {"count": 1, "totalAmount": 20_000}
    assert stats["byStatus"]["failed"]["count"] == 0
    assert stats["totalCount"] == 3
    assert stats["totalRefunded"] == 150_000


def test_resume_pending_refunds(db, make_booking, make_payment, enqueue):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)
    enqueue.reset_mock()

    assert refund_service.resume_pending_refunds(db, older_than_minutes=10) == 0

    r.requested_at = datetime.now(timezone.utc) - timedelta(minutes=30)
    db.commit()
    assert refund_service.resume_pending_refunds(db, older_than_minutes=10) == 1
    enqueue.assert_called_once_with(r.id)


def test_enqueue_dispatches_celery_task(mocker):
    delay = mocker.patch("app.tasks.jobs.process_refund.delay")
    assert enqueue_refund_processing("refund-1") is True
    delay.assert_called_once_with("refund-1")


def test_enqueue_failure_is_logged_not_raised(mocker, caplog):
    mocker.patch("app.tasks.jobs.process_refund.delay", side_effect=ConnectionError("broker down"))
    assert enqueue_refund_processing("refund-2") is False
    assert "refund-2" in caplog.text


def _stuck_in_processing(db, refund, minutes_ago):
    refund.status = RefundStatus.PROCESSING.value
    refund.processing_started_at = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    db.commit()


def test_processing_sets_start_time(db, make_booking, make_payment, gateway, mocker):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)
    mocker.patch.object(gateway, "refund_payment", side_effect=GatewayError("timeout"))

    refund_service.process_refund(db, r.id)

    db.refresh(r)
    assert r.processing_started_at is not None


def test_stale_processing_refund_is_failed_then_retried(db, make_booking, make_payment, gateway):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)
    _stuck_in_processing(db, r, minutes_ago=60)

    # a redelivered task leaves it alone
    assert refund_service.process_refund(db, r.id).status == RefundStatus.PROCESSING.value
    assert refund_service.fail_stale_refunds(db, older_than_minutes=15) == 1

    db.refresh(r)
    assert r.status == RefundStatus.FAILED.value
    assert r.failure_reason == refund_service.STALE_PROCESSING_REASON
    assert r.retry_count == 1

    # the booking is no longer blocked
    retried = refund_service.retry_refund(db, r.id, actor_id="staff-1")
    assert retried.status == RefundStatus.COMPLETED.value


def test_recent_processing_refund_is_left_alone(db, make_booking, make_payment):
    b = make_booking(1_000_000)
    p = make_payment(b, 500_000)
    r = refund_service.create_refund(db, p.id)
    _stuck_in_processing(db, r, minutes_ago=1)

    assert refund_service.fail_stale_refunds(db, older_than_minutes=15) == 0
    db.refresh(r)
    assert r.status == RefundStatus.PROCESSING.value
