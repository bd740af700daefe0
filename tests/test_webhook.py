import json

import pytest

from conftest import webhook_body
from app.core.errors import NotFoundError, ValidationError
from app.models.audit_log import AuditLog
from app.models.booking import Booking, BookingEvent
from app.models.enums import BookingEventType, BookingStatus, PaymentStatus, PayType
from app.models.payment import Payment
from app.services import payment_service


def _option(db, booking_id, pct):
    return next(p for p in db.query(Payment).filter_by(booking_id=booking_id).all()
                if p.amount == {30: 300_000, 50: 500_000, 100: 1_000_000}[pct])


def test_deposit_webhook_confirms_booking(db, make_booking, gateway, store):
    b = make_booking(1_000_000)
    payment_service.create_payment_options(db, b.id)
    deposit = _option(db, b.id, 30)

    result = payment_service.handle_payment_webhook(db, webhook_body(deposit.transaction_id, 300_000))

    assert result == {"success": True, "message": "Payment processed successfully"}
    db.refresh(b)
    db.refresh(deposit)
    assert deposit.status == PaymentStatus.PAID.value
    assert deposit.paid_at is not None
    assert b.status == BookingStatus.CONFIRMED.value
    assert b.pay_type == PayType.PREPAY_30.value
    assert b.net_amount == 300_000
    # the other two links no longer apply
    statuses = sorted(p.status for p in db.query(Payment).filter_by(booking_id=b.id).all())
    assert statuses == ["cancelled", "cancelled", "paid"]
    events = db.query(BookingEvent).filter_by(booking_id=b.id).all()
    assert [e.type for e in events] == [BookingEventType.PAYMENT_COMPLETED.value]


def test_deposit_then_remaining_reaches_full(db, make_booking, gateway, store):
    b = make_booking(1_000_000)
    payment_service.create_payment_options(db, b.id)
    deposit = _option(db, b.id, 30)
    payment_service.handle_payment_webhook(db, webhook_body(deposit.transaction_id, 300_000))

    remaining = payment_service.create_payment_for_remaining(db, b.id)
    assert remaining.amount == 700_000
    payment_service.handle_payment_webhook(db, webhook_body(remaining.transaction_id, 700_000))

    db.refresh(b)
    assert b.status == BookingStatus.CONFIRMED.value
    assert b.pay_type == PayType.FULL.value
    paid = db.query(Payment).filter_by(booking_id=b.id, status=PaymentStatus.PAID.value).all()
    assert sum(p.amount for p in paid) == b.final_amount


def test_duplicate_webhook_is_skipped(db, make_booking, gateway, store):
    b = make_booking(1_000_000)
    payment_service.create_payment_options(db, b.id)
    full = _option(db, b.id, 100)
    body = webhook_body(full.transaction_id, 1_000_000)

    payment_service.handle_payment_webhook(db, body)
    second = payment_service.handle_payment_webhook(db, body)

    assert second == {"success": True, "message": "Duplicate webhook skipped"}
    db.refresh(b)
    assert b.net_amount == 1_000_000


def test_already_paid_is_noop(db, make_booking, make_payment, gateway, store):
    b = make_booking(1_000_000, status=BookingStatus.CONFIRMED.value)
    make_payment(b, 300_000, pay_type=PayType.PREPAY_30.value, order_code="555")

    result = payment_service.handle_payment_webhook(db, webhook_body("555", 300_000))

    assert result["message"] == "Payment already processed"
    db.refresh(b)
    assert b.net_amount == 0
    assert db.query(BookingEvent).count() == 0


def test_store_failure_still_processes(db, make_booking, make_payment, gateway, store, mocker):
    import redis

    mocker.patch.object(store, "set_if_absent", side_effect=redis.ConnectionError("down"))
    b = make_booking(1_000_000)
    make_payment(b, 1_000_000, status=PaymentStatus.PENDING.value, order_code="777")

    result = payment_service.handle_payment_webhook(db, webhook_body("777", 1_000_000))

    assert result["message"] == "Payment processed successfully"


def test_failure_code_cancels_payment(db, make_booking, make_payment, gateway, store):
    b = make_booking(1_000_000)
    p = make_payment(b, 300_000, status=PaymentStatus.PENDING.value, order_code="888")

    result = payment_service.handle_payment_webhook(db, webhook_body("888", 300_000, code="01", desc="user cancelled"))

    assert result["message"] == "Payment cancelled"
    db.refresh(p)
    db.refresh(b)
    assert p.status == PaymentStatus.CANCELLED.value
    assert p.gateway_response["failureReason"] == "user cancelled"
    assert b.status == BookingStatus.PENDING.value


def test_bad_signature_rejected(db, make_booking, make_payment, gateway, store):
    b = make_booking(1_000_000)
    make_payment(b, 300_000, status=PaymentStatus.PENDING.value, order_code="999")
    body = webhook_body("999", 300_000, key="wrong-key")

    with pytest.raises(ValidationError, match="Invalid webhook signature"):
        payment_service.handle_payment_webhook(db, body)
    # the key was never claimed
    assert store.get("payos:webhook:999") is None


def test_unknown_order_code_releases_key(db, gateway, store):
    with pytest.raises(NotFoundError):
        payment_service.handle_payment_webhook(db, webhook_body("424242", 1_000))
    assert store.get("payos:webhook:424242") is None


def test_overpayment_is_flagged_not_paid(db, make_booking, make_payment, gateway, store):
    b = make_booking(1_000_000, status=BookingStatus.CONFIRMED.value)
    make_payment(b, 300_000, pay_type=PayType.PREPAY_30.value)
    stale = make_payment(b, 1_000_000, status=PaymentStatus.CANCELLED.value, order_code="1234")

    payment_service.handle_payment_webhook(db, webhook_body("1234", 1_000_000))

    db.refresh(stale)
    assert stale.status == PaymentStatus.FAILED.value
    assert stale.gateway_response["failureReason"] == "overpayment"
    paid = db.query(Payment).filter_by(booking_id=b.id, status=PaymentStatus.PAID.value).all()
    assert sum(p.amount for p in paid) <= db.get(Booking, b.id).final_amount
    assert db.query(AuditLog).filter_by(action="payment.overpayment").count() == 1


def test_empty_payload_rejected(db, gateway, store):
    with pytest.raises(ValidationError):
        payment_service.handle_payment_webhook(db, {})


def test_refunded_payment_is_not_paid_again(db, make_booking, make_payment, gateway, store):
    b = make_booking(1_000_000, status=BookingStatus.CONFIRMED.value)
    b.net_amount = 0
    db.commit()
    p = make_payment(b, 1_000_000, status=PaymentStatus.REFUNDED.value, order_code="777001")

    # PayOS redelivers after the idempotency key has expired
    result = payment_service.handle_payment_webhook(db, webhook_body("777001", 1_000_000))

    assert result == {"success": True, "message": "Payment already processed"}
    db.refresh(p)
    db.refresh(b)
    assert p.status == PaymentStatus.REFUNDED.value
    assert b.net_amount == 0
    assert db.query(BookingEvent).count() == 0
    ignored = db.query(AuditLog).filter_by(action="payment.webhook_ignored").one()
    assert json.loads(ignored.details_json)["status"] == PaymentStatus.REFUNDED.value


def test_superseded_links_are_cancelled_after_commit(db, make_booking, gateway, store, mocker):
    b = make_booking(1_000_000)
    payment_service.create_payment_options(db, b.id)
    full = _option(db, b.id, 100)
    cancel = mocker.spy(gateway, "cancel_payment_link")
    deferred = []

    payment_service.handle_payment_webhook(
        db, webhook_body(full.transaction_id, 1_000_000),
        defer=lambda func, *args: deferred.append((func, args)),
    )

    cancel.assert_not_called()
    assert len(deferred) == 1
    func, args = deferred[0]
    assert func is payment_service.cancel_superseded_links
    func(*args)
    assert cancel.call_count == 2


def test_no_deferred_work_without_superseded_links(db, make_booking, make_payment, gateway, store):
    b = make_booking(1_000_000)
    make_payment(b, 1_000_000, status=PaymentStatus.PENDING.value, order_code="4321")
    deferred = []

    payment_service.handle_payment_webhook(db, webhook_body("4321", 1_000_000), defer=lambda *a: deferred.append(a))

    assert deferred == []
