"""Gateway auto-refund workflow.

A refund is created PENDING in the request transaction, then settled by a Celery worker:
PENDING -> PROCESSING -> COMPLETED | FAILED. FAILED refunds can be put back to PENDING
by staff. PENDING rows orphaned by a lost task are picked up again by the
`resume_pending_refunds` beat job; PROCESSING rows left by a worker that died mid-call
are moved to FAILED by `fail_stale_refunds`.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationError, NotFoundError
from app.db.session import atomic
from app.models.booking import Booking
from app.models.enums import (
    ACTIVE_REFUND_STATUSES,
    BookingEventType,
    NotificationType,
    PaymentStatus,
    RefundStatus,
)
from app.models.payment import Payment
from app.models.refund import Refund
from app.services.audit_service import log_audit
from app.services.notification_service import notify_safely
from app.services.payos_client import GatewayError, PaymentGateway, get_gateway

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Customer requested refund"
STALE_PROCESSING_REASON = "Processing interrupted before the gateway result was recorded; check PayOS before retrying"
MAX_REFUND_ATTEMPTS = 5

REFUND_TRANSITIONS = {
    RefundStatus.PENDING.value: {RefundStatus.PROCESSING.value},
    RefundStatus.PROCESSING.value: {RefundStatus.COMPLETED.value, RefundStatus.FAILED.value},
    RefundStatus.FAILED.value: {RefundStatus.PENDING.value},
    RefundStatus.COMPLETED.value: set(),
}
_TERMINAL = (RefundStatus.COMPLETED.value, RefundStatus.FAILED.value)
_GATEWAY_FAILED = ("failed", "rejected", "cancelled")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def update_refund_status(refund: Refund, status: str, **fields) -> Refund:
    """Move a refund along its state machine and apply extra column updates."""
    if status not in REFUND_TRANSITIONS.get(refund.status, set()):
        raise ValidationError(f"Refund cannot move from {refund.status} to {status}")
    refund.status = status
    for name, value in fields.items():
        if not hasattr(Refund, name):
            raise AttributeError(f"Refund has no field {name!r}")
        setattr(refund, name, value)
    if status in _TERMINAL and not fields.get("processed_at"):
        refund.processed_at = _now()
    logger.info("Refund %s status updated to %s", refund.id, status)
    return refund


def _completed_total(db: Session, payment_id: str, exclude_id: str | None = None) -> int:
    q = select(func.coalesce(func.sum(Refund.amount), 0)).where(
        Refund.payment_id == payment_id,
        Refund.status == RefundStatus.COMPLETED.value,
    )
    if exclude_id:
        q = q.where(Refund.id != exclude_id)
    return int(db.execute(q).scalar() or 0)


def _locked_refund(db: Session, refund_id: str) -> Refund:
    if not refund_id:
        raise ValidationError("Invalid refund id")
    refund = db.execute(select(Refund).where(Refund.id == refund_id).with_for_update()).scalar_one_or_none()
    if not refund:
        raise NotFoundError("Refund not found")
    return refund


def enqueue_refund_processing(refund_id: str) -> bool:
    """Hand the refund to the worker; the resume job covers a failed dispatch."""
    from app.tasks.jobs import process_refund as process_refund_task

    try:
        process_refund_task.delay(refund_id)
        return True
    except Exception:
        logger.exception("Failed to enqueue refund %s; it will be resumed later", refund_id)
        return False


def create_refund(
    db: Session,
    payment_id: str,
    amount: int | None = None,
    reason: str | None = None,
    actor_id: str | None = None,
) -> Refund:
    with atomic(db, "Failed to create refund"):
        if not payment_id:
            raise ValidationError("Invalid payment id")
        payment = db.execute(select(Payment).where(Payment.id == payment_id).with_for_update()).scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.PAID.value:
            raise ValidationError("Only paid payments can be refunded")

        active = db.execute(
            select(Refund).where(
                Refund.booking_id == payment.booking_id,
                Refund.status.in_(ACTIVE_REFUND_STATUSES),
            )
        ).scalars().first()
        if active:
            target = "payment" if active.payment_id == payment.id else "booking"
            raise ValidationError(f"Refund already exists for this {target}")

        remaining = payment.amount - _completed_total(db, payment.id)
        refund_amount = remaining if amount is None else amount
        try:
            refund_amount = int(refund_amount)
        except (TypeError, ValueError):
            raise ValidationError("Refund amount must be a whole number")
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than 0")
        if refund_amount > remaining:
            raise ValidationError(f"Refund amount ({refund_amount}) exceeds remaining amount ({remaining})")

        refund = Refund(
            id=str(uuid.uuid4()),
            payment_id=payment.id,
            booking_id=payment.booking_id,
            amount=refund_amount,
            reason=(reason or DEFAULT_REASON)[:500],
            status=RefundStatus.PENDING.value,
            requested_by=actor_id,
            gateway_response={},
            retry_count=0,
        )
        db.add(refund)
        try:
            db.flush()
        except IntegrityError as e:
            # concurrent request won the partial unique index
            raise ValidationError("Refund already exists for this booking") from e

        log_audit(db, actor_id, "refund.requested", "refund", refund.id, {
            "paymentId": payment.id,
            "bookingId": payment.booking_id,
            "amount": refund_amount,
        })
        refund_id = refund.id

    logger.info("Refund %s created for payment %s amount=%s", refund_id, payment_id, refund_amount)
    enqueue_refund_processing(refund_id)
    return refund


def process_refund(db: Session, refund_id: str, gateway: PaymentGateway | None = None) -> Refund:
    """Settle one PENDING refund through the gateway. Gateway failures end in FAILED, not an exception."""
    gateway = gateway or get_gateway()

    with atomic(db, "Failed to start refund processing"):
        refund = _locked_refund(db, refund_id)
        if refund.status != RefundStatus.PENDING.value:
            logger.info("Refund %s already processed with status %s", refund_id, refund.status)
            return refund
        update_refund_status(refund, RefundStatus.PROCESSING.value, processing_started_at=_now())
        payment = db.get(Payment, refund.payment_id)
        order_code = payment.transaction_id if payment else None
        amount, reason = refund.amount, refund.reason

    if not order_code:
        return _fail_refund(db, refund_id, "Payment has no gateway order code")

    try:
        result = gateway.refund_payment(int(order_code), amount, reason)
    except GatewayError as e:
        logger.error("PayOS refund failed for refund %s: %s", refund_id, e)
        return _fail_refund(db, refund_id, str(e) or "PayOS refund failed")

    if result.status in _GATEWAY_FAILED:
        return _fail_refund(db, refund_id, f"Gateway reported refund {result.status}", result.raw)

    logger.info("PayOS refund succeeded refund=%s gateway_refund=%s amount=%s", refund_id, result.refund_id, amount)
    return _complete_refund(db, refund_id, result.refund_id, result.raw)


def _complete_refund(db: Session, refund_id: str, gateway_refund_id: str, raw: dict) -> Refund:
    with atomic(db, "Failed to complete refund"):
        refund = _locked_refund(db, refund_id)
        update_refund_status(
            refund,
            RefundStatus.COMPLETED.value,
            gateway_refund_id=gateway_refund_id,
            gateway_response=raw,
            processed_by=None,
        )
        payment = db.execute(select(Payment).where(Payment.id == refund.payment_id).with_for_update()).scalar_one()
        refunded = _completed_total(db, payment.id, exclude_id=refund.id) + refund.amount
        if refunded >= payment.amount:
            payment.status = PaymentStatus.REFUNDED.value
            payment.refund_reason = refund.reason

        booking = db.get(Booking, refund.booking_id)
        if booking:
            booking.refund_amount = (booking.refund_amount or 0) + refund.amount
            booking.net_amount = (booking.net_amount or 0) - refund.amount
            booking.add_event(
                BookingEventType.REFUND_PROCESSED.value,
                amount=refund.amount,
                details={"refundId": refund.id, "paymentId": payment.id, "gatewayRefundId": gateway_refund_id},
            )
        log_audit(db, "payos", "refund.completed", "refund", refund.id, {
            "paymentId": payment.id,
            "amount": refund.amount,
            "paymentStatus": payment.status,
        })
        customer_id = booking.user_id if booking else None
        amount, reason = refund.amount, refund.reason

    notify_safely(
        db,
        customer_id,
        NotificationType.SUCCESS.value,
        "Refund completed",
        f"Your refund of {amount:,} VND for booking #{str(refund.booking_id)[-8:]} has been processed. Reason: {reason}",
        related_id=refund_id,
    )
    return refund


def _fail_refund(db: Session, refund_id: str, failure_reason: str, raw: dict | None = None) -> Refund:
    with atomic(db, "Failed to record refund failure"):
        refund = _locked_refund(db, refund_id)
        update_refund_status(
            refund,
            RefundStatus.FAILED.value,
            failure_reason=failure_reason[:500],
            gateway_response={**(refund.gateway_response or {}), **(raw or {})},
            retry_count=(refund.retry_count or 0) + 1,
            processed_by=None,
        )
        log_audit(db, "payos", "refund.failed", "refund", refund.id, {"reason": failure_reason})
        booking = db.get(Booking, refund.booking_id)
        customer_id = booking.user_id if booking else None
        amount = refund.amount

    notify_safely(
        db,
        customer_id,
        NotificationType.ERROR.value,
        "Refund failed",
        f"Your refund of {amount:,} VND for booking #{str(refund.booking_id)[-8:]} could not be processed. "
        "We will retry as soon as possible.",
        related_id=refund_id,
    )
    return refund


def retry_refund(db: Session, refund_id: str, actor_id: str | None = None, gateway: PaymentGateway | None = None) -> Refund:
    with atomic(db, "Failed to retry refund"):
        refund = _locked_refund(db, refund_id)
        if refund.status != RefundStatus.FAILED.value:
            raise ValidationError("Refund cannot be retried at this time")
        if (refund.retry_count or 0) >= MAX_REFUND_ATTEMPTS:
            raise ValidationError(f"Refund has failed {refund.retry_count} times; resolve it manually")
        update_refund_status(
            refund, RefundStatus.PENDING.value, failure_reason=None, processed_at=None, processing_started_at=None,
        )
        try:
            db.flush()
        except IntegrityError as e:
            raise ValidationError("Another refund is already active for this booking") from e
        log_audit(db, actor_id, "refund.retried", "refund", refund.id, {"attempt": refund.retry_count + 1})

    return process_refund(db, refund_id, gateway)


def get_refund_by_id(db: Session, refund_id: str) -> Refund:
    refund = db.get(Refund, refund_id) if refund_id else None
    if not refund:
        raise NotFoundError("Refund not found")
    return refund


def get_refunds_for_payment(db: Session, payment_id: str) -> list[Refund]:
    return (
        db.query(Refund)
        .filter(Refund.payment_id == payment_id)
        .order_by(Refund.requested_at.desc())
        .all()
    )


def get_refund_stats(db: Session, start: datetime | None = None, end: datetime | None = None) -> dict:
    q = db.query(Refund.status, func.count(Refund.id), func.coalesce(func.sum(Refund.amount), 0))
    if start:
        q = q.filter(Refund.requested_at >= start)
    if end:
        q = q.filter(Refund.requested_at <= end)
    by_status = {s.value: {"count": 0, "totalAmount": 0} for s in RefundStatus}
    for status, count, total in q.group_by(Refund.status).all():
        by_status[status] = {"count": int(count), "totalAmount": int(total)}
    return {
        "byStatus": by_status,
        "totalCount": sum(v["count"] for v in by_status.values()),
        "totalRefunded": by_status[RefundStatus.COMPLETED.value]["totalAmount"],
    }


def resume_pending_refunds(db: Session, older_than_minutes: int | None = None) -> int:
    """Re-dispatch PENDING refunds whose task never ran."""
    minutes = settings.REFUND_RESUME_AFTER_MINUTES if older_than_minutes is None else older_than_minutes
    cutoff = _now() - timedelta(minutes=minutes)
    ids = list(db.execute(
        select(Refund.id).where(Refund.status == RefundStatus.PENDING.value, Refund.requested_at < cutoff)
    ).scalars())
    for refund_id in ids:
        enqueue_refund_processing(refund_id)
    if ids:
        logger.info("Resumed %d pending refunds", len(ids))
    return len(ids)


def fail_stale_refunds(db: Session, older_than_minutes: int | None = None) -> int:
    """Move refunds stuck in PROCESSING to FAILED so they stop blocking the booking.

    The gateway outcome of such a refund is unknown, so nothing is re-sent automatically;
    staff check PayOS and use `retry_refund`.
    """
    minutes = settings.REFUND_STALE_PROCESSING_MINUTES if older_than_minutes is None else older_than_minutes
    cutoff = _now() - timedelta(minutes=minutes)
    ids = list(db.execute(
        select(Refund.id).where(
            Refund.status == RefundStatus.PROCESSING.value,
            or_(Refund.processing_started_at.is_(None), Refund.processing_started_at < cutoff),
        )
    ).scalars())
    failed = 0
    for refund_id in ids:
        try:
            _fail_refund(db, refund_id, STALE_PROCESSING_REASON)
        except ValidationError:
            # settled by its worker between the select and the lock
            logger.info("Refund %s left PROCESSING before it could be marked stale", refund_id)
            continue
        failed += 1
    if failed:
        logger.warning("Marked %d stale PROCESSING refunds as failed", failed)
    return failed
