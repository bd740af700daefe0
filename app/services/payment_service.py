"""Payment options, single/remaining payments and PayOS webhook settlement."""
from __future__ import annotations

import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationError, NotFoundError, ForbiddenError, PaymentGatewayError
from app.db.session import atomic
from app.models.booking import Booking
from app.models.enums import (
    BookingStatus,
    BookingEventType,
    NotificationType,
    PayType,
    PaymentStatus,
    Role,
    PAY_TYPE_PERCENTAGE,
)
from app.models.payment import Payment
from app.models.user import Account
from app.services.audit_service import log_audit
from app.services.idempotency import (
    KeyValueStore,
    claim_idempotency_key,
    get_store,
    hold_lock,
    release_idempotency_key,
)
from app.services.notification_service import notify_safely
from app.services.payment_projection import TIERS, project_booking_payment, tier_amount, total_paid
from app.services.payos_client import (
    GatewayError,
    ITEM_NAME_MAX,
    DESCRIPTION_MAX,
    PaymentGateway,
    PaymentLink,
    PaymentLinkRequest,
    SUCCESS_CODE,
    get_gateway,
    truncate,
)

logger = logging.getLogger(__name__)

WEBHOOK_KEY_PREFIX = "payos:webhook:"
# a webhook never moves a payment out of these
SETTLED_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_code() -> int:
    """Millisecond timestamp plus three random digits; stays below 2**53 for PayOS."""
    return int(time.time() * 1000) * 1000 + secrets.randbelow(1000)


def generate_payment_code(percentage: int) -> str:
    return f"PAY-{int(time.time() * 1000)}-{percentage}-{secrets.token_hex(4).upper()}"


def _short(booking_id: str) -> str:
    return str(booking_id)[-8:]


def format_payment_option(payment: Payment, description: str | None = None) -> dict:
    return {
        "percentage": PAY_TYPE_PERCENTAGE.get(payment.pay_type, 100),
        "amount": payment.amount,
        "description": description or f"{payment.pay_type} Payment",
        "paymentLink": payment.checkout_url,
        "qrCode": payment.qr_code,
        "paymentId": payment.id,
        "orderCode": payment.transaction_id,
        "status": payment.status,
    }


def _get_booking(db: Session, booking_id: str, lock: bool = False) -> Booking:
    if not booking_id:
        raise ValidationError("Invalid booking id")
    stmt = select(Booking).where(Booking.id == booking_id)
    if lock:
        stmt = stmt.with_for_update()
    booking = db.execute(stmt).scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _paid_amounts(db: Session, booking_id: str) -> list[int]:
    return list(db.execute(
        select(Payment.amount).where(Payment.booking_id == booking_id, Payment.status == PaymentStatus.PAID.value)
    ).scalars())


def _ensure_open(booking: Booking) -> None:
    if booking.status == BookingStatus.CANCELLED.value:
        raise ValidationError("Cannot create a payment for a cancelled booking")
    if booking.status == BookingStatus.COMPLETED.value:
        raise ValidationError("Booking is completed; no new payments can be created")


def _validate_amount(amount: int, label: str = "Booking amount") -> None:
    if not amount or amount <= 0:
        raise ValidationError(f"{label} must be greater than 0")
    if amount < settings.PAYMENT_MIN_AMOUNT:
        raise ValidationError(f"{label} must be at least {settings.PAYMENT_MIN_AMOUNT:,} VND")


def _redirect_urls(booking_id: str) -> tuple[str, str]:
    base = (settings.FRONTEND_URL or "http://localhost:3000").rstrip("/")
    return (
        f"{base}/payment/success?bookingId={booking_id}",
        f"{base}/payment/cancel?bookingId={booking_id}",
    )


def _buyer(db: Session, booking: Booking) -> tuple[str, str | None]:
    account = db.get(Account, booking.user_id) if booking.user_id else None
    if not account:
        return "Customer", None
    return account.full_name or account.username or "Customer", account.email or None


def _open_link(
    gateway: PaymentGateway,
    db: Session,
    booking: Booking,
    amount: int,
    label: str,
    expires_at: datetime | None = None,
) -> tuple[int, PaymentLink]:
    order_code = generate_order_code()
    description = f"{label} - Booking #{_short(booking.id)}"
    if len(description) > DESCRIPTION_MAX:
        logger.debug("Truncating PayOS description %r", description)
    return_url, cancel_url = _redirect_urls(booking.id)
    buyer_name, buyer_email = _buyer(db, booking)
    req = PaymentLinkRequest(
        order_code=order_code,
        amount=amount,
        description=truncate(description, DESCRIPTION_MAX),
        items=[{"name": truncate(f"Studio - {label}", ITEM_NAME_MAX), "quantity": 1, "price": amount}],
        return_url=return_url,
        cancel_url=cancel_url,
        buyer_name=buyer_name,
        buyer_email=buyer_email,
        expired_at=int(expires_at.timestamp()) if expires_at else None,
    )
    logger.info("Creating PayOS payment link order=%s amount=%s gateway=%s", order_code, amount, gateway.name)
    try:
        link = gateway.create_payment_link(req)
    except GatewayError as e:
        logger.error("PayOS API error for order %s: %s", order_code, e)
        raise PaymentGatewayError(f"Payment gateway error: {e}") from e
    if not link.checkout_url:
        raise PaymentGatewayError("Payment gateway error: no checkout URL returned")
    return order_code, link


def _new_payment(
    booking: Booking,
    order_code: int,
    link: PaymentLink,
    amount: int,
    pay_type: str,
    percentage: int,
    expires_at: datetime | None = None,
    extra: dict | None = None,
) -> Payment:
    return Payment(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        payment_code=generate_payment_code(percentage),
        transaction_id=str(order_code),
        amount=amount,
        pay_type=pay_type,
        status=PaymentStatus.PENDING.value,
        checkout_url=link.checkout_url,
        qr_code=link.qr_code,
        gateway_response={
            "orderCode": order_code,
            "createdAt": _now().isoformat(),
            **link.raw,
            **(extra or {}),
        },
        expires_at=expires_at,
    )


def _cancel_links_quietly(gateway: PaymentGateway, order_codes: list, reason: str) -> None:
    for code in order_codes:
        try:
            gateway.cancel_payment_link(int(code), reason)
        except GatewayError as e:
            logger.warning("Could not cancel PayOS link %s: %s", code, e)


def create_payment_options(
    db: Session,
    booking_id: str,
    gateway: PaymentGateway | None = None,
    store: KeyValueStore | None = None,
) -> list[dict]:
    """Create (or return the existing) 30/50/100% options for a booking.

    All three PayOS links and rows are created in one transaction; a gateway failure
    rolls everything back and cancels links that were already opened.
    """
    gateway = gateway or get_gateway()
    store = store or get_store()

    with hold_lock(store, f"payment-options:{booking_id}"):
        opened: list[int] = []
        try:
            with atomic(db, "Failed to create payment options"):
                booking = _get_booking(db, booking_id, lock=True)
                _ensure_open(booking)

                existing = (
                    db.query(Payment)
                    .filter(
                        Payment.booking_id == booking.id,
                        Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.PAID.value]),
                    )
                    .order_by(Payment.amount.asc())
                    .all()
                )
                if existing:
                    logger.info("Returning %d existing payment options for booking %s", len(existing), booking.id)
                    return [format_payment_option(p) for p in existing]

                _validate_amount(booking.final_amount)

                options = []
                for percentage, pay_type, label in TIERS:
                    amount = tier_amount(booking.final_amount, percentage)
                    order_code, link = _open_link(gateway, db, booking, amount, f"{label} ({percentage}%)")
                    opened.append(order_code)
                    payment = _new_payment(booking, order_code, link, amount, pay_type, percentage)
                    db.add(payment)
                    logger.info("Payment record created id=%s order=%s amount=%s", payment.id, order_code, amount)
                    options.append(format_payment_option(payment, label))
                return options
        except PaymentGatewayError:
            _cancel_links_quietly(gateway, opened, "Payment option creation aborted")
            raise


def _resolve_pay_type(percentage: int | None, pay_type: str | None) -> str:
    if pay_type:
        if pay_type not in PAY_TYPE_PERCENTAGE:
            raise ValidationError(f"Invalid pay type. Choose from: {', '.join(PAY_TYPE_PERCENTAGE)}")
        return pay_type
    by_percentage = {v: k for k, v in PAY_TYPE_PERCENTAGE.items()}
    try:
        return by_percentage[int(percentage)]
    except (KeyError, TypeError, ValueError):
        raise ValidationError("Invalid percentage or pay type. Choose: 30, 50 or 100")


def create_payment_for_option(
    db: Session,
    booking_id: str,
    percentage: int | None = None,
    pay_type: str | None = None,
    gateway: PaymentGateway | None = None,
) -> Payment:
    """Single payment for one chosen tier; reuses a pending one for the same tier."""
    gateway = gateway or get_gateway()
    pay_type = _resolve_pay_type(percentage, pay_type)
    pct = PAY_TYPE_PERCENTAGE[pay_type]

    with atomic(db, "Failed to create payment"):
        booking = _get_booking(db, booking_id, lock=True)
        _ensure_open(booking)
        _validate_amount(booking.final_amount)

        existing = (
            db.query(Payment)
            .filter(
                Payment.booking_id == booking.id,
                Payment.pay_type == pay_type,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .first()
        )
        if existing:
            return existing

        amount = tier_amount(booking.final_amount, pct)
        already_paid = total_paid(_paid_amounts(db, booking.id))
        if already_paid + amount > booking.final_amount:
            raise ValidationError(
                f"Amount {amount:,} exceeds the outstanding balance of {booking.final_amount - already_paid:,}; "
                "pay the remaining amount instead"
            )

        expires_at = _now() + timedelta(minutes=settings.PAYMENT_LINK_EXPIRE_MINUTES)
        order_code, link = _open_link(gateway, db, booking, amount, pay_type, expires_at)
        payment = _new_payment(booking, order_code, link, amount, pay_type, pct, expires_at)
        db.add(payment)
    return payment


def create_payment_for_remaining(
    db: Session,
    booking_id: str,
    actor_id: str | None = None,
    gateway: PaymentGateway | None = None,
) -> Payment:
    """Payment link for whatever is left after completed payments (e.g. the 70% after a deposit)."""
    gateway = gateway or get_gateway()

    with atomic(db, "Failed to create remaining payment"):
        booking = _get_booking(db, booking_id, lock=True)
        if booking.status == BookingStatus.CANCELLED.value:
            raise ValidationError("Cannot create a payment for a cancelled booking")
        if booking.status == BookingStatus.COMPLETED.value:
            raise ValidationError("Cannot create a payment after the booking is completed")

        remaining = booking.final_amount - total_paid(_paid_amounts(db, booking.id))
        if remaining <= 0:
            raise ValidationError("Nothing left to pay for this booking")
        _validate_amount(remaining, "Remaining amount")

        existing = (
            db.query(Payment)
            .filter(
                Payment.booking_id == booking.id,
                Payment.pay_type == PayType.FULL.value,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.amount == remaining,
            )
            .first()
        )
        if existing:
            return existing

        expires_at = _now() + timedelta(minutes=settings.PAYMENT_LINK_EXPIRE_MINUTES)
        order_code, link = _open_link(gateway, db, booking, remaining, "Remaining", expires_at)
        payment = _new_payment(
            booking, order_code, link, remaining, PayType.FULL.value, 100, expires_at,
            extra={"remaining": True, "actorId": actor_id},
        )
        db.add(payment)
        booking.add_event(
            BookingEventType.PAYMENT_CREATED.value,
            amount=remaining,
            actor_id=actor_id,
            details={"paymentId": payment.id, "orderCode": order_code},
        )
        customer_id = booking.user_id
        checkout_url = link.checkout_url

    notify_safely(
        db,
        customer_id,
        NotificationType.INFO.value,
        "Remaining payment",
        f"You have {remaining:,} VND left to pay for booking #{_short(booking_id)}. Payment link: {checkout_url}",
        related_id=payment.id,
    )
    return payment


def handle_payment_webhook(
    db: Session,
    body: dict,
    headers: dict | None = None,
    gateway: PaymentGateway | None = None,
    store: KeyValueStore | None = None,
    defer=None,
) -> dict:
    """Verify and apply a PayOS webhook. Duplicate deliveries are successful no-ops.

    Superseded links are cancelled after commit through `defer(func, *args)` when given
    (the API passes `BackgroundTasks.add_task`), otherwise inline.
    """
    if not body or not isinstance(body, dict):
        raise ValidationError("Invalid webhook payload")
    gateway = gateway or get_gateway()
    store = store or get_store()

    try:
        verified = gateway.verify_webhook(body, headers or {})
    except ValidationError as e:
        logger.warning("Webhook verification failed: %s", e.message)
        raise

    order_code = verified.get("orderCode")
    if order_code in (None, ""):
        raise ValidationError("Webhook payload has no orderCode")
    code = str(body.get("code") if body.get("code") is not None else verified.get("code", ""))
    desc = body.get("desc") or verified.get("desc") or ""
    logger.info("Webhook verified orderCode=%s code=%s", order_code, code)

    key = f"{WEBHOOK_KEY_PREFIX}{order_code}"
    claimed = claim_idempotency_key(store, key, settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
    if claimed is False:
        logger.info("Duplicate webhook skipped for orderCode=%s", order_code)
        return {"success": True, "message": "Duplicate webhook skipped"}

    try:
        result, superseded = _apply_webhook(db, str(order_code), code, desc, verified)
    except Exception:
        # let the gateway's redelivery through
        if claimed:
            release_idempotency_key(store, key)
        raise

    if superseded:
        (defer or _run_now)(cancel_superseded_links, gateway, superseded)
    return result


def _run_now(func, *args):
    func(*args)


def cancel_superseded_links(gateway: PaymentGateway, order_codes: list) -> None:
    """Cancel PayOS links that a completed payment made obsolete; failures are only logged."""
    _cancel_links_quietly(gateway, order_codes, "Superseded by a completed payment")


def _apply_webhook(db: Session, order_code: str, code: str, desc: str, verified: dict) -> tuple[dict, list[str]]:
    with atomic(db, "Failed to process payment webhook"):
        payment = db.execute(
            select(Payment).where(Payment.transaction_id == order_code).with_for_update()
        ).scalar_one_or_none()
        if not payment:
            logger.warning("Payment not found for orderCode %s", order_code)
            raise NotFoundError("Payment not found for this order code")

        if payment.status in SETTLED_STATUSES:
            logger.info("Payment %s already settled as %s; webhook ignored", payment.id, payment.status)
            log_audit(db, "payos", "payment.webhook_ignored", "payment", payment.id, {"code": code, "status": payment.status})
            return {"success": True, "message": "Payment already processed"}, []

        if code != SUCCESS_CODE:
            payment.status = PaymentStatus.CANCELLED.value
            payment.gateway_response = {
                **(payment.gateway_response or {}),
                "webhookData": verified,
                "cancelledAt": _now().isoformat(),
                "failureReason": desc,
            }
            log_audit(db, "payos", "payment.cancelled_webhook", "payment", payment.id, {"code": code, "desc": desc})
            logger.info("Payment %s cancelled/failed: %s", payment.id, desc)
            return {"success": True, "message": "Payment cancelled"}, []

        booking = _get_booking(db, payment.booking_id, lock=True)
        paid = _paid_amounts(db, booking.id)

        if total_paid(paid) + payment.amount > booking.final_amount:
            payment.status = PaymentStatus.FAILED.value
            payment.gateway_response = {
                **(payment.gateway_response or {}),
                "webhookData": verified,
                "failedAt": _now().isoformat(),
                "failureReason": "overpayment",
            }
            log_audit(db, "payos", "payment.overpayment", "payment", payment.id, {
                "bookingId": booking.id,
                "alreadyPaid": total_paid(paid),
                "amount": payment.amount,
                "finalAmount": booking.final_amount,
            })
            logger.error("Payment %s would exceed booking %s final amount; flagged for reconciliation", payment.id, booking.id)
            return {"success": True, "message": "Payment exceeds booking amount; flagged for reconciliation"}, []

        now = _now()
        payment.status = PaymentStatus.PAID.value
        payment.paid_at = now
        payment.gateway_response = {
            **(payment.gateway_response or {}),
            "webhookData": verified,
            "webhookAmount": verified.get("amount"),
            "completedAt": now.isoformat(),
        }

        projection = project_booking_payment(booking.final_amount, paid + [payment.amount])
        if projection:
            logger.info(
                "Booking %s paid %s of %s -> %s",
                booking.id, projection.total_paid, booking.final_amount, projection.pay_type,
            )
            if booking.status in (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value):
                booking.pay_type = projection.pay_type
                booking.transition_to(projection.status)
        booking.net_amount = (booking.net_amount or 0) + payment.amount
        booking.add_event(
            BookingEventType.PAYMENT_COMPLETED.value,
            amount=payment.amount,
            details={"paymentId": payment.id, "orderCode": order_code},
        )

        # other open links for this booking no longer match the outstanding balance
        superseded = []
        siblings = (
            db.query(Payment)
            .filter(
                Payment.booking_id == booking.id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.id != payment.id,
            )
            .all()
        )
        for s in siblings:
            s.status = PaymentStatus.CANCELLED.value
            s.gateway_response = {
                **(s.gateway_response or {}),
                "cancelledAt": now.isoformat(),
                "cancelReason": f"superseded by {payment.id}",
            }
            if s.transaction_id:
                superseded.append(s.transaction_id)

        log_audit(db, "payos", "payment.paid_webhook", "payment", payment.id, {
            "bookingId": booking.id,
            "amount": payment.amount,
            "bookingStatus": booking.status,
            "payType": booking.pay_type,
        })
        return {"success": True, "message": "Payment processed successfully"}, superseded


def get_payment_status(db: Session, payment_id: str) -> Payment:
    if not payment_id:
        raise ValidationError("Invalid payment id")
    payment = db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


def check_payment_status_with_gateway(order_code, gateway: PaymentGateway | None = None) -> dict:
    if not order_code:
        raise ValidationError("Order code is required")
    gateway = gateway or get_gateway()
    try:
        info = gateway.get_payment_link(int(order_code))
    except GatewayError as e:
        logger.error("Failed to check PayOS payment status for %s: %s", order_code, e)
        raise PaymentGatewayError("Could not check payment status with the gateway") from e
    logger.info("PayOS payment info retrieved order=%s status=%s", order_code, info.get("status"))
    return info


def cancel_payment(
    db: Session,
    payment_id: str,
    reason: str = "User cancelled",
    gateway: PaymentGateway | None = None,
) -> Payment:
    with atomic(db, "Failed to cancel payment"):
        payment = get_payment_status(db, payment_id)
        if payment.status == PaymentStatus.PAID.value:
            raise ValidationError("Cannot cancel a completed payment")
        if payment.status == PaymentStatus.CANCELLED.value:
            raise ValidationError("Payment was already cancelled")
        if payment.status != PaymentStatus.PENDING.value:
            raise ValidationError("Only pending payments can be cancelled")

        if not settings.PAYMENT_USE_MOCK and payment.transaction_id:
            gateway = gateway or get_gateway()
            # local cancellation proceeds even if PayOS refuses
            _cancel_links_quietly(gateway, [payment.transaction_id], reason)

        payment.status = PaymentStatus.CANCELLED.value
        payment.refund_reason = reason
        payment.gateway_response = {
            **(payment.gateway_response or {}),
            "cancelledAt": _now().isoformat(),
            "cancelReason": reason,
        }
    return payment


def _pagination(page, limit, default_limit: int) -> tuple[int, int]:
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = default_limit
    return max(page, 1), min(max(limit, 1), 100)


def _validate_filters(status: str | None, pay_type: str | None = None) -> None:
    statuses = [s.value for s in PaymentStatus]
    if status and status not in statuses:
        raise ValidationError(f"Invalid status. Choose from: {', '.join(statuses)}")
    if pay_type and pay_type not in PAY_TYPE_PERCENTAGE:
        raise ValidationError(f"Invalid pay type. Choose from: {', '.join(PAY_TYPE_PERCENTAGE)}")


def _page(q, page: int, limit: int) -> tuple[list[Payment], dict]:
    total = q.with_entities(func.count(Payment.id)).scalar() or 0
    rows = q.order_by(Payment.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)}


def get_my_transactions(
    db: Session,
    user_id: str,
    status: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    if not user_id:
        raise ValidationError("User id is required")
    _validate_filters(status)
    page, limit = _pagination(page, limit, 20)

    q = db.query(Payment).join(Booking, Booking.id == Payment.booking_id).filter(Booking.user_id == user_id)
    if status:
        q = q.filter(Payment.status == status)
    if start_date:
        q = q.filter(Payment.created_at >= start_date)
    if end_date:
        q = q.filter(Payment.created_at <= end_date)
    rows, pagination = _page(q, page, limit)
    return {"transactions": rows, "pagination": pagination}


def get_all_transactions(
    db: Session,
    status: str | None = None,
    pay_type: str | None = None,
    booking_id: str | None = None,
    user_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    min_amount: int | None = None,
    max_amount: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    _validate_filters(status, pay_type)
    page, limit = _pagination(page, limit, 20)

    q = db.query(Payment)
    if user_id:
        q = q.join(Booking, Booking.id == Payment.booking_id).filter(Booking.user_id == user_id)
    if status:
        q = q.filter(Payment.status == status)
    if pay_type:
        q = q.filter(Payment.pay_type == pay_type)
    if booking_id:
        q = q.filter(Payment.booking_id == booking_id)
    if start_date:
        q = q.filter(Payment.created_at >= start_date)
    if end_date:
        q = q.filter(Payment.created_at <= end_date)
    if min_amount is not None:
        q = q.filter(Payment.amount >= int(min_amount))
    if max_amount is not None:
        q = q.filter(Payment.amount <= int(max_amount))

    rows, pagination = _page(q, page, limit)
    return {
        "transactions": rows,
        "pagination": pagination,
        "summary": {
            "totalTransactions": pagination["total"],
            "filters": {
                "status": status,
                "payType": pay_type,
                "bookingId": booking_id,
                "userId": user_id,
                "dateRange": {
                    "startDate": start_date.isoformat() if start_date else None,
                    "endDate": end_date.isoformat() if end_date else None,
                } if (start_date or end_date) else None,
            },
        },
    }


def get_transaction_by_id(db: Session, payment_id: str, user: Account | None = None) -> tuple[Payment, Booking | None]:
    payment = get_payment_status(db, payment_id)
    booking = db.get(Booking, payment.booking_id)
    if user is not None and user.role == Role.CUSTOMER.value:
        if not booking or booking.user_id != user.id:
            raise ForbiddenError("You are not allowed to view this transaction")
    return payment, booking


DELETABLE_STATUSES = (PaymentStatus.CANCELLED.value, PaymentStatus.FAILED.value)


def delete_transaction(db: Session, payment_id: str) -> str:
    with atomic(db, "Failed to delete transaction"):
        payment = get_payment_status(db, payment_id)
        if payment.status not in DELETABLE_STATUSES:
            raise ValidationError("Only cancelled or failed transactions can be deleted; refund paid ones instead")
        db.delete(payment)
        logger.info("Transaction deleted: %s", payment_id)
    return payment_id


def delete_all_cancelled_transactions(db: Session, before_date: datetime | None = None, booking_id: str | None = None) -> int:
    with atomic(db, "Failed to delete cancelled transactions"):
        q = db.query(Payment).filter(Payment.status.in_(DELETABLE_STATUSES))
        if before_date:
            q = q.filter(Payment.created_at < before_date)
        if booking_id:
            q = q.filter(Payment.booking_id == booking_id)
        deleted = q.delete(synchronize_session=False)
    logger.info("Deleted %d cancelled/failed transactions", deleted)
    return deleted


def expire_pending_payments(db: Session, now: datetime | None = None) -> int:
    """Cancel single/remaining payment links whose checkout window has passed."""
    now = now or _now()
    with atomic(db, "Failed to expire pending payments"):
        stale = (
            db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.expires_at.isnot(None),
                Payment.expires_at < now,
            )
            .all()
        )
        for p in stale:
            p.status = PaymentStatus.CANCELLED.value
            p.gateway_response = {**(p.gateway_response or {}), "cancelledAt": now.isoformat(), "cancelReason": "expired"}
    if stale:
        logger.info("Expired %d pending payments", len(stale))
    return len(stale)
