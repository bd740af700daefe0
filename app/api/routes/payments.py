from __future__ import annotations
import json
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, require_roles
from app.core.errors import ForbiddenError, NotFoundError, ValidationError
from app.db.session import get_db
from app.models.booking import Booking
from app.models.enums import Role
from app.models.user import Account
from app.schemas.payments import (
    CancelPaymentRequest,
    CreatePaymentRequest,
    PaymentOption,
    PaymentOut,
    RefundOut,
    RefundRequest,
    TransactionPage,
)
from app.services import payment_service, refund_service

router = APIRouter(prefix="/payments", tags=["payments"])

STAFF_ROLES = (Role.STAFF.value, Role.ADMIN.value)


def _booking_for(db: Session, booking_id: str, user: Account) -> Booking:
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFoundError("Booking not found")
    if user.role == Role.CUSTOMER.value and b.user_id != user.id:
        raise ForbiddenError("You are not allowed to pay for this booking")
    return b


def _payment_for(db: Session, payment_id: str, user: Account):
    payment, _ = payment_service.get_transaction_by_id(db, payment_id, user)
    return payment


@router.post("/options/{booking_id}", response_model=list[PaymentOption])
def create_payment_options(booking_id: str, db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    _booking_for(db, booking_id, user)
    return payment_service.create_payment_options(db, booking_id)


@router.post("/create/{booking_id}", response_model=PaymentOut, status_code=201)
def create_payment(booking_id: str, body: CreatePaymentRequest,
                   db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    _booking_for(db, booking_id, user)
    p = payment_service.create_payment_for_option(db, booking_id, percentage=body.percentage, pay_type=body.payType)
    return PaymentOut.from_model(p)


@router.post("/remaining/{booking_id}", response_model=PaymentOut, status_code=201)
def create_remaining_payment(booking_id: str, db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    _booking_for(db, booking_id, user)
    p = payment_service.create_payment_for_remaining(db, booking_id, actor_id=user.id)
    return PaymentOut.from_model(p)


@router.post("/webhook")
async def payos_webhook(req: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    raw = await req.body()
    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid webhook payload")
    # PayOS calls for superseded links run after the response, off the event loop
    return payment_service.handle_payment_webhook(
        db, payload, dict(req.headers), defer=background_tasks.add_task,
    )


@router.get("/history", response_model=TransactionPage)
def my_payment_history(
    status: Optional[str] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    user: Account = Depends(get_current_user),
):
    result = payment_service.get_my_transactions(db, user.id, status=status, start_date=startDate,
                                                 end_date=endDate, page=page, limit=limit)
    return TransactionPage(
        transactions=[PaymentOut.from_model(p) for p in result["transactions"]],
        pagination=result["pagination"],
    )


@router.get("/transactions", response_model=TransactionPage)
def all_transactions(
    status: Optional[str] = None,
    payType: Optional[str] = None,
    bookingId: Optional[str] = None,
    userId: Optional[str] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    minAmount: Optional[int] = None,
    maxAmount: Optional[int] = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    user: Account = Depends(require_roles(*STAFF_ROLES)),
):
    result = payment_service.get_all_transactions(
        db, status=status, pay_type=payType, booking_id=bookingId, user_id=userId,
        start_date=startDate, end_date=endDate, min_amount=minAmount, max_amount=maxAmount,
        page=page, limit=limit,
    )
    return TransactionPage(
        transactions=[PaymentOut.from_model(p) for p in result["transactions"]],
        pagination=result["pagination"],
        summary=result["summary"],
    )


@router.get("/gateway-status/{order_code}")
def gateway_status(order_code: int, user: Account = Depends(require_roles(*STAFF_ROLES))):
    return payment_service.check_payment_status_with_gateway(order_code)


@router.delete("/cancelled")
def delete_cancelled_transactions(
    beforeDate: Optional[datetime] = None,
    bookingId: Optional[str] = None,
    db: Session = Depends(get_db),
    user: Account = Depends(require_roles(Role.ADMIN.value)),
):
    deleted = payment_service.delete_all_cancelled_transactions(db, before_date=beforeDate, booking_id=bookingId)
    return {"ok": True, "deletedCount": deleted}


@router.get("/{payment_id}")
def get_payment(payment_id: str, db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    payment, booking = payment_service.get_transaction_by_id(db, payment_id, user)
    out = PaymentOut.from_model(payment).model_dump(mode="json")
    if booking:
        out["booking"] = {
            "id": booking.id,
            "status": booking.status,
            "payType": booking.pay_type,
            "finalAmount": booking.final_amount,
        }
    return out


@router.post("/{payment_id}/cancel", response_model=PaymentOut)
def cancel_payment(payment_id: str, body: CancelPaymentRequest | None = None,
                   db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    _payment_for(db, payment_id, user)
    reason = body.reason if body else "User cancelled"
    return PaymentOut.from_model(payment_service.cancel_payment(db, payment_id, reason))


@router.delete("/{payment_id}")
def delete_payment(payment_id: str, db: Session = Depends(get_db),
                   user: Account = Depends(require_roles(Role.ADMIN.value))):
    payment_service.delete_transaction(db, payment_id)
    return {"ok": True, "deletedId": payment_id}


@router.post("/{payment_id}/refund", response_model=RefundOut, status_code=201)
def request_refund(payment_id: str, body: RefundRequest | None = None,
                   db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    _payment_for(db, payment_id, user)
    body = body or RefundRequest()
    r = refund_service.create_refund(db, payment_id, amount=body.amount, reason=body.reason, actor_id=user.id)
    return RefundOut.from_model(r)


@router.get("/{payment_id}/refund", response_model=list[RefundOut])
def list_refunds(payment_id: str, db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    _payment_for(db, payment_id, user)
    return [RefundOut.from_model(r) for r in refund_service.get_refunds_for_payment(db, payment_id)]
