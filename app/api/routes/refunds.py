from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, require_roles
from app.core.errors import ForbiddenError
from app.db.session import get_db
from app.models.booking import Booking
from app.models.enums import Role
from app.models.user import Account
from app.schemas.payments import RefundOut
from app.services import refund_service

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.get("/stats")
def refund_stats(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    db: Session = Depends(get_db),
    user: Account = Depends(require_roles(Role.STAFF.value, Role.ADMIN.value)),
):
    return refund_service.get_refund_stats(db, start=startDate, end=endDate)


@router.get("/{refund_id}", response_model=RefundOut)
def get_refund(refund_id: str, db: Session = Depends(get_db), user: Account = Depends(get_current_user)):
    r = refund_service.get_refund_by_id(db, refund_id)
    if user.role == Role.CUSTOMER.value:
        b = db.get(Booking, r.booking_id)
        if not b or b.user_id != user.id:
            raise ForbiddenError("You are not allowed to view this refund")
    return RefundOut.from_model(r)


@router.post("/{refund_id}/retry", response_model=RefundOut)
def retry_refund(refund_id: str, db: Session = Depends(get_db),
                 user: Account = Depends(require_roles(Role.STAFF.value, Role.ADMIN.value))):
    return RefundOut.from_model(refund_service.retry_refund(db, refund_id, actor_id=user.id))
