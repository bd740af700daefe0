from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field


class CreatePaymentRequest(BaseModel):
    # one of the two; percentage is 30, 50 or 100
    percentage: Optional[int] = None
    payType: Optional[str] = None


class CancelPaymentRequest(BaseModel):
    reason: str = Field(default="User cancelled", max_length=500)


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentOption(BaseModel):
    percentage: int
    amount: int
    description: str
    paymentLink: Optional[str] = None
    qrCode: Optional[str] = None
    paymentId: str
    orderCode: Optional[str] = None
    status: str


class PaymentOut(BaseModel):
    id: str
    bookingId: str
    paymentCode: str
    orderCode: Optional[str] = None
    amount: int
    payType: str
    status: str
    checkoutUrl: Optional[str] = None
    qrCode: Optional[str] = None
    expiresAt: Optional[datetime] = None
    paidAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, p) -> "PaymentOut":
        return cls(
            id=p.id,
            bookingId=p.booking_id,
            paymentCode=p.payment_code,
            orderCode=p.transaction_id,
            amount=p.amount,
            payType=p.pay_type,
            status=p.status,
            checkoutUrl=p.checkout_url,
            qrCode=p.qr_code,
            expiresAt=p.expires_at,
            paidAt=p.paid_at,
            createdAt=p.created_at,
        )


class RefundOut(BaseModel):
    id: str
    paymentId: str
    bookingId: str
    amount: int
    reason: str = ""
    status: str
    requestedBy: Optional[str] = None
    gatewayRefundId: Optional[str] = None
    failureReason: Optional[str] = None
    retryCount: int = 0
    requestedAt: Optional[datetime] = None
    processedAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, r) -> "RefundOut":
        return cls(
            id=r.id,
            paymentId=r.payment_id,
            bookingId=r.booking_id,
            amount=r.amount,
            reason=r.reason or "",
            status=r.status,
            requestedBy=r.requested_by,
            gatewayRefundId=r.gateway_refund_id,
            failureReason=r.failure_reason,
            retryCount=r.retry_count or 0,
            requestedAt=r.requested_at,
            processedAt=r.processed_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class TransactionPage(BaseModel):
    transactions: List[PaymentOut]
    pagination: Pagination
    summary: Optional[dict] = None
