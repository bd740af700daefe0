from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base
from app.models.enums import PaymentStatus

class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_booking_id_status", "booking_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"), index=True)
    payment_code: Mapped[str] = mapped_column(String(64), unique=True)  # internal, PAY-...
    transaction_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=True)  # PayOS orderCode
    amount: Mapped[int] = mapped_column(Integer)
    pay_type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)  # pending, paid, cancelled, refunded, failed
    checkout_url: Mapped[str] = mapped_column(String(512), nullable=True)
    qr_code: Mapped[str] = mapped_column(String(1024), nullable=True)
    gateway_response: Mapped[dict] = mapped_column(JSON, default=dict)  # raw provider snapshots for audit
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reason: Mapped[str] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
