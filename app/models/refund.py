from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base
from app.models.enums import RefundStatus

_ACTIVE = text("status IN ('pending', 'processing')")


class Refund(Base):
    __tablename__ = "refunds"
    __table_args__ = (
        # at most one in-flight refund per booking
        Index(
            "uq_refunds_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=_ACTIVE,
            sqlite_where=_ACTIVE,
        ),
        Index("ix_refunds_payment_id_status", "payment_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payments.id"), index=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"))
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(500), default="")
    status: Mapped[str] = mapped_column(String(20), default=RefundStatus.PENDING.value, index=True)  # pending, processing, completed, failed

    requested_by: Mapped[str] = mapped_column(String(36), nullable=True)
    processed_by: Mapped[str] = mapped_column(String(36), nullable=True)  # null = system

    gateway_refund_id: Mapped[str] = mapped_column(String(120), nullable=True)
    gateway_response: Mapped[dict] = mapped_column(JSON, default=dict)
    failure_reason: Mapped[str] = mapped_column(String(500), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    processing_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
