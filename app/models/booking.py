from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, JSON, CheckConstraint, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.errors import ValidationError
from app.db.session import Base
from app.models.enums import BookingStatus, PayType

# Allowed forward moves; cancellation is reachable from any non-terminal state.
_NEXT_STATUS = {
    BookingStatus.PENDING.value: {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CONFIRMED.value: {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value},
    BookingStatus.COMPLETED.value: set(),
    BookingStatus.CANCELLED.value: set(),
}


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("final_amount = total_before_discount - discount_amount", name="ck_bookings_final_amount"),
        CheckConstraint("discount_amount >= 0", name="ck_bookings_discount_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)  # customer
    schedule_id: Mapped[str] = mapped_column(String(36), unique=True)
    promo_id: Mapped[str] = mapped_column(String(36), nullable=True)

    # Money is integer VND
    total_before_discount: Mapped[int] = mapped_column(Integer, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0)
    final_amount: Mapped[int] = mapped_column(Integer, default=0)

    pay_type: Mapped[str] = mapped_column(String(20), default=PayType.FULL.value)
    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.PENDING.value, index=True)

    # Immutable copies of the policies in force at booking time
    policy_snapshots: Mapped[dict] = mapped_column(JSON, default=dict)

    original_amount: Mapped[int] = mapped_column(Integer, default=0)
    refund_amount: Mapped[int] = mapped_column(Integer, default=0)
    charge_amount: Mapped[int] = mapped_column(Integer, default=0)
    net_amount: Mapped[int] = mapped_column(Integer, default=0)

    notes: Mapped[str] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    events: Mapped[list["BookingEvent"]] = relationship(
        back_populates="booking", order_by="BookingEvent.created_at", cascade="all, delete-orphan"
    )

    def recompute_final_amount(self) -> int:
        if self.discount_amount > self.total_before_discount:
            raise ValidationError("Discount cannot exceed the booking total")
        self.final_amount = self.total_before_discount - self.discount_amount
        return self.final_amount

    def transition_to(self, status: str) -> None:
        if status == self.status:
            return
        if status not in _NEXT_STATUS.get(self.status, set()):
            raise ValidationError(f"Booking cannot move from {self.status} to {status}")
        self.status = status

    def add_event(self, event_type: str, amount: int = 0, actor_id: str | None = None, details: dict | None = None) -> "BookingEvent":
        event = BookingEvent(
            type=event_type,
            amount=amount,
            actor_id=actor_id,
            details=details or {},
        )
        self.events.append(event)
        return event


class BookingEvent(Base):
    __tablename__ = "booking_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"), index=True)
    type: Mapped[str] = mapped_column(String(30))  # BookingEventType
    actor_id: Mapped[str] = mapped_column(String(36), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, default=0)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    booking: Mapped[Booking] = relationship(back_populates="events")
