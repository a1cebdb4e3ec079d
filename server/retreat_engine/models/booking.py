"""Booking and booking audit model definitions."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .state import status_type


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Aggregate payment status of a booking."""
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


# Restore (cancelled -> pending) is an admin escape hatch handled separately
BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class Booking(Base):
    """A guest's booking of a retreat, optionally assigned to a room."""

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)

    retreat_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("retreats.id"),
        nullable=False,
        index=True
    )
    room_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("rooms.id"),
        nullable=True,
        index=True
    )

    # Guest details
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    guests_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Amounts in minor units; total_amount is after all discounts
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_due: Mapped[int] = mapped_column(Integer, nullable=False)
    early_bird_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    promo_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False, default="deposit")

    status: Mapped[BookingStatus] = mapped_column(
        status_type(BookingStatus),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        status_type(PaymentStatus),
        nullable=False,
        default=PaymentStatus.UNPAID
    )

    # Saved instrument references for off-session charges
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    restored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_retreat_reminder_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint("guests_count > 0", name="ck_booking_guests_positive"),
        CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
        CheckConstraint("balance_due >= 0", name="ck_booking_balance_non_negative"),
        CheckConstraint("length(email) > 0", name="ck_booking_email_not_empty"),
    )

    @property
    def customer_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, number='{self.booking_number}', status={self.status}, "
            f"payment_status={self.payment_status})>"
        )


class BookingStatusChange(Base):
    """Append-only audit trail of admin and system actions on a booking."""

    __tablename__ = "booking_status_changes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    action: Mapped[str] = mapped_column(String(30), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    old_payment_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_payment_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    changed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now(),
        index=True
    )

    def __repr__(self) -> str:
        return (
            f"<BookingStatusChange(booking_id={self.booking_id}, action='{self.action}', "
            f"{self.old_status}->{self.new_status})>"
        )
