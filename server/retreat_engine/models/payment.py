"""Payment schedule and payment record model definitions."""

from datetime import date, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .state import status_type


class ScheduleStatus(str, Enum):
    """Installment status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


# paid is terminal; pending and failed rows go straight to paid when the
# customer settles them through a hosted payment link
SCHEDULE_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.PENDING: frozenset({
        ScheduleStatus.PROCESSING, ScheduleStatus.PAID, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.PROCESSING: frozenset({
        ScheduleStatus.PAID, ScheduleStatus.PENDING, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.FAILED: frozenset({
        ScheduleStatus.PROCESSING, ScheduleStatus.PAID, ScheduleStatus.PENDING,
        ScheduleStatus.FAILED, ScheduleStatus.CANCELLED,
    }),
    ScheduleStatus.CANCELLED: frozenset({ScheduleStatus.PENDING}),
    ScheduleStatus.PAID: frozenset(),
}

# Rows that block later installments of the same booking
UNSETTLED_SCHEDULE_STATUSES = (
    ScheduleStatus.PENDING,
    ScheduleStatus.PROCESSING,
    ScheduleStatus.FAILED,
)


class PaymentSchedule(Base):
    """One installment of a booking's payment plan."""

    __tablename__ = "payment_schedules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    payment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    status: Mapped[ScheduleStatus] = mapped_column(
        status_type(ScheduleStatus),
        nullable=False,
        default=ScheduleStatus.PENDING,
        index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Reminder bookkeeping
    last_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)

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
        UniqueConstraint("booking_id", "payment_number", name="uq_schedule_booking_payment_number"),
        CheckConstraint("payment_number >= 1", name="ck_schedule_payment_number_positive"),
        CheckConstraint("amount >= 0", name="ck_schedule_amount_non_negative"),
        CheckConstraint("attempts >= 0", name="ck_schedule_attempts_non_negative"),
    )

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def __repr__(self) -> str:
        return (
            f"<PaymentSchedule(id={self.id}, booking_id={self.booking_id}, "
            f"#{self.payment_number}, status={self.status}, attempts={self.attempts})>"
        )


class Payment(Base):
    """A captured payment, one per successful charge."""

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    schedule_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("payment_schedules.id"),
        nullable=True
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="succeeded")

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, booking_id={self.booking_id}, amount={self.amount})>"
