"""Booking-related Pydantic schemas."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from ..models.booking import BookingStatus, PaymentStatus
from ..models.payment import ScheduleStatus
from ..services.schedule_calculator import PaymentType


class CheckoutRequest(BaseModel):
    """Request schema for booking a retreat."""

    retreat_id: UUID = Field(..., description="Retreat to book")
    room_id: UUID | None = Field(None, description="Room to book; omit to book without a room")
    email: EmailStr = Field(..., description="Guest email")
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    guests_count: int = Field(1, ge=1, le=20, description="Number of guests")
    payment_type: PaymentType = Field(PaymentType.DEPOSIT, description="Installments or pay in full")
    payment_method_id: str = Field(
        ..., min_length=1, max_length=255, description="Saved gateway payment method"
    )
    promo_code: str | None = Field(None, max_length=50, description="Optional promo code")
    waitlist_token: str | None = Field(
        None, max_length=64, description="Token of an accepted waitlist offer"
    )


class GetBookingRequest(BaseModel):
    """Request schema for getting a booking."""

    booking_id: UUID = Field(..., description="Booking to retrieve")


class ChangeStatusRequest(BaseModel):
    """Request schema for an admin status change."""

    booking_id: UUID = Field(..., description="Booking to update")
    status: BookingStatus = Field(..., description="Target status")
    reason: str | None = Field(None, max_length=1000)


class CancelBookingRequest(BaseModel):
    """Request schema for cancelling a booking."""

    booking_id: UUID = Field(..., description="Booking to cancel")
    reason: str | None = Field(None, max_length=1000)
    notify_customer: bool = Field(True, description="Email the guest about the cancellation")


class RestoreBookingRequest(BaseModel):
    """Request schema for restoring a cancelled booking."""

    booking_id: UUID = Field(..., description="Booking to restore")
    new_due_date: date | None = Field(
        None, description="Due date for reopened installments; defaults to today plus the deadline window"
    )
    send_payment_link: bool = Field(True, description="Send a payment link for the next installment")
    notes: str | None = Field(None, max_length=1000, description="Internal note")


class MoveRoomRequest(BaseModel):
    """Request schema for moving a booking to another room."""

    booking_id: UUID = Field(..., description="Booking to move")
    room_id: UUID | None = Field(..., description="Destination room, or null to unassign")


class Installment(BaseModel):
    """Payment schedule row response schema."""

    id: UUID
    payment_number: int
    kind: str
    description: str
    amount: int = Field(..., description="Amount in minor units")
    due_date: date
    status: ScheduleStatus
    attempts: int
    max_attempts: int
    failure_reason: str | None = None
    next_retry_at: datetime | None = None
    payment_deadline: datetime | None = None
    paid_at: datetime | None = None

    model_config = {"from_attributes": True}


class Booking(BaseModel):
    """Booking response schema."""

    id: UUID = Field(..., description="Unique booking ID")
    booking_number: str = Field(..., description="Human-facing booking reference")
    retreat_id: UUID
    room_id: UUID | None = None
    email: str
    first_name: str
    last_name: str
    guests_count: int
    total_amount: int = Field(..., description="Total after discounts, minor units")
    balance_due: int = Field(..., description="Unpaid remainder, minor units")
    early_bird_discount: int
    promo_discount: int
    currency: str
    payment_type: str
    status: BookingStatus
    payment_status: PaymentStatus
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    restored_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingDetail(BaseModel):
    """A booking with its payment schedule."""

    booking: Booking
    installments: list[Installment]


class CheckoutResponse(BaseModel):
    """Response schema for checkout."""

    booking: Booking
    installments: list[Installment]
    payment_outcome: str = Field(..., description="Outcome of the first charge")
    message: str = Field(..., description="Customer-facing payment message")
    is_early_bird: bool
    payment_link_url: str | None = Field(
        None, description="Set when the bank requires the guest to authenticate"
    )


class CancellationResponse(BaseModel):
    """Response schema for a cancellation."""

    booking: Booking
    schedules_cancelled: int
    room_released: bool
    promo_released: bool
    failed_steps: list[str] = Field(
        default_factory=list, description="Side effects that failed and need follow-up"
    )


class RestoreResponse(BaseModel):
    """Response schema for a restore."""

    booking: Booking
    schedules_reset: int
    new_due_date: date
    payment_link_url: str | None = None


class MoveRoomResponse(BaseModel):
    """Response schema for a room move."""

    booking: Booking
    from_room_id: UUID | None
    to_room_id: UUID | None
    moved: bool
    warning: str | None = None
