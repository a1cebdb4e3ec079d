"""Payment-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel, Field


class RetryPaymentRequest(BaseModel):
    """Request schema for an admin payment retry."""

    booking_id: UUID = Field(..., description="Owning booking")
    schedule_id: UUID = Field(..., description="Installment to charge")
    force: bool = Field(False, description="Charge even when all attempts are used")


class PaymentLinkRequest(BaseModel):
    """Request schema for a hosted payment link."""

    booking_id: UUID = Field(..., description="Owning booking")
    schedule_id: UUID = Field(..., description="Installment the link pays")


class PaymentAttempt(BaseModel):
    """Outcome of one charge attempt."""

    schedule_id: UUID
    outcome: str = Field(..., description="succeeded, requires_action, failed or no_payment_method")
    attempts: int
    attempts_remaining: int
    message: str = Field(..., description="Customer-facing message")
    failure_reason: str | None = None
    payment_link_url: str | None = None

    model_config = {"from_attributes": True}


class PaymentLinkResponse(BaseModel):
    """Response schema for a payment link."""

    url: str


class WebhookReceipt(BaseModel):
    """Acknowledgement returned to the gateway for a verified webhook."""

    received: bool = True
    outcome: str = Field(..., description="recorded, already_paid, unapplied or ignored")
