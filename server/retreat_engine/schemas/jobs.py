"""Schemas for scheduler-triggered job runs."""

from pydantic import BaseModel


class PaymentRunResponse(BaseModel):
    reclaimed: int
    deadline_cancellations: int
    processed: int
    succeeded: int
    requires_action: int
    failed: int
    skipped: int
    errors: int

    model_config = {"from_attributes": True}


class WaitlistSweepResponse(BaseModel):
    expired_offers: int
    lapsed_reservations: int
    offers_made: int
    errors: int

    model_config = {"from_attributes": True}


class ReminderRunResponse(BaseModel):
    payment_reminders: int
    deadline_reminders: int
    pre_retreat_reminders: int
    errors: int

    model_config = {"from_attributes": True}
