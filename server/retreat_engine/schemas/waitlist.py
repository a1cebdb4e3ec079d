"""Waitlist-related Pydantic schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from ..models.waitlist import WaitlistStatus


class WaitlistAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class JoinWaitlistRequest(BaseModel):
    """Request schema for joining a waitlist."""

    retreat_id: UUID = Field(..., description="Retreat to wait for")
    room_id: UUID | None = Field(None, description="Preferred room; omit for any room")
    email: EmailStr = Field(..., description="Guest email")
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    guests_count: int = Field(1, ge=1, le=20)


class RespondToOfferRequest(BaseModel):
    """Request schema for answering a waitlist offer."""

    token: str = Field(..., min_length=1, max_length=64, description="Token from the offer email")
    action: WaitlistAction


class OfferWaitlistEntryRequest(BaseModel):
    """Request schema for an admin offer to a specific entry."""

    entry_id: UUID = Field(..., description="Entry to offer a room to")
    room_id: UUID | None = Field(None, description="Room to offer; defaults to the entry's preference")


class WaitlistEntry(BaseModel):
    """Waitlist entry response schema."""

    id: UUID = Field(..., description="Unique waitlist entry ID")
    retreat_id: UUID
    room_id: UUID | None = None
    offered_room_id: UUID | None = None
    status: WaitlistStatus
    position: int
    guests_count: int
    created_at: datetime = Field(..., description="Entry creation time (ISO 8601)")
    notified_at: datetime | None = Field(None, description="Offer time (ISO 8601)")
    notification_expires_at: datetime | None = None
    reservation_expires_at: datetime | None = None

    model_config = {"from_attributes": True}


class JoinWaitlistResponse(BaseModel):
    """Response schema for joining a waitlist."""

    entry: WaitlistEntry
    created: bool = Field(..., description="False when the guest was already on the list")
