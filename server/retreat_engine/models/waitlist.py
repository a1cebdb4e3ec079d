"""Waitlist model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .state import status_type


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    WAITING = "waiting"
    NOTIFIED = "notified"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    BOOKED = "booked"


# accepted -> expired covers a reservation that was never checked out
WAITLIST_TRANSITIONS: dict[WaitlistStatus, frozenset[WaitlistStatus]] = {
    WaitlistStatus.WAITING: frozenset({WaitlistStatus.NOTIFIED}),
    WaitlistStatus.NOTIFIED: frozenset({
        WaitlistStatus.ACCEPTED, WaitlistStatus.DECLINED, WaitlistStatus.EXPIRED,
        WaitlistStatus.WAITING,
    }),
    WaitlistStatus.ACCEPTED: frozenset({WaitlistStatus.BOOKED, WaitlistStatus.EXPIRED}),
    WaitlistStatus.DECLINED: frozenset(),
    WaitlistStatus.EXPIRED: frozenset(),
    WaitlistStatus.BOOKED: frozenset(),
}


class WaitlistEntry(Base):
    """A guest waiting for a place on a sold-out retreat or room."""

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    retreat_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("retreats.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # Preferred room; None means any room of the retreat
    room_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("rooms.id", ondelete="SET NULL"),
        nullable=True
    )
    # Room the current offer is for
    offered_room_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("rooms.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    guests_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[WaitlistStatus] = mapped_column(
        status_type(WaitlistStatus),
        nullable=False,
        default=WaitlistStatus.WAITING,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set only while notified
    notification_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reservation_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    booking_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now(),
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint("length(email) > 0", name="ck_waitlist_email_not_empty"),
        CheckConstraint("guests_count > 0", name="ck_waitlist_guests_positive"),
        CheckConstraint("position > 0", name="ck_waitlist_position_positive"),
        UniqueConstraint("retreat_id", "email", name="uq_waitlist_retreat_email"),
        UniqueConstraint("retreat_id", "position", name="uq_waitlist_retreat_position"),
        # One outstanding offer per room
        Index(
            "uq_waitlist_room_outstanding_offer",
            "retreat_id",
            "offered_room_id",
            unique=True,
            postgresql_where=text("status = 'notified'"),
            sqlite_where=text("status = 'notified'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, retreat_id={self.retreat_id}, "
            f"position={self.position}, status={self.status})>"
        )
