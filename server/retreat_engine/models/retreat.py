"""Retreat and Room model definitions."""

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base


class Retreat(Base):
    """A retreat with fixed dates and per-room inventory."""

    __tablename__ = "retreats"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Prices are stored as minor units, e.g. cents
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)
    early_bird_enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    early_bird_deadline: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Tombstone; retreats referenced by bookings are never hard-deleted
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

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
        CheckConstraint("base_price >= 0", name="ck_retreat_base_price_non_negative"),
        CheckConstraint("end_date >= start_date", name="ck_retreat_dates_ordered"),
        CheckConstraint("length(slug) > 0", name="ck_retreat_slug_not_empty"),
    )

    rooms: Mapped[list["Room"]] = relationship("Room", back_populates="retreat")

    def __repr__(self) -> str:
        return f"<Retreat(id={self.id}, slug='{self.slug}', start_date={self.start_date})>"


class Room(Base):
    """
    A bookable room type within one retreat.

    ``available`` is the contended counter. It is only ever changed through
    ``InventoryService`` with a single conditional UPDATE.
    """

    __tablename__ = "rooms"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    retreat_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("retreats.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Per-guest price; falls back to the retreat base price when unset
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    available: Mapped[int] = mapped_column(Integer, nullable=False)

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

    # No available <= capacity check: over-release is detected and logged by
    # InventoryService.increment instead of failing the releasing operation.
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_room_capacity_non_negative"),
        CheckConstraint("available >= 0", name="ck_room_available_non_negative"),
        CheckConstraint("price IS NULL OR price >= 0", name="ck_room_price_non_negative"),
    )

    retreat: Mapped["Retreat"] = relationship("Retreat", back_populates="rooms")

    def __repr__(self) -> str:
        return (
            f"<Room(id={self.id}, retreat_id={self.retreat_id}, "
            f"available={self.available}/{self.capacity})>"
        )
