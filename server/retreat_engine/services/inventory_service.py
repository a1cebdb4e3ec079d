"""Inventory allocation for room capacity."""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import CapacityConflictError, NotFoundError, ValidationError
from ..core.observability import metrics_collector
from ..models.booking import Booking
from ..models.retreat import Room

logger = logging.getLogger(__name__)


@dataclass
class RoomMoveResult:
    booking: Booking
    from_room_id: UUID | None
    to_room_id: UUID | None
    moved: bool
    # Set when the source room could not be released after a successful move
    warning: str | None = None


class InventoryService:
    """
    The only writer of ``Room.available``.

    Every mutation is a single UPDATE statement evaluated by the database, so
    concurrent callers never read a count and write back a stale one. Each
    call commits on its own; composite flows compensate explicitly.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_room_or_raise(self, room_id: UUID) -> Room:
        room = await self.db.get(Room, room_id)
        if not room:
            raise NotFoundError(resource_type="room", resource_id=str(room_id))
        return room

    async def try_decrement(self, room_id: UUID, amount: int) -> bool:
        """
        Take ``amount`` places from a room if, and only if, that many are left.

        Args:
            room_id: Room to allocate from
            amount: Number of places, must be positive

        Returns:
            True if the places were taken, False if the room had too few
        """
        if amount <= 0:
            raise ValidationError(detail="Allocation amount must be positive")

        stmt = (
            update(Room)
            .where(Room.id == room_id, Room.available >= amount)
            .values(available=Room.available - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        success = result.rowcount == 1
        if not success:
            metrics_collector.record_capacity_conflict()

        logger.info(
            "Room allocation attempted",
            extra={"room_id": str(room_id), "amount": amount, "success": success}
        )
        return success

    async def reserve(self, room_id: UUID, amount: int) -> None:
        """
        Same as ``try_decrement`` but raises on a capacity conflict.

        Raises:
            CapacityConflictError: If the room does not have ``amount`` places
        """
        if not await self.try_decrement(room_id, amount):
            raise CapacityConflictError(room_id=str(room_id), requested=amount)

    async def increment(self, room_id: UUID, amount: int) -> None:
        """
        Return ``amount`` places to a room.

        The addition is never clamped. A room pushed above its capacity means
        something upstream released twice, so it is logged and counted for
        investigation rather than silently corrected.

        Raises:
            NotFoundError: If the room does not exist
        """
        if amount <= 0:
            raise ValidationError(detail="Release amount must be positive")

        stmt = (
            update(Room)
            .where(Room.id == room_id)
            .values(available=Room.available + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount != 1:
            raise NotFoundError(resource_type="room", resource_id=str(room_id))

        row = (
            await self.db.execute(
                select(Room.available, Room.capacity).where(Room.id == room_id)
            )
        ).one()
        if row.available > row.capacity:
            metrics_collector.record_over_release()
            logger.error(
                "Room released above its capacity",
                extra={
                    "room_id": str(room_id),
                    "amount": amount,
                    "available": row.available,
                    "capacity": row.capacity,
                }
            )
        else:
            logger.info(
                "Room places released",
                extra={"room_id": str(room_id), "amount": amount, "available": row.available}
            )

    async def move_booking_room(self, booking: Booking, new_room_id: UUID | None) -> RoomMoveResult:
        """
        Reassign a booking to another room (or to no room).

        Steps, in order:
            1. take places in the destination (may raise a capacity conflict,
               nothing else has changed yet)
            2. point the booking at the destination; on failure, give the
               destination places back and re-raise
            3. release the source room; on failure the move stands and the
               result carries a warning

        Raises:
            CapacityConflictError: If the destination room is full
        """
        booking_id = booking.id
        old_room_id = booking.room_id
        if old_room_id == new_room_id:
            return RoomMoveResult(booking, old_room_id, new_room_id, moved=False)

        guests = booking.guests_count

        if new_room_id is not None:
            await self.reserve(new_room_id, guests)

        try:
            booking.room_id = new_room_id
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            if new_room_id is not None:
                await self.increment(new_room_id, guests)
            logger.error(
                "Room move failed after destination was reserved; destination released",
                exc_info=True,
                extra={
                    "booking_id": str(booking_id),
                    "from_room_id": str(old_room_id) if old_room_id else None,
                    "to_room_id": str(new_room_id),
                }
            )
            raise

        warning = None
        if old_room_id is not None:
            try:
                await self.increment(old_room_id, guests)
            except Exception as e:
                await self.db.rollback()
                await self.db.refresh(booking)
                warning = f"Booking moved but the previous room could not be released: {e}"
                logger.warning(
                    "Source room release failed after room move",
                    exc_info=True,
                    extra={"booking_id": str(booking_id), "from_room_id": str(old_room_id)}
                )

        logger.info(
            "Booking moved to new room",
            extra={
                "booking_id": str(booking_id),
                "from_room_id": str(old_room_id) if old_room_id else None,
                "to_room_id": str(new_room_id) if new_room_id else None,
                "guests": guests,
            }
        )
        return RoomMoveResult(booking, old_room_id, new_room_id, moved=True, warning=warning)
