"""Waitlist service: joining, offers, responses and the expiry sweep."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..core.config import settings
from ..core.exceptions import (
    BusinessRuleError,
    CapacityConflictError,
    ConflictError,
    NotFoundError,
    OfferExpiredError,
    ValidationError,
)
from ..core.observability import metrics_collector
from ..models.retreat import Retreat, Room
from ..models.state import check_transition
from ..models.waitlist import WAITLIST_TRANSITIONS, WaitlistEntry, WaitlistStatus
from ..schemas.waitlist import JoinWaitlistRequest, WaitlistAction
from .inventory_service import InventoryService
from .notifications import NotificationKind, NotificationSender, notify
from .schedule_calculator import LATE_BOOKING_MONTHS, LATE_FIRST_PERCENT, whole_months_between

logger = logging.getLogger(__name__)

JOIN_POSITION_ATTEMPTS = 3


@dataclass
class WaitlistSweepSummary:
    expired_offers: int = 0
    lapsed_reservations: int = 0
    offers_made: int = 0
    errors: int = 0


def _naive_utc(value: datetime) -> datetime:
    # Postgres hands back aware datetimes, SQLite naive ones
    if value.tzinfo is not None:
        return value.replace(tzinfo=None) - (value.utcoffset() or timedelta(0))
    return value


class WaitlistService:
    """
    Service for waitlist-related operations.

    A room has at most one outstanding offer at a time. The offer is claimed
    with a conditional UPDATE, and a partial unique index on notified entries
    rejects the second of two offers committed concurrently for one room.
    """

    def __init__(self, db: AsyncSession, notifier: NotificationSender):
        self.db = db
        self.notifier = notifier
        self.inventory = InventoryService(db)

    async def get_entry_or_raise(self, entry_id: UUID) -> WaitlistEntry:
        entry = await self.db.get(WaitlistEntry, entry_id)
        if not entry:
            raise NotFoundError(resource_type="waitlist_entry", resource_id=str(entry_id))
        return entry

    async def get_entry_by_email(self, retreat_id: UUID, email: str) -> WaitlistEntry | None:
        stmt = select(WaitlistEntry).where(
            WaitlistEntry.retreat_id == retreat_id,
            WaitlistEntry.email == email.lower(),
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_entry_by_token(self, token: str) -> WaitlistEntry:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.response_token == token)
            .execution_options(populate_existing=True)
        )
        entry = (await self.db.execute(stmt)).scalar_one_or_none()
        if not entry:
            raise NotFoundError(resource_type="waitlist_offer", resource_id="token")
        return entry

    async def join(
        self,
        request: JoinWaitlistRequest,
        now: datetime | None = None,
    ) -> tuple[WaitlistEntry, bool]:
        """
        Join a retreat's waitlist (idempotent by retreat + email).

        Returns:
            The entry and whether it was newly created

        Raises:
            NotFoundError: If the retreat or room does not exist
            BusinessRuleError: If the retreat has already started
        """
        now = now or datetime.utcnow()
        retreat = await self.db.get(Retreat, request.retreat_id)
        if not retreat or retreat.deleted_at is not None:
            raise NotFoundError(resource_type="retreat", resource_id=str(request.retreat_id))
        if retreat.start_date <= now.date():
            raise BusinessRuleError(
                "This retreat has already started", code="RETREAT_STARTED"
            )

        if request.room_id is not None:
            room = await self.inventory.get_room_or_raise(request.room_id)
            if room.retreat_id != retreat.id:
                raise ValidationError(detail="Room does not belong to this retreat")

        email = request.email.lower()
        existing = await self.get_entry_by_email(retreat.id, email)
        if existing:
            logger.info(
                "Guest already on waitlist - returning existing entry",
                extra={"waitlist_entry_id": str(existing.id), "retreat_id": str(retreat.id)}
            )
            return existing, False

        retreat_id = retreat.id
        for attempt in range(JOIN_POSITION_ATTEMPTS):
            max_position = (
                await self.db.execute(
                    select(func.coalesce(func.max(WaitlistEntry.position), 0))
                    .where(WaitlistEntry.retreat_id == retreat_id)
                )
            ).scalar_one()

            entry = WaitlistEntry(
                retreat_id=retreat_id,
                room_id=request.room_id,
                email=email,
                first_name=request.first_name,
                last_name=request.last_name,
                guests_count=request.guests_count,
                status=WaitlistStatus.WAITING,
                position=max_position + 1,
            )
            self.db.add(entry)
            try:
                await self.db.commit()
            except IntegrityError:
                # Race condition - same email, or the position was taken
                await self.db.rollback()
                existing = await self.get_entry_by_email(retreat_id, email)
                if existing:
                    return existing, False
                logger.info(
                    "Waitlist position taken by concurrent join, retrying",
                    extra={"retreat_id": str(retreat_id), "attempt": attempt + 1}
                )
                continue

            logger.info(
                "Guest joined waitlist",
                extra={
                    "waitlist_entry_id": str(entry.id),
                    "retreat_id": str(retreat_id),
                    "position": entry.position,
                }
            )
            await notify(
                self.notifier,
                NotificationKind.WAITLIST_JOINED,
                entry.email,
                {"first_name": entry.first_name, "position": entry.position},
            )
            return entry, True

        raise ConflictError(detail="Could not allocate a waitlist position, please retry")

    async def _room_available(self, room_id: UUID) -> int:
        available = (
            await self.db.execute(select(Room.available).where(Room.id == room_id))
        ).scalar_one_or_none()
        if available is None:
            raise NotFoundError(resource_type="room", resource_id=str(room_id))
        return available

    async def offer_next(
        self,
        retreat_id: UUID,
        room_id: UUID,
        now: datetime | None = None,
    ) -> WaitlistEntry | None:
        """
        Offer a room to the first waiting guest whose party fits.

        Returns:
            The notified entry, or None if nobody was offered the room
        """
        now = now or datetime.utcnow()
        available = await self._room_available(room_id)
        if available <= 0:
            return None

        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.retreat_id == retreat_id,
                WaitlistEntry.status == WaitlistStatus.WAITING,
                or_(WaitlistEntry.room_id == room_id, WaitlistEntry.room_id.is_(None)),
                WaitlistEntry.guests_count <= available,
            )
            .order_by(WaitlistEntry.position)
            .limit(1)
        )
        entry = (await self.db.execute(stmt)).scalar_one_or_none()
        if entry is None:
            return None

        return await self._offer(entry, room_id, now)

    async def offer_entry(
        self,
        entry_id: UUID,
        room_id: UUID | None = None,
        now: datetime | None = None,
    ) -> WaitlistEntry:
        """
        Offer a room to a specific entry, out of position order.

        Raises:
            ValidationError: If no room is given and the entry has no preference
            ConflictError: If the room already has an outstanding offer
            CapacityConflictError: If the room cannot fit the party
        """
        now = now or datetime.utcnow()
        entry = await self.get_entry_or_raise(entry_id)
        check_transition("waitlist entry", WAITLIST_TRANSITIONS, entry.status, WaitlistStatus.NOTIFIED)

        room_id = room_id or entry.room_id
        if room_id is None:
            raise ValidationError(detail="A room must be chosen for this waitlist entry")

        room = await self.inventory.get_room_or_raise(room_id)
        if room.retreat_id != entry.retreat_id:
            raise ValidationError(detail="Room does not belong to this retreat")

        if await self._room_available(room_id) < entry.guests_count:
            raise CapacityConflictError(room_id=str(room_id), requested=entry.guests_count)

        offered = await self._offer(entry, room_id, now)
        if offered is None:
            raise ConflictError(detail="This room already has an outstanding waitlist offer")
        return offered

    async def _offer(self, entry: WaitlistEntry, room_id: UUID, now: datetime) -> WaitlistEntry | None:
        entry_id = entry.id
        retreat_id = entry.retreat_id
        token = secrets.token_urlsafe(32)
        expires_at = now + timedelta(hours=settings.waitlist_hold_hours)

        other = aliased(WaitlistEntry)
        outstanding = (
            select(other.id)
            .where(
                other.retreat_id == retreat_id,
                other.offered_room_id == room_id,
                other.status == WaitlistStatus.NOTIFIED,
            )
        )
        stmt = (
            update(WaitlistEntry)
            .where(
                WaitlistEntry.id == entry_id,
                WaitlistEntry.status == WaitlistStatus.WAITING,
                ~exists(outstanding),
            )
            .values(
                status=WaitlistStatus.NOTIFIED,
                offered_room_id=room_id,
                notified_at=now,
                notification_expires_at=expires_at,
                response_token=token,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
            offered = result.rowcount == 1
        except IntegrityError:
            # A concurrent offer for the same room committed first
            await self.db.rollback()
            offered = False

        if not offered:
            logger.info(
                "Waitlist offer not made; room already offered or entry changed",
                extra={"waitlist_entry_id": str(entry_id), "room_id": str(room_id)}
            )
            return None

        await self.db.refresh(entry)

        retreat = await self.db.get(Retreat, retreat_id)
        months_out = whole_months_between(now.date(), retreat.start_date)
        deposit_percent = (
            settings.deposit_percent if months_out >= LATE_BOOKING_MONTHS else LATE_FIRST_PERCENT
        )

        sent = await notify(
            self.notifier,
            NotificationKind.WAITLIST_OFFER,
            entry.email,
            {
                "first_name": entry.first_name,
                "retreat_title": retreat.title,
                "room_id": str(room_id),
                "expires_at": expires_at.isoformat(),
                "deposit_percent": deposit_percent,
                "accept_url": f"{settings.site_url}/waitlist/respond?token={token}&action=accept",
                "decline_url": f"{settings.site_url}/waitlist/respond?token={token}&action=decline",
            },
        )
        if not sent:
            await self._revert_offer(entry)
            return None

        metrics_collector.record_waitlist_offer()
        logger.info(
            "Waitlist offer sent",
            extra={
                "waitlist_entry_id": str(entry_id),
                "room_id": str(room_id),
                "expires_at": expires_at.isoformat(),
            }
        )
        return entry

    async def _revert_offer(self, entry: WaitlistEntry) -> None:
        """Put an entry back in line when its offer could not be delivered."""
        await self.db.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry.id, WaitlistEntry.status == WaitlistStatus.NOTIFIED)
            .values(
                status=WaitlistStatus.WAITING,
                offered_room_id=None,
                notified_at=None,
                notification_expires_at=None,
                response_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(entry)
        logger.warning(
            "Waitlist offer could not be delivered; entry returned to waiting",
            extra={"waitlist_entry_id": str(entry.id)}
        )

    async def _move(
        self,
        entry: WaitlistEntry,
        current: WaitlistStatus,
        target: WaitlistStatus,
        **values,
    ) -> bool:
        check_transition("waitlist entry", WAITLIST_TRANSITIONS, current, target)
        if target != WaitlistStatus.NOTIFIED:
            values.setdefault("notification_expires_at", None)
        result = await self.db.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry.id, WaitlistEntry.status == current)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(entry)
        return result.rowcount == 1

    async def respond(
        self,
        token: str,
        action: WaitlistAction,
        now: datetime | None = None,
    ) -> WaitlistEntry:
        """
        Accept or decline an offer by its single-use token.

        Accepting reserves the room places straight away; the entry then has
        the hold window to complete checkout.

        Raises:
            NotFoundError: If the token is unknown
            BusinessRuleError: If the offer was already answered
            OfferExpiredError: If the offer window has passed
            CapacityConflictError: If the room no longer has space
        """
        now = now or datetime.utcnow()
        entry = await self.get_entry_by_token(token)

        if entry.status != WaitlistStatus.NOTIFIED:
            raise BusinessRuleError(
                "This offer has already been answered", code="OFFER_ALREADY_ANSWERED"
            )

        room_id = entry.offered_room_id
        if entry.notification_expires_at and now >= _naive_utc(entry.notification_expires_at):
            expired_at = entry.notification_expires_at
            await self._expire_offer(entry, now)
            raise OfferExpiredError(entry_id=str(entry.id), expired_at=_naive_utc(expired_at))

        if action == WaitlistAction.DECLINE:
            if await self._move(entry, WaitlistStatus.NOTIFIED, WaitlistStatus.DECLINED, responded_at=now):
                await notify(
                    self.notifier,
                    NotificationKind.WAITLIST_DECLINED,
                    entry.email,
                    {"first_name": entry.first_name},
                )
                logger.info("Waitlist offer declined", extra={"waitlist_entry_id": str(entry.id)})
                await self._offer_onward(entry.retreat_id, room_id, now)
            return entry

        await self.inventory.reserve(room_id, entry.guests_count)

        reservation_expires_at = now + timedelta(hours=settings.waitlist_hold_hours)
        accepted = await self._move(
            entry,
            WaitlistStatus.NOTIFIED,
            WaitlistStatus.ACCEPTED,
            responded_at=now,
            reservation_expires_at=reservation_expires_at,
        )
        if not accepted:
            await self.inventory.increment(room_id, entry.guests_count)
            raise ConflictError(detail="This offer changed while it was being accepted")

        logger.info(
            "Waitlist offer accepted",
            extra={
                "waitlist_entry_id": str(entry.id),
                "room_id": str(room_id),
                "reservation_expires_at": reservation_expires_at.isoformat(),
            }
        )
        await notify(
            self.notifier,
            NotificationKind.WAITLIST_ACCEPTED,
            entry.email,
            {
                "first_name": entry.first_name,
                "checkout_url": f"{settings.site_url}/checkout?waitlist_token={token}",
                "reservation_expires_at": reservation_expires_at.isoformat(),
            },
        )
        await self._offer_onward(entry.retreat_id, room_id, now)
        return entry

    async def _expire_offer(self, entry: WaitlistEntry, now: datetime) -> bool:
        room_id = entry.offered_room_id
        if not await self._move(entry, WaitlistStatus.NOTIFIED, WaitlistStatus.EXPIRED, responded_at=now):
            return False

        metrics_collector.record_waitlist_expired(1)
        await notify(
            self.notifier,
            NotificationKind.WAITLIST_EXPIRED,
            entry.email,
            {"first_name": entry.first_name},
        )
        logger.info("Waitlist offer expired", extra={"waitlist_entry_id": str(entry.id)})
        await self._offer_onward(entry.retreat_id, room_id, now)
        return True

    async def _offer_onward(self, retreat_id: UUID, room_id: UUID | None, now: datetime) -> WaitlistEntry | None:
        if room_id is None:
            return None
        try:
            return await self.offer_next(retreat_id, room_id, now=now)
        except Exception:
            await self.db.rollback()
            logger.error(
                "Failed to offer room to next waitlist entry",
                exc_info=True,
                extra={"retreat_id": str(retreat_id), "room_id": str(room_id)}
            )
            return None

    async def get_accepted_entry(self, token: str, email: str, now: datetime | None = None) -> WaitlistEntry:
        """
        Look up an accepted entry for checkout against its reserved places.

        Raises:
            NotFoundError: If the token is unknown
            ValidationError: If the email does not match the entry
            BusinessRuleError: If the entry is not accepted or its hold lapsed
        """
        now = now or datetime.utcnow()
        entry = await self.get_entry_by_token(token)
        if entry.email != email.lower():
            raise ValidationError(detail="Email does not match the waitlist offer")
        if entry.status != WaitlistStatus.ACCEPTED:
            raise BusinessRuleError(
                "This waitlist offer has not been accepted", code="OFFER_NOT_ACCEPTED"
            )
        if entry.reservation_expires_at and now >= _naive_utc(entry.reservation_expires_at):
            raise BusinessRuleError(
                "The reserved place for this offer has lapsed", code="RESERVATION_LAPSED"
            )
        return entry

    async def mark_booked(self, entry: WaitlistEntry, booking_id: UUID) -> bool:
        booked = await self._move(
            entry, WaitlistStatus.ACCEPTED, WaitlistStatus.BOOKED, booking_id=booking_id
        )
        if booked:
            logger.info(
                "Waitlist entry booked",
                extra={"waitlist_entry_id": str(entry.id), "booking_id": str(booking_id)}
            )
        return booked

    async def expire_offers(self, now: datetime | None = None) -> WaitlistSweepSummary:
        """
        Sweep stale offers and lapsed reservations.

        Notified entries past their offer window become ``expired``. Accepted
        entries that never checked out within the hold also become
        ``expired`` and their reserved places go back to the room. Each freed
        room is then offered to the next guest in line.
        """
        now = now or datetime.utcnow()
        summary = WaitlistSweepSummary()
        rooms_to_offer: set[tuple[UUID, UUID]] = set()

        stale_offers = (
            await self.db.execute(
                select(WaitlistEntry).where(
                    WaitlistEntry.status == WaitlistStatus.NOTIFIED,
                    WaitlistEntry.notification_expires_at <= now,
                )
            )
        ).scalars().all()

        for entry in stale_offers:
            entry_id = entry.id
            target = (entry.retreat_id, entry.offered_room_id)
            try:
                if await self._move(entry, WaitlistStatus.NOTIFIED, WaitlistStatus.EXPIRED, responded_at=now):
                    summary.expired_offers += 1
                    if target[1] is not None:
                        rooms_to_offer.add(target)
                    await notify(
                        self.notifier,
                        NotificationKind.WAITLIST_EXPIRED,
                        entry.email,
                        {"first_name": entry.first_name},
                    )
            except Exception:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Failed to expire waitlist offer",
                    exc_info=True,
                    extra={"waitlist_entry_id": str(entry_id)}
                )

        lapsed = (
            await self.db.execute(
                select(WaitlistEntry).where(
                    WaitlistEntry.status == WaitlistStatus.ACCEPTED,
                    WaitlistEntry.reservation_expires_at <= now,
                )
            )
        ).scalars().all()

        for entry in lapsed:
            entry_id = entry.id
            room_id = entry.offered_room_id
            guests = entry.guests_count
            retreat_id = entry.retreat_id
            try:
                if not await self._move(entry, WaitlistStatus.ACCEPTED, WaitlistStatus.EXPIRED):
                    continue
                summary.lapsed_reservations += 1
                if room_id is not None:
                    await self.inventory.increment(room_id, guests)
                    rooms_to_offer.add((retreat_id, room_id))
                await notify(
                    self.notifier,
                    NotificationKind.WAITLIST_EXPIRED,
                    entry.email,
                    {"first_name": entry.first_name, "reservation_lapsed": True},
                )
            except Exception:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Failed to release lapsed waitlist reservation",
                    exc_info=True,
                    extra={"waitlist_entry_id": str(entry_id), "room_id": str(room_id)}
                )

        total_expired = summary.expired_offers + summary.lapsed_reservations
        if total_expired:
            metrics_collector.record_waitlist_expired(total_expired)

        for retreat_id, room_id in sorted(rooms_to_offer, key=str):
            if await self._offer_onward(retreat_id, room_id, now):
                summary.offers_made += 1

        logger.info(
            "Waitlist sweep completed",
            extra={
                "expired_offers": summary.expired_offers,
                "lapsed_reservations": summary.lapsed_reservations,
                "offers_made": summary.offers_made,
                "errors": summary.errors,
            }
        )
        return summary
