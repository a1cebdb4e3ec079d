"""Booking state machine: status changes, cancellation, restore and room moves."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import BusinessRuleError, NotFoundError, ValidationError
from ..core.observability import metrics_collector
from ..models.booking import (
    BOOKING_TRANSITIONS,
    Booking,
    BookingStatus,
    BookingStatusChange,
    PaymentStatus,
)
from ..models.payment import PaymentSchedule, ScheduleStatus
from ..models.retreat import Retreat
from ..models.state import check_transition
from .gateway import PaymentGateway
from .inventory_service import InventoryService, RoomMoveResult
from .notifications import NotificationKind, NotificationSender, notify
from .promo_service import PromoService
from .waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CancellationResult:
    booking: Booking
    schedules_cancelled: int = 0
    room_released: bool = False
    promo_released: bool = False
    failed_steps: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    booking: Booking
    schedules_reset: int
    new_due_date: date
    payment_link_url: str | None = None


class BookingService:
    """Service for booking lifecycle operations."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationSender,
        gateway: PaymentGateway | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.gateway = gateway
        self.inventory = InventoryService(db)
        self.promos = PromoService(db)
        self.waitlist = WaitlistService(db, notifier)

    async def get_booking_or_raise(self, booking_id: UUID) -> Booking:
        booking = await self.db.get(Booking, booking_id)
        if not booking:
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        return booking

    async def get_schedules(self, booking_id: UUID) -> list[PaymentSchedule]:
        """All installments of a booking in payment order, re-read from the database."""
        stmt = (
            select(PaymentSchedule)
            .where(PaymentSchedule.booking_id == booking_id)
            .order_by(PaymentSchedule.payment_number)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def refresh_payment_totals(self, booking: Booking) -> Booking:
        """
        Recompute ``payment_status`` and ``balance_due`` from the schedule rows.

        ``paid`` only when every non-cancelled installment is paid, so paid
        amounts plus the balance always add up to the booking total.
        """
        schedules = await self.get_schedules(booking.id)
        paid_total = sum(s.amount for s in schedules if s.status == ScheduleStatus.PAID)
        open_rows = [s for s in schedules if s.status != ScheduleStatus.CANCELLED]

        if open_rows and all(s.status == ScheduleStatus.PAID for s in open_rows):
            booking.payment_status = PaymentStatus.PAID
        elif paid_total > 0:
            booking.payment_status = PaymentStatus.PARTIAL
        else:
            booking.payment_status = PaymentStatus.UNPAID
        booking.balance_due = max(booking.total_amount - paid_total, 0)

        await self.db.commit()
        return booking

    async def record_status_change(
        self,
        booking: Booking,
        action: str,
        actor: str,
        old_status: BookingStatus | None = None,
        old_payment_status: PaymentStatus | None = None,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit row for an action on a booking."""
        self.db.add(
            BookingStatusChange(
                booking_id=booking.id,
                action=action,
                old_status=old_status.value if old_status else None,
                new_status=booking.status.value,
                old_payment_status=old_payment_status.value if old_payment_status else None,
                new_payment_status=booking.payment_status.value,
                changed_by=actor,
                reason=reason,
                details=details,
            )
        )
        await self.db.commit()

    async def _isolated(
        self,
        step: str,
        booking_id: UUID,
        action: Callable[[], Awaitable[T]],
        failed_steps: list[str] | None = None,
    ) -> T | None:
        """Run one side effect, logging and rolling back its failure instead of raising."""
        try:
            return await action()
        except Exception:
            await self.db.rollback()
            if failed_steps is not None:
                failed_steps.append(step)
            metrics_collector.record_cancellation_step_failure(step)
            logger.error(
                f"Booking side effect '{step}' failed",
                exc_info=True,
                extra={"booking_id": str(booking_id), "step": step}
            )
            return None

    async def change_status(
        self,
        booking_id: UUID,
        new_status: BookingStatus,
        actor: str,
        reason: str | None = None,
    ) -> Booking:
        """
        Move a booking along its transition table.

        Cancellation is delegated to ``cancel_booking`` so its side effects
        always run.

        Raises:
            NotFoundError: If the booking does not exist
            InvalidTransitionError: If the edge is not in the table
            BusinessRuleError: If confirming a booking with no payment
        """
        if new_status == BookingStatus.CANCELLED:
            result = await self.cancel_booking(booking_id, actor=actor, reason=reason)
            return result.booking

        booking = await self.get_booking_or_raise(booking_id)
        old_status = booking.status
        if old_status == new_status:
            return booking

        check_transition("booking", BOOKING_TRANSITIONS, old_status, new_status)

        if new_status == BookingStatus.CONFIRMED and booking.payment_status == PaymentStatus.UNPAID:
            raise BusinessRuleError(
                "A booking cannot be confirmed before a payment has been received",
                code="PAYMENT_REQUIRED",
            )

        booking.status = new_status
        await self.db.commit()

        await self._isolated(
            "audit",
            booking_id,
            lambda: self.record_status_change(
                booking, "status_change", actor,
                old_status=old_status,
                old_payment_status=booking.payment_status,
                reason=reason,
            ),
        )
        await self.db.refresh(booking)

        logger.info(
            "Booking status changed",
            extra={
                "booking_id": str(booking_id),
                "old_status": old_status.value,
                "new_status": new_status.value,
                "actor": actor,
            }
        )
        return booking

    async def cancel_booking(
        self,
        booking_id: UUID,
        actor: str,
        reason: str | None = None,
        notify_customer: bool = True,
        notification_kind: NotificationKind = NotificationKind.BOOKING_CANCELLED,
        now: datetime | None = None,
    ) -> CancellationResult:
        """
        Cancel a booking and unwind what it holds.

        The status change is committed first and is authoritative. After it,
        each side effect (cancel open installments, release the room, release
        the promo code, write the audit row) runs on its own; a failing step
        is logged and listed in ``failed_steps`` but never undoes the
        cancellation or stops the other steps. A freed room is then offered
        to the waitlist.

        Raises:
            NotFoundError: If the booking does not exist
            InvalidTransitionError: If the booking is already cancelled or completed
        """
        now = now or datetime.utcnow()
        booking = await self.get_booking_or_raise(booking_id)

        old_status = booking.status
        old_payment_status = booking.payment_status
        check_transition("booking", BOOKING_TRANSITIONS, old_status, BookingStatus.CANCELLED)

        room_id = booking.room_id
        retreat_id = booking.retreat_id
        guests = booking.guests_count
        email = booking.email
        customer = {
            "customer_name": booking.customer_name,
            "booking_number": booking.booking_number,
        }

        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.cancellation_reason = reason
        await self.db.commit()

        result = CancellationResult(booking=booking)
        cancel_reason = reason or "Booking cancelled"

        async def cancel_schedules() -> int:
            stmt = (
                update(PaymentSchedule)
                .where(
                    PaymentSchedule.booking_id == booking_id,
                    PaymentSchedule.status.in_([ScheduleStatus.PENDING, ScheduleStatus.PROCESSING]),
                )
                .values(status=ScheduleStatus.CANCELLED, failure_reason=cancel_reason, next_retry_at=None)
                .execution_options(synchronize_session=False)
            )
            rows = (await self.db.execute(stmt)).rowcount
            await self.db.commit()
            return rows

        result.schedules_cancelled = (
            await self._isolated("cancel_schedules", booking_id, cancel_schedules, result.failed_steps) or 0
        )

        if room_id is not None:
            async def release_room() -> bool:
                await self.inventory.increment(room_id, guests)
                return True

            result.room_released = bool(
                await self._isolated("release_inventory", booking_id, release_room, result.failed_steps)
            )

        result.promo_released = bool(
            await self._isolated(
                "release_promo",
                booking_id,
                lambda: self.promos.release_for_booking(booking_id),
                result.failed_steps,
            )
        )

        await self.db.refresh(booking)
        await self._isolated(
            "audit",
            booking_id,
            lambda: self.record_status_change(
                booking, "cancellation", actor,
                old_status=old_status,
                old_payment_status=old_payment_status,
                reason=reason,
                details={"schedules_cancelled": result.schedules_cancelled},
            ),
            result.failed_steps,
        )
        await self.db.refresh(booking)

        metrics_collector.record_booking_cancelled("system" if actor == "system" else "admin")
        logger.info(
            "Booking cancelled",
            extra={
                "booking_id": str(booking_id),
                "actor": actor,
                "room_released": result.room_released,
                "failed_steps": result.failed_steps,
            }
        )

        if notify_customer:
            await notify(
                self.notifier,
                notification_kind,
                email,
                {**customer, "reason": reason},
            )

        if room_id is not None and result.room_released:
            await self._isolated(
                "waitlist_offer",
                booking_id,
                lambda: self.waitlist.offer_next(retreat_id, room_id, now=now),
            )

        return result

    async def restore_booking(
        self,
        booking_id: UUID,
        actor: str,
        new_due_date: date | None = None,
        send_payment_link: bool = True,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> RestoreResult:
        """
        Bring a cancelled booking back to ``pending``.

        The room is re-reserved first; if the booking update then fails, the
        room places are handed back before the error propagates.

        Raises:
            BusinessRuleError: If the booking is not cancelled or the retreat has started
            CapacityConflictError: If the room was resold in the meantime
        """
        now = now or datetime.utcnow()
        booking = await self.get_booking_or_raise(booking_id)

        if booking.status != BookingStatus.CANCELLED:
            raise BusinessRuleError("Only cancelled bookings can be restored", code="NOT_CANCELLED")

        retreat = await self.db.get(Retreat, booking.retreat_id)
        if retreat is None or retreat.start_date <= now.date():
            raise BusinessRuleError(
                "Cannot restore a booking for a retreat that has already started",
                code="RETREAT_STARTED",
            )

        due_date = new_due_date or (now + timedelta(days=settings.payment_deadline_days)).date()
        if due_date < now.date():
            raise ValidationError(detail="The new due date cannot be in the past")

        room_id = booking.room_id
        guests = booking.guests_count
        old_payment_status = booking.payment_status

        if room_id is not None:
            await self.inventory.reserve(room_id, guests)

        try:
            booking.status = BookingStatus.PENDING
            booking.cancelled_at = None
            booking.cancellation_reason = None
            booking.restored_at = now
            if notes:
                stamp = f"[Restored {now.date().isoformat()}] {notes}"
                booking.internal_notes = f"{booking.internal_notes}\n{stamp}" if booking.internal_notes else stamp

            reset = await self.db.execute(
                update(PaymentSchedule)
                .where(
                    PaymentSchedule.booking_id == booking_id,
                    PaymentSchedule.status.in_([ScheduleStatus.CANCELLED, ScheduleStatus.FAILED]),
                )
                .values(
                    status=ScheduleStatus.PENDING,
                    due_date=due_date,
                    attempts=0,
                    failure_reason=None,
                    failed_at=None,
                    payment_deadline=None,
                    next_retry_at=None,
                    last_attempt_at=None,
                    reminder_stage=None,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            if room_id is not None:
                await self.inventory.increment(room_id, guests)
            logger.error(
                "Booking restore failed; room places returned",
                exc_info=True,
                extra={"booking_id": str(booking_id)}
            )
            raise

        result = RestoreResult(booking=booking, schedules_reset=reset.rowcount, new_due_date=due_date)

        if send_payment_link and self.gateway is not None:
            result.payment_link_url = await self._isolated(
                "payment_link", booking_id, lambda: self._next_installment_link(booking)
            )
            await self.db.refresh(booking)

        await self._isolated(
            "audit",
            booking_id,
            lambda: self.record_status_change(
                booking, "restoration", actor,
                old_status=BookingStatus.CANCELLED,
                old_payment_status=old_payment_status,
                reason=notes,
                details={"new_due_date": due_date.isoformat(), "schedules_reset": result.schedules_reset},
            ),
        )
        await self.db.refresh(booking)

        await notify(
            self.notifier,
            NotificationKind.BOOKING_RESTORED,
            booking.email,
            {
                "customer_name": booking.customer_name,
                "booking_number": booking.booking_number,
                "due_date": due_date.isoformat(),
                "payment_link_url": result.payment_link_url,
            },
        )

        logger.info(
            "Booking restored",
            extra={"booking_id": str(booking_id), "actor": actor, "schedules_reset": result.schedules_reset}
        )
        return result

    async def _next_installment_link(self, booking: Booking) -> str | None:
        schedules = await self.get_schedules(booking.id)
        pending = next((s for s in schedules if s.status == ScheduleStatus.PENDING), None)
        if pending is None:
            return None
        return await self.gateway.create_payment_link(
            amount=pending.amount,
            currency=booking.currency,
            description=f"{pending.description} - booking {booking.booking_number}",
            metadata={"booking_id": str(booking.id), "schedule_id": str(pending.id)},
        )

    async def move_room(self, booking_id: UUID, new_room_id: UUID | None, actor: str) -> RoomMoveResult:
        """
        Reassign a booking's room through the inventory allocator.

        Raises:
            BusinessRuleError: If the booking is cancelled
            ValidationError: If the room belongs to another retreat
            CapacityConflictError: If the destination room is full
        """
        booking = await self.get_booking_or_raise(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise BusinessRuleError(
                "Cannot change the room of a cancelled booking",
                code="BOOKING_CANCELLED",
                hint="Restore the booking first",
            )

        if new_room_id is not None:
            room = await self.inventory.get_room_or_raise(new_room_id)
            if room.retreat_id != booking.retreat_id:
                raise ValidationError(detail="Room does not belong to this booking's retreat")

        result = await self.inventory.move_booking_room(booking, new_room_id)
        if not result.moved:
            return result

        await self._isolated(
            "audit",
            booking_id,
            lambda: self.record_status_change(
                booking, "room_change", actor,
                old_status=booking.status,
                old_payment_status=booking.payment_status,
                details={
                    "from_room_id": str(result.from_room_id) if result.from_room_id else None,
                    "to_room_id": str(result.to_room_id) if result.to_room_id else None,
                    "warning": result.warning,
                },
            ),
        )
        await self.db.refresh(booking)

        if result.from_room_id is not None and result.warning is None:
            retreat_id = booking.retreat_id
            await self._isolated(
                "waitlist_offer",
                booking_id,
                lambda: self.waitlist.offer_next(retreat_id, result.from_room_id),
            )

        return result
