"""Payment, deadline and pre-retreat reminders."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.observability import metrics_collector
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus
from ..models.payment import PaymentSchedule, ScheduleStatus
from ..models.retreat import Retreat
from .notifications import NotificationKind, NotificationSender, notify

logger = logging.getLogger(__name__)

# Furthest ahead a payment reminder is ever sent
REMINDER_HORIZON_DAYS = 14

DEADLINE_STAGE_3D = "deadline_3d"
DEADLINE_STAGE_1D = "deadline_1d"


class ReminderBucket(str, Enum):
    OVERDUE = "overdue"
    TODAY = "today"
    TOMORROW = "tomorrow"
    THREE_DAYS = "3_days"
    ONE_WEEK = "1_week"
    TWO_WEEKS = "2_weeks"
    NONE = "none"


def reminder_bucket(days_until_due: int) -> ReminderBucket:
    """Urgency bucket for an installment due in ``days_until_due`` days."""
    if days_until_due < 0:
        return ReminderBucket.OVERDUE
    if days_until_due == 0:
        return ReminderBucket.TODAY
    if days_until_due == 1:
        return ReminderBucket.TOMORROW
    if days_until_due == 3:
        return ReminderBucket.THREE_DAYS
    if days_until_due == 7:
        return ReminderBucket.ONE_WEEK
    if days_until_due == REMINDER_HORIZON_DAYS:
        return ReminderBucket.TWO_WEEKS
    return ReminderBucket.NONE


def already_reminded_today(last_sent_at: datetime | None, today: date) -> bool:
    return last_sent_at is not None and last_sent_at.date() == today


def deadline_stage(days_left: int) -> str | None:
    if days_left < 0:
        return None
    if days_left <= 1:
        return DEADLINE_STAGE_1D
    if days_left <= 3:
        return DEADLINE_STAGE_3D
    return None


@dataclass
class ReminderRunSummary:
    payment_reminders: int = 0
    deadline_reminders: int = 0
    pre_retreat_reminders: int = 0
    errors: int = 0


class ReminderService:
    """
    Service for reminder sweeps.

    Each reminder is claimed with a conditional UPDATE of its bookkeeping
    column before it is sent, so overlapping runs on the same day send it
    once. A send that fails hands the claim back.
    """

    def __init__(self, db: AsyncSession, notifier: NotificationSender):
        self.db = db
        self.notifier = notifier

    async def run(self, now: datetime | None = None) -> ReminderRunSummary:
        now = now or datetime.utcnow()
        summary = ReminderRunSummary()
        summary.payment_reminders = await self.send_payment_reminders(now, summary)
        summary.deadline_reminders = await self.send_deadline_reminders(now, summary)
        summary.pre_retreat_reminders = await self.send_pre_retreat_reminders(now, summary)

        logger.info(
            "Reminder run completed",
            extra={
                "payment_reminders": summary.payment_reminders,
                "deadline_reminders": summary.deadline_reminders,
                "pre_retreat_reminders": summary.pre_retreat_reminders,
                "errors": summary.errors,
            }
        )
        return summary

    async def send_payment_reminders(
        self,
        now: datetime,
        summary: ReminderRunSummary | None = None,
    ) -> int:
        """Remind guests of pending installments that fall in an urgency bucket today."""
        today = now.date()
        start_of_day = datetime.combine(today, time.min)

        stmt = (
            select(PaymentSchedule, Booking)
            .join(Booking, Booking.id == PaymentSchedule.booking_id)
            .where(
                PaymentSchedule.status == ScheduleStatus.PENDING,
                PaymentSchedule.due_date <= today + timedelta(days=REMINDER_HORIZON_DAYS),
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .order_by(PaymentSchedule.due_date)
            .execution_options(populate_existing=True)
        )
        rows = (await self.db.execute(stmt)).all()

        sent = 0
        for schedule, booking in rows:
            bucket = reminder_bucket((schedule.due_date - today).days)
            if bucket == ReminderBucket.NONE:
                continue
            if already_reminded_today(schedule.last_reminder_sent_at, today):
                continue

            schedule_id = schedule.id
            previous = schedule.last_reminder_sent_at
            try:
                claimed = await self.db.execute(
                    update(PaymentSchedule)
                    .where(
                        PaymentSchedule.id == schedule_id,
                        or_(
                            PaymentSchedule.last_reminder_sent_at.is_(None),
                            PaymentSchedule.last_reminder_sent_at < start_of_day,
                        ),
                    )
                    .values(last_reminder_sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                if claimed.rowcount != 1:
                    continue

                delivered = await notify(
                    self.notifier,
                    NotificationKind.PAYMENT_REMINDER,
                    booking.email,
                    {
                        "customer_name": booking.customer_name,
                        "booking_number": booking.booking_number,
                        "amount": schedule.amount,
                        "currency": booking.currency,
                        "due_date": schedule.due_date.isoformat(),
                        "description": schedule.description,
                        "bucket": bucket.value,
                    },
                )
                if not delivered:
                    await self._unclaim(schedule_id, last_reminder_sent_at=previous)
                    continue

                sent += 1
                metrics_collector.record_reminder_sent("payment", bucket.value)
            except Exception:
                await self.db.rollback()
                if summary is not None:
                    summary.errors += 1
                logger.error(
                    "Failed to send payment reminder",
                    exc_info=True,
                    extra={"schedule_id": str(schedule_id)}
                )

        return sent

    async def send_deadline_reminders(
        self,
        now: datetime,
        summary: ReminderRunSummary | None = None,
    ) -> int:
        """Warn guests 3 days and 1 day before a failed installment cancels their booking."""
        today = now.date()
        stmt = (
            select(PaymentSchedule, Booking)
            .join(Booking, Booking.id == PaymentSchedule.booking_id)
            .where(
                PaymentSchedule.status == ScheduleStatus.FAILED,
                PaymentSchedule.payment_deadline.is_not(None),
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        rows = (await self.db.execute(stmt)).all()

        sent = 0
        for schedule, booking in rows:
            days_left = (schedule.payment_deadline.date() - today).days
            stage = deadline_stage(days_left)
            if stage is None or schedule.reminder_stage == stage:
                continue
            if stage == DEADLINE_STAGE_3D and schedule.reminder_stage == DEADLINE_STAGE_1D:
                continue

            earlier_stages = [DEADLINE_STAGE_3D] if stage == DEADLINE_STAGE_1D else []
            schedule_id = schedule.id
            previous = schedule.reminder_stage
            try:
                claimed = await self.db.execute(
                    update(PaymentSchedule)
                    .where(
                        PaymentSchedule.id == schedule_id,
                        or_(
                            PaymentSchedule.reminder_stage.is_(None),
                            PaymentSchedule.reminder_stage.in_(earlier_stages),
                        ),
                    )
                    .values(reminder_stage=stage, last_reminder_sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                if claimed.rowcount != 1:
                    continue

                delivered = await notify(
                    self.notifier,
                    NotificationKind.PAYMENT_DEADLINE_REMINDER,
                    booking.email,
                    {
                        "customer_name": booking.customer_name,
                        "booking_number": booking.booking_number,
                        "amount": schedule.amount,
                        "currency": booking.currency,
                        "payment_deadline": schedule.payment_deadline.isoformat(),
                        "days_left": days_left,
                    },
                )
                if not delivered:
                    await self._unclaim(schedule_id, reminder_stage=previous)
                    continue

                sent += 1
                metrics_collector.record_reminder_sent("deadline", stage)
            except Exception:
                await self.db.rollback()
                if summary is not None:
                    summary.errors += 1
                logger.error(
                    "Failed to send deadline reminder",
                    exc_info=True,
                    extra={"schedule_id": str(schedule_id)}
                )

        return sent

    async def send_pre_retreat_reminders(
        self,
        now: datetime,
        summary: ReminderRunSummary | None = None,
    ) -> int:
        """Send the pre-retreat reminder to confirmed bookings exactly N days out."""
        target_start = now.date() + timedelta(days=settings.pre_retreat_reminder_days)
        stmt = (
            select(Booking, Retreat)
            .join(Retreat, Retreat.id == Booking.retreat_id)
            .where(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.pre_retreat_reminder_sent_at.is_(None),
                Retreat.start_date == target_start,
                Retreat.deleted_at.is_(None),
            )
        )
        rows = (await self.db.execute(stmt)).all()

        sent = 0
        for booking, retreat in rows:
            booking_id = booking.id
            try:
                claimed = await self.db.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.pre_retreat_reminder_sent_at.is_(None))
                    .values(pre_retreat_reminder_sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                if claimed.rowcount != 1:
                    continue

                delivered = await notify(
                    self.notifier,
                    NotificationKind.PRE_RETREAT_REMINDER,
                    booking.email,
                    {
                        "customer_name": booking.customer_name,
                        "booking_number": booking.booking_number,
                        "retreat_title": retreat.title,
                        "start_date": retreat.start_date.isoformat(),
                        "balance_due": booking.balance_due,
                    },
                )
                if not delivered:
                    await self.db.execute(
                        update(Booking)
                        .where(Booking.id == booking_id)
                        .values(pre_retreat_reminder_sent_at=None)
                        .execution_options(synchronize_session=False)
                    )
                    await self.db.commit()
                    continue

                sent += 1
                metrics_collector.record_reminder_sent("pre_retreat", "none")
            except Exception:
                await self.db.rollback()
                if summary is not None:
                    summary.errors += 1
                logger.error(
                    "Failed to send pre-retreat reminder",
                    exc_info=True,
                    extra={"booking_id": str(booking_id)}
                )

        return sent

    async def _unclaim(self, schedule_id, **values) -> None:
        await self.db.execute(
            update(PaymentSchedule)
            .where(PaymentSchedule.id == schedule_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
