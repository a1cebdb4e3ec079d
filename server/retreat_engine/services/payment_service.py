"""
Payment orchestration: charging installments and handling the outcome.

A schedule row is claimed by flipping it to ``processing`` with a
conditional UPDATE before the gateway is called, so overlapping worker runs
and admin retries never charge the same row twice. The gateway idempotency
key is derived from the row and its attempt count; a reclaimed row keeps its
attempt count and therefore its key.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..core.config import settings
from ..core.exceptions import BusinessRuleError, ConflictError, NotFoundError, UpstreamServiceError
from ..core.observability import metrics_collector
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus
from ..models.payment import (
    SCHEDULE_TRANSITIONS,
    UNSETTLED_SCHEDULE_STATUSES,
    Payment,
    PaymentSchedule,
    ScheduleStatus,
)
from ..models.retreat import Retreat
from ..models.state import check_transition
from .booking_service import BookingService
from .gateway import ChargeResult, ChargeStatus, GatewayError, GatewayEvent, PaymentGateway
from .notifications import NotificationKind, NotificationSender, notify

logger = logging.getLogger(__name__)

NO_PAYMENT_METHOD_REASON = "No payment method on file"
DEADLINE_CANCELLATION_REASON = "Payment deadline exceeded"

# Webhook events that mean a hosted payment link was paid
SETTLING_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})

# Failure bookkeeping cleared once an installment is paid
SETTLED_VALUES = {
    "failure_reason": None,
    "next_retry_at": None,
    "failed_at": None,
    "payment_deadline": None,
    "reminder_stage": None,
}


class LinkPaymentOutcome(str, Enum):
    RECORDED = "recorded"
    ALREADY_PAID = "already_paid"
    UNAPPLIED = "unapplied"
    IGNORED = "ignored"


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"
    NO_PAYMENT_METHOD = "no_payment_method"
    SKIPPED = "skipped"


@dataclass
class AttemptResult:
    schedule_id: UUID
    outcome: AttemptOutcome
    attempts: int
    attempts_remaining: int
    message: str
    failure_reason: str | None = None
    gateway_payment_id: str | None = None
    payment_link_url: str | None = None


@dataclass
class PaymentRunSummary:
    reclaimed: int = 0
    deadline_cancellations: int = 0
    processed: int = 0
    succeeded: int = 0
    requires_action: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[AttemptResult] = field(default_factory=list)

    def count(self, result: AttemptResult) -> None:
        self.results.append(result)
        if result.outcome == AttemptOutcome.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if result.outcome == AttemptOutcome.SUCCEEDED:
            self.succeeded += 1
        elif result.outcome == AttemptOutcome.REQUIRES_ACTION:
            self.requires_action += 1
        else:
            self.failed += 1


def customer_message_for(outcome: AttemptOutcome, attempts_remaining: int) -> str:
    """The customer-facing sentence for a charge outcome."""
    if outcome == AttemptOutcome.SUCCEEDED:
        return "Your payment was received. Thank you!"
    if outcome == AttemptOutcome.REQUIRES_ACTION:
        return (
            "Your payment needs your action: please complete the bank "
            "authentication using the link we sent you."
        )
    if outcome == AttemptOutcome.NO_PAYMENT_METHOD or attempts_remaining <= 0:
        return "We could not take your payment. Please update your payment method."
    return "There was a temporary issue with your payment. We'll retry automatically."


def worker_idempotency_key(schedule: PaymentSchedule) -> str:
    return f"schedule-{schedule.id}-attempt-{schedule.attempts}"


def admin_idempotency_key(schedule: PaymentSchedule, now: datetime) -> str:
    # Salted with the minute so a deliberate retry is a new charge request
    return f"admin-retry-{schedule.id}-{schedule.attempts}-{now:%Y%m%d%H%M}"


class PaymentService:
    """Service for charging installments and recording the outcome."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        notifier: NotificationSender,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.bookings = BookingService(db, notifier, gateway)

    async def get_schedule_or_raise(self, booking_id: UUID, schedule_id: UUID) -> PaymentSchedule:
        stmt = (
            select(PaymentSchedule)
            .where(PaymentSchedule.id == schedule_id, PaymentSchedule.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        schedule = (await self.db.execute(stmt)).scalar_one_or_none()
        if not schedule:
            raise NotFoundError(resource_type="payment_schedule", resource_id=str(schedule_id))
        return schedule

    async def process_due_payments(self, now: datetime | None = None) -> PaymentRunSummary:
        """
        One orchestrator run.

        Steps:
            1. reclaim ``processing`` rows abandoned by a crashed run
            2. cancel bookings whose failed installment passed its deadline
            3. charge every due row, in due date then payment number order

        Every row is handled on its own; an exception on one row is logged
        and counted, and the run moves on.
        """
        now = now or datetime.utcnow()
        summary = PaymentRunSummary()

        summary.reclaimed = await self.reclaim_stale_processing(now)
        summary.deadline_cancellations = await self.cancel_past_deadline(now)

        due = await self._select_due(now)
        logger.info("Due installments selected", extra={"count": len(due)})

        for schedule in due:
            schedule_id = schedule.id
            booking_id = schedule.booking_id
            try:
                if await self._has_unsettled_predecessor(schedule):
                    logger.info(
                        "Installment skipped; an earlier installment is unsettled",
                        extra={
                            "schedule_id": str(schedule_id),
                            "booking_id": str(booking_id),
                            "payment_number": schedule.payment_number,
                        }
                    )
                    summary.count(self._skipped(schedule, "Earlier installment unsettled"))
                    continue

                booking = await self.db.get(Booking, booking_id)
                result = await self._attempt_charge(
                    schedule, booking, worker_idempotency_key(schedule), trigger="worker", now=now
                )
                summary.count(result)
            except Exception:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Failed to process installment",
                    exc_info=True,
                    extra={"schedule_id": str(schedule_id), "booking_id": str(booking_id)}
                )

        logger.info(
            "Payment run completed",
            extra={
                "reclaimed": summary.reclaimed,
                "deadline_cancellations": summary.deadline_cancellations,
                "succeeded": summary.succeeded,
                "requires_action": summary.requires_action,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "errors": summary.errors,
            }
        )
        return summary

    async def reclaim_stale_processing(self, now: datetime) -> int:
        """Return ``processing`` rows older than the stale threshold to ``pending``."""
        threshold = now - timedelta(minutes=settings.processing_stale_minutes)
        result = await self.db.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.status == ScheduleStatus.PROCESSING,
                or_(
                    PaymentSchedule.last_attempt_at.is_(None),
                    PaymentSchedule.last_attempt_at < threshold,
                ),
            )
            .values(status=ScheduleStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        reclaimed = result.rowcount
        metrics_collector.set_processing_reclaimed(reclaimed)
        if reclaimed:
            logger.warning(
                "Reclaimed stale processing installments",
                extra={"count": reclaimed, "threshold": threshold.isoformat()}
            )
        return reclaimed

    async def cancel_past_deadline(self, now: datetime) -> int:
        """
        Cancel active bookings holding an unpaid installment past its payment deadline.

        Deadlines are set when an installment first fails, and on the first
        installment of a checkout that is waiting for bank authentication.
        """
        stmt = (
            select(PaymentSchedule.booking_id)
            .join(Booking, Booking.id == PaymentSchedule.booking_id)
            .where(
                PaymentSchedule.status.in_([ScheduleStatus.PENDING, ScheduleStatus.FAILED]),
                PaymentSchedule.payment_deadline.is_not(None),
                PaymentSchedule.payment_deadline <= now,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .distinct()
        )
        booking_ids = list((await self.db.execute(stmt)).scalars())

        cancelled = 0
        for booking_id in booking_ids:
            try:
                await self.bookings.cancel_booking(
                    booking_id,
                    actor="system",
                    reason=DEADLINE_CANCELLATION_REASON,
                    notification_kind=NotificationKind.BOOKING_CANCELLED_NON_PAYMENT,
                    now=now,
                )
                cancelled += 1
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Failed to cancel booking past its payment deadline",
                    exc_info=True,
                    extra={"booking_id": str(booking_id)}
                )
        return cancelled

    async def _select_due(self, now: datetime) -> list[PaymentSchedule]:
        due_conditions = [
            and_(
                PaymentSchedule.status == ScheduleStatus.PENDING,
                PaymentSchedule.due_date <= now.date(),
                PaymentSchedule.payment_number > 1,
            )
        ]
        if settings.auto_retry_failed_payments:
            due_conditions.append(
                and_(
                    PaymentSchedule.status == ScheduleStatus.FAILED,
                    PaymentSchedule.next_retry_at.is_not(None),
                    PaymentSchedule.next_retry_at <= now,
                    PaymentSchedule.attempts < PaymentSchedule.max_attempts,
                )
            )

        stmt = (
            select(PaymentSchedule)
            .join(Booking, Booking.id == PaymentSchedule.booking_id)
            .where(or_(*due_conditions), Booking.status.in_(ACTIVE_BOOKING_STATUSES))
            .order_by(
                PaymentSchedule.due_date,
                PaymentSchedule.booking_id,
                PaymentSchedule.payment_number,
            )
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def _has_unsettled_predecessor(self, schedule: PaymentSchedule) -> bool:
        earlier = aliased(PaymentSchedule)
        stmt = select(
            exists().where(
                earlier.booking_id == schedule.booking_id,
                earlier.payment_number < schedule.payment_number,
                earlier.status.in_(UNSETTLED_SCHEDULE_STATUSES),
            )
        )
        return bool((await self.db.execute(stmt)).scalar())

    def _skipped(self, schedule: PaymentSchedule, reason: str) -> AttemptResult:
        return AttemptResult(
            schedule_id=schedule.id,
            outcome=AttemptOutcome.SKIPPED,
            attempts=schedule.attempts,
            attempts_remaining=schedule.attempts_remaining,
            message=reason,
        )

    async def _attempt_charge(
        self,
        schedule: PaymentSchedule,
        booking: Booking,
        idempotency_key: str,
        trigger: str,
        now: datetime,
        notify_failure: bool = True,
    ) -> AttemptResult:
        """
        Charge one installment off-session and record the outcome.

        Args:
            schedule: Row in ``pending`` or ``failed``
            booking: Owning booking, for the saved instrument
            idempotency_key: Gateway key for this attempt
            trigger: ``worker``, ``admin`` or ``checkout`` for metrics and logs
            now: Attempt time
            notify_failure: Send the failure notices; checkout reports the
                decline to the caller instead

        Returns:
            AttemptResult; SKIPPED when another caller claimed the row first
        """
        if not booking.gateway_customer_id or not booking.gateway_payment_method_id:
            return await self._record_no_payment_method(schedule, booking, trigger, now, notify_failure)

        schedule_id = schedule.id
        claimed = await self.db.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.id == schedule_id,
                PaymentSchedule.status.in_([ScheduleStatus.PENDING, ScheduleStatus.FAILED]),
            )
            .values(status=ScheduleStatus.PROCESSING, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(schedule)

        if claimed.rowcount != 1:
            logger.info(
                "Installment already claimed by another run",
                extra={"schedule_id": str(schedule_id), "status": schedule.status.value}
            )
            return self._skipped(schedule, "Installment is being charged by another run")

        try:
            charge = await self.gateway.create_charge(
                customer_ref=booking.gateway_customer_id,
                instrument_ref=booking.gateway_payment_method_id,
                amount=schedule.amount,
                currency=booking.currency,
                idempotency_key=idempotency_key,
                metadata={
                    "booking_id": str(booking.id),
                    "booking_number": booking.booking_number,
                    "schedule_id": str(schedule_id),
                    "payment_number": str(schedule.payment_number),
                },
            )
        except GatewayError as e:
            logger.error(
                "Payment gateway error",
                exc_info=True,
                extra={"schedule_id": str(schedule_id), "idempotency_key": idempotency_key}
            )
            charge = ChargeResult(ChargeStatus.FAILED, failure_reason=f"Payment gateway error: {e}")
        except Exception as e:
            logger.error(
                "Unexpected error calling payment gateway",
                exc_info=True,
                extra={"schedule_id": str(schedule_id), "idempotency_key": idempotency_key}
            )
            charge = ChargeResult(ChargeStatus.FAILED, failure_reason=f"Payment error: {e}")

        logger.info(
            "Charge attempted",
            extra={
                "schedule_id": str(schedule_id),
                "booking_id": str(booking.id),
                "status": charge.status.value,
                "attempts": schedule.attempts,
                "trigger": trigger,
            }
        )

        if charge.status == ChargeStatus.SUCCEEDED:
            return await self._record_success(schedule, booking, charge, trigger, now)
        if charge.status == ChargeStatus.REQUIRES_ACTION:
            return await self._record_action_required(schedule, booking, charge, trigger)
        return await self._record_failure(schedule, booking, charge, trigger, now, notify_failure)

    async def _record_success(
        self,
        schedule: PaymentSchedule,
        booking: Booking,
        charge: ChargeResult,
        trigger: str,
        now: datetime,
    ) -> AttemptResult:
        check_transition("payment schedule", SCHEDULE_TRANSITIONS, schedule.status, ScheduleStatus.PAID)
        schedule.status = ScheduleStatus.PAID
        schedule.paid_at = now
        schedule.gateway_payment_id = charge.id
        for name, value in SETTLED_VALUES.items():
            setattr(schedule, name, value)
        self.db.add(
            Payment(
                booking_id=booking.id,
                schedule_id=schedule.id,
                amount=schedule.amount,
                currency=booking.currency,
                gateway_payment_id=charge.id,
                payment_type=schedule.kind,
                status="succeeded",
            )
        )
        await self.db.commit()

        await self._after_payment(schedule, booking, trigger)

        return AttemptResult(
            schedule_id=schedule.id,
            outcome=AttemptOutcome.SUCCEEDED,
            attempts=schedule.attempts,
            attempts_remaining=schedule.attempts_remaining,
            message=customer_message_for(AttemptOutcome.SUCCEEDED, schedule.attempts_remaining),
            gateway_payment_id=charge.id,
        )

    async def _after_payment(self, schedule: PaymentSchedule, booking: Booking, trigger: str) -> None:
        """Totals, confirmation and the receipt for an installment that just became paid."""
        await self.bookings.refresh_payment_totals(booking)
        if booking.status == BookingStatus.PENDING:
            await self.bookings.change_status(
                booking.id, BookingStatus.CONFIRMED, actor="system", reason="Payment received"
            )

        metrics_collector.record_payment_attempt(AttemptOutcome.SUCCEEDED.value, trigger)

        schedules = await self.bookings.get_schedules(booking.id)
        next_installment = next(
            (s for s in schedules if s.status == ScheduleStatus.PENDING and s.payment_number > schedule.payment_number),
            None,
        )
        await notify(
            self.notifier,
            NotificationKind.PAYMENT_SUCCEEDED,
            booking.email,
            {
                "customer_name": booking.customer_name,
                "booking_number": booking.booking_number,
                "amount": schedule.amount,
                "currency": booking.currency,
                "description": schedule.description,
                "balance_due": booking.balance_due,
                "next_payment": {
                    "amount": next_installment.amount,
                    "due_date": next_installment.due_date.isoformat(),
                    "description": next_installment.description,
                } if next_installment else None,
            },
        )

    async def _record_action_required(
        self,
        schedule: PaymentSchedule,
        booking: Booking,
        charge: ChargeResult,
        trigger: str,
    ) -> AttemptResult:
        # Not the customer's failure; the attempt is not consumed
        check_transition("payment schedule", SCHEDULE_TRANSITIONS, schedule.status, ScheduleStatus.PENDING)
        schedule.status = ScheduleStatus.PENDING
        schedule.failure_reason = charge.failure_reason or "Requires customer action"
        await self.db.commit()

        metrics_collector.record_payment_attempt(AttemptOutcome.REQUIRES_ACTION.value, trigger)

        payment_link_url = await self._safe_payment_link(schedule, booking)
        message = customer_message_for(AttemptOutcome.REQUIRES_ACTION, schedule.attempts_remaining)
        await notify(
            self.notifier,
            NotificationKind.PAYMENT_ACTION_REQUIRED,
            booking.email,
            {
                "customer_name": booking.customer_name,
                "booking_number": booking.booking_number,
                "amount": schedule.amount,
                "currency": booking.currency,
                "message": message,
                "payment_link_url": payment_link_url,
            },
        )

        return AttemptResult(
            schedule_id=schedule.id,
            outcome=AttemptOutcome.REQUIRES_ACTION,
            attempts=schedule.attempts,
            attempts_remaining=schedule.attempts_remaining,
            message=message,
            failure_reason=schedule.failure_reason,
            gateway_payment_id=charge.id,
            payment_link_url=payment_link_url,
        )

    async def _record_failure(
        self,
        schedule: PaymentSchedule,
        booking: Booking,
        charge: ChargeResult,
        trigger: str,
        now: datetime,
        notify_failure: bool = True,
    ) -> AttemptResult:
        check_transition("payment schedule", SCHEDULE_TRANSITIONS, schedule.status, ScheduleStatus.FAILED)
        schedule.attempts += 1
        schedule.status = ScheduleStatus.FAILED
        schedule.failure_reason = charge.failure_reason or "Payment failed"
        schedule.gateway_payment_id = charge.id or schedule.gateway_payment_id
        if schedule.attempts < schedule.max_attempts:
            schedule.next_retry_at = now + timedelta(hours=settings.payment_retry_delay_hours)
        else:
            schedule.next_retry_at = None
        if schedule.failed_at is None:
            schedule.failed_at = now
            schedule.payment_deadline = now + timedelta(days=settings.payment_deadline_days)
        await self.db.commit()

        metrics_collector.record_payment_attempt(AttemptOutcome.FAILED.value, trigger)

        attempts_remaining = schedule.attempts_remaining
        payment_link_url = None
        if attempts_remaining == 0:
            payment_link_url = await self._safe_payment_link(schedule, booking)
            logger.warning(
                "Installment exhausted its automatic attempts",
                extra={
                    "schedule_id": str(schedule.id),
                    "booking_id": str(booking.id),
                    "attempts": schedule.attempts,
                }
            )

        message = customer_message_for(AttemptOutcome.FAILED, attempts_remaining)
        if notify_failure:
            await self._notify_failure(schedule, booking, message, payment_link_url, now)

        return AttemptResult(
            schedule_id=schedule.id,
            outcome=AttemptOutcome.FAILED,
            attempts=schedule.attempts,
            attempts_remaining=attempts_remaining,
            message=message,
            failure_reason=schedule.failure_reason,
            gateway_payment_id=charge.id,
            payment_link_url=payment_link_url,
        )

    async def _record_no_payment_method(
        self,
        schedule: PaymentSchedule,
        booking: Booking,
        trigger: str,
        now: datetime,
        notify_failure: bool = True,
    ) -> AttemptResult:
        # Never auto-retried: nothing changes until a method is added
        check_transition("payment schedule", SCHEDULE_TRANSITIONS, schedule.status, ScheduleStatus.FAILED)
        schedule_id = schedule.id
        claimed = await self.db.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.id == schedule_id,
                PaymentSchedule.status.in_([ScheduleStatus.PENDING, ScheduleStatus.FAILED]),
                or_(
                    PaymentSchedule.failure_reason.is_(None),
                    PaymentSchedule.failure_reason != NO_PAYMENT_METHOD_REASON,
                ),
            )
            .values(
                status=ScheduleStatus.FAILED,
                failure_reason=NO_PAYMENT_METHOD_REASON,
                next_retry_at=None,
                last_attempt_at=now,
                failed_at=func.coalesce(PaymentSchedule.failed_at, now),
                payment_deadline=func.coalesce(
                    PaymentSchedule.payment_deadline,
                    now + timedelta(days=settings.payment_deadline_days),
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(schedule)

        if claimed.rowcount != 1:
            logger.info(
                "Missing payment method already recorded by another run",
                extra={"schedule_id": str(schedule_id), "status": schedule.status.value}
            )
            return self._skipped(schedule, "Missing payment method already recorded")

        metrics_collector.record_payment_attempt(AttemptOutcome.NO_PAYMENT_METHOD.value, trigger)
        logger.warning(
            "No payment method on file for installment",
            extra={"schedule_id": str(schedule.id), "booking_id": str(booking.id)}
        )

        message = customer_message_for(AttemptOutcome.NO_PAYMENT_METHOD, schedule.attempts_remaining)
        payment_link_url = None
        if notify_failure:
            payment_link_url = await self._safe_payment_link(schedule, booking)
            await self._notify_failure(schedule, booking, message, payment_link_url, now)

        return AttemptResult(
            schedule_id=schedule.id,
            outcome=AttemptOutcome.NO_PAYMENT_METHOD,
            attempts=schedule.attempts,
            attempts_remaining=schedule.attempts_remaining,
            message=message,
            failure_reason=NO_PAYMENT_METHOD_REASON,
            payment_link_url=payment_link_url,
        )

    async def _notify_failure(
        self,
        schedule: PaymentSchedule,
        booking: Booking,
        message: str,
        payment_link_url: str | None,
        now: datetime,
    ) -> None:
        retreat = await self.db.get(Retreat, booking.retreat_id)
        days_until_retreat = (retreat.start_date - now.date()).days if retreat else None

        await notify(
            self.notifier,
            NotificationKind.PAYMENT_FAILED,
            booking.email,
            {
                "customer_name": booking.customer_name,
                "booking_number": booking.booking_number,
                "amount": schedule.amount,
                "currency": booking.currency,
                "message": message,
                "attempts_remaining": schedule.attempts_remaining,
                "days_until_retreat": days_until_retreat,
                "payment_deadline": schedule.payment_deadline.isoformat() if schedule.payment_deadline else None,
                "payment_link_url": payment_link_url,
            },
        )
        await notify(
            self.notifier,
            NotificationKind.ADMIN_PAYMENT_FAILED,
            settings.admin_email,
            {
                "booking_id": str(booking.id),
                "booking_number": booking.booking_number,
                "schedule_id": str(schedule.id),
                "payment_number": schedule.payment_number,
                "amount": schedule.amount,
                "attempts": schedule.attempts,
                "failure_reason": schedule.failure_reason,
            },
        )

    async def _safe_payment_link(self, schedule: PaymentSchedule, booking: Booking) -> str | None:
        try:
            return await self.gateway.create_payment_link(
                amount=schedule.amount,
                currency=booking.currency,
                description=f"{schedule.description} - booking {booking.booking_number}",
                metadata={"booking_id": str(booking.id), "schedule_id": str(schedule.id)},
            )
        except Exception:
            logger.error(
                "Failed to create payment link",
                exc_info=True,
                extra={"schedule_id": str(schedule.id), "booking_id": str(booking.id)}
            )
            return None

    async def retry_payment(
        self,
        booking_id: UUID,
        schedule_id: UUID,
        actor: str,
        force: bool = False,
        now: datetime | None = None,
    ) -> AttemptResult:
        """
        Admin-triggered charge of one installment, run synchronously.

        Args:
            booking_id: Owning booking
            schedule_id: Installment to charge
            actor: Admin identifier for the audit log
            force: Charge even when the row has used all its attempts

        Raises:
            BusinessRuleError: If the row is paid or cancelled, attempts are
                exhausted without ``force``, or there is no saved method
            ConflictError: If the row is being charged right now
        """
        now = now or datetime.utcnow()
        booking = await self.bookings.get_booking_or_raise(booking_id)
        schedule = await self.get_schedule_or_raise(booking_id, schedule_id)

        if schedule.status == ScheduleStatus.PAID:
            raise BusinessRuleError("This installment has already been paid", code="ALREADY_PAID")
        if schedule.status == ScheduleStatus.CANCELLED or booking.status == BookingStatus.CANCELLED:
            raise BusinessRuleError(
                "This installment belongs to a cancelled booking",
                code="BOOKING_CANCELLED",
                hint="Restore the booking first",
            )
        if schedule.status == ScheduleStatus.PROCESSING:
            raise ConflictError(detail="A charge for this installment is already in progress")
        if schedule.attempts >= schedule.max_attempts and not force:
            raise BusinessRuleError(
                f"Maximum payment attempts ({schedule.max_attempts}) reached",
                code="MAX_ATTEMPTS_REACHED",
                hint="Retry with force, or send the customer a payment link",
            )
        if not booking.gateway_customer_id or not booking.gateway_payment_method_id:
            raise BusinessRuleError(
                NO_PAYMENT_METHOD_REASON,
                code="NO_PAYMENT_METHOD",
                hint="Send the customer a payment link instead",
            )

        old_status = booking.status
        old_payment_status = booking.payment_status
        result = await self._attempt_charge(
            schedule, booking, admin_idempotency_key(schedule, now), trigger="admin", now=now
        )
        if result.outcome == AttemptOutcome.SKIPPED:
            raise ConflictError(detail="A charge for this installment is already in progress")

        await self.db.refresh(booking)
        await self.bookings._isolated(
            "audit",
            booking_id,
            lambda: self.bookings.record_status_change(
                booking, "payment_retry", actor,
                old_status=old_status,
                old_payment_status=old_payment_status,
                details={
                    "schedule_id": str(schedule_id),
                    "outcome": result.outcome.value,
                    "attempts": result.attempts,
                    "force": force,
                },
            ),
        )
        return result

    async def create_payment_link(self, booking_id: UUID, schedule_id: UUID) -> str:
        """
        Generate a hosted payment link for an open installment.

        Raises:
            BusinessRuleError: If the installment is not pending or failed
            UpstreamServiceError: If the gateway rejects the request
        """
        booking = await self.bookings.get_booking_or_raise(booking_id)
        schedule = await self.get_schedule_or_raise(booking_id, schedule_id)
        if schedule.status not in (ScheduleStatus.PENDING, ScheduleStatus.FAILED):
            raise BusinessRuleError(
                f"Cannot create a payment link for a {schedule.status.value} installment",
                code="SCHEDULE_NOT_OPEN",
            )

        try:
            url = await self.gateway.create_payment_link(
                amount=schedule.amount,
                currency=booking.currency,
                description=f"{schedule.description} - booking {booking.booking_number}",
                metadata={"booking_id": str(booking.id), "schedule_id": str(schedule.id)},
            )
        except GatewayError as e:
            raise UpstreamServiceError(detail=f"Payment link could not be created: {e}") from e

        logger.info(
            "Payment link created",
            extra={"booking_id": str(booking_id), "schedule_id": str(schedule_id)}
        )
        return url

    async def apply_gateway_event(self, event: GatewayEvent, now: datetime | None = None) -> LinkPaymentOutcome:
        """
        Apply a verified gateway webhook event.

        Only completed checkout sessions that are actually paid settle an
        installment; every other event is acknowledged and ignored.
        """
        if event.type not in SETTLING_EVENT_TYPES or event.data.get("payment_status") != "paid":
            logger.info("Gateway event ignored", extra={"event_id": event.id, "event_type": event.type})
            return LinkPaymentOutcome.IGNORED

        metadata = event.data.get("metadata") or {}
        try:
            schedule_id = UUID(metadata["schedule_id"])
            booking_id = UUID(metadata["booking_id"]) if metadata.get("booking_id") else None
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "Paid checkout session carries no installment reference",
                extra={"event_id": event.id},
            )
            return LinkPaymentOutcome.IGNORED

        return await self.record_link_payment(
            schedule_id,
            gateway_payment_id=event.data.get("payment_intent") or event.data.get("id") or event.id,
            amount=event.data.get("amount_total"),
            booking_id=booking_id,
            now=now,
        )

    async def record_link_payment(
        self,
        schedule_id: UUID,
        gateway_payment_id: str,
        amount: int | None = None,
        booking_id: UUID | None = None,
        now: datetime | None = None,
    ) -> LinkPaymentOutcome:
        """
        Mark an installment paid after the customer settled it through a payment link.

        Repeated deliveries of the same payment are harmless: the row is
        claimed with a conditional UPDATE and only the winner records a
        Payment. Money received for a cancelled or in-flight installment is
        not applied; the admin is told so it can be refunded or reconciled.
        """
        now = now or datetime.utcnow()
        stmt = (
            select(PaymentSchedule)
            .where(PaymentSchedule.id == schedule_id)
            .execution_options(populate_existing=True)
        )
        schedule = (await self.db.execute(stmt)).scalar_one_or_none()
        if schedule is None or (booking_id is not None and schedule.booking_id != booking_id):
            logger.warning(
                "Link payment for unknown installment",
                extra={"schedule_id": str(schedule_id), "gateway_payment_id": gateway_payment_id}
            )
            return LinkPaymentOutcome.IGNORED

        if schedule.status == ScheduleStatus.PAID:
            logger.info(
                "Link payment already recorded",
                extra={"schedule_id": str(schedule_id), "gateway_payment_id": gateway_payment_id}
            )
            return LinkPaymentOutcome.ALREADY_PAID

        booking = await self.bookings.get_booking_or_raise(schedule.booking_id)
        await self.db.refresh(booking)
        if amount is not None and amount != schedule.amount:
            logger.warning(
                "Link payment amount differs from installment",
                extra={"schedule_id": str(schedule_id), "amount": amount, "expected": schedule.amount}
            )

        claimed = False
        open_statuses = (ScheduleStatus.PENDING, ScheduleStatus.FAILED)
        if schedule.status in open_statuses and booking.status != BookingStatus.CANCELLED:
            check_transition("payment schedule", SCHEDULE_TRANSITIONS, schedule.status, ScheduleStatus.PAID)
            result = await self.db.execute(
                update(PaymentSchedule)
                .where(
                    PaymentSchedule.id == schedule_id,
                    PaymentSchedule.status.in_(open_statuses),
                )
                .values(
                    status=ScheduleStatus.PAID,
                    paid_at=now,
                    gateway_payment_id=gateway_payment_id,
                    **SETTLED_VALUES,
                )
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1

        if not claimed:
            await self.db.commit()
            await self.db.refresh(schedule)
            if schedule.status == ScheduleStatus.PAID:
                return LinkPaymentOutcome.ALREADY_PAID
            logger.error(
                "Link payment could not be applied",
                extra={
                    "schedule_id": str(schedule_id),
                    "status": schedule.status.value,
                    "gateway_payment_id": gateway_payment_id,
                }
            )
            await notify(
                self.notifier,
                NotificationKind.ADMIN_PAYMENT_UNAPPLIED,
                settings.admin_email,
                {
                    "booking_id": str(booking.id),
                    "booking_number": booking.booking_number,
                    "schedule_id": str(schedule.id),
                    "payment_number": schedule.payment_number,
                    "status": schedule.status.value,
                    "amount": amount if amount is not None else schedule.amount,
                    "gateway_payment_id": gateway_payment_id,
                },
            )
            return LinkPaymentOutcome.UNAPPLIED

        self.db.add(
            Payment(
                booking_id=booking.id,
                schedule_id=schedule.id,
                amount=schedule.amount,
                currency=booking.currency,
                gateway_payment_id=gateway_payment_id,
                payment_type=schedule.kind,
                status="succeeded",
            )
        )
        await self.db.commit()
        await self.db.refresh(schedule)

        logger.info(
            "Link payment recorded",
            extra={"schedule_id": str(schedule_id), "booking_id": str(booking.id)}
        )
        await self._after_payment(schedule, booking, trigger="link")
        return LinkPaymentOutcome.RECORDED

    async def capture_first_installment(
        self,
        booking: Booking,
        schedule: PaymentSchedule,
        now: datetime | None = None,
    ) -> AttemptResult:
        """Charge installment 1 during checkout with the freshly saved instrument."""
        now = now or datetime.utcnow()
        return await self._attempt_charge(
            schedule, booking, f"checkout-{schedule.id}", trigger="checkout", now=now,
            notify_failure=False,
        )
