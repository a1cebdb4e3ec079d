"""Checkout: pricing, capacity, booking creation and the first charge."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import (
    BusinessRuleError,
    NotFoundError,
    PaymentFailedError,
    UpstreamServiceError,
    ValidationError,
)
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.payment import PaymentSchedule, ScheduleStatus
from ..models.retreat import Retreat
from ..models.waitlist import WaitlistEntry
from ..schemas.booking import CheckoutRequest
from .gateway import GatewayError, PaymentGateway
from .notifications import NotificationKind, NotificationSender, notify
from .payment_service import AttemptOutcome, AttemptResult, PaymentService
from .promo_service import PromoQuote
from .schedule_calculator import (
    PaymentPlan,
    PaymentType,
    ScheduleError,
    compute_schedule,
    is_early_bird_eligible,
)

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    booking: Booking
    schedules: list[PaymentSchedule]
    charge: AttemptResult
    is_early_bird: bool
    payment_link_url: str | None = None


def generate_booking_number() -> str:
    return f"RB-{secrets.token_hex(4).upper()}"


class CheckoutService:
    """
    Service for turning a checkout request into a paid-up booking.

    Promo usage and room places are claimed with atomic updates before the
    booking row exists, and handed back if anything after them fails. Once
    the booking exists, a declined first charge unwinds it through the
    regular cancellation path.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        notifier: NotificationSender,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.payments = PaymentService(db, gateway, notifier)
        self.bookings = self.payments.bookings
        self.inventory = self.bookings.inventory
        self.promos = self.bookings.promos
        self.waitlist = self.bookings.waitlist

    async def price(
        self,
        retreat: Retreat,
        subtotal: int,
        promo_code: str | None,
        payment_type: PaymentType,
        now: datetime,
    ) -> tuple[PaymentPlan, PromoQuote | None]:
        """
        Build the payment plan, applying whichever discount is larger.

        Early bird and promo codes do not stack; the promo code only wins
        when it saves more than the early-bird discount would.
        """
        today = now.date()
        eligible = retreat.early_bird_enabled and is_early_bird_eligible(
            today,
            retreat.start_date,
            cutoff_months=settings.early_bird_cutoff_months,
            deadline=retreat.early_bird_deadline,
        )

        try:
            plan = compute_schedule(
                subtotal,
                today,
                retreat.start_date,
                early_bird_eligible=eligible,
                deposit_percent=settings.deposit_percent,
                early_bird_discount_percent=settings.early_bird_discount_percent,
                payment_type=payment_type,
            )
            quote = None
            if promo_code:
                quote = await self.promos.quote(promo_code, retreat.id, subtotal, now=now)
                if quote.discount_amount > plan.early_bird_discount:
                    plan = compute_schedule(
                        subtotal - quote.discount_amount,
                        today,
                        retreat.start_date,
                        early_bird_eligible=False,
                        deposit_percent=settings.deposit_percent,
                        payment_type=payment_type,
                    )
                else:
                    logger.info(
                        "Promo code ignored; early bird discount is larger",
                        extra={"retreat_id": str(retreat.id), "promo_code": quote.code}
                    )
                    quote = None
        except ScheduleError as e:
            raise ValidationError(detail=str(e)) from e

        return plan, quote

    async def checkout(self, request: CheckoutRequest, now: datetime | None = None) -> CheckoutResult:
        """
        Create a booking and capture its first installment.

        Args:
            request: Checkout request with guest, room and saved instrument
            now: Booking time

        Returns:
            CheckoutResult; the booking is ``confirmed`` after a successful
            first charge, or stays ``pending`` with a payment link when the
            bank asks for customer authentication

        Raises:
            NotFoundError: If the retreat or room does not exist
            BusinessRuleError: If the retreat has started or a promo code is invalid
            CapacityConflictError: If the room cannot fit the party
            PaymentFailedError: If the first charge is declined
        """
        now = now or datetime.utcnow()

        retreat = await self.db.get(Retreat, request.retreat_id)
        if not retreat or retreat.deleted_at is not None:
            raise NotFoundError(resource_type="retreat", resource_id=str(request.retreat_id))
        if retreat.start_date <= now.date():
            raise BusinessRuleError("This retreat has already started", code="RETREAT_STARTED")

        entry: WaitlistEntry | None = None
        if request.waitlist_token:
            entry = await self.waitlist.get_accepted_entry(request.waitlist_token, request.email, now=now)
            if entry.retreat_id != retreat.id:
                raise ValidationError(detail="Waitlist offer is for a different retreat")
            room_id = entry.offered_room_id
            guests = entry.guests_count
            entry_id = entry.id
        else:
            room_id = request.room_id
            guests = request.guests_count
            entry_id = None

        unit_price = retreat.base_price
        if room_id is not None:
            room = await self.inventory.get_room_or_raise(room_id)
            if room.retreat_id != retreat.id:
                raise ValidationError(detail="Room does not belong to this retreat")
            if room.price is not None:
                unit_price = room.price

        plan, quote = await self.price(
            retreat, unit_price * guests, request.promo_code, request.payment_type, now
        )

        try:
            customer_ref = await self.gateway.create_customer(
                request.email, f"{request.first_name} {request.last_name}".strip()
            )
        except GatewayError as e:
            raise UpstreamServiceError(detail=f"Payment provider unavailable: {e}") from e

        if quote is not None:
            await self.promos.claim(quote)

        # An accepted waitlist offer already holds its places
        reserved_here = room_id is not None and entry is None
        if reserved_here:
            try:
                await self.inventory.reserve(room_id, guests)
            except Exception:
                await self._release_claims(None, guests, quote)
                raise

        try:
            booking = Booking(
                booking_number=generate_booking_number(),
                retreat_id=retreat.id,
                room_id=room_id,
                email=request.email.lower(),
                first_name=request.first_name,
                last_name=request.last_name,
                guests_count=guests,
                total_amount=plan.total_amount,
                balance_due=plan.total_amount,
                early_bird_discount=plan.early_bird_discount,
                promo_discount=quote.discount_amount if quote else 0,
                currency=settings.currency,
                payment_type=request.payment_type.value,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.UNPAID,
                gateway_customer_id=customer_ref,
                gateway_payment_method_id=request.payment_method_id,
            )
            self.db.add(booking)
            await self.db.flush()

            schedules = [
                PaymentSchedule(
                    booking_id=booking.id,
                    payment_number=installment.payment_number,
                    kind=installment.kind.value,
                    description=installment.description,
                    amount=installment.amount,
                    due_date=installment.due_date,
                    status=ScheduleStatus.PENDING,
                    attempts=0,
                    max_attempts=settings.max_payment_attempts,
                )
                for installment in plan.installments
            ]
            self.db.add_all(schedules)
            if quote is not None:
                await self.promos.record_redemption(quote, booking.id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self._release_claims(room_id if reserved_here else None, guests, quote)
            logger.error(
                "Booking creation failed; claims released",
                exc_info=True,
                extra={"retreat_id": str(retreat.id), "room_id": str(room_id) if room_id else None}
            )
            raise

        booking_id = booking.id
        logger.info(
            "Booking created",
            extra={
                "booking_id": str(booking_id),
                "booking_number": booking.booking_number,
                "total_amount": booking.total_amount,
                "installments": len(schedules),
                "is_late_booking": plan.is_late_booking,
                "waitlist_entry_id": str(entry_id) if entry_id else None,
            }
        )

        if entry is not None:
            try:
                await self.waitlist.mark_booked(entry, booking_id)
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Failed to mark waitlist entry as booked",
                    exc_info=True,
                    extra={"waitlist_entry_id": str(entry_id), "booking_id": str(booking_id)}
                )

        charge = await self.payments.capture_first_installment(booking, schedules[0], now=now)
        result = CheckoutResult(
            booking=booking,
            schedules=schedules,
            charge=charge,
            is_early_bird=plan.is_early_bird,
        )

        if charge.outcome == AttemptOutcome.SUCCEEDED:
            await self.db.refresh(booking)
            await notify(
                self.notifier,
                NotificationKind.BOOKING_CONFIRMATION,
                booking.email,
                {
                    "customer_name": booking.customer_name,
                    "booking_number": booking.booking_number,
                    "retreat_title": retreat.title,
                    "total_amount": booking.total_amount,
                    "currency": booking.currency,
                    "schedule": [
                        {
                            "payment_number": s.payment_number,
                            "amount": s.amount,
                            "due_date": s.due_date.isoformat(),
                            "description": s.description,
                        }
                        for s in schedules
                    ],
                },
            )
            return result

        if charge.outcome == AttemptOutcome.REQUIRES_ACTION:
            # The room stays held only until the customer finishes authenticating
            deadline = now + timedelta(hours=settings.checkout_action_hours)
            await self.db.execute(
                update(PaymentSchedule)
                .where(
                    PaymentSchedule.id == schedules[0].id,
                    PaymentSchedule.status == ScheduleStatus.PENDING,
                    PaymentSchedule.payment_deadline.is_(None),
                )
                .values(payment_deadline=deadline)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            await self.db.refresh(schedules[0])
            result.payment_link_url = charge.payment_link_url
            return result

        logger.warning(
            "First installment declined; cancelling booking",
            extra={"booking_id": str(booking_id), "reason": charge.failure_reason}
        )
        await self.bookings.cancel_booking(
            booking_id,
            actor="system",
            reason=f"Checkout payment failed: {charge.failure_reason}",
            notify_customer=False,
            now=now,
        )
        raise PaymentFailedError(
            detail=charge.failure_reason or "Your payment could not be processed",
            booking_id=str(booking_id),
        )

    async def _release_claims(
        self,
        room_id: UUID | None,
        guests: int,
        quote: PromoQuote | None,
    ) -> None:
        if room_id is not None:
            try:
                await self.inventory.increment(room_id, guests)
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Failed to release room places after checkout failure",
                    exc_info=True,
                    extra={"room_id": str(room_id), "guests": guests}
                )
        if quote is not None:
            try:
                await self.promos.decrement_usage(quote.promo_code_id)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Failed to release promo usage after checkout failure",
                    exc_info=True,
                    extra={"promo_code_id": str(quote.promo_code_id)}
                )
