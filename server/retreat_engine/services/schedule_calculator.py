"""
Installment schedule calculation.

Pure functions with no I/O. Amounts are integers in the currency's minor
unit, so rounding happens exactly once per installment and the final
installment absorbs whatever is left.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

LATE_BOOKING_MONTHS = 2
SECOND_INSTALLMENT_PERCENT = 50
LATE_FIRST_PERCENT = 50


class PaymentType(str, Enum):
    DEPOSIT = "deposit"
    FULL = "full"


class InstallmentKind(str, Enum):
    DEPOSIT = "deposit"
    SECOND = "second"
    BALANCE = "balance"
    LATE_FIRST = "late_first"
    LATE_SECOND = "late_second"
    FULL = "full"


class ScheduleError(ValueError):
    """Raised for inputs no schedule can be built from."""


@dataclass(frozen=True)
class Installment:
    payment_number: int
    kind: InstallmentKind
    amount: int
    due_date: date
    percentage: int
    description: str


@dataclass(frozen=True)
class PaymentPlan:
    installments: list[Installment]
    total_amount: int
    early_bird_discount: int
    is_late_booking: bool

    @property
    def is_early_bird(self) -> bool:
        return self.early_bird_discount > 0


def whole_months_between(start: date, end: date) -> int:
    """
    Whole calendar months from ``start`` to ``end``, partial months dropped.

    A month only counts once ``end`` reaches the same day-of-month as
    ``start``, so Jan 31 -> Feb 28 is 0 months and Jan 31 -> Mar 31 is 2.
    """
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return months


def shift_months(value: date, months: int) -> date:
    """Move ``value`` by ``months`` calendar months, clamping to month end."""
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def percent_of(amount: int, percent: int) -> int:
    """``percent``% of ``amount``, rounded half-up to the minor unit."""
    value = Decimal(amount) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_early_bird_eligible(
    booking_date: date,
    retreat_start: date,
    cutoff_months: int = 3,
    deadline: date | None = None,
) -> bool:
    """
    Early-bird eligibility for a booking made on ``booking_date``.

    A retreat-specific deadline wins when one is configured; otherwise the
    booking must be at least ``cutoff_months`` whole months ahead.
    """
    if deadline is not None:
        return booking_date <= deadline
    return whole_months_between(booking_date, retreat_start) >= cutoff_months


def compute_schedule(
    total_price: int,
    booking_date: date,
    retreat_start: date,
    early_bird_eligible: bool = False,
    deposit_percent: int = 10,
    early_bird_discount_percent: int = 10,
    payment_type: PaymentType = PaymentType.DEPOSIT,
) -> PaymentPlan:
    """
    Build the ordered installment plan for a booking.

    Args:
        total_price: Undiscounted price in minor units
        booking_date: Day the booking is made; first installment is due then
        retreat_start: First day of the retreat
        early_bird_eligible: Whether the booking qualifies for early bird
        deposit_percent: Share of the total due at booking on the standard path
        early_bird_discount_percent: Flat discount for eligible bookings
        payment_type: ``FULL`` collapses the plan to a single installment

    Returns:
        PaymentPlan whose installment amounts sum exactly to ``total_amount``

    Raises:
        ScheduleError: If the inputs are out of range
    """
    if total_price < 0:
        raise ScheduleError("total_price must not be negative")
    if retreat_start < booking_date:
        raise ScheduleError("Cannot book a retreat that has already started")
    if not 0 < deposit_percent < SECOND_INSTALLMENT_PERCENT:
        raise ScheduleError(
            f"deposit_percent must be between 1 and {SECOND_INSTALLMENT_PERCENT - 1}"
        )
    if not 0 <= early_bird_discount_percent <= 100:
        raise ScheduleError("early_bird_discount_percent must be between 0 and 100")

    months_until_retreat = whole_months_between(booking_date, retreat_start)
    is_late = months_until_retreat < LATE_BOOKING_MONTHS

    discount = 0
    if early_bird_eligible and not is_late:
        discount = percent_of(total_price, early_bird_discount_percent)
    total = total_price - discount

    if payment_type == PaymentType.FULL:
        installments = [
            Installment(1, InstallmentKind.FULL, total, booking_date, 100, "Full payment"),
        ]
    elif is_late:
        first = percent_of(total, LATE_FIRST_PERCENT)
        installments = [
            Installment(
                1, InstallmentKind.LATE_FIRST, first, booking_date,
                LATE_FIRST_PERCENT, "First payment (late booking)",
            ),
            Installment(
                2, InstallmentKind.LATE_SECOND, total - first, shift_months(retreat_start, -1),
                100 - LATE_FIRST_PERCENT, "Final payment",
            ),
        ]
    else:
        deposit = percent_of(total, deposit_percent)
        second = percent_of(total, SECOND_INSTALLMENT_PERCENT)
        installments = [
            Installment(
                1, InstallmentKind.DEPOSIT, deposit, booking_date,
                deposit_percent, "Deposit",
            ),
            Installment(
                2, InstallmentKind.SECOND, second, shift_months(retreat_start, -2),
                SECOND_INSTALLMENT_PERCENT, "Second payment",
            ),
            Installment(
                3, InstallmentKind.BALANCE, total - deposit - second, shift_months(retreat_start, -1),
                100 - deposit_percent - SECOND_INSTALLMENT_PERCENT, "Final balance",
            ),
        ]

    return PaymentPlan(
        installments=installments,
        total_amount=total,
        early_bird_discount=discount,
        is_late_booking=is_late,
    )
