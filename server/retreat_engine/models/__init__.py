"""Models module exporting all database models."""

from .booking import (
    ACTIVE_BOOKING_STATUSES,
    BOOKING_TRANSITIONS,
    Booking,
    BookingStatus,
    BookingStatusChange,
    PaymentStatus,
)
from .payment import (
    SCHEDULE_TRANSITIONS,
    UNSETTLED_SCHEDULE_STATUSES,
    Payment,
    PaymentSchedule,
    ScheduleStatus,
)
from .promo import DiscountType, PromoCode, PromoCodeRedemption
from .retreat import Retreat, Room
from .waitlist import WAITLIST_TRANSITIONS, WaitlistEntry, WaitlistStatus

__all__ = [
    # Catalogue
    "Retreat",
    "Room",

    # Booking entities
    "Booking",
    "BookingStatus",
    "PaymentStatus",
    "BookingStatusChange",
    "BOOKING_TRANSITIONS",
    "ACTIVE_BOOKING_STATUSES",

    # Payment entities
    "PaymentSchedule",
    "ScheduleStatus",
    "Payment",
    "SCHEDULE_TRANSITIONS",
    "UNSETTLED_SCHEDULE_STATUSES",

    # Promotions
    "PromoCode",
    "PromoCodeRedemption",
    "DiscountType",

    # Waitlist
    "WaitlistEntry",
    "WaitlistStatus",
    "WAITLIST_TRANSITIONS",
]
