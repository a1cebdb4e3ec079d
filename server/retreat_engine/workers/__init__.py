"""Background workers for the retreat booking engine."""

from .payment_worker import PaymentWorker
from .reminder_worker import ReminderWorker
from .waitlist_expiry_worker import WaitlistExpiryWorker

__all__ = ["PaymentWorker", "ReminderWorker", "WaitlistExpiryWorker"]
