"""Customer and admin notifications.

Delivery is fire-and-forget: ``notify`` never raises, so a failed email can
not undo a captured payment or block a cancellation.
"""

from enum import Enum
from functools import lru_cache
from typing import Any, Protocol

from ..core.observability import get_logger, metrics_collector

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_DEADLINE_REMINDER = "payment_deadline_reminder"
    PRE_RETREAT_REMINDER = "pre_retreat_reminder"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_CANCELLED_NON_PAYMENT = "booking_cancelled_non_payment"
    BOOKING_RESTORED = "booking_restored"
    WAITLIST_JOINED = "waitlist_joined"
    WAITLIST_OFFER = "waitlist_offer"
    WAITLIST_ACCEPTED = "waitlist_accepted"
    WAITLIST_DECLINED = "waitlist_declined"
    WAITLIST_EXPIRED = "waitlist_expired"
    ADMIN_PAYMENT_FAILED = "admin_payment_failed"
    ADMIN_PAYMENT_UNAPPLIED = "admin_payment_unapplied"


class NotificationSender(Protocol):
    async def send(self, kind: NotificationKind, recipient: str, data: dict[str, Any]) -> None: ...


class LoggingNotificationSender:
    """Emits each notification as a structured log event for the mail relay to pick up."""

    async def send(self, kind: NotificationKind, recipient: str, data: dict[str, Any]) -> None:
        logger.info("notification", kind=kind.value, recipient=recipient, data=data)


async def notify(
    sender: NotificationSender,
    kind: NotificationKind,
    recipient: str,
    data: dict[str, Any],
) -> bool:
    """
    Send a notification, logging instead of raising on failure.

    Returns:
        True if the sender accepted the notification
    """
    try:
        await sender.send(kind, recipient, data)
        return True
    except Exception as e:
        metrics_collector.record_notification_failure(kind.value)
        logger.error(
            "Notification delivery failed",
            kind=kind.value,
            recipient=recipient,
            error=str(e),
            exc_info=True,
        )
        return False


@lru_cache
def get_notification_sender() -> NotificationSender:
    return LoggingNotificationSender()
