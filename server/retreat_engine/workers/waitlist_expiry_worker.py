"""Background worker for expiring waitlist offers and reservations."""

from ..core.database import async_session_factory
from ..core.observability import get_logger
from ..services.notifications import get_notification_sender
from ..services.waitlist_service import WaitlistService, WaitlistSweepSummary
from .base import BaseWorker

logger = get_logger(__name__)


class WaitlistExpiryWorker(BaseWorker):
    """Expires unanswered offers and lapsed reservations, then offers freed rooms onward."""

    def __init__(self, interval_seconds: int = 3600):
        super().__init__(name="WaitlistExpiry", interval_seconds=interval_seconds)

    async def process(self) -> WaitlistSweepSummary:
        async with async_session_factory() as db:
            summary = await WaitlistService(db, get_notification_sender()).expire_offers()

        if summary.expired_offers or summary.lapsed_reservations:
            logger.info(
                "Waitlist entries expired",
                worker=self.name,
                expired_offers=summary.expired_offers,
                lapsed_reservations=summary.lapsed_reservations,
                offers_made=summary.offers_made,
            )
        return summary
