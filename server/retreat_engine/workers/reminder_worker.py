"""Background worker for customer reminders."""

from ..core.database import async_session_factory
from ..core.observability import get_logger
from ..services.notifications import get_notification_sender
from ..services.reminder_service import ReminderRunSummary, ReminderService
from .base import BaseWorker

logger = get_logger(__name__)


class ReminderWorker(BaseWorker):
    def __init__(self, interval_seconds: int = 86400):
        super().__init__(name="Reminders", interval_seconds=interval_seconds)

    async def process(self) -> ReminderRunSummary:
        async with async_session_factory() as db:
            summary = await ReminderService(db, get_notification_sender()).run()

        logger.info(
            "Reminders sent",
            worker=self.name,
            payment=summary.payment_reminders,
            deadline=summary.deadline_reminders,
            pre_retreat=summary.pre_retreat_reminders,
        )
        return summary
