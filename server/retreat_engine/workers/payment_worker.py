"""Background worker that charges due installments."""

from ..core.database import async_session_factory
from ..core.observability import get_logger
from ..services.gateway import get_payment_gateway
from ..services.notifications import get_notification_sender
from ..services.payment_service import PaymentRunSummary, PaymentService
from .base import BaseWorker

logger = get_logger(__name__)


class PaymentWorker(BaseWorker):
    """
    Periodic payment orchestrator run.

    Each run reclaims stale ``processing`` rows, cancels bookings past their
    payment deadline and charges due installments. Runs are safe to overlap
    with an HTTP-triggered run because every row is claimed atomically.
    """

    def __init__(self, interval_seconds: int = 86400):
        super().__init__(name="PaymentOrchestrator", interval_seconds=interval_seconds)

    async def process(self) -> PaymentRunSummary:
        async with async_session_factory() as db:
            service = PaymentService(db, get_payment_gateway(), get_notification_sender())
            summary = await service.process_due_payments()

        logger.info(
            "Payment run finished",
            worker=self.name,
            succeeded=summary.succeeded,
            failed=summary.failed,
            requires_action=summary.requires_action,
            errors=summary.errors,
        )
        return summary
