"""Scheduler-triggered job endpoints, guarded by the cron secret."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db, get_gateway, get_notifier, require_cron_secret
from ..schemas.jobs import PaymentRunResponse, ReminderRunResponse, WaitlistSweepResponse
from ..services.gateway import PaymentGateway
from ..services.notifications import NotificationSender
from ..services.payment_service import PaymentService
from ..services.reminder_service import ReminderService
from ..services.waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_cron_secret)],
)

DB_DEPENDENCY = Depends(get_db)
GATEWAY_DEPENDENCY = Depends(get_gateway)
NOTIFIER_DEPENDENCY = Depends(get_notifier)


@router.post("/process-payments", response_model=PaymentRunResponse)
async def process_payments(
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """Charge due installments and escalate failures."""
    summary = await PaymentService(db, gateway, notifier).process_due_payments()
    return JSONResponse(
        status_code=200,
        content=PaymentRunResponse.model_validate(summary).model_dump(mode="json"),
    )


@router.post("/expire-waitlist", response_model=WaitlistSweepResponse)
async def expire_waitlist(
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """Expire stale offers and lapsed reservations, then offer freed rooms onward."""
    summary = await WaitlistService(db, notifier).expire_offers()
    return JSONResponse(
        status_code=200,
        content=WaitlistSweepResponse.model_validate(summary).model_dump(mode="json"),
    )


@router.post("/send-reminders", response_model=ReminderRunResponse)
async def send_reminders(
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """Send payment, deadline and pre-retreat reminders."""
    summary = await ReminderService(db, notifier).run()
    return JSONResponse(
        status_code=200,
        content=ReminderRunResponse.model_validate(summary).model_dump(mode="json"),
    )
