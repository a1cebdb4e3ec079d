"""Payment router for admin payment operations and gateway webhooks."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.dependencies import actor_name, get_db, get_gateway, get_notifier, require_admin
from ..core.exceptions import ValidationError
from ..schemas.common import PROBLEM_RESPONSES
from ..schemas.payment import (
    PaymentAttempt,
    PaymentLinkRequest,
    PaymentLinkResponse,
    RetryPaymentRequest,
    WebhookReceipt,
)
from ..services.gateway import PaymentGateway, WebhookSignatureError, construct_webhook_event
from ..services.notifications import NotificationSender
from ..services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payment", tags=["payment"], responses=PROBLEM_RESPONSES)

DB_DEPENDENCY = Depends(get_db)
GATEWAY_DEPENDENCY = Depends(get_gateway)
NOTIFIER_DEPENDENCY = Depends(get_notifier)
ADMIN_DEPENDENCY = Depends(require_admin)


@router.post("/retry", response_model=PaymentAttempt)
async def retry_payment(
    request: RetryPaymentRequest,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """
    Charge one installment now.

    A declined charge is a normal outcome and comes back with 200 and
    ``outcome=failed``; only refusals to attempt the charge are errors.
    """
    service = PaymentService(db, gateway, notifier)
    result = await service.retry_payment(
        request.booking_id, request.schedule_id, actor=actor_name(user), force=request.force
    )

    response_data = PaymentAttempt(
        schedule_id=result.schedule_id,
        outcome=result.outcome.value,
        attempts=result.attempts,
        attempts_remaining=result.attempts_remaining,
        message=result.message,
        failure_reason=result.failure_reason,
        payment_link_url=result.payment_link_url,
    )

    logger.info(
        "Manual payment retry completed",
        extra={
            "booking_id": str(request.booking_id),
            "schedule_id": str(request.schedule_id),
            "outcome": response_data.outcome,
            "force": request.force,
        }
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/link", response_model=PaymentLinkResponse)
async def create_payment_link(
    request: PaymentLinkRequest,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """Create a hosted payment link for an open installment."""
    service = PaymentService(db, gateway, notifier)
    url = await service.create_payment_link(request.booking_id, request.schedule_id)
    return JSONResponse(status_code=200, content=PaymentLinkResponse(url=url).model_dump(mode="json"))


@router.post("/webhook", response_model=WebhookReceipt)
async def gateway_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """
    Receive payment events from the gateway.

    Authenticated by the webhook signature rather than a bearer token. A
    paid checkout session settles the installment named in its metadata.
    """
    payload = await request.body()
    try:
        event = construct_webhook_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("Rejected gateway webhook", extra={"reason": str(e)})
        raise ValidationError(detail=str(e), code="INVALID_SIGNATURE") from e

    service = PaymentService(db, gateway, notifier)
    outcome = await service.apply_gateway_event(event)
    return JSONResponse(
        status_code=200,
        content=WebhookReceipt(outcome=outcome.value).model_dump(mode="json"),
    )
