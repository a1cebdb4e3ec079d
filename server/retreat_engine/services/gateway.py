"""Payment gateway interface, the Stripe implementation and webhook verification."""

import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Protocol

import stripe
from starlette.concurrency import run_in_threadpool

from ..core.config import settings

logger = logging.getLogger(__name__)


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"


@dataclass(frozen=True)
class ChargeResult:
    status: ChargeStatus
    id: str | None = None
    failure_reason: str | None = None


class GatewayError(Exception):
    """The gateway could not be reached or rejected the request itself."""


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook delivery: its id, type and the object it is about."""

    id: str
    type: str
    data: dict[str, Any]


class WebhookSignatureError(Exception):
    """A webhook delivery that is unsigned, signed with another secret, or unreadable."""


def construct_webhook_event(payload: bytes, signature: str | None, secret: str | None) -> GatewayEvent:
    """
    Verify a Stripe webhook delivery and unwrap its object.

    Raises:
        WebhookSignatureError: If no secret is configured, the signature does
            not match, or the body is not an event
    """
    if not secret:
        raise WebhookSignatureError("Webhook signing secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError("Invalid webhook signature") from e
    except ValueError as e:
        raise WebhookSignatureError("Invalid webhook payload") from e

    return GatewayEvent(id=event.id, type=event.type, data=event.data.object.to_dict())


class PaymentGateway(Protocol):
    async def create_charge(
        self,
        customer_ref: str,
        instrument_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult: ...

    async def create_customer(self, email: str, name: str) -> str: ...

    async def create_payment_link(
        self,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
    ) -> str: ...


class StripeGateway:
    """
    Off-session charges through Stripe PaymentIntents.

    The Stripe SDK is synchronous, so each call runs in the threadpool.
    Card declines come back as a failed ``ChargeResult``; anything else
    Stripe raises is wrapped in ``GatewayError``.
    """

    def __init__(self, api_key: str | None):
        self.api_key = api_key

    async def create_charge(
        self,
        customer_ref: str,
        instrument_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=amount,
                currency=currency,
                customer=customer_ref,
                payment_method=instrument_ref,
                off_session=True,
                confirm=True,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            payment_intent = getattr(e.error, "payment_intent", None)
            intent_id = payment_intent["id"] if payment_intent else None
            if e.code == "authentication_required":
                return ChargeResult(
                    ChargeStatus.REQUIRES_ACTION,
                    id=intent_id,
                    failure_reason="Requires customer action (3D Secure authentication)",
                )
            return ChargeResult(
                ChargeStatus.FAILED,
                id=intent_id,
                failure_reason=e.user_message or str(e),
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e

        if intent.status == "succeeded":
            return ChargeResult(ChargeStatus.SUCCEEDED, id=intent.id)
        if intent.status == "requires_action":
            return ChargeResult(
                ChargeStatus.REQUIRES_ACTION,
                id=intent.id,
                failure_reason="Requires customer action (3D Secure authentication)",
            )
        return ChargeResult(
            ChargeStatus.FAILED,
            id=intent.id,
            failure_reason=f"Payment not completed (status: {intent.status})",
        )

    async def create_customer(self, email: str, name: str) -> str:
        try:
            customer = await run_in_threadpool(
                stripe.Customer.create, api_key=self.api_key, email=email, name=name
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        return customer.id

    async def create_payment_link(
        self,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
    ) -> str:
        line_item: dict[str, Any] = {
            "price_data": {
                "currency": currency,
                "unit_amount": amount,
                "product_data": {"name": description},
            },
            "quantity": 1,
        }
        try:
            link = await run_in_threadpool(
                stripe.PaymentLink.create,
                api_key=self.api_key,
                line_items=[line_item],
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        return link.url


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency and worker factory for the configured gateway."""
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; every charge will fail")
    return StripeGateway(settings.stripe_secret_key)
