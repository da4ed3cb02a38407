"""
Stripe webhook endpoint.

Verifies the signature, then reconciles ``setup_intent.succeeded`` events
inside a single database transaction. Domain errors roll the transaction
back and answer with the error's status code so Stripe retries delivery.
"""

from typing import Any

import stripe
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from flowledger.platform.billing.checkout.intents import SetupIntent
from flowledger.platform.billing.checkout.setup_intents import process_setup_intent_succeeded
from flowledger.platform.billing.config import get_billing_config
from flowledger.platform.billing.gateway import (
    PaymentGateway,
    StripePaymentGateway,
    stripe_object_to_dict,
)
from flowledger.platform.db import get_async_session
from flowledger.platform.logging import bind_webhook_context, clear_webhook_context

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["Billing Webhooks"])

SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"


def get_payment_gateway() -> PaymentGateway:
    """Gateway dependency; tests override it with a fake."""
    return StripePaymentGateway.from_config()


def _construct_event(payload: bytes, signature: str) -> Any:
    stripe_config = get_billing_config().stripe
    if stripe_config is None or not stripe_config.webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret is not configured",
        )
    try:
        return stripe.Webhook.construct_event(payload, signature, stripe_config.webhook_secret)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature"
        ) from exc


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_async_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> dict[str, Any]:
    """Handle Stripe webhook events."""
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header"
        )
    payload = await request.body()
    event = _construct_event(payload, stripe_signature)
    event_type = event["type"]
    bind_webhook_context(event["id"], event_type, bool(event["livemode"]))
    try:
        if event_type != SETUP_INTENT_SUCCEEDED:
            logger.info("Stripe webhook event ignored")
            return {"status": "ignored", "event_type": event_type}

        try:
            setup_intent = SetupIntent.model_validate(
                stripe_object_to_dict(event["data"]["object"])
            )
        except PydanticValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid setup intent payload"
            ) from exc

        result = await process_setup_intent_succeeded(db, setup_intent, gateway)
        if result.is_err:
            await db.rollback()
            error = result.unwrap_err()
            raise HTTPException(status_code=error.status_code, detail=error.to_dict())

        await db.commit()
        reconciled = result.unwrap()
        return {
            "status": "processed",
            "event_type": event_type,
            "checkout_session_type": reconciled.type.value,
            "replayed": reconciled.replayed,
        }
    finally:
        clear_webhook_context()


__all__ = ["router", "get_payment_gateway", "handle_stripe_webhook"]
