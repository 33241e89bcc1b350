"""
Stripe webhook endpoint.

POST /webhooks/stripe — signature-verified PaymentIntent notifications.

Verification uses the raw request body and ``STRIPE_WEBHOOK_SECRET``. Verified
events are handed to ``PaymentService.handle_gateway_event``, which applies
only legal status transitions, so redelivered events are harmless.
"""

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from payment_core.api.deps import get_payment_service
from payment_core.engine.service import PaymentService

logger = logging.getLogger("payment_core.api.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    secret = request.app.state.settings.stripe_webhook_secret
    if not secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Payment system not configured")
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing stripe signature")

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Webhook signature verification failed")
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    intent = event["data"]["object"]
    last_error = getattr(intent, "last_payment_error", None)
    error_message = getattr(last_error, "message", None) if last_error else None

    handled = await service.handle_gateway_event(event_type, intent["id"], error_message=error_message)
    return {"received": True, "handled": handled}
