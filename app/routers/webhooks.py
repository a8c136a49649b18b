from fastapi import APIRouter, Request
import logging

import stripe

from app.core.config import settings
from app.core.errors import ConfigurationError, WebhookSignatureError
from app.services import stripe_service
from app.services.webhooks import dispatch_event

logger = logging.getLogger(__name__)
router = APIRouter()

@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """Stripe webhook endpoint.

    Verifies the signature against the raw body, then hands the event to the
    dispatcher. Handler failures are logged and still acknowledged with 200.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        raise ConfigurationError("Webhook configuration error")

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise WebhookSignatureError("Webhook Error: missing Stripe-Signature header")

    try:
        event = stripe_service.construct_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Webhook signature verification failed: {str(e)}")
        raise WebhookSignatureError(f"Webhook Error: {str(e)}")

    logger.info(f"Received webhook event: {event.get('type')} [{event.get('id')}]")

    try:
        await dispatch_event(event)
    except Exception as e:
        logger.exception(f"Error processing webhook {event.get('type')} [{event.get('id')}]: {str(e)}")
        return {"received": True, "error": str(e)}

    return {"received": True}
