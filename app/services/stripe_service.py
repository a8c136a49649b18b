"""
Stripe gateway. All server-side Stripe calls go through this module so the
rest of the code (and the tests) deal in plain dicts.
"""
from typing import Any, Dict, Optional
import json
import logging

import stripe

from app.core.config import settings
from app.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    return bool((settings.STRIPE_SECRET_KEY or "").strip())


def get_client():
    if not is_configured():
        raise ConfigurationError("Stripe is not configured: STRIPE_SECRET_KEY is missing")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


def construct_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify the ``Stripe-Signature`` header and return the event as a dict.

    Raises ``stripe.SignatureVerificationError`` for a bad signature and
    ``ValueError`` for an unparseable payload.
    """
    stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


def retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    return get_client().Subscription.retrieve(subscription_id).to_dict()


def retrieve_checkout_session(session_id: str) -> Dict[str, Any]:
    return get_client().checkout.Session.retrieve(session_id).to_dict()


def create_resource_checkout_session(
    amount: int,
    currency: str,
    resource_id: str,
    resource_title: str,
    buyer_email: Optional[str],
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, Any],
):
    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [{
            "price_data": {
                "currency": currency.lower(),
                "unit_amount": amount,
                "product_data": {"name": resource_title, "metadata": {"resourceId": resource_id}},
            },
            "quantity": 1,
        }],
        "success_url": success_url,
        "cancel_url": cancel_url,
        # Stripe metadata values must be strings
        "metadata": {k: str(v) for k, v in dict(metadata, resourceId=resource_id).items() if v is not None},
    }
    if buyer_email:
        params["customer_email"] = buyer_email
    return get_client().checkout.Session.create(**params)


def create_subscription_checkout_session(
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, Any],
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    trial_days: int = 0,
):
    str_metadata = {k: str(v) for k, v in metadata.items() if v is not None}
    params = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": dict(str_metadata, type="subscription"),
        "subscription_data": {"metadata": str_metadata},
    }
    if customer_id:
        params["customer"] = customer_id
    elif customer_email:
        params["customer_email"] = customer_email
    if trial_days > 0:
        params["subscription_data"]["trial_period_days"] = trial_days
    return get_client().checkout.Session.create(**params)


def create_payout(amount: int, currency: str, stripe_account_id: str, metadata: Dict[str, Any]):
    """Pay out from a connected account's Stripe balance to its bank"""
    return get_client().Payout.create(
        amount=amount,
        currency=currency.lower(),
        metadata={k: str(v) for k, v in metadata.items()},
        stripe_account=stripe_account_id,
    )


def check_api_ok() -> bool:
    if not is_configured():
        return False
    try:
        get_client().Balance.retrieve()
        return True
    except stripe.StripeError as e:
        logger.warning(f"Stripe health check failed: {e}")
        return False
