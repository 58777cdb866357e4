"""
Stripe integration helpers for credit package checkout.
"""

import json
import logging
from typing import Optional

import stripe

from app.config import settings
from app.services.pricing import CreditPackage

logger = logging.getLogger(__name__)


def _get_stripe_client() -> stripe.StripeClient:
    if not settings.stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is not configured")
    return stripe.StripeClient(settings.stripe_secret_key)


def create_checkout_session(
    user_id: str,
    user_email: Optional[str],
    package: CreditPackage,
    success_url: str,
    cancel_url: str,
) -> dict:
    """
    Create a one-off Stripe Checkout Session for a credit package.

    Returns the session dict with at least:
        { "id": "cs_...", "url": "https://checkout.stripe.com/..." }

    user_id and the credit amount travel in the session metadata so the
    webhook can credit the right ledger.
    """
    client = _get_stripe_client()

    params = {
        "mode": "payment",
        "line_items": [{
            "quantity": 1,
            "price_data": {
                "currency": settings.stripe_currency,
                "unit_amount": int(package.price_gbp * 100),
                "product_data": {"name": package.label},
            },
        }],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {
            "user_id": user_id,
            "package_id": package.id,
            "credits": str(package.credits),
        },
    }
    if user_email:
        params["customer_email"] = user_email

    session = client.checkout.sessions.create(params=params)
    return {"id": session.id, "url": session.url}


def verify_webhook(payload: bytes, sig_header: str) -> Optional[dict]:
    """
    Verify a Stripe webhook signature and return the parsed event dict,
    or None if the signature is invalid or no secret is configured.
    """
    webhook_secret = settings.stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not set, rejecting webhook")
        return None

    try:
        stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        return None
    except ValueError as exc:
        logger.warning(f"Malformed Stripe webhook payload: {exc}")
        return None

    # Signature checked; work on the plain JSON rather than StripeObjects
    return json.loads(payload)
