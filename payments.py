"""Stripe payment intents. Not tied into the order lifecycle."""

import asyncio
import logging
from typing import Optional

import stripe

from config import Settings
from errors import UpstreamFailure

logger = logging.getLogger(__name__)


async def create_payment_intent(
    settings: Settings,
    amount: int,
    currency: str,
    customer: Optional[str] = None,
    description: Optional[str] = None,
    receipt_email: Optional[str] = None,
) -> str:
    """Create a card payment intent and return its client secret."""
    if not settings.stripe_secret_key:
        raise UpstreamFailure("Payments are not configured")

    params = {
        "api_key": settings.stripe_secret_key,
        "amount": amount,
        "currency": currency,
        "payment_method_types": ["card"],
    }
    if customer:
        params["customer"] = customer
    if description:
        params["description"] = description
    if receipt_email:
        params["receipt_email"] = receipt_email

    try:
        intent = await asyncio.to_thread(stripe.PaymentIntent.create, **params)
    except stripe.StripeError as e:
        logger.exception("Payment intent creation failed")
        raise UpstreamFailure(f"Payment provider error: {e.user_message or e}") from e
    return intent.client_secret
