"""
Payment gateway client (Stripe checkout sessions).
"""

import asyncio
import logging
from typing import Any, Optional

import stripe

from rinkbook.config import settings
from rinkbook.models.schemas import CheckoutSession

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The gateway could not be reached or rejected the request."""


def _ref(value: Any) -> Optional[str]:
    # Stripe returns either an id string or an expanded object
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


class PaymentGateway:
    """Reads checkout sessions from Stripe."""

    def __init__(self):
        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key
            stripe.api_version = settings.stripe_api_version
        stripe.max_network_retries = 2

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """
        Retrieve a checkout session.

        Raises:
            PaymentGatewayError if the session cannot be retrieved
        """
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
        except stripe.StripeError as e:
            logger.error(
                f"Checkout session retrieval failed: {session_id}",
                extra={"error": str(e)}
            )
            raise PaymentGatewayError(str(e)) from e

        metadata = session.get("metadata") or {}
        return CheckoutSession(
            id=session["id"],
            status=session.get("status"),
            payment_status=session.get("payment_status"),
            metadata={k: str(v) for k, v in dict(metadata).items()},
            customer_ref=_ref(session.get("customer")),
            subscription_ref=_ref(session.get("subscription")),
            payment_reference_id=_ref(session.get("payment_intent")),
            client_reference_id=session.get("client_reference_id"),
            amount_total=session.get("amount_total"),
            currency=session.get("currency"),
        )


# Global gateway instance
payment_gateway = PaymentGateway()
