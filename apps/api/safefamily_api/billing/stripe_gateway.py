"""Stripe integration: webhook signature verification and customer lookup."""

import asyncio
import logging
from typing import Optional

import stripe

from safefamily_api.utils.sanitize import hash_email

logger = logging.getLogger(__name__)

STRIPE_PROVIDER = "stripe"


class WebhookSignatureError(Exception):
    """Signature header missing, malformed, stale or not matching the secret."""


class WebhookConfigError(Exception):
    """Our side cannot verify webhooks (signing secret not configured)."""


# Transient Stripe failures; the webhook is failed so Stripe redelivers it.
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    *,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> None:
    """Verify the ``Stripe-Signature`` header over the raw request body.

    Raises:
        WebhookConfigError: If the signing secret is not configured.
        WebhookSignatureError: If the header is missing or does not verify.
    """
    if not signature_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    if not secret:
        raise WebhookConfigError("STRIPE_WEBHOOK_SECRET not configured")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Webhook body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e.user_message or "Signature verification failed")) from e


class StripeCustomerDirectory:
    """Resolve customer emails for events that only carry a customer id."""

    def __init__(self, api_key: Optional[str]):
        self._api_key = api_key

    async def lookup_email(self, customer_id: Optional[str]) -> Optional[str]:
        """Return the customer's email, or ``None`` if it cannot be determined.

        Transient Stripe errors propagate so the webhook is retried.
        """
        if not customer_id:
            return None
        if not self._api_key:
            logger.error("STRIPE_API_KEY_MISSING", extra={"customer_id": customer_id})
            return None

        try:
            customer = await asyncio.to_thread(
                stripe.Customer.retrieve, customer_id, api_key=self._api_key
            )
        except TRANSIENT_STRIPE_ERRORS:
            raise
        except stripe.StripeError as e:
            logger.warning(
                "STRIPE_CUSTOMER_LOOKUP_FAILED",
                extra={"customer_id": customer_id, "error_type": type(e).__name__},
            )
            return None

        if getattr(customer, "deleted", False):
            logger.warning("STRIPE_CUSTOMER_DELETED", extra={"customer_id": customer_id})
            return None

        email = getattr(customer, "email", None)
        if email:
            logger.debug(
                "STRIPE_CUSTOMER_RESOLVED",
                extra={"customer_id": customer_id, "customer_hash": hash_email(email)},
            )
        return email or None
