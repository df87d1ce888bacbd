"""Read-only access to the Stripe API.

Responsibilities:
- Verify webhook signatures and parse the verified event body
- Retrieve subscription objects by ID
"""

import json
from collections.abc import Mapping
from typing import Any, Optional

import stripe
from pydantic import ValidationError

from billing_reconciler.errors import ProcessorLookupError, WebhookVerificationError
from billing_reconciler.logging_config import get_logger
from billing_reconciler.models.billing_config import BillingConfig
from billing_reconciler.models.events import ProcessorSubscription

logger = get_logger(__name__)


def _as_mapping(obj: Any) -> Mapping:
    """Return a Stripe object as a plain mapping."""
    if isinstance(obj, Mapping):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Thin wrapper around the stripe library.

    Credentials come from the injected configuration rather than the module
    level ``stripe.api_key``, so several gateways can coexist in one process.
    """

    def __init__(self, api_key: str, webhook_secret: str):
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    @classmethod
    def from_config(cls, settings: BillingConfig) -> "StripeGateway":
        return cls(api_key=settings.processor_api_key or "", webhook_secret=settings.webhook_secret or "")

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict.

        Args:
            payload: Raw request body, exactly as received
            sig_header: Value of the Stripe-Signature header

        Returns:
            Parsed event JSON

        Raises:
            WebhookVerificationError: If the signature is absent or invalid, or the
                body is not JSON
        """
        if not sig_header:
            raise WebhookVerificationError("Stripe-Signature header is missing.")

        try:
            stripe.Webhook.construct_event(payload, sig_header, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook_signature_invalid", error=str(exc))
            raise WebhookVerificationError("Stripe webhook signature verification failed.") from exc
        except ValueError as exc:
            logger.warning("webhook_payload_malformed", error=str(exc))
            raise WebhookVerificationError("Malformed Stripe webhook payload.") from exc

        try:
            return json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Malformed Stripe webhook payload.") from exc

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """Fetch the authoritative state of a subscription.

        Args:
            subscription_id: Processor subscription ID (sub_...)

        Raises:
            ProcessorLookupError: If the processor call fails or returns an unreadable subscription
        """
        if not subscription_id:
            raise ProcessorLookupError("subscription_id is required.")

        logger.debug("subscription_retrieve_started", stripe_subscription_id=subscription_id)
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            logger.warning(
                "subscription_retrieve_failed",
                stripe_subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProcessorLookupError(
                f"Failed to retrieve subscription {subscription_id}: {exc}"
            ) from exc

        try:
            return ProcessorSubscription.from_stripe(_as_mapping(subscription))
        except ValidationError as exc:
            raise ProcessorLookupError(
                f"Subscription {subscription_id} returned by the processor is malformed"
            ) from exc
