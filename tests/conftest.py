"""Shared fixtures: Stripe-shaped payloads and webhook signing."""

import hashlib
import hmac
import json
import time

import pytest

from billing_reconciler.errors import ProcessorLookupError
from billing_reconciler.models import BillingConfig, ProcessorSubscription
from billing_reconciler.services.stripe_gateway import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"

# 2025-01-15T10:00:00Z and the ends of each plan's period from there
JAN_15 = 1736935200
FEB_15 = JAN_15 + 31 * 86400
JUL_15 = JAN_15 + 181 * 86400
JAN_15_NEXT_YEAR = JAN_15 + 365 * 86400


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1", created: int = JAN_15) -> dict:
    """Wrap a data object in a Stripe event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def stripe_subscription(
    sub_id: str = "sub_123",
    customer: str = "cus_123",
    status: str = "active",
    start: int = JAN_15,
    end: int = FEB_15,
    metadata: dict = None,
    price_id: str = "price_monthly",
    cancel_at_period_end: bool = False,
) -> dict:
    """Stripe subscription JSON."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": start,
        "current_period_end": end,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"user_id": "u1", "plan_type": "monthly"} if metadata is None else metadata,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


class FakeGateway(StripeGateway):
    """StripeGateway whose subscription lookups are served from memory.

    Signature verification is the real one.
    """

    def __init__(self, subscriptions: dict = None, webhook_secret: str = WEBHOOK_SECRET):
        super().__init__(api_key="sk_test_fake", webhook_secret=webhook_secret)
        self.subscriptions = dict(subscriptions or {})
        self.retrieved = []

    def add(self, obj: dict) -> None:
        self.subscriptions[obj["id"]] = obj

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        self.retrieved.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProcessorLookupError(f"No such subscription: '{subscription_id}'")
        return ProcessorSubscription.from_stripe(self.subscriptions[subscription_id])


@pytest.fixture
def billing_settings():
    """Complete billing configuration."""
    return BillingConfig(
        monthlyPriceId="price_monthly",
        semiannualPriceId="price_semiannual",
        annualPriceId="price_annual",
        webhookSecret=WEBHOOK_SECRET,
        processorApiKey="sk_test_fake",
    )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def signed_body():
    """Serialize an event and sign it: returns (body, headers)."""

    def _signed(event: dict, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event).encode("utf-8")
        return body, {"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"}

    return _signed
