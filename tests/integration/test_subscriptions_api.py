"""Integration tests for the subscription read API."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from billing_reconciler.config import Config
from billing_reconciler.main import create_app
from billing_reconciler.models import PlanType, SubscriptionStatus, SubscriptionUpdate
from billing_reconciler.repositories.subscription_store import SubscriptionStore
from billing_reconciler.services.event_dispatcher import EventDispatcher
from conftest import WEBHOOK_SECRET, FakeGateway

BILLING_YAML = f"""
monthlyPriceId: price_monthly
semiannualPriceId: price_semiannual
annualPriceId: price_annual
webhookSecret: {WEBHOOK_SECRET}
processorApiKey: sk_test_fake
"""


@pytest.fixture
def store():
    return SubscriptionStore()


@pytest.fixture
def client(tmp_path, store):
    path = tmp_path / "billing.yaml"
    path.write_text(BILLING_YAML, encoding="utf-8")
    app = create_app(
        config=Config(str(path), environ={}),
        store=store,
        gateway=FakeGateway(),
        dispatcher=EventDispatcher(),
    )
    with TestClient(app) as client:
        yield client


def seed(store, user_id="u1", status=SubscriptionStatus.ACTIVE, plan_type=PlanType.ANNUAL, days=365):
    start = datetime.now(timezone.utc) - timedelta(days=1)
    store.apply_update(
        SubscriptionUpdate(
            user_id=user_id,
            plan_type=plan_type,
            status=status,
            stripe_subscription_id=f"sub_{user_id}",
            stripe_customer_id=f"cus_{user_id}",
            current_period_start=start,
            current_period_end=start + timedelta(days=days),
        )
    )


class TestGetSubscription:
    """GET /subscriptions/{user_id}"""

    def test_existing_subscription(self, client, store):
        seed(store)

        response = client.get("/subscriptions/u1")

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "u1"
        assert body["plan_type"] == "annual"
        assert body["status"] == "active"
        assert body["stripe_subscription_id"] == "sub_u1"

    def test_unknown_user(self, client):
        response = client.get("/subscriptions/nobody")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "subscription_not_found"


class TestCheckAccess:
    """GET /subscriptions/{user_id}/access"""

    def test_paid_access(self, client, store):
        seed(store)

        body = client.get("/subscriptions/u1/access").json()

        assert body["has_access"] is True
        assert body["plan_type"] == "annual"
        assert body["features"]["api_access"] is True
        assert body["days_remaining"] == 364
        assert body["subscription"]["user_id"] == "u1"

    def test_user_without_subscription_gets_trial(self, client):
        body = client.get("/subscriptions/new-user/access").json()

        assert body["has_access"] is True
        assert body["plan_type"] == "trial"
        assert body["features"]["max_customers"] == 100
        assert body["subscription"] is None

    def test_past_due_user_has_no_access(self, client, store):
        seed(store, status=SubscriptionStatus.PAST_DUE)

        body = client.get("/subscriptions/u1/access").json()

        assert body["has_access"] is False


class TestStats:
    """GET /subscriptions/stats"""

    def test_empty_store(self, client):
        response = client.get("/subscriptions/stats")

        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_counts(self, client, store):
        seed(store, "u1")
        seed(store, "u2", status=SubscriptionStatus.CANCELLED, plan_type=PlanType.MONTHLY, days=30)

        body = client.get("/subscriptions/stats").json()

        assert body["total"] == 2
        assert body["active"] == 1
        assert body["cancelled"] == 1
        assert body["paid"] == 1
        assert body["unique_customers"] == 2
