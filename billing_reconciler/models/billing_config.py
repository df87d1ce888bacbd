"""Billing configuration models.

Models from billing.yaml configuration and environment overrides.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .subscription import PlanType


class PubSubConfig(BaseModel):
    """Pub/Sub settings for subscription change notifications."""

    enabled: bool = Field(default=False, description="Publish change notifications")
    project_id: Optional[str] = Field(None, description="GCP project ID")
    topic: str = Field(default="subscription-changes", description="Pub/Sub topic name")


class BillingConfig(BaseModel):
    """Everything the reconciliation engine needs, resolved once at startup."""

    model_config = ConfigDict(populate_by_name=True)

    monthly_price_id: Optional[str] = Field(None, alias="monthlyPriceId")
    semiannual_price_id: Optional[str] = Field(None, alias="semiannualPriceId")
    annual_price_id: Optional[str] = Field(None, alias="annualPriceId")
    webhook_secret: Optional[str] = Field(None, alias="webhookSecret")
    processor_api_key: Optional[str] = Field(None, alias="processorApiKey")

    enforce_event_ordering: bool = Field(
        default=False,
        alias="enforceEventOrdering",
        description="Ignore notifications older than the last applied one",
    )
    refetch_subscription_events: bool = Field(
        default=True,
        alias="refetchSubscriptionEvents",
        description="Retrieve the subscription for updated/deleted notifications",
    )
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)

    def missing_required_keys(self) -> list[str]:
        """Return the aliases of required keys that did not resolve."""
        missing = []
        for name in REQUIRED_KEYS:
            if not getattr(self, name):
                missing.append(type(self).model_fields[name].alias)
        return missing

    def price_ids(self) -> dict[PlanType, Optional[str]]:
        return {
            PlanType.MONTHLY: self.monthly_price_id,
            PlanType.SEMIANNUAL: self.semiannual_price_id,
            PlanType.ANNUAL: self.annual_price_id,
        }

    def plan_for_price_id(self, price_id: Optional[str]) -> Optional[PlanType]:
        """Map a configured processor price ID back to its plan."""
        if not price_id:
            return None
        for plan, configured in self.price_ids().items():
            if configured and configured == price_id:
                return plan
        return None


REQUIRED_KEYS = (
    "monthly_price_id",
    "semiannual_price_id",
    "annual_price_id",
    "webhook_secret",
    "processor_api_key",
)
