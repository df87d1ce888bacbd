"""Subscription record and normalized update models.

Includes plan types, local subscription statuses, billing periods.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PlanType(str, Enum):
    """Plans a restaurant account can be subscribed to."""

    MONTHLY = "monthly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"
    TRIAL = "trial"

    @classmethod
    def values(cls) -> list[str]:
        return [plan.value for plan in cls]


class SubscriptionStatus(str, Enum):
    """Local subscription status."""

    ACTIVE = "active"  # Paid-for period in effect
    PAST_DUE = "past_due"  # Renewal payment failed, period retained
    CANCELLED = "cancelled"  # Cancelled at the processor
    EXPIRED = "expired"  # Unpaid or never completed


class PeriodSource(str, Enum):
    """Where a billing period's boundaries came from."""

    FROM_PROCESSOR_SUBSCRIPTION = "fromProcessorSubscription"
    CALCULATED = "calculated"


class PeriodCalculation(BaseModel):
    """Billing period derived for a single notification. Never persisted."""

    start: datetime = Field(..., description="Period start (inclusive, UTC)")
    end: datetime = Field(..., description="Period end (exclusive, UTC)")
    source: PeriodSource = Field(..., description="How the boundaries were obtained")
    duration_days: int = Field(..., description="Period length in days, rounded up")
    plausible: bool = Field(..., description="Whether the length matches the plan")


class SubscriptionUpdate(BaseModel):
    """Normalized update tuple handed to the state applier."""

    user_id: str = Field(..., description="Local user identifier")
    plan_type: PlanType = Field(..., description="Plan the period was paid for")
    status: SubscriptionStatus = Field(..., description="Status to record")
    stripe_subscription_id: Optional[str] = Field(
        None, description="Processor subscription ID, absent for one-time payments"
    )
    stripe_customer_id: Optional[str] = Field(None, description="Processor customer ID")
    current_period_start: datetime = Field(..., description="Period start (UTC)")
    current_period_end: datetime = Field(..., description="Period end (UTC)")
    cancel_at_period_end: Optional[bool] = Field(
        None, description="Processor cancel-at-period-end flag, None keeps the stored value"
    )

    # Provenance
    event_id: Optional[str] = Field(None, description="Processor event ID")
    event_created_at: Optional[datetime] = Field(None, description="Processor event timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "6c1f0d1e-3a55-4c1b-9d55-2b7d4f0f8e11",
                "plan_type": "annual",
                "status": "active",
                "stripe_subscription_id": "sub_1PqR2sT3uV4wX5yZ",
                "stripe_customer_id": "cus_Q1w2E3r4T5y6U7",
                "current_period_start": "2025-01-15T10:00:00Z",
                "current_period_end": "2026-01-15T10:00:00Z",
            }
        }


class SubscriptionRecord(BaseModel):
    """Stored subscription state, one per user."""

    user_id: str = Field(..., description="Local user identifier")
    plan_type: PlanType = Field(..., description="Current plan")
    status: SubscriptionStatus = Field(..., description="Current status")

    # Processor identifiers
    stripe_subscription_id: Optional[str] = Field(None, description="Processor subscription ID")
    stripe_customer_id: str = Field(..., description="Processor customer ID")

    # Billing period
    current_period_start: datetime = Field(..., description="Paid-for period start (UTC)")
    current_period_end: datetime = Field(..., description="Paid-for period end (UTC)")
    cancel_at_period_end: bool = Field(default=False, description="Whether renewal is switched off")

    # Bookkeeping
    created_at: datetime = Field(..., description="When the record was inserted")
    updated_at: datetime = Field(..., description="When the record was last mutated")
    last_event_id: Optional[str] = Field(None, description="Last applied processor event ID")
    last_event_at: Optional[datetime] = Field(None, description="Timestamp of last applied processor event")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "6c1f0d1e-3a55-4c1b-9d55-2b7d4f0f8e11",
                "plan_type": "monthly",
                "status": "active",
                "stripe_subscription_id": "sub_1PqR2sT3uV4wX5yZ",
                "stripe_customer_id": "cus_Q1w2E3r4T5y6U7",
                "current_period_start": "2025-01-15T10:00:00Z",
                "current_period_end": "2025-02-15T10:00:00Z",
                "cancel_at_period_end": False,
                "created_at": "2025-01-15T10:00:02Z",
                "updated_at": "2025-01-15T10:00:02Z",
            }
        }
