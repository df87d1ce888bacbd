"""HTTP response models for the webhook and subscription read endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .subscription import PlanType, SubscriptionRecord


class WebhookResponse(BaseModel):
    """Body returned to the processor for every verified notification."""

    received: bool = Field(default=True, description="Notification was received")
    processed: bool = Field(..., description="Notification was handled (including no-ops)")
    action: str = Field(..., description="Action taken, e.g. invoice_payment_succeeded")
    event_type: str = Field(..., description="Processor event type")
    event_id: Optional[str] = Field(None, description="Processor event ID")
    user_id: Optional[str] = Field(None, description="Correlated local user")
    plan_type: Optional[str] = Field(None, description="Plan applied")
    billing_period_accurate: Optional[bool] = Field(
        None, description="Whether the period length matched the plan"
    )
    actual_duration_days: Optional[int] = Field(None, description="Applied period length in days")
    error: Optional[str] = Field(None, description="Failure message when not processed")
    timestamp: datetime = Field(..., description="When the response was produced")

    class Config:
        json_schema_extra = {
            "example": {
                "received": True,
                "processed": True,
                "action": "checkout_completed",
                "event_type": "checkout.session.completed",
                "event_id": "evt_1PqR2sT3uV4wX5yZ",
                "user_id": "u1",
                "plan_type": "annual",
                "billing_period_accurate": True,
                "actual_duration_days": 365,
                "timestamp": "2025-01-15T10:00:02Z",
            }
        }


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")


class PlanFeatures(BaseModel):
    """Product limits and features unlocked by a plan (-1 means unlimited)."""

    max_customers: int
    max_branches: int
    advanced_analytics: bool
    priority_support: bool
    custom_branding: bool
    api_access: bool


class AccessResponse(BaseModel):
    """Whether a user currently has paid access, and for how long."""

    user_id: str
    has_access: bool
    plan_type: PlanType
    features: PlanFeatures
    days_remaining: int
    is_expired: bool
    is_cancelled: bool
    billing_period_text: str
    subscription: Optional[SubscriptionRecord] = None


class StatsResponse(BaseModel):
    """Aggregate counts over all stored subscriptions."""

    total: int
    active: int
    past_due: int
    cancelled: int
    expired: int
    trial: int
    paid: int
    unique_customers: int
