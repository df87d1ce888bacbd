"""Subscription access decisions for the read API.

A user with no stored subscription is on the implicit trial. Otherwise access
lasts until current_period_end while the subscription is active, or cancelled
but still inside the paid-for period.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from billing_reconciler.models.api_response import AccessResponse, PlanFeatures
from billing_reconciler.models.subscription import PlanType, SubscriptionRecord, SubscriptionStatus
from billing_reconciler.utils.billing_period import TRIAL_DAYS, format_billing_period_text

UNLIMITED = -1

NO_SUBSCRIPTION_TEXT = "No active subscription"

TRIAL_FEATURES = PlanFeatures(
    max_customers=100,
    max_branches=1,
    advanced_analytics=False,
    priority_support=False,
    custom_branding=False,
    api_access=False,
)


def get_plan_features(plan_type: PlanType) -> PlanFeatures:
    """Features unlocked by a plan. Longer paid plans add branding and API access."""
    if plan_type == PlanType.TRIAL:
        return TRIAL_FEATURES.model_copy()

    extras = plan_type != PlanType.MONTHLY
    return PlanFeatures(
        max_customers=UNLIMITED,
        max_branches=UNLIMITED,
        advanced_analytics=True,
        priority_support=True,
        custom_branding=extras,
        api_access=extras,
    )


def evaluate_access(
    user_id: str, record: Optional[SubscriptionRecord], now: Optional[datetime] = None
) -> AccessResponse:
    """Decide whether a user currently has access.

    Args:
        user_id: Local user identifier
        record: The user's stored subscription, if any
        now: Evaluation time (defaults to current UTC time)
    """
    now = now or datetime.now(timezone.utc)

    if record is None:
        return AccessResponse(
            user_id=user_id,
            has_access=True,
            plan_type=PlanType.TRIAL,
            features=get_plan_features(PlanType.TRIAL),
            days_remaining=TRIAL_DAYS,
            is_expired=False,
            is_cancelled=False,
            billing_period_text=NO_SUBSCRIPTION_TEXT,
        )

    end = record.current_period_end
    is_expired = end <= now
    is_cancelled = record.status == SubscriptionStatus.CANCELLED or record.cancel_at_period_end
    has_access = (
        record.status == SubscriptionStatus.ACTIVE or (is_cancelled and not is_expired)
    ) and end > now
    days_remaining = max(0, math.ceil((end - now) / timedelta(days=1)))

    return AccessResponse(
        user_id=user_id,
        has_access=has_access,
        plan_type=record.plan_type,
        features=get_plan_features(record.plan_type),
        days_remaining=days_remaining,
        is_expired=is_expired,
        is_cancelled=is_cancelled,
        billing_period_text=format_billing_period_text(
            record.current_period_start, end, record.plan_type
        ),
        subscription=record,
    )
