"""Utility functions and helpers for billing reconciliation."""

from billing_reconciler.utils.billing_period import (
    add_months,
    advance_by_plan,
    calculate_period_for_payment,
    calculate_period_from_subscription,
    duration_days,
    format_billing_period_text,
    format_plan_duration,
    from_unix_seconds,
    is_plausible_duration,
    parse_plan_type,
)

__all__ = [
    # Period calculation
    "calculate_period_from_subscription",
    "calculate_period_for_payment",
    # Period arithmetic
    "add_months",
    "advance_by_plan",
    "duration_days",
    "from_unix_seconds",
    # Plan helpers
    "parse_plan_type",
    "is_plausible_duration",
    "format_plan_duration",
    "format_billing_period_text",
]
