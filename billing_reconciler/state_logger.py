"""State change logging for stored subscriptions.

Tracks transitions with before/after values for debugging and auditing.
"""

from datetime import datetime
from typing import Any, Optional

from billing_reconciler.logging_config import get_logger

logger = get_logger(__name__)


def log_subscription_created(
    user_id: str,
    plan_type: Any,
    status: Any,
    period_end: datetime,
    **extra_context: Any,
) -> None:
    """Log insertion of a user's first subscription record."""
    logger.info(
        "subscription_created",
        user_id=user_id,
        plan_type=str(plan_type),
        status=str(status),
        period_end=period_end.isoformat(),
        **extra_context,
    )


def log_subscription_status_change(
    user_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        user_id: Local user identifier
        old_status: Previous status value
        new_status: New status value
        reason: Action that caused the change (e.g. invoice_payment_failed)
        **extra_context: Additional context (event_id, subscription id, etc.)
    """
    logger.info(
        "subscription_status_changed",
        user_id=user_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_plan_change(
    user_id: str,
    old_plan: Any,
    new_plan: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log plan type change."""
    logger.info(
        "subscription_plan_changed",
        user_id=user_id,
        old_plan=str(old_plan),
        new_plan=str(new_plan),
        reason=reason,
        **extra_context,
    )


def log_period_change(
    user_id: str,
    old_end: datetime,
    new_end: datetime,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a change of the paid-for period end.

    A move backwards is logged as a warning: it means an older notification
    was applied after a newer one.

    Args:
        user_id: Local user identifier
        old_end: Previous current_period_end
        new_end: New current_period_end
        reason: Action that caused the change
        **extra_context: Additional context
    """
    shift_days = (new_end - old_end).total_seconds() / 86400
    if new_end < old_end:
        logger.warning(
            "period_end_regression",
            user_id=user_id,
            old_end=old_end.isoformat(),
            new_end=new_end.isoformat(),
            shift_days=round(shift_days, 2),
            reason=reason,
            **extra_context,
        )
        return

    logger.info(
        "period_changed",
        user_id=user_id,
        old_end=old_end.isoformat(),
        new_end=new_end.isoformat(),
        shift_days=round(shift_days, 2),
        reason=reason,
        **extra_context,
    )
