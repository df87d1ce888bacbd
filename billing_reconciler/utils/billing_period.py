"""Billing period calculation utilities.

Derives the [start, end) boundaries of a paid-for period, either straight from
a processor subscription object or, for one-time payments, by advancing the
current time by the plan's calendar unit.
"""

import calendar
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from billing_reconciler.errors import InvalidPeriodError, InvalidPlanTypeError
from billing_reconciler.logging_config import get_logger
from billing_reconciler.models.events import ProcessorSubscription
from billing_reconciler.models.subscription import (
    PeriodCalculation,
    PeriodSource,
    PlanType,
)

logger = get_logger(__name__)

MILLIS_PER_DAY = 24 * 60 * 60 * 1000

TRIAL_DAYS = 30

# Inclusive [min, max] day counts a processor period may span for each plan
PLAUSIBLE_DURATION_DAYS: dict[PlanType, tuple[int, int]] = {
    PlanType.MONTHLY: (28, 31),
    PlanType.SEMIANNUAL: (180, 186),
    PlanType.ANNUAL: (360, 370),
    PlanType.TRIAL: (28, 32),
}

PLAN_DURATION_TEXT: dict[PlanType, str] = {
    PlanType.TRIAL: "30 days",
    PlanType.MONTHLY: "1 month",
    PlanType.SEMIANNUAL: "6 months",
    PlanType.ANNUAL: "1 year",
}

PlanLike = Union[PlanType, str]


def parse_plan_type(plan_type: Optional[PlanLike]) -> PlanType:
    """Parse a plan type string.

    Args:
        plan_type: Plan name (e.g., "monthly", "annual")

    Returns:
        PlanType

    Raises:
        InvalidPlanTypeError: If the value is not a known plan
    """
    if isinstance(plan_type, PlanType):
        return plan_type
    try:
        return PlanType(str(plan_type).strip().lower())
    except ValueError:
        raise InvalidPlanTypeError(plan_type)


def _known_plan(plan_type: Optional[PlanLike]) -> Optional[PlanType]:
    try:
        return parse_plan_type(plan_type)
    except InvalidPlanTypeError:
        return None


def from_unix_seconds(seconds: int) -> datetime:
    """Convert processor epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    """Advance a datetime by whole calendar months.

    The day of month is clamped to the length of the target month, so
    January 31 plus one month is the last day of February.

    Examples:
        >>> add_months(datetime(2025, 1, 15), 1)
        datetime.datetime(2025, 2, 15, 0, 0)

        >>> add_months(datetime(2024, 1, 31), 1)
        datetime.datetime(2024, 2, 29, 0, 0)
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance_by_plan(start: datetime, plan_type: PlanLike) -> datetime:
    """Return the end of a period of ``plan_type`` starting at ``start``.

    Raises:
        InvalidPlanTypeError: If the plan type is unknown
    """
    plan = parse_plan_type(plan_type)
    if plan == PlanType.MONTHLY:
        return add_months(start, 1)
    elif plan == PlanType.SEMIANNUAL:
        return add_months(start, 6)
    elif plan == PlanType.ANNUAL:
        return add_months(start, 12)
    else:
        return start + timedelta(days=TRIAL_DAYS)


def duration_days(start: datetime, end: datetime) -> int:
    """Length of [start, end) in days, rounded up."""
    millis = (end - start) // timedelta(milliseconds=1)
    return math.ceil(millis / MILLIS_PER_DAY)


def is_plausible_duration(plan_type: Optional[PlanLike], days: int) -> bool:
    """Check whether a period length is what the plan should produce.

    Unknown plan types are treated as plausible.
    """
    plan = _known_plan(plan_type)
    if plan is None:
        return True
    low, high = PLAUSIBLE_DURATION_DAYS[plan]
    return low <= days <= high


def calculate_period_from_subscription(
    subscription: ProcessorSubscription, plan_type: Optional[PlanLike]
) -> PeriodCalculation:
    """Take the period straight from a processor subscription.

    The processor is the source of truth: an implausible length is logged
    and flagged but the period is still returned.

    Args:
        subscription: Processor subscription with current period bounds
        plan_type: Plan the subscription is for (used only for the plausibility check)

    Returns:
        PeriodCalculation with source FROM_PROCESSOR_SUBSCRIPTION

    Raises:
        InvalidPeriodError: If the bounds are missing or start >= end
    """
    if subscription.current_period_start is None or subscription.current_period_end is None:
        raise InvalidPeriodError(
            f"Subscription {subscription.id} has no current period bounds"
        )

    start = from_unix_seconds(subscription.current_period_start)
    end = from_unix_seconds(subscription.current_period_end)
    if start >= end:
        raise InvalidPeriodError(
            f"Subscription {subscription.id} period start {start.isoformat()} "
            f"is not before end {end.isoformat()}"
        )

    days = duration_days(start, end)
    plausible = is_plausible_duration(plan_type, days)

    if not plausible:
        logger.warning(
            "period_implausible",
            subscription_id=subscription.id,
            plan_type=str(plan_type),
            duration_days=days,
            start=start.isoformat(),
            end=end.isoformat(),
        )

    return PeriodCalculation(
        start=start,
        end=end,
        source=PeriodSource.FROM_PROCESSOR_SUBSCRIPTION,
        duration_days=days,
        plausible=plausible,
    )


def calculate_period_for_payment(
    plan_type: Optional[PlanLike], now: Optional[datetime] = None
) -> PeriodCalculation:
    """Compute a period for a one-time payment, starting now.

    Args:
        plan_type: Plan that was paid for
        now: Period start (defaults to the current UTC time)

    Returns:
        PeriodCalculation with source CALCULATED, always plausible

    Raises:
        InvalidPlanTypeError: If the plan type is unknown

    Examples:
        >>> calculate_period_for_payment("monthly", datetime(2025, 1, 15, tzinfo=timezone.utc)).duration_days
        31
    """
    plan = parse_plan_type(plan_type)
    start = now or datetime.now(timezone.utc)
    end = advance_by_plan(start, plan)
    days = duration_days(start, end)

    logger.debug(
        "period_calculated",
        plan_type=plan.value,
        start=start.isoformat(),
        end=end.isoformat(),
        duration_days=days,
    )

    return PeriodCalculation(
        start=start,
        end=end,
        source=PeriodSource.CALCULATED,
        duration_days=days,
        plausible=True,
    )


def format_plan_duration(plan_type: Optional[PlanLike]) -> str:
    """Human-readable plan length, e.g. '6 months'."""
    plan = _known_plan(plan_type)
    if plan is None:
        return "unknown"
    return PLAN_DURATION_TEXT[plan]


def format_billing_period_text(start: datetime, end: datetime, plan_type: Optional[PlanLike]) -> str:
    """Describe a billing period, e.g. '01/15/2025 – 02/15/2025 (1 month)'."""
    return (
        f"{start.strftime('%m/%d/%Y')} – {end.strftime('%m/%d/%Y')} "
        f"({format_plan_duration(plan_type)})"
    )
