"""Map processor lifecycle events to normalized subscription updates.

Each function here is pure: given a decoded event (and, where needed, the
subscription object already retrieved from the processor) it returns either a
SubscriptionUpdate to apply or a documented no-op. Missing correlation
metadata is never an error, since redelivery cannot make it appear.

| event                      | status written           | period source                |
|----------------------------|--------------------------|------------------------------|
| checkout completed         | active                   | subscription, else calculated|
| payment succeeded          | active                   | calculated                   |
| invoice paid               | active                   | subscription                 |
| invoice payment failed     | past_due                 | subscription                 |
| subscription updated       | mapped processor status  | subscription                 |
| subscription deleted       | cancelled                | subscription                 |
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel

from billing_reconciler.logging_config import get_logger
from billing_reconciler.models.billing_config import BillingConfig
from billing_reconciler.models.events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    PaymentSucceededEvent,
    ProcessorSubscription,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
)
from billing_reconciler.models.subscription import (
    PeriodCalculation,
    PlanType,
    SubscriptionStatus,
    SubscriptionUpdate,
)
from billing_reconciler.utils.billing_period import (
    calculate_period_for_payment,
    calculate_period_from_subscription,
    duration_days,
    from_unix_seconds,
    parse_plan_type,
)

logger = get_logger(__name__)

# Processor subscription status -> local status
PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "unpaid": SubscriptionStatus.EXPIRED,
    "incomplete": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}

DEFAULT_PLAN_TYPE = PlanType.MONTHLY

InvoiceEvent = Union[InvoicePaidEvent, InvoicePaymentFailedEvent]
SubscriptionEvent = Union[SubscriptionUpdatedEvent, SubscriptionDeletedEvent]


class Classification(BaseModel):
    """Outcome of classifying one event."""

    action: str
    update: Optional[SubscriptionUpdate] = None
    period: Optional[PeriodCalculation] = None

    @property
    def is_noop(self) -> bool:
        return self.update is None


def _noop(action: str, **context) -> Classification:
    logger.info("event_skipped", action=action, **context)
    return Classification(action=action)


def map_processor_status(status: Optional[str]) -> SubscriptionStatus:
    """Map a processor subscription status to a local status.

    Unrecognized statuses map to ACTIVE.
    """
    mapped = PROCESSOR_STATUS_MAP.get((status or "").lower())
    if mapped is None:
        logger.warning("processor_status_unrecognized", processor_status=status, mapped_to="active")
        return SubscriptionStatus.ACTIVE
    return mapped


def resolve_plan_type(
    subscription: ProcessorSubscription, settings: Optional[BillingConfig] = None
) -> PlanType:
    """Determine the plan of a processor subscription.

    Order: the plan_type metadata tag, then the plan configured for the
    subscription's price, then monthly.

    Raises:
        InvalidPlanTypeError: If the metadata tag names an unknown plan
    """
    if subscription.plan_type:
        return parse_plan_type(subscription.plan_type)

    if settings is not None:
        plan = settings.plan_for_price_id(subscription.price_id)
        if plan is not None:
            logger.info(
                "plan_type_from_price",
                stripe_subscription_id=subscription.id,
                price_id=subscription.price_id,
                plan_type=plan.value,
            )
            return plan

    logger.info(
        "plan_type_defaulted",
        stripe_subscription_id=subscription.id,
        plan_type=DEFAULT_PLAN_TYPE.value,
    )
    return DEFAULT_PLAN_TYPE


def classify_checkout_completed(
    event: CheckoutCompletedEvent,
    subscription: Optional[ProcessorSubscription] = None,
    now: Optional[datetime] = None,
) -> Classification:
    """Classify a completed checkout session.

    Args:
        event: Decoded checkout event
        subscription: The session's subscription, retrieved by the caller when the
            session is in subscription mode
        now: Start of a calculated period (defaults to current time)

    Raises:
        InvalidPlanTypeError: If the plan_type tag is unknown
    """
    action = "checkout_completed"
    if not event.user_id or not event.plan_type:
        return _noop(f"{action}_no_metadata", session_id=event.session_id)

    plan = parse_plan_type(event.plan_type)
    if is_subscription_checkout(event) and subscription is not None:
        period = calculate_period_from_subscription(subscription, plan)
        cancel_at_period_end = subscription.cancel_at_period_end
    else:
        period = calculate_period_for_payment(plan, now=now)
        cancel_at_period_end = None

    update = SubscriptionUpdate(
        user_id=event.user_id,
        plan_type=plan,
        status=SubscriptionStatus.ACTIVE,
        stripe_subscription_id=event.subscription_id,
        stripe_customer_id=event.customer_id or (subscription.customer_id if subscription else None),
        current_period_start=period.start,
        current_period_end=period.end,
        cancel_at_period_end=cancel_at_period_end,
        event_id=event.event_id,
        event_created_at=event.created,
    )
    return Classification(action=action, update=update, period=period)


def is_subscription_checkout(event: CheckoutCompletedEvent) -> bool:
    """Whether the session created a recurring subscription."""
    return event.mode == "subscription" and bool(event.subscription_id)


def classify_payment_succeeded(
    event: PaymentSucceededEvent, now: Optional[datetime] = None
) -> Classification:
    """Classify a succeeded one-time payment. The period is always calculated.

    Raises:
        InvalidPlanTypeError: If the plan_type tag is unknown
    """
    action = "payment_succeeded"
    if not event.user_id or not event.plan_type:
        return _noop(f"{action}_no_metadata", payment_intent_id=event.payment_intent_id)

    period = calculate_period_for_payment(event.plan_type, now=now)
    update = SubscriptionUpdate(
        user_id=event.user_id,
        plan_type=parse_plan_type(event.plan_type),
        status=SubscriptionStatus.ACTIVE,
        stripe_subscription_id=None,
        stripe_customer_id=event.customer_id,
        current_period_start=period.start,
        current_period_end=period.end,
        event_id=event.event_id,
        event_created_at=event.created,
    )
    return Classification(action=action, update=update, period=period)


def _invoice_action(event: InvoiceEvent) -> tuple[str, str, SubscriptionStatus]:
    """Return (success action, no-op prefix, status) for an invoice event."""
    if isinstance(event, InvoicePaymentFailedEvent):
        return "invoice_payment_failed", "invoice_payment_failed", SubscriptionStatus.PAST_DUE
    return "invoice_payment_succeeded", "invoice_payment", SubscriptionStatus.ACTIVE


def classify_invoice(
    event: InvoiceEvent,
    subscription: Optional[ProcessorSubscription],
    settings: Optional[BillingConfig] = None,
) -> Classification:
    """Classify a paid or failed invoice through its linked subscription.

    Periods come from the subscription even on failure: the paid-for
    interval has not changed.

    Args:
        event: Decoded invoice event
        subscription: The invoice's subscription, retrieved by the caller (None when
            the invoice is not linked to one)
        settings: Billing configuration for price -> plan lookup

    Raises:
        InvalidPlanTypeError: If the subscription's plan_type tag is unknown
    """
    action, noop_prefix, status = _invoice_action(event)
    if not event.subscription_id or subscription is None:
        return _noop(f"{noop_prefix}_no_subscription", invoice_id=event.invoice_id)

    if not subscription.user_id:
        return _noop(
            f"{noop_prefix}_no_user_metadata",
            invoice_id=event.invoice_id,
            stripe_subscription_id=subscription.id,
        )

    plan = resolve_plan_type(subscription, settings)
    period = calculate_period_from_subscription(subscription, plan)
    _cross_check_invoice_period(event, period)

    update = SubscriptionUpdate(
        user_id=subscription.user_id,
        plan_type=plan,
        status=status,
        stripe_subscription_id=subscription.id,
        stripe_customer_id=subscription.customer_id or event.customer_id,
        current_period_start=period.start,
        current_period_end=period.end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        event_id=event.event_id,
        event_created_at=event.created,
    )
    return Classification(action=action, update=update, period=period)


def _cross_check_invoice_period(event: InvoiceEvent, period: PeriodCalculation) -> None:
    if not event.period_start or not event.period_end or event.period_end <= event.period_start:
        return
    invoice_days = duration_days(from_unix_seconds(event.period_start), from_unix_seconds(event.period_end))
    if abs(invoice_days - period.duration_days) > 1:
        logger.warning(
            "invoice_period_mismatch",
            invoice_id=event.invoice_id,
            invoice_duration_days=invoice_days,
            subscription_duration_days=period.duration_days,
        )


def classify_subscription_event(
    event: SubscriptionEvent,
    subscription: Optional[ProcessorSubscription] = None,
    settings: Optional[BillingConfig] = None,
) -> Classification:
    """Classify a subscription updated or deleted event.

    Args:
        event: Decoded subscription event
        subscription: Authoritative subscription retrieved by the caller; the
            event's own copy is used when omitted
        settings: Billing configuration for price -> plan lookup

    Raises:
        InvalidPlanTypeError: If the plan_type tag is unknown
    """
    subscription = subscription or event.subscription
    if isinstance(event, SubscriptionDeletedEvent):
        action = "subscription_deleted"
        status = SubscriptionStatus.CANCELLED
    else:
        action = "subscription_updated"
        status = map_processor_status(subscription.status)

    if not subscription.user_id:
        return _noop(f"{action}_no_user_metadata", stripe_subscription_id=subscription.id)

    plan = resolve_plan_type(subscription, settings)
    period = calculate_period_from_subscription(subscription, plan)

    update = SubscriptionUpdate(
        user_id=subscription.user_id,
        plan_type=plan,
        status=status,
        stripe_subscription_id=subscription.id,
        stripe_customer_id=subscription.customer_id,
        current_period_start=period.start,
        current_period_end=period.end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        event_id=event.event_id,
        event_created_at=event.created,
    )
    return Classification(action=action, update=update, period=period)
