"""Processor notification reconciliation.

Responsibilities:
- Retrieve the authoritative processor subscription where an event needs it
- Classify the event into a normalized update or a no-op
- Apply the update through the subscription store
- Publish a change notification when stored state changed
- Report the outcome for the webhook response

One call to process() handles one notification and keeps no state between
calls. Retries are left to the processor's redelivery.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from billing_reconciler.errors import ReconciliationError
from billing_reconciler.logging_config import get_logger
from billing_reconciler.models.billing_config import BillingConfig
from billing_reconciler.models.events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    LifecycleEvent,
    PaymentSucceededEvent,
    ProcessorSubscription,
    SubscriptionChangeNotification,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
    UnhandledEvent,
)
from billing_reconciler.repositories.subscription_store import (
    ApplyOutcome,
    ApplyResult,
    SubscriptionStore,
    get_subscription_store,
)
from billing_reconciler.services.event_classifier import (
    Classification,
    classify_checkout_completed,
    classify_invoice,
    classify_payment_succeeded,
    classify_subscription_event,
    is_subscription_checkout,
)
from billing_reconciler.services.event_dispatcher import EventDispatcher, now_millis
from billing_reconciler.services.stripe_gateway import StripeGateway

logger = get_logger(__name__)

IGNORED_ACTION = "ignored"

# Action reported for each event kind when it fails
_FAILURE_ACTIONS = {
    CheckoutCompletedEvent: "checkout_completed",
    PaymentSucceededEvent: "payment_succeeded",
    InvoicePaidEvent: "invoice_payment_succeeded",
    InvoicePaymentFailedEvent: "invoice_payment_failed",
    SubscriptionUpdatedEvent: "subscription_updated",
    SubscriptionDeletedEvent: "subscription_deleted",
}


class ProcessingResult(BaseModel):
    """Outcome of processing one notification."""

    success: bool
    action: str
    user_id: Optional[str] = None
    plan_type: Optional[str] = None
    billing_period_accurate: Optional[bool] = None
    actual_duration_days: Optional[int] = None
    error: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """Turns processor lifecycle events into stored subscription state."""

    def __init__(
        self,
        settings: BillingConfig,
        gateway: StripeGateway,
        store: Optional[SubscriptionStore] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize reconciliation engine.

        Args:
            settings: Resolved billing configuration
            gateway: Processor API access
            store: Subscription storage (defaults to global instance)
            dispatcher: Change notification publisher (none when omitted)
            clock: Start of calculated periods for events without a processor timestamp
                (defaults to current UTC time)
        """
        self.settings = settings
        self.gateway = gateway
        self.store = store if store is not None else get_subscription_store()
        self.dispatcher = dispatcher
        self._clock = clock or _utc_now

        logger.info(
            "reconciliation_engine_initialized",
            enforce_event_ordering=settings.enforce_event_ordering,
            refetch_subscription_events=settings.refetch_subscription_events,
        )

    def process(self, event: LifecycleEvent) -> ProcessingResult:
        """Handle one verified lifecycle event.

        Never raises for ReconciliationError: such failures come back as an
        unsuccessful ProcessingResult.
        """
        if isinstance(event, UnhandledEvent):
            logger.info("event_ignored", event_type=event.event_type, event_id=event.event_id)
            return ProcessingResult(success=True, action=IGNORED_ACTION)

        logger.info("event_processing_started", event_type=event.event_type, event_id=event.event_id)

        try:
            classification = self._classify(event)
            if classification.is_noop:
                return ProcessingResult(success=True, action=classification.action)
            return self._apply(event, classification)
        except ReconciliationError as e:
            action = _FAILURE_ACTIONS.get(type(event), IGNORED_ACTION)
            logger.error(
                "event_processing_failed",
                event_type=event.event_type,
                event_id=event.event_id,
                action=action,
                error=str(e),
                error_type=type(e).__name__,
                **_correlation(event),
            )
            return ProcessingResult(
                success=False,
                action=action,
                user_id=_correlation(event).get("user_id"),
                error=str(e),
            )

    def _classify(self, event: LifecycleEvent) -> Classification:
        if isinstance(event, CheckoutCompletedEvent):
            subscription = None
            if event.user_id and event.plan_type and is_subscription_checkout(event):
                subscription = self.gateway.retrieve_subscription(event.subscription_id)
            return classify_checkout_completed(event, subscription, now=self._period_start(event))

        if isinstance(event, PaymentSucceededEvent):
            return classify_payment_succeeded(event, now=self._period_start(event))

        if isinstance(event, (InvoicePaidEvent, InvoicePaymentFailedEvent)):
            subscription = None
            if event.subscription_id:
                subscription = self.gateway.retrieve_subscription(event.subscription_id)
            return classify_invoice(event, subscription, self.settings)

        if isinstance(event, (SubscriptionUpdatedEvent, SubscriptionDeletedEvent)):
            return classify_subscription_event(event, self._refetch(event.subscription), self.settings)

        raise ReconciliationError(f"Unsupported event kind: {type(event).__name__}")

    def _refetch(self, embedded: ProcessorSubscription) -> Optional[ProcessorSubscription]:
        """Return the current processor copy of a subscription, if configured to fetch it."""
        if not self.settings.refetch_subscription_events or not embedded.id:
            return None
        return self.gateway.retrieve_subscription(embedded.id)

    def _period_start(self, event: LifecycleEvent) -> datetime:
        """Start of a calculated period: the processor's event time, stable across redeliveries."""
        return event.created or self._clock()

    def _apply(self, event: LifecycleEvent, classification: Classification) -> ProcessingResult:
        update = classification.update
        period = classification.period

        result = self.store.apply_update(
            update,
            reason=classification.action,
            enforce_ordering=self.settings.enforce_event_ordering,
        )
        if result.outcome == ApplyOutcome.STALE:
            action = f"{classification.action}_stale_event"
            return ProcessingResult(success=True, action=action, user_id=update.user_id)

        logger.info(
            "event_processed",
            event_type=event.event_type,
            event_id=event.event_id,
            action=classification.action,
            user_id=update.user_id,
            plan_type=update.plan_type.value,
            status=update.status.value,
            outcome=result.outcome.value,
            period_source=period.source.value,
            duration_days=period.duration_days,
            plausible=period.plausible,
        )

        if result.changed:
            self._publish_change(classification.action, result)

        return ProcessingResult(
            success=True,
            action=classification.action,
            user_id=update.user_id,
            plan_type=update.plan_type.value,
            billing_period_accurate=period.plausible,
            actual_duration_days=period.duration_days,
        )

    def _publish_change(self, action: str, result: ApplyResult) -> None:
        if self.dispatcher is None:
            return

        record = result.record
        try:
            self.dispatcher.publish_change(
                SubscriptionChangeNotification(
                    user_id=record.user_id,
                    action=action,
                    outcome=result.outcome.value,
                    plan_type=record.plan_type.value,
                    status=record.status.value,
                    previous_status=result.previous.status.value if result.previous else None,
                    current_period_start=record.current_period_start,
                    current_period_end=record.current_period_end,
                    cancel_at_period_end=record.cancel_at_period_end,
                    stripe_subscription_id=record.stripe_subscription_id,
                    event_id=record.last_event_id,
                    event_time_millis=now_millis(),
                )
            )
        except Exception as e:
            # Log error but don't fail the notification
            logger.error(
                "subscription_change_publish_failed",
                user_id=record.user_id,
                action=action,
                error=str(e),
                exc_info=True,
            )


def _correlation(event: LifecycleEvent) -> dict[str, Optional[str]]:
    """Correlation metadata carried by the event itself, for failure logs."""
    if isinstance(event, (CheckoutCompletedEvent, PaymentSucceededEvent)):
        return {"user_id": event.user_id, "plan_type": event.plan_type}
    if isinstance(event, (SubscriptionUpdatedEvent, SubscriptionDeletedEvent)):
        return {
            "user_id": event.subscription.user_id,
            "plan_type": event.subscription.plan_type,
            "stripe_subscription_id": event.subscription.id,
        }
    if isinstance(event, (InvoicePaidEvent, InvoicePaymentFailedEvent)):
        return {"invoice_id": event.invoice_id, "stripe_subscription_id": event.subscription_id}
    return {}
