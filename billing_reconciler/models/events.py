"""Processor lifecycle event models.

Stripe event payloads are loosely shaped JSON. Each notification kind handled
by the engine is decoded into its own variant carrying only the fields the
engine reads; anything else becomes an ``UnhandledEvent``.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from billing_reconciler.errors import WebhookVerificationError

# Processor event type strings
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class ProcessorSubscription(BaseModel):
    """The fields of a processor subscription object the engine relies on."""

    id: str = Field(..., description="Processor subscription ID")
    customer_id: Optional[str] = Field(None, description="Processor customer ID")
    status: str = Field(default="", description="Processor subscription status")
    current_period_start: Optional[int] = Field(None, description="Period start (Unix seconds)")
    current_period_end: Optional[int] = Field(None, description="Period end (Unix seconds)")
    cancel_at_period_end: bool = Field(default=False, description="Renewal switched off")
    metadata: dict[str, str] = Field(default_factory=dict, description="Tags set at checkout")
    price_id: Optional[str] = Field(None, description="Price of the first subscription item")

    @property
    def user_id(self) -> Optional[str]:
        return _metadata_value(self.metadata, "user_id")

    @property
    def plan_type(self) -> Optional[str]:
        return _metadata_value(self.metadata, "plan_type")

    @classmethod
    def from_stripe(cls, obj: Mapping) -> "ProcessorSubscription":
        """Build from a Stripe subscription object or its JSON form.

        Newer API versions report the period bounds on subscription items
        rather than on the subscription itself; both locations are read.
        """
        first_item = _first_item(obj)
        period_start = obj.get("current_period_start")
        period_end = obj.get("current_period_end")
        if period_start is None and first_item is not None:
            period_start = first_item.get("current_period_start")
        if period_end is None and first_item is not None:
            period_end = first_item.get("current_period_end")

        price_id = None
        if first_item is not None:
            price_id = _expandable_id(first_item.get("price"))

        return cls(
            id=obj.get("id") or "",
            customer_id=_expandable_id(obj.get("customer")),
            status=obj.get("status") or "",
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            metadata=_metadata(obj),
            price_id=price_id,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "sub_1PqR2sT3uV4wX5yZ",
                "customer_id": "cus_Q1w2E3r4T5y6U7",
                "status": "active",
                "current_period_start": 1736935200,
                "current_period_end": 1768471200,
                "cancel_at_period_end": False,
                "metadata": {"user_id": "u1", "plan_type": "annual"},
                "price_id": "price_annual",
            }
        }


class _EventBase(BaseModel):
    event_id: str = Field(..., description="Processor event ID")
    event_type: str = Field(..., description="Processor event type string")
    created: Optional[datetime] = Field(None, description="When the processor created the event")


class CheckoutCompletedEvent(_EventBase):
    """A checkout session finished (subscription or one-time payment mode)."""

    kind: Literal["checkout_completed"] = "checkout_completed"
    session_id: str = Field(..., description="Checkout session ID")
    mode: Optional[str] = Field(None, description="'subscription' or 'payment'")
    user_id: Optional[str] = None
    plan_type: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_status: Optional[str] = None


class PaymentSucceededEvent(_EventBase):
    """A one-time payment intent succeeded."""

    kind: Literal["payment_succeeded"] = "payment_succeeded"
    payment_intent_id: str = Field(..., description="Payment intent ID")
    user_id: Optional[str] = None
    plan_type: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None


class _InvoiceEvent(_EventBase):
    invoice_id: str = Field(..., description="Invoice ID")
    subscription_id: Optional[str] = Field(None, description="Linked subscription, if any")
    customer_id: Optional[str] = None
    period_start: Optional[int] = Field(None, description="Invoice period start (Unix seconds)")
    period_end: Optional[int] = Field(None, description="Invoice period end (Unix seconds)")
    billing_reason: Optional[str] = None


class InvoicePaidEvent(_InvoiceEvent):
    """A subscription invoice was paid."""

    kind: Literal["invoice_paid"] = "invoice_paid"


class InvoicePaymentFailedEvent(_InvoiceEvent):
    """A subscription invoice payment attempt failed."""

    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    attempt_count: Optional[int] = None


class SubscriptionUpdatedEvent(_EventBase):
    """The processor changed a subscription."""

    kind: Literal["subscription_updated"] = "subscription_updated"
    subscription: ProcessorSubscription


class SubscriptionDeletedEvent(_EventBase):
    """The processor ended a subscription."""

    kind: Literal["subscription_deleted"] = "subscription_deleted"
    subscription: ProcessorSubscription


class UnhandledEvent(_EventBase):
    """Any event type the engine does not act on."""

    kind: Literal["unhandled"] = "unhandled"


LifecycleEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        PaymentSucceededEvent,
        InvoicePaidEvent,
        InvoicePaymentFailedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        UnhandledEvent,
    ],
    Field(discriminator="kind"),
]


def decode_event(payload: Mapping) -> LifecycleEvent:
    """Decode a verified Stripe event payload into a lifecycle event.

    Args:
        payload: Parsed event JSON (``{"id", "type", "created", "data": {"object": ...}}``)

    Returns:
        One of the lifecycle event variants

    Raises:
        WebhookVerificationError: If the envelope lacks an id, type or data object,
            or a field the engine reads has the wrong type
    """
    if not isinstance(payload, Mapping):
        raise WebhookVerificationError("Malformed event payload: expected a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise WebhookVerificationError("Malformed event payload: missing id or type")

    envelope = {
        "event_id": event_id,
        "event_type": event_type,
        "created": _timestamp(payload.get("created")),
    }

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return UnhandledEvent(**envelope)

    data = payload.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise WebhookVerificationError(
            f"Malformed event payload: {event_type} carries no data object"
        )
    try:
        return decoder(obj, envelope)
    except ValidationError as e:
        raise WebhookVerificationError(
            f"Malformed event payload: {event_type} has invalid fields ({e.error_count()} errors)"
        ) from e


def _decode_checkout(obj: Mapping, envelope: dict) -> CheckoutCompletedEvent:
    metadata = _metadata(obj)
    return CheckoutCompletedEvent(
        **envelope,
        session_id=obj.get("id") or "",
        mode=obj.get("mode"),
        user_id=_metadata_value(metadata, "user_id"),
        plan_type=_metadata_value(metadata, "plan_type"),
        customer_id=_expandable_id(obj.get("customer")),
        subscription_id=_expandable_id(obj.get("subscription")),
        payment_status=obj.get("payment_status"),
    )


def _decode_payment(obj: Mapping, envelope: dict) -> PaymentSucceededEvent:
    metadata = _metadata(obj)
    return PaymentSucceededEvent(
        **envelope,
        payment_intent_id=obj.get("id") or "",
        user_id=_metadata_value(metadata, "user_id"),
        plan_type=_metadata_value(metadata, "plan_type"),
        customer_id=_expandable_id(obj.get("customer")),
        amount=obj.get("amount"),
        currency=obj.get("currency"),
    )


def _invoice_fields(obj: Mapping) -> dict[str, Any]:
    return {
        "invoice_id": obj.get("id") or "",
        "subscription_id": _invoice_subscription_id(obj),
        "customer_id": _expandable_id(obj.get("customer")),
        "period_start": obj.get("period_start"),
        "period_end": obj.get("period_end"),
        "billing_reason": obj.get("billing_reason"),
    }


def _decode_invoice_paid(obj: Mapping, envelope: dict) -> InvoicePaidEvent:
    return InvoicePaidEvent(**envelope, **_invoice_fields(obj))


def _decode_invoice_failed(obj: Mapping, envelope: dict) -> InvoicePaymentFailedEvent:
    return InvoicePaymentFailedEvent(
        **envelope, **_invoice_fields(obj), attempt_count=obj.get("attempt_count")
    )


def _decode_subscription_updated(obj: Mapping, envelope: dict) -> SubscriptionUpdatedEvent:
    return SubscriptionUpdatedEvent(**envelope, subscription=ProcessorSubscription.from_stripe(obj))


def _decode_subscription_deleted(obj: Mapping, envelope: dict) -> SubscriptionDeletedEvent:
    return SubscriptionDeletedEvent(**envelope, subscription=ProcessorSubscription.from_stripe(obj))


_DECODERS = {
    CHECKOUT_SESSION_COMPLETED: _decode_checkout,
    PAYMENT_INTENT_SUCCEEDED: _decode_payment,
    INVOICE_PAYMENT_SUCCEEDED: _decode_invoice_paid,
    INVOICE_PAID: _decode_invoice_paid,
    INVOICE_PAYMENT_FAILED: _decode_invoice_failed,
    SUBSCRIPTION_UPDATED: _decode_subscription_updated,
    SUBSCRIPTION_DELETED: _decode_subscription_deleted,
}


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _metadata(obj: Mapping) -> dict[str, str]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        return {}
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _metadata_value(metadata: Mapping, key: str) -> Optional[str]:
    value = metadata.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _expandable_id(value: Any) -> Optional[str]:
    """Return the ID of a field that is either a bare ID or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id") or None
    return None


def _first_item(obj: Mapping) -> Optional[Mapping]:
    items = obj.get("items")
    if not isinstance(items, Mapping):
        return None
    data = items.get("data")
    if not data:
        return None
    first = data[0]
    return first if isinstance(first, Mapping) else None


def _invoice_subscription_id(obj: Mapping) -> Optional[str]:
    subscription_id = _expandable_id(obj.get("subscription"))
    if subscription_id:
        return subscription_id

    # API versions from 2025 move the link under parent.subscription_details
    parent = obj.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return _expandable_id(details.get("subscription"))
    return None


class SubscriptionChangeNotification(BaseModel):
    """Message published after a stored subscription is created or changed."""

    version: str = Field(default="1.0", description="Message schema version")
    user_id: str = Field(..., description="Local user identifier")
    action: str = Field(..., description="Action that produced the change")
    outcome: str = Field(..., description="created or updated")
    plan_type: str
    status: str
    previous_status: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    stripe_subscription_id: Optional[str] = None
    event_id: Optional[str] = Field(None, description="Processor event that caused the change")
    event_time_millis: int = Field(..., description="Publication time in milliseconds since epoch")

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "user_id": "u1",
                "action": "invoice_payment_failed",
                "outcome": "updated",
                "plan_type": "monthly",
                "status": "past_due",
                "previous_status": "active",
                "current_period_start": "2025-01-15T10:00:00Z",
                "current_period_end": "2025-02-15T10:00:00Z",
                "cancel_at_period_end": False,
                "stripe_subscription_id": "sub_1PqR2sT3uV4wX5yZ",
                "event_id": "evt_1PqR2sT3uV4wX5yZ",
                "event_time_millis": 1736935202000,
            }
        }
