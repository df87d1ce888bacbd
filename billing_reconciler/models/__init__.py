"""Pydantic models for processor events, stored subscriptions, and API responses."""

# Configuration models
from .billing_config import (
    BillingConfig,
    PubSubConfig,
)

# Subscription models
from .subscription import (
    PlanType,
    SubscriptionStatus,
    PeriodSource,
    PeriodCalculation,
    SubscriptionUpdate,
    SubscriptionRecord,
)

# Processor event models
from .events import (
    ProcessorSubscription,
    CheckoutCompletedEvent,
    PaymentSucceededEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    SubscriptionUpdatedEvent,
    SubscriptionDeletedEvent,
    UnhandledEvent,
    SubscriptionChangeNotification,
    LifecycleEvent,
    decode_event,
)

# API response models
from .api_response import (
    WebhookResponse,
    ErrorResponse,
    PlanFeatures,
    AccessResponse,
    StatsResponse,
)

__all__ = [
    # Configuration
    "BillingConfig",
    "PubSubConfig",
    # Subscription
    "PlanType",
    "SubscriptionStatus",
    "PeriodSource",
    "PeriodCalculation",
    "SubscriptionUpdate",
    "SubscriptionRecord",
    # Events
    "ProcessorSubscription",
    "CheckoutCompletedEvent",
    "PaymentSucceededEvent",
    "InvoicePaidEvent",
    "InvoicePaymentFailedEvent",
    "SubscriptionUpdatedEvent",
    "SubscriptionDeletedEvent",
    "UnhandledEvent",
    "SubscriptionChangeNotification",
    "LifecycleEvent",
    "decode_event",
    # API responses
    "WebhookResponse",
    "ErrorResponse",
    "PlanFeatures",
    "AccessResponse",
    "StatsResponse",
]
