"""Exceptions raised while reconciling processor notifications."""


class ReconciliationError(Exception):
    """Base exception for failures that make a notification unprocessable."""

    pass


class InvalidPlanTypeError(ReconciliationError):
    """Raised when a plan type is not one of the known plans."""

    def __init__(self, plan_type):
        self.plan_type = plan_type
        super().__init__(f"Invalid plan type: {plan_type}")


class InvalidPeriodError(ReconciliationError):
    """Raised when a billing period does not satisfy start < end."""

    pass


class ProcessorLookupError(ReconciliationError):
    """Raised when the payment processor cannot return a requested object."""

    pass


class StorageError(ReconciliationError):
    """Raised when the subscription upsert cannot be applied."""

    pass


class WebhookVerificationError(ReconciliationError):
    """Raised when a webhook signature is missing or invalid, or the body is unparseable."""

    pass
