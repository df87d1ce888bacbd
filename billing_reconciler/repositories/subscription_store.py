"""Subscription store - authoritative per-user subscription state.

Every write goes through apply_update, a single atomic and idempotent upsert
keyed by user_id. Readers always receive copies, never the stored objects.
"""

import threading
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ValidationError

from billing_reconciler.errors import StorageError
from billing_reconciler.logging_config import get_logger
from billing_reconciler.models.subscription import (
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionUpdate,
)
from billing_reconciler.state_logger import (
    log_period_change,
    log_plan_change,
    log_subscription_created,
    log_subscription_status_change,
)

logger = get_logger(__name__)

# Fields compared to decide whether an update changes anything
_STATE_FIELDS = (
    "plan_type",
    "status",
    "stripe_subscription_id",
    "stripe_customer_id",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
)


class SubscriptionNotFoundError(Exception):
    """Raised when a user has no stored subscription."""

    pass


class ApplyOutcome(str, Enum):
    """What an upsert did to the stored record."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"


class ApplyResult(BaseModel):
    """Result of applying one normalized update."""

    outcome: ApplyOutcome
    record: SubscriptionRecord
    previous: Optional[SubscriptionRecord] = None

    @property
    def changed(self) -> bool:
        return self.outcome in (ApplyOutcome.CREATED, ApplyOutcome.UPDATED)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_older(update: SubscriptionUpdate, existing: SubscriptionRecord) -> bool:
    """Whether the update's event predates the last event recorded on the record."""
    if update.event_created_at is None or existing.last_event_at is None:
        return False
    return update.event_created_at < existing.last_event_at


def _is_newer(update: SubscriptionUpdate, existing: SubscriptionRecord) -> bool:
    if update.event_created_at is None:
        return False
    return existing.last_event_at is None or update.event_created_at > existing.last_event_at


class SubscriptionStore:
    """In-memory storage for subscription records, one per user.

    Thread-safe: apply_update holds the store lock for the whole
    read-compare-write, so concurrent notifications for the same user are
    serialized and never observe a partially applied update.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """Initialize subscription store with empty storage.

        Args:
            clock: Source of mutation timestamps (defaults to current UTC time)
        """
        self._records: Dict[str, SubscriptionRecord] = {}
        self._lock = threading.RLock()
        self._clock = clock or _utc_now

    def apply_update(
        self,
        update: SubscriptionUpdate,
        reason: Optional[str] = None,
        enforce_ordering: bool = False,
    ) -> ApplyResult:
        """Upsert a user's subscription from a normalized update.

        Identifiers and cancel_at_period_end that the update leaves unset keep
        their stored values. Applying an update that matches the stored state
        leaves the record (including updated_at) untouched, though a newer
        event timestamp is still recorded in last_event_at.

        With enforce_ordering, an update whose event is older than the last
        recorded one is not applied (outcome STALE). The comparison happens
        under the store lock, together with the write.

        Args:
            update: Normalized update tuple
            reason: Action that produced the update, for state change logs
            enforce_ordering: Skip updates from events older than last_event_at

        Returns:
            ApplyResult describing the outcome and the stored record

        Raises:
            StorageError: If the update cannot be applied
        """
        if update.current_period_start >= update.current_period_end:
            raise StorageError(
                f"Refusing to store period for user {update.user_id}: "
                f"start {update.current_period_start.isoformat()} is not before "
                f"end {update.current_period_end.isoformat()}"
            )

        with self._lock:
            existing = self._records.get(update.user_id)
            try:
                if existing is None:
                    return self._insert(update, reason)
                if enforce_ordering and _is_older(update, existing):
                    return self._skip_stale(existing, update, reason)
                return self._update(existing, update, reason)
            except ValidationError as e:
                raise StorageError(f"Invalid subscription state for user {update.user_id}: {e}")

    def _insert(self, update: SubscriptionUpdate, reason: Optional[str]) -> ApplyResult:
        if not update.stripe_customer_id:
            raise StorageError(
                f"Cannot create subscription for user {update.user_id} without a customer ID"
            )

        now = self._clock()
        record = SubscriptionRecord(
            user_id=update.user_id,
            plan_type=update.plan_type,
            status=update.status,
            stripe_subscription_id=update.stripe_subscription_id,
            stripe_customer_id=update.stripe_customer_id,
            current_period_start=update.current_period_start,
            current_period_end=update.current_period_end,
            cancel_at_period_end=bool(update.cancel_at_period_end),
            created_at=now,
            updated_at=now,
            last_event_id=update.event_id,
            last_event_at=update.event_created_at,
        )
        self._records[record.user_id] = record

        log_subscription_created(
            user_id=record.user_id,
            plan_type=record.plan_type.value,
            status=record.status.value,
            period_end=record.current_period_end,
            reason=reason,
            event_id=update.event_id,
        )
        return ApplyResult(outcome=ApplyOutcome.CREATED, record=record.model_copy())

    def _update(
        self, existing: SubscriptionRecord, update: SubscriptionUpdate, reason: Optional[str]
    ) -> ApplyResult:
        changes = {
            "plan_type": update.plan_type,
            "status": update.status,
            "stripe_subscription_id": update.stripe_subscription_id or existing.stripe_subscription_id,
            "stripe_customer_id": update.stripe_customer_id or existing.stripe_customer_id,
            "current_period_start": update.current_period_start,
            "current_period_end": update.current_period_end,
            "cancel_at_period_end": (
                existing.cancel_at_period_end
                if update.cancel_at_period_end is None
                else update.cancel_at_period_end
            ),
        }

        if all(getattr(existing, name) == changes[name] for name in _STATE_FIELDS):
            logger.debug("subscription_unchanged", user_id=existing.user_id, reason=reason)
            record = existing
            if _is_newer(update, existing):
                record = existing.model_copy(
                    update={"last_event_id": update.event_id, "last_event_at": update.event_created_at}
                )
                self._records[record.user_id] = record
            return ApplyResult(
                outcome=ApplyOutcome.UNCHANGED,
                record=record.model_copy(),
                previous=existing.model_copy(),
            )

        changes["updated_at"] = self._clock()
        if update.event_id is not None:
            changes["last_event_id"] = update.event_id
        if update.event_created_at is not None:
            changes["last_event_at"] = update.event_created_at
        record = SubscriptionRecord.model_validate({**existing.model_dump(), **changes})
        self._records[record.user_id] = record

        context = {"event_id": update.event_id}
        if existing.status != record.status:
            log_subscription_status_change(
                user_id=record.user_id,
                old_status=existing.status.value,
                new_status=record.status.value,
                reason=reason,
                **context,
            )
        if existing.plan_type != record.plan_type:
            log_plan_change(
                user_id=record.user_id,
                old_plan=existing.plan_type.value,
                new_plan=record.plan_type.value,
                reason=reason,
                **context,
            )
        if existing.current_period_end != record.current_period_end:
            log_period_change(
                user_id=record.user_id,
                old_end=existing.current_period_end,
                new_end=record.current_period_end,
                reason=reason,
                **context,
            )

        return ApplyResult(
            outcome=ApplyOutcome.UPDATED,
            record=record.model_copy(),
            previous=existing.model_copy(),
        )

    def _skip_stale(
        self, existing: SubscriptionRecord, update: SubscriptionUpdate, reason: Optional[str]
    ) -> ApplyResult:
        logger.warning(
            "stale_event_skipped",
            user_id=existing.user_id,
            reason=reason,
            event_id=update.event_id,
            event_created_at=update.event_created_at.isoformat(),
            last_event_id=existing.last_event_id,
            last_event_at=existing.last_event_at.isoformat(),
        )
        return ApplyResult(
            outcome=ApplyOutcome.STALE,
            record=existing.model_copy(),
            previous=existing.model_copy(),
        )

    def get_by_user(self, user_id: str) -> SubscriptionRecord:
        """Get a user's subscription.

        Raises:
            SubscriptionNotFoundError: If the user has no subscription
        """
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                raise SubscriptionNotFoundError(f"Subscription not found for user: {user_id}")
            return record.model_copy()

    def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Find a user's subscription (returns None if not found)."""
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    def get_all(self) -> List[SubscriptionRecord]:
        with self._lock:
            return [r.model_copy() for r in self._records.values()]

    def exists(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._records

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        """Clear all subscriptions from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._records.clear()

    def get_statistics(self) -> Dict[str, int]:
        """Get subscription store statistics.

        Returns:
            Dictionary with statistics:
            - total: Number of stored subscriptions
            - active / past_due / cancelled / expired: Count per status
            - trial: Count on the trial plan
            - paid: Active subscriptions on a paid plan
            - unique_customers: Distinct processor customers
        """
        with self._lock:
            records = list(self._records.values())
            return {
                "total": len(records),
                "active": sum(1 for r in records if r.status == SubscriptionStatus.ACTIVE),
                "past_due": sum(1 for r in records if r.status == SubscriptionStatus.PAST_DUE),
                "cancelled": sum(1 for r in records if r.status == SubscriptionStatus.CANCELLED),
                "expired": sum(1 for r in records if r.status == SubscriptionStatus.EXPIRED),
                "trial": sum(1 for r in records if r.plan_type == PlanType.TRIAL),
                "paid": sum(
                    1
                    for r in records
                    if r.status == SubscriptionStatus.ACTIVE and r.plan_type != PlanType.TRIAL
                ),
                "unique_customers": len({r.stripe_customer_id for r in records if r.stripe_customer_id}),
            }

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, user_id: str) -> bool:
        return self.exists(user_id)

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data)."""
    store = get_subscription_store()
    store.clear()
