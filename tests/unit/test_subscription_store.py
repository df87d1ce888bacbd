"""Tests for SubscriptionStore - the atomic, idempotent subscription upsert."""

import random
from datetime import datetime, timedelta, timezone
from threading import Thread

import pytest

from billing_reconciler.errors import StorageError
from billing_reconciler.models import (
    PlanType,
    SubscriptionStatus,
    SubscriptionUpdate,
)
from billing_reconciler.repositories.subscription_store import (
    ApplyOutcome,
    SubscriptionNotFoundError,
    SubscriptionStore,
    get_subscription_store,
    reset_subscription_store,
)

UTC = timezone.utc
START = datetime(2025, 1, 15, 10, tzinfo=UTC)
END = datetime(2025, 2, 15, 10, tzinfo=UTC)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now=datetime(2025, 1, 15, 10, 0, 5, tzinfo=UTC)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    """Create a fresh SubscriptionStore instance for testing."""
    store = SubscriptionStore(clock=clock)
    yield store
    store.clear()


def make_update(**overrides):
    fields = dict(
        user_id="u1",
        plan_type=PlanType.MONTHLY,
        status=SubscriptionStatus.ACTIVE,
        stripe_subscription_id="sub_123",
        stripe_customer_id="cus_123",
        current_period_start=START,
        current_period_end=END,
        event_id="evt_1",
    )
    fields.update(overrides)
    return SubscriptionUpdate(**fields)


class TestInsert:
    """Test first write for a user."""

    def test_creates_record(self, store, clock):
        result = store.apply_update(make_update(), reason="checkout_completed")

        assert result.outcome == ApplyOutcome.CREATED
        assert result.changed
        assert result.record.created_at == clock.now
        assert result.record.cancel_at_period_end is False
        assert store.exists("u1")

    def test_requires_customer_id(self, store):
        with pytest.raises(StorageError):
            store.apply_update(make_update(stripe_customer_id=None))
        assert len(store) == 0

    def test_rejects_inverted_period(self, store):
        with pytest.raises(StorageError):
            store.apply_update(make_update(current_period_start=END, current_period_end=START))


class TestIdempotency:
    """Test that replays leave stored state untouched."""

    def test_identical_update_is_unchanged(self, store, clock):
        first = store.apply_update(make_update())
        clock.advance(minutes=5)

        second = store.apply_update(make_update(event_id="evt_2"))

        assert second.outcome == ApplyOutcome.UNCHANGED
        assert not second.changed
        assert second.record.updated_at == first.record.updated_at
        assert second.record.last_event_id == "evt_1"

    def test_redelivery_of_last_event_leaves_same_state(self, store, clock):
        updates = [
            make_update(),
            make_update(status=SubscriptionStatus.PAST_DUE, event_id="evt_2"),
            make_update(status=SubscriptionStatus.ACTIVE, event_id="evt_3"),
        ]
        for update in updates:
            clock.advance(seconds=1)
            store.apply_update(update)
        state = store.get_by_user("u1")

        clock.advance(hours=1)
        store.apply_update(updates[-1])

        assert store.get_by_user("u1") == state

    def test_unchanged_newer_event_is_recorded(self, store, clock):
        first = store.apply_update(make_update(event_created_at=START))
        clock.advance(minutes=5)

        second = store.apply_update(make_update(event_id="evt_2", event_created_at=START + timedelta(minutes=20)))

        assert second.outcome == ApplyOutcome.UNCHANGED
        assert not second.changed
        assert second.record.updated_at == first.record.updated_at
        assert second.record.last_event_id == "evt_2"
        assert store.get_by_user("u1").last_event_at == START + timedelta(minutes=20)

    def test_unchanged_older_event_does_not_rewind(self, store):
        store.apply_update(make_update(event_created_at=START + timedelta(minutes=20)))

        store.apply_update(make_update(event_id="evt_2", event_created_at=START))

        record = store.get_by_user("u1")
        assert record.last_event_id == "evt_1"
        assert record.last_event_at == START + timedelta(minutes=20)


class TestEventOrdering:
    """Test enforce_ordering on apply_update."""

    def test_older_event_is_skipped(self, store):
        store.apply_update(
            make_update(status=SubscriptionStatus.PAST_DUE, event_created_at=START + timedelta(minutes=10))
        )

        result = store.apply_update(
            make_update(event_id="evt_old", event_created_at=START),
            reason="invoice_payment_succeeded",
            enforce_ordering=True,
        )

        assert result.outcome == ApplyOutcome.STALE
        assert not result.changed
        assert result.record.status == SubscriptionStatus.PAST_DUE
        assert store.get_by_user("u1").last_event_id == "evt_1"

    def test_older_event_applies_without_enforcement(self, store):
        store.apply_update(
            make_update(status=SubscriptionStatus.PAST_DUE, event_created_at=START + timedelta(minutes=10))
        )

        result = store.apply_update(make_update(event_id="evt_old", event_created_at=START))

        assert result.outcome == ApplyOutcome.UPDATED
        assert result.record.status == SubscriptionStatus.ACTIVE

    def test_updates_without_event_time_are_never_stale(self, store):
        store.apply_update(make_update(event_created_at=START))

        result = store.apply_update(
            make_update(status=SubscriptionStatus.PAST_DUE, event_id="evt_2"), enforce_ordering=True
        )

        assert result.outcome == ApplyOutcome.UPDATED
        assert result.record.last_event_id == "evt_2"
        assert result.record.last_event_at == START


class TestUpdate:
    """Test updates to an existing record."""

    def test_status_change(self, store, clock):
        store.apply_update(make_update())
        clock.advance(days=1)

        result = store.apply_update(make_update(status=SubscriptionStatus.PAST_DUE, event_id="evt_2"))

        assert result.outcome == ApplyOutcome.UPDATED
        assert result.previous.status == SubscriptionStatus.ACTIVE
        assert result.record.status == SubscriptionStatus.PAST_DUE
        assert result.record.updated_at == clock.now
        assert result.record.created_at < result.record.updated_at
        assert result.record.last_event_id == "evt_2"

    def test_absent_identifiers_are_preserved(self, store):
        store.apply_update(make_update(cancel_at_period_end=True))

        result = store.apply_update(
            make_update(
                stripe_subscription_id=None,
                stripe_customer_id=None,
                cancel_at_period_end=None,
                plan_type=PlanType.ANNUAL,
            )
        )

        assert result.record.stripe_subscription_id == "sub_123"
        assert result.record.stripe_customer_id == "cus_123"
        assert result.record.cancel_at_period_end is True
        assert result.record.plan_type == PlanType.ANNUAL

    def test_latest_arrival_wins(self, store):
        """Without ordering enforcement an older period can replace a newer one."""
        later_end = END + timedelta(days=31)
        store.apply_update(make_update(current_period_start=END, current_period_end=later_end))

        result = store.apply_update(make_update())

        assert result.record.current_period_end == END

    def test_returned_records_are_copies(self, store):
        store.apply_update(make_update())

        record = store.get_by_user("u1")
        record.status = SubscriptionStatus.EXPIRED

        assert store.get_by_user("u1").status == SubscriptionStatus.ACTIVE


class TestQueries:
    """Test lookups and statistics."""

    def test_get_by_user_missing_raises(self, store):
        with pytest.raises(SubscriptionNotFoundError):
            store.get_by_user("nobody")

    def test_find_by_user_missing_returns_none(self, store):
        assert store.find_by_user("nobody") is None

    def test_statistics(self, store):
        store.apply_update(make_update())
        store.apply_update(make_update(user_id="u2", plan_type=PlanType.TRIAL, stripe_customer_id="cus_2"))
        store.apply_update(
            make_update(user_id="u3", status=SubscriptionStatus.CANCELLED, stripe_customer_id="cus_2")
        )

        stats = store.get_statistics()

        assert stats["total"] == 3
        assert stats["active"] == 2
        assert stats["cancelled"] == 1
        assert stats["trial"] == 1
        assert stats["paid"] == 1
        assert stats["unique_customers"] == 2


class TestConcurrency:
    """Test concurrent upserts for one user."""

    def test_concurrent_updates_leave_one_consistent_record(self, store):
        statuses = [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE] * 20
        errors = []

        def apply(status):
            try:
                store.apply_update(make_update(status=status))
            except Exception as e:
                errors.append(e)

        threads = [Thread(target=apply, args=(status,)) for status in statuses]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert store.count() == 1
        record = store.get_by_user("u1")
        assert record.current_period_end == END
        assert record.stripe_customer_id == "cus_123"

    def test_concurrent_out_of_order_events_settle_on_newest(self, store):
        statuses = [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE]
        updates = [
            make_update(
                status=statuses[i % 2],
                event_id=f"evt_{i}",
                event_created_at=START + timedelta(seconds=i),
            )
            for i in range(40)
        ]
        newest = updates[-1]
        random.Random(7).shuffle(updates)
        errors = []

        def apply(update):
            try:
                store.apply_update(update, enforce_ordering=True)
            except Exception as e:
                errors.append(e)

        threads = [Thread(target=apply, args=(update,)) for update in updates]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        record = store.get_by_user("u1")
        assert record.status == newest.status
        assert record.last_event_id == newest.event_id
        assert record.last_event_at == newest.event_created_at


class TestGlobalStore:
    """Test global store singleton."""

    def test_singleton(self):
        assert get_subscription_store() is get_subscription_store()

    def test_reset_clears(self):
        get_subscription_store().apply_update(make_update(user_id="global-user"))
        reset_subscription_store()
        assert get_subscription_store().count() == 0
