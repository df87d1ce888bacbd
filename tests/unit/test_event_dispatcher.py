"""Unit tests for EventDispatcher service."""
import json
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from billing_reconciler.models import PubSubConfig, SubscriptionChangeNotification
from billing_reconciler.services.event_dispatcher import (
    EventDispatcher,
    get_event_dispatcher,
    reset_event_dispatcher,
)

TOPIC_PATH = "projects/billing-local/topics/subscription-changes"
ENABLED = PubSubConfig(enabled=True, project_id="billing-local", topic="subscription-changes")


def make_notification(**overrides):
    fields = dict(
        user_id="u1",
        action="invoice_payment_failed",
        outcome="updated",
        plan_type="monthly",
        status="past_due",
        previous_status="active",
        current_period_start=datetime(2025, 1, 15, 10, tzinfo=timezone.utc),
        current_period_end=datetime(2025, 2, 15, 10, tzinfo=timezone.utc),
        stripe_subscription_id="sub_123",
        event_id="evt_1",
        event_time_millis=1736935202000,
    )
    fields.update(overrides)
    return SubscriptionChangeNotification(**fields)


def mock_publisher(message_id="message-id-1"):
    publisher = Mock()
    publisher.topic_path.return_value = TOPIC_PATH
    future = Mock()
    future.result.return_value = message_id
    publisher.publish.return_value = future
    return publisher


class TestEventDispatcherInitialization:
    """Test EventDispatcher initialization and configuration."""

    def setup_method(self):
        """Reset singleton before each test."""
        reset_event_dispatcher()

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_dispatcher_initializes_when_enabled(self, mock_publisher_class):
        """Test dispatcher initializes when change notifications are enabled."""
        mock_publisher_class.return_value = mock_publisher()

        dispatcher = EventDispatcher(ENABLED)

        assert dispatcher.is_enabled()
        mock_publisher_class.assert_called_once()

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_disabled_by_default(self, mock_publisher_class):
        dispatcher = EventDispatcher()

        assert not dispatcher.is_enabled()
        mock_publisher_class.assert_not_called()

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_missing_project_disables(self, mock_publisher_class):
        dispatcher = EventDispatcher(PubSubConfig(enabled=True))

        assert not dispatcher.is_enabled()
        mock_publisher_class.assert_not_called()

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_creates_missing_topic(self, mock_publisher_class):
        publisher = mock_publisher()
        publisher.get_topic.side_effect = Exception("404 Topic not found")
        mock_publisher_class.return_value = publisher

        dispatcher = EventDispatcher(ENABLED)

        assert dispatcher.is_enabled()
        publisher.create_topic.assert_called_once_with(request={"name": TOPIC_PATH})

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_init_failure_disables(self, mock_publisher_class):
        mock_publisher_class.side_effect = Exception("no credentials")

        dispatcher = EventDispatcher(ENABLED)

        assert not dispatcher.is_enabled()

    def test_singleton_pattern(self):
        """Test that get_event_dispatcher returns the same instance."""
        dispatcher1 = get_event_dispatcher()
        dispatcher2 = get_event_dispatcher()

        assert dispatcher1 is dispatcher2


class TestChangePublishing:
    """Test change publishing functionality."""

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_change_success(self, mock_publisher_class):
        publisher = mock_publisher()
        mock_publisher_class.return_value = publisher
        dispatcher = EventDispatcher(ENABLED)

        result = dispatcher.publish_change(make_notification())

        assert result is True
        publisher.publish.assert_called_once()
        args, kwargs = publisher.publish.call_args
        assert args[0] == TOPIC_PATH
        message = json.loads(args[1].decode("utf-8"))
        assert message["user_id"] == "u1"
        assert message["status"] == "past_due"
        assert kwargs == {"action": "invoice_payment_failed", "status": "past_due"}

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_when_disabled(self, mock_publisher_class):
        """Test publishing when dispatcher is disabled returns False."""
        publisher = mock_publisher()
        mock_publisher_class.return_value = publisher
        dispatcher = EventDispatcher(ENABLED)
        dispatcher._enabled = False

        assert dispatcher.publish_change(make_notification()) is False
        publisher.publish.assert_not_called()

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_handles_exceptions(self, mock_publisher_class):
        """Test that publishing handles exceptions gracefully."""
        publisher = mock_publisher()
        publisher.publish.return_value.result.side_effect = Exception("Pub/Sub error")
        mock_publisher_class.return_value = publisher
        dispatcher = EventDispatcher(ENABLED)

        assert dispatcher.publish_change(make_notification()) is False


class TestEventDispatcherShutdown:
    """Test dispatcher shutdown."""

    @patch('billing_reconciler.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_shutdown_cleans_up_resources(self, mock_publisher_class):
        mock_publisher_class.return_value = mock_publisher()
        dispatcher = EventDispatcher(ENABLED)

        dispatcher.shutdown()

        assert not dispatcher.is_enabled()
        assert dispatcher._topic_path is None
