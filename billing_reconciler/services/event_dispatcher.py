"""Subscription change publishing to Google Cloud Pub/Sub.

Responsibilities:
- Format SubscriptionChangeNotification messages from applied updates
- Publish to the configured Pub/Sub topic
- Manage Pub/Sub client lifecycle

Publication is best effort: a failure is logged and reported as False, it
never fails the notification that caused the change.
"""

import time
from threading import RLock
from typing import Optional

from google.cloud import pubsub_v1

from billing_reconciler.logging_config import get_logger
from billing_reconciler.models.billing_config import PubSubConfig
from billing_reconciler.models.events import SubscriptionChangeNotification

logger = get_logger(__name__)

PUBLISH_TIMEOUT_SECONDS = 5.0


class EventDispatcher:
    """Dispatches subscription change notifications to Google Cloud Pub/Sub.

    Thread-safe. Disabled unless ``pubsub.enabled`` is set and the publisher
    client initializes.
    """

    def __init__(self, settings: Optional[PubSubConfig] = None):
        """Initialize event dispatcher.

        Args:
            settings: Pub/Sub settings (dispatcher stays disabled when None)
        """
        self._lock = RLock()
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._settings = settings or PubSubConfig()
        self._enabled = False

        self._initialize()

    def _initialize(self) -> None:
        """Init Pub/Sub publisher from settings."""
        self._enabled = self._settings.enabled
        if not self._enabled:
            logger.info("event_dispatcher_disabled", message="Change notifications are disabled in config")
            return

        project_id = self._settings.project_id
        topic_name = self._settings.topic
        if not project_id:
            logger.error("event_dispatcher_init_failed", error="pubsub.project_id is not set")
            self._enabled = False
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(project_id, topic_name)
            self._ensure_topic_exists()

            logger.info(
                "event_dispatcher_initialized",
                project_id=project_id,
                topic=topic_name,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "event_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._publisher = None
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        """Ensure the Pub/Sub topic exists, create it if it doesn't."""
        if not self._publisher or not self._topic_path:
            return

        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_enabled(self) -> bool:
        """Check if event dispatcher is enabled.

        Returns:
            True if change notifications are enabled and client is initialized
        """
        return self._enabled and self._publisher is not None

    def publish_change(self, notification: SubscriptionChangeNotification) -> bool:
        """Publish a subscription change.

        Args:
            notification: Change to publish

        Returns:
            True if published successfully, False otherwise
        """
        if not self.is_enabled():
            logger.debug("event_dispatcher_disabled", message="Skipping change publication")
            return False

        with self._lock:
            try:
                message_id = self._publish_notification(notification)
            except Exception as e:
                logger.error(
                    "subscription_change_publish_failed",
                    user_id=notification.user_id,
                    action=notification.action,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

        logger.info(
            "subscription_change_published",
            user_id=notification.user_id,
            action=notification.action,
            outcome=notification.outcome,
            status=notification.status,
            message_id=message_id,
        )
        return True

    def _publish_notification(self, notification: SubscriptionChangeNotification) -> str:
        """Publish one message and wait for the server to acknowledge it.

        Raises:
            GoogleAPIError: If publication fails after the client's retries
        """
        if not self._publisher or not self._topic_path:
            raise RuntimeError("Publisher is not initialized")

        future = self._publisher.publish(
            self._topic_path,
            notification.model_dump_json().encode("utf-8"),
            # Attributes for subscriber-side filtering
            action=notification.action,
            status=notification.status,
        )
        return future.result(timeout=PUBLISH_TIMEOUT_SECONDS)

    def shutdown(self) -> None:
        """Shutdown the event dispatcher and close connections."""
        with self._lock:
            if self._publisher:
                logger.info("event_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None
                logger.info("event_dispatcher_shutdown_complete")


def now_millis() -> int:
    return int(time.time() * 1000)


_event_dispatcher: Optional[EventDispatcher] = None
_dispatcher_lock = RLock()


def get_event_dispatcher(settings: Optional[PubSubConfig] = None) -> EventDispatcher:
    """Get or create the singleton EventDispatcher instance.

    Args:
        settings: Pub/Sub settings (only used on first call)
    """
    global _event_dispatcher
    if _event_dispatcher is None:
        with _dispatcher_lock:
            if _event_dispatcher is None:
                _event_dispatcher = EventDispatcher(settings)
    return _event_dispatcher


def reset_event_dispatcher() -> None:
    """Reset the singleton EventDispatcher instance (for testing)."""
    global _event_dispatcher

    with _dispatcher_lock:
        if _event_dispatcher is not None:
            _event_dispatcher.shutdown()
            _event_dispatcher = None
