"""Lifecycle event publishing to Google Cloud Pub/Sub.

Responsibilities:
- Serialize appended lifecycle events to JSON
- Publish them to the configured topic with filterable attributes
- Manage the Pub/Sub client lifecycle

Publishing never affects the event log: failures are logged and reported
as ``False``.
"""

from threading import RLock
from typing import Optional

from google.cloud import pubsub_v1

from storefront_billing.logging_config import get_logger
from storefront_billing.models.events import LifecycleEvent
from storefront_billing.models.settings import PubSubConfig

logger = get_logger(__name__)

PUBLISH_TIMEOUT_SECONDS = 5.0


class EventDispatcher:
    """Publishes lifecycle events to a Pub/Sub topic.

    Args:
        config: Pub/Sub settings; publishing is disabled unless ``config.enabled``
    """

    def __init__(self, config: Optional[PubSubConfig] = None):
        self._lock = RLock()
        self._config = config or PubSubConfig()
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._enabled = self._config.enabled

        self._initialize()

    def _initialize(self) -> None:
        """Create the publisher and make sure the topic exists."""
        if not self._enabled:
            logger.info("event_dispatcher_disabled", message="Lifecycle event publishing is disabled in config")
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(self._config.project_id, self._config.topic)
            self._ensure_topic_exists()

            logger.info(
                "event_dispatcher_initialized",
                project_id=self._config.project_id,
                topic=self._config.topic,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "event_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        if not self._publisher or not self._topic_path:
            return
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_enabled(self) -> bool:
        """True when publishing is enabled and the client is initialized."""
        return self._enabled and self._publisher is not None

    def publish_lifecycle_event(self, event: LifecycleEvent) -> bool:
        """Publish one lifecycle event.

        Args:
            event: Event as stored in the event log

        Returns:
            True if published successfully, False otherwise
        """
        if not self.is_enabled():
            logger.debug("event_dispatcher_disabled", message="Skipping event publication")
            return False

        with self._lock:
            try:
                data = event.model_dump_json().encode("utf-8")
                future = self._publisher.publish(
                    self._topic_path,
                    data,
                    event_type=event.event_type,
                    subscription_id=event.subscription_id,
                    store_id=event.store_id,
                    version=str(event.version),
                )
                message_id = future.result(timeout=PUBLISH_TIMEOUT_SECONDS)
                logger.info(
                    "lifecycle_event_published",
                    message_id=message_id,
                    event_type=event.event_type,
                    subscription_id=event.subscription_id,
                    version=event.version,
                )
                return True
            except Exception as e:
                logger.error(
                    "lifecycle_event_publish_failed",
                    event_type=event.event_type,
                    subscription_id=event.subscription_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

    def shutdown(self) -> None:
        """Drop the publisher client."""
        with self._lock:
            if self._publisher:
                logger.info("event_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None
                logger.info("event_dispatcher_shutdown_complete")
