"""Unit tests for EventDispatcher service."""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from storefront_billing.models import LifecycleEvent, PubSubConfig
from storefront_billing.models.events import CreatedPayload
from storefront_billing.services.event_dispatcher import EventDispatcher


TOPIC_PATH = "projects/storefront-local/topics/subscription-lifecycle"


@pytest.fixture
def event():
    return LifecycleEvent(
        id="e1",
        subscription_id="sub-1",
        store_id="store-1",
        event_type="created",
        version=1,
        timestamp=datetime(2026, 10, 17, tzinfo=timezone.utc),
        payload=CreatedPayload(plan_type="enterprise"),
    )


def _publisher(message_id="message-id-23"):
    publisher = Mock()
    publisher.topic_path.return_value = TOPIC_PATH
    future = Mock()
    future.result.return_value = message_id
    publisher.publish.return_value = future
    return publisher


class TestEventDispatcherInitialization:
    """Test EventDispatcher initialization and configuration."""

    def test_disabled_by_default(self):
        dispatcher = EventDispatcher()
        assert not dispatcher.is_enabled()

    @patch("storefront_billing.services.event_dispatcher.pubsub_v1.PublisherClient")
    def test_dispatcher_initializes_when_enabled(self, mock_publisher_class):
        mock_publisher_class.return_value = _publisher()

        dispatcher = EventDispatcher(PubSubConfig(enabled=True))

        assert dispatcher.is_enabled()
        mock_publisher_class.assert_called_once()

    @patch("storefront_billing.services.event_dispatcher.pubsub_v1.PublisherClient")
    def test_missing_topic_is_created(self, mock_publisher_class):
        publisher = _publisher()
        publisher.get_topic.side_effect = Exception("not found")
        publisher.create_topic.return_value = Mock(name=TOPIC_PATH)
        mock_publisher_class.return_value = publisher

        EventDispatcher(PubSubConfig(enabled=True))

        publisher.create_topic.assert_called_once_with(request={"name": TOPIC_PATH})

    @patch("storefront_billing.services.event_dispatcher.pubsub_v1.PublisherClient")
    def test_init_failure_disables_publishing(self, mock_publisher_class):
        mock_publisher_class.side_effect = Exception("no credentials")

        dispatcher = EventDispatcher(PubSubConfig(enabled=True))

        assert not dispatcher.is_enabled()


class TestEventPublishing:
    """Test event publishing functionality."""

    @patch("storefront_billing.services.event_dispatcher.pubsub_v1.PublisherClient")
    def test_publish_lifecycle_event_success(self, mock_publisher_class, event):
        publisher = _publisher()
        mock_publisher_class.return_value = publisher
        dispatcher = EventDispatcher(PubSubConfig(enabled=True))

        assert dispatcher.publish_lifecycle_event(event) is True

        args, kwargs = publisher.publish.call_args
        assert args[0] == TOPIC_PATH
        assert b'"subscription_id":"sub-1"' in args[1]
        assert kwargs == {
            "event_type": "created",
            "subscription_id": "sub-1",
            "store_id": "store-1",
            "version": "1",
        }

    @patch("storefront_billing.services.event_dispatcher.pubsub_v1.PublisherClient")
    def test_publish_failure_returns_false(self, mock_publisher_class, event):
        publisher = _publisher()
        publisher.publish.side_effect = Exception("Pub/Sub error")
        mock_publisher_class.return_value = publisher
        dispatcher = EventDispatcher(PubSubConfig(enabled=True))

        assert dispatcher.publish_lifecycle_event(event) is False

    def test_publish_when_disabled(self, event):
        assert EventDispatcher().publish_lifecycle_event(event) is False

    @patch("storefront_billing.services.event_dispatcher.pubsub_v1.PublisherClient")
    def test_shutdown_disables(self, mock_publisher_class, event):
        mock_publisher_class.return_value = _publisher()
        dispatcher = EventDispatcher(PubSubConfig(enabled=True))

        dispatcher.shutdown()

        assert not dispatcher.is_enabled()
        assert dispatcher.publish_lifecycle_event(event) is False
