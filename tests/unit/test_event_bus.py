"""Unit tests for EventBus service."""

import json
import threading
import time
from unittest.mock import MagicMock, Mock, patch

import pytest
from google.api_core.exceptions import NotFound, ServiceUnavailable

from membership_subscriptions.config import Config
from membership_subscriptions.exceptions import TransientInfraError
from membership_subscriptions.models.events import EventMetadata, PublishOptions
from membership_subscriptions.services.event_bus import EventBus, get_event_bus, reset_event_bus

TOPIC = "members.subscription.current.updated.v1"


@pytest.fixture
def events_enabled(monkeypatch):
    monkeypatch.delenv("EVENTS_ENABLED", raising=False)
    monkeypatch.delenv("PUBSUB_PROJECT_ID", raising=False)


@pytest.fixture
def offline_bus(monkeypatch):
    monkeypatch.setenv("EVENTS_ENABLED", "false")
    return EventBus(config=Config())


def pubsub_message(payload):
    message = MagicMock()
    message.message_id = "m-1"
    message.data = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return message


class TestEventBusInitialization:
    """Test EventBus initialization and configuration."""

    def setup_method(self):
        reset_event_bus()

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_bus_initializes_when_enabled(self, mock_publisher_class, events_enabled):
        bus = EventBus(config=Config())

        assert bus.is_enabled()
        mock_publisher_class.assert_called_once()

    def test_bus_disabled_by_environment(self, offline_bus):
        assert not offline_bus.is_enabled()

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_client_failure_disables_bus(self, mock_publisher_class, events_enabled):
        mock_publisher_class.side_effect = RuntimeError("no credentials")

        bus = EventBus(config=Config())

        assert not bus.is_enabled()

    def test_singleton_pattern(self, monkeypatch):
        monkeypatch.setenv("EVENTS_ENABLED", "false")
        reset_event_bus()

        assert get_event_bus() is get_event_bus()


class TestEventPublishing:
    """Test event publishing functionality."""

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_publish_success(self, mock_publisher_class, events_enabled):
        mock_publisher = Mock()
        mock_future = Mock()
        mock_future.result.return_value = "message-id-1"
        mock_publisher.publish.return_value = mock_future
        mock_publisher.topic_path.return_value = f"projects/membership-local/topics/{TOPIC}"
        mock_publisher_class.return_value = mock_publisher

        bus = EventBus(config=Config())
        options = PublishOptions(
            tenant_id="tenant-1",
            correlation_id="corr-1",
            exchange="membership.events",
            routing_key=TOPIC,
            metadata=EventMetadata(service="subscription-service", version="1.0"),
        )

        result = bus.publish(TOPIC, {"subscriptionId": "s-1", "profileId": "p-1"}, options)

        assert result is True
        args, kwargs = mock_publisher.publish.call_args
        envelope = json.loads(args[1].decode("utf-8"))
        assert envelope["eventType"] == TOPIC
        assert envelope["tenantId"] == "tenant-1"
        assert envelope["correlationId"] == "corr-1"
        assert envelope["data"] == {"subscriptionId": "s-1", "profileId": "p-1"}
        assert envelope["metadata"] == {"service": "subscription-service", "version": "1.0"}
        assert envelope["occurredAt"].endswith("Z")
        assert kwargs == {
            "exchange": "membership.events",
            "routing_key": TOPIC,
            "tenant_id": "tenant-1",
            "correlation_id": "corr-1",
        }

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_missing_topic_is_created_once(self, mock_publisher_class, events_enabled):
        mock_publisher = Mock()
        mock_publisher.topic_path.return_value = f"projects/membership-local/topics/{TOPIC}"
        mock_publisher.get_topic.side_effect = NotFound("topic missing")
        mock_publisher.publish.return_value = Mock(result=Mock(return_value="id"))
        mock_publisher_class.return_value = mock_publisher

        bus = EventBus(config=Config())
        bus.publish(TOPIC, {})
        bus.publish(TOPIC, {})

        mock_publisher.create_topic.assert_called_once()
        assert mock_publisher.publish.call_count == 2

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_publish_timeout_returns_false(self, mock_publisher_class, events_enabled):
        mock_publisher = Mock()
        mock_publisher.topic_path.return_value = f"projects/membership-local/topics/{TOPIC}"
        mock_publisher.publish.return_value = Mock(result=Mock(side_effect=TimeoutError("no ack")))
        mock_publisher_class.return_value = mock_publisher

        bus = EventBus(config=Config())

        assert bus.publish(TOPIC, {"subscriptionId": "s-1"}) is False

    def test_publish_when_disabled(self, offline_bus):
        assert offline_bus.publish(TOPIC, {"subscriptionId": "s-1"}) is False

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_slow_ack_does_not_block_other_publishes(self, mock_publisher_class, events_enabled):
        waiting = threading.Event()
        release = threading.Event()
        calls = []

        def result(timeout=None):
            calls.append(timeout)
            if len(calls) == 1:
                waiting.set()
                release.wait(5)
            return f"id-{len(calls)}"

        mock_publisher = Mock()
        mock_publisher.topic_path.return_value = f"projects/membership-local/topics/{TOPIC}"
        mock_publisher.publish.return_value = Mock(result=Mock(side_effect=result))
        mock_publisher_class.return_value = mock_publisher

        bus = EventBus(config=Config())
        slow = threading.Thread(target=bus.publish, args=(TOPIC, {"subscriptionId": "s-1"}))
        slow.start()
        try:
            assert waiting.wait(5)
            started = time.monotonic()
            assert bus.publish(TOPIC, {"subscriptionId": "s-2"}) is True
            assert time.monotonic() - started < 1
        finally:
            release.set()
            slow.join(5)

        assert mock_publisher.publish.call_count == 2


class TestSubscribing:
    """Test consumer registration."""

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.SubscriberClient")
    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_subscribe_creates_subscription_and_streams(
        self, mock_publisher_class, mock_subscriber_class, events_enabled
    ):
        mock_publisher = Mock()
        mock_publisher.topic_path.return_value = "projects/membership-local/topics/upsert"
        mock_publisher_class.return_value = mock_publisher
        mock_subscriber = Mock()
        mock_subscriber.subscription_path.return_value = "projects/membership-local/subscriptions/x"
        mock_subscriber.get_subscription.side_effect = NotFound("missing")
        mock_subscriber_class.return_value = mock_subscriber

        bus = EventBus(config=Config())
        bus.subscribe("upsert", lambda payload: None)

        mock_subscriber.subscription_path.assert_called_once_with(
            "membership-local", "subscription-service.upsert"
        )
        mock_subscriber.create_subscription.assert_called_once()
        _, kwargs = mock_subscriber.subscribe.call_args
        assert kwargs["flow_control"].max_messages == 10
        assert bus.registered_topics() == ["upsert"]

        bus.shutdown()
        mock_subscriber.subscribe.return_value.cancel.assert_called_once()
        mock_subscriber.close.assert_called_once()

    @patch("membership_subscriptions.services.event_bus.pubsub_v1.SubscriberClient")
    @patch("membership_subscriptions.services.event_bus.pubsub_v1.PublisherClient")
    def test_unreachable_pubsub_raises_transient_error(
        self, mock_publisher_class, mock_subscriber_class, events_enabled
    ):
        mock_publisher = Mock()
        mock_publisher.get_topic.side_effect = ServiceUnavailable("down")
        mock_publisher_class.return_value = mock_publisher

        bus = EventBus(config=Config())
        with pytest.raises(TransientInfraError, match="subscription-service.upsert"):
            bus.subscribe("upsert", lambda payload: None)

        mock_subscriber_class.return_value.subscribe.assert_not_called()

    def test_subscribe_offline_only_registers(self, offline_bus):
        offline_bus.subscribe("upsert", lambda payload: None)

        assert offline_bus.registered_topics() == ["upsert"]


class TestMessageHandling:
    """Test ack/nack decisions."""

    def test_handler_success_acks(self, offline_bus):
        handler = Mock()
        offline_bus.subscribe("upsert", handler)
        message = pubsub_message({"eventId": "e-1", "data": {"profileId": "p-1"}})

        offline_bus.handle_message("upsert", message)

        handler.assert_called_once_with({"eventId": "e-1", "data": {"profileId": "p-1"}})
        message.ack.assert_called_once()
        message.nack.assert_not_called()

    def test_handler_error_nacks(self, offline_bus):
        offline_bus.subscribe("upsert", Mock(side_effect=ValueError("bad")))
        message = pubsub_message({"eventId": "e-1"})

        offline_bus.handle_message("upsert", message)

        message.nack.assert_called_once()
        message.ack.assert_not_called()

    def test_unreadable_payload_acks(self, offline_bus):
        handler = Mock()
        offline_bus.subscribe("upsert", handler)
        message = pubsub_message(b"{not json")

        offline_bus.handle_message("upsert", message)

        handler.assert_not_called()
        message.ack.assert_called_once()

    def test_non_object_payload_acks(self, offline_bus):
        handler = Mock()
        offline_bus.subscribe("upsert", handler)
        message = pubsub_message([1, 2, 3])

        offline_bus.handle_message("upsert", message)

        handler.assert_not_called()
        message.ack.assert_called_once()

    def test_message_without_handler_acks(self, offline_bus):
        message = pubsub_message({"eventId": "e-1"})

        offline_bus.handle_message("unknown", message)

        message.ack.assert_called_once()
