"""Event bus gateway over Google Cloud Pub/Sub.

Responsibilities:
- Publish JSON event envelopes to one topic per routing key
- Subscribe handlers to topics via streaming pull
- Ack on success, nack on handler errors so Pub/Sub redelivers
- Manage Pub/Sub client lifecycle and topic/subscription provisioning
"""

import json
import uuid
from threading import RLock
from typing import Any, Callable, Dict, Optional

from google.api_core.exceptions import AlreadyExists, GoogleAPICallError, NotFound
from google.cloud import pubsub_v1

from membership_subscriptions.exceptions import TransientInfraError
from membership_subscriptions.logging_config import bind_context, clear_context, get_logger
from membership_subscriptions.models.events import EventEnvelope, PublishOptions
from membership_subscriptions.utils.membership_year import to_iso_millis, utc_now

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], None]


class EventBus:
    """Publishes and consumes platform events on Pub/Sub.

    The core only depends on publish(topic, payload, options) and
    subscribe(topic, handler). Thread-safe singleton pattern.
    """

    def __init__(self, config=None):
        """Initialize event bus.

        Args:
            config: Configuration (defaults to global instance)
        """
        if config is None:
            from membership_subscriptions.config import get_config

            config = get_config()

        self._config = config
        self._lock = RLock()
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._subscriber: Optional[pubsub_v1.SubscriberClient] = None
        self._project_id: Optional[str] = None
        self._known_topics: set[str] = set()
        self._handlers: Dict[str, EventHandler] = {}
        self._streaming_futures: Dict[str, Any] = {}
        self._enabled = False

        self._initialize()

    def _initialize(self) -> None:
        """Create the publisher client from config."""
        self._enabled = self._config.events_enabled
        if not self._enabled:
            logger.info("event_bus_disabled", message="Event publishing and consumption are disabled in config")
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._project_id = self._config.pubsub_project_id
            logger.info("event_bus_initialized", project_id=self._project_id)
        except Exception as e:
            logger.error(
                "event_bus_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def is_enabled(self) -> bool:
        """Check if the bus is connected.

        Returns:
            True if events are enabled and the publisher is initialized
        """
        return self._enabled and self._publisher is not None

    def _ensure_topic_exists(self, topic: str) -> str:
        """Ensure Pub/Sub topic exists, create if it doesn't.

        Args:
            topic: Topic name (routing key)

        Returns:
            Fully qualified topic path
        """
        topic_path = self._publisher.topic_path(self._project_id, topic)
        if topic_path in self._known_topics:
            return topic_path

        try:
            self._publisher.get_topic(request={"topic": topic_path})
            logger.debug("pubsub_topic_exists", topic=topic)
        except NotFound:
            try:
                self._publisher.create_topic(request={"name": topic_path})
                logger.info("pubsub_topic_created", topic=topic, topic_path=topic_path)
            except AlreadyExists:
                logger.debug("pubsub_topic_created_concurrently", topic=topic)

        self._known_topics.add(topic_path)
        return topic_path

    def _ensure_subscription_exists(self, topic_path: str, subscription_name: str) -> str:
        """Ensure Pub/Sub subscription exists, create if it doesn't.

        Args:
            topic_path: Fully qualified topic path
            subscription_name: Subscription name (without project path)

        Returns:
            Fully qualified subscription path
        """
        if self._subscriber is None:
            self._subscriber = pubsub_v1.SubscriberClient()

        subscription_path = self._subscriber.subscription_path(self._project_id, subscription_name)
        try:
            self._subscriber.get_subscription(request={"subscription": subscription_path})
            logger.debug("pubsub_subscription_exists", subscription=subscription_name)
        except NotFound:
            try:
                self._subscriber.create_subscription(
                    request={"name": subscription_path, "topic": topic_path}
                )
                logger.info(
                    "pubsub_subscription_created",
                    subscription=subscription_name,
                    topic=topic_path,
                )
            except AlreadyExists:
                logger.debug("pubsub_subscription_created_concurrently", subscription=subscription_name)
        return subscription_path

    def build_envelope(
        self, topic: str, payload: Dict[str, Any], options: Optional[PublishOptions] = None
    ) -> EventEnvelope:
        """Wrap a payload in the platform event envelope."""
        options = options or PublishOptions()
        return EventEnvelope(
            event_id=str(uuid.uuid4()),
            event_type=options.routing_key or topic,
            tenant_id=options.tenant_id,
            correlation_id=options.correlation_id,
            occurred_at=to_iso_millis(utc_now()),
            data=payload,
            metadata=options.metadata,
        )

    def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        options: Optional[PublishOptions] = None,
    ) -> bool:
        """Publish an event and wait for Pub/Sub to accept it.

        Args:
            topic: Routing key / topic name
            payload: Event data
            options: Tenant, correlation and routing metadata

        Returns:
            True if published successfully, False otherwise
        """
        if not self.is_enabled():
            logger.warning("event_bus_disabled", message="Skipping event publication", topic=topic)
            return False

        options = options or PublishOptions()
        try:
            # Only topic provisioning is serialized; the wait for the ack is not.
            with self._lock:
                publisher = self._publisher
                if publisher is None:
                    logger.warning("event_bus_closed", message="Skipping event publication", topic=topic)
                    return False
                topic_path = self._ensure_topic_exists(topic)

            envelope = self.build_envelope(topic, payload, options)
            attributes = {
                "exchange": options.exchange or "",
                "routing_key": options.routing_key or topic,
                "tenant_id": options.tenant_id or "",
                "correlation_id": options.correlation_id or "",
            }
            future = publisher.publish(
                topic_path,
                envelope.model_dump_json(by_alias=True).encode("utf-8"),
                **attributes,
            )
            message_id = future.result(timeout=self._config.pubsub.publish_timeout_seconds)

            logger.info(
                "event_published",
                topic=topic,
                message_id=message_id,
                event_id=envelope.event_id,
                correlation_id=options.correlation_id,
                tenant_id=options.tenant_id,
            )
            return True

        except Exception as e:
            logger.error(
                "event_publish_failed",
                topic=topic,
                correlation_id=options.correlation_id,
                tenant_id=options.tenant_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        """Register a handler and start consuming the topic.

        The handler receives the decoded JSON envelope. Exceptions it raises nack
        the message; returning normally acks it.

        Args:
            topic: Routing key / topic name
            handler: Callable taking the event payload dict

        Raises:
            TransientInfraError: Pub/Sub is unreachable while provisioning the subscription
        """
        self._handlers[topic] = handler
        if not self.is_enabled():
            logger.info("event_handler_registered_offline", topic=topic)
            return

        with self._lock:
            subscription_name = f"{self._config.pubsub.consumer_prefix}.{topic}"
            try:
                topic_path = self._ensure_topic_exists(topic)
                subscription_path = self._ensure_subscription_exists(topic_path, subscription_name)
            except GoogleAPICallError as e:
                raise TransientInfraError(f"Cannot provision subscription {subscription_name}: {e}") from e

            flow_control = pubsub_v1.types.FlowControl(max_messages=self._config.pubsub.prefetch)
            future = self._subscriber.subscribe(
                subscription_path,
                callback=lambda message: self.handle_message(topic, message),
                flow_control=flow_control,
            )
            self._streaming_futures[topic] = future

        logger.info(
            "event_consumer_started",
            topic=topic,
            subscription=subscription_name,
            prefetch=self._config.pubsub.prefetch,
        )

    def handle_message(self, topic: str, message: Any) -> None:
        """Decode a Pub/Sub message, run its handler and ack or nack it.

        Args:
            topic: Topic the message arrived on
            message: Pub/Sub message (data, attributes, ack(), nack())
        """
        handler = self._handlers.get(topic)
        if handler is None:
            logger.warning("event_handler_missing", topic=topic, message_id=getattr(message, "message_id", None))
            message.ack()
            return

        try:
            payload = json.loads(message.data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(
                "event_payload_unreadable",
                topic=topic,
                message_id=getattr(message, "message_id", None),
                error=str(e),
            )
            message.ack()
            return

        if not isinstance(payload, dict):
            logger.error("event_payload_not_object", topic=topic, payload_type=type(payload).__name__)
            message.ack()
            return

        bind_context(
            topic=topic,
            event_id=payload.get("eventId"),
            correlation_id=payload.get("correlationId"),
            tenant_id=payload.get("tenantId"),
        )
        try:
            handler(payload)
            message.ack()
            logger.debug("event_acked", topic=topic)
        except Exception as e:
            logger.error(
                "event_handler_failed",
                topic=topic,
                error=str(e),
                error_type=type(e).__name__,
            )
            message.nack()
        finally:
            clear_context()

    def registered_topics(self) -> list[str]:
        return sorted(self._handlers)

    def shutdown(self) -> None:
        """Stop consumers and release clients."""
        with self._lock:
            for topic, future in self._streaming_futures.items():
                future.cancel()
                try:
                    future.result(timeout=5)
                except Exception:
                    logger.debug("event_consumer_stopped", topic=topic)
            self._streaming_futures.clear()

            if self._subscriber is not None:
                self._subscriber.close()
                self._subscriber = None

            if self._publisher is not None:
                logger.info("event_bus_shutting_down")
                self._publisher = None
                self._known_topics.clear()
                logger.info("event_bus_shutdown_complete")


_event_bus: Optional[EventBus] = None
_event_bus_lock = RLock()


def get_event_bus() -> EventBus:
    """Get or create the singleton EventBus instance."""
    global _event_bus
    if _event_bus is None:
        with _event_bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the singleton EventBus instance (for testing)."""
    global _event_bus

    with _event_bus_lock:
        if _event_bus is not None:
            _event_bus.shutdown()
            _event_bus = None
