"""Wires bus topics to their handlers."""

from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.events import EventType

logger = get_logger(__name__)


def register_consumers(event_bus, upsert_engine, user_directory) -> list[str]:
    """Subscribe the service's handlers to their topics.

    Args:
        event_bus: EventBus exposing subscribe(topic, handler)
        upsert_engine: SubscriptionUpsertEngine
        user_directory: UserDirectory

    Returns:
        Topics subscribed
    """
    handlers = {
        EventType.SUBSCRIPTION_UPSERT_REQUESTED.value: upsert_engine.handle_upsert_requested,
        EventType.CRM_USER_CREATED.value: user_directory.handle_user_created,
        EventType.CRM_USER_UPDATED.value: user_directory.handle_user_updated,
    }
    for topic, handler in handlers.items():
        event_bus.subscribe(topic, handler)

    logger.info("event_consumers_registered", topics=list(handlers))
    return list(handlers)
