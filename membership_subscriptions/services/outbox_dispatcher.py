"""Outbox dispatcher - publishes notifications persisted alongside subscription writes.

The upsert engine stores the "current subscription updated" notification in the same
store operation as the new record, then asks the dispatcher to publish it straight
away. Anything that fails stays pending and is retried by a background thread until
it is acknowledged or runs out of attempts.
"""

import threading
from datetime import timedelta
from typing import Optional, Set

from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.events import OutboxMessage, OutboxStatus
from membership_subscriptions.repositories.subscription_store import SubscriptionStore
from membership_subscriptions.utils.membership_year import utc_now

logger = get_logger(__name__)


class OutboxDispatcher:
    """Drains the subscription store's outbox through the event bus."""

    def __init__(
        self,
        store: SubscriptionStore,
        event_bus=None,
        max_attempts: int = 10,
        poll_interval_seconds: float = 5.0,
        retention_seconds: float = 86400.0,
    ):
        """Initialize dispatcher.

        Args:
            store: Store holding the outbox
            event_bus: Object exposing publish(topic, payload, options) -> bool
                (defaults to the global EventBus)
            max_attempts: Attempts before a message is marked failed
            poll_interval_seconds: Delay between background passes
            retention_seconds: Age after which dispatched and failed messages are pruned
        """
        self.store = store
        self._event_bus = event_bus
        self.max_attempts = max_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self.retention_seconds = retention_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # Messages being published right now; a second caller skips them.
        self._in_flight: Set[str] = set()
        self._claim_lock = threading.Lock()

    def _get_event_bus(self):
        """lazy load event bus to avoid connecting at import time"""
        if self._event_bus is None:
            from membership_subscriptions.services.event_bus import get_event_bus

            self._event_bus = get_event_bus()
        return self._event_bus

    def dispatch(self, message_id: str) -> bool:
        """Publish one outbox message.

        Never raises: failures are logged and leave the message for a later pass.

        Args:
            message_id: Outbox message id

        Returns:
            True if the message is dispatched
        """
        with self._claim_lock:
            if message_id in self._in_flight:
                return False
            self._in_flight.add(message_id)

        try:
            message = self.store.get_outbox(message_id)
            if message is None or message.status != OutboxStatus.PENDING:
                return message is not None and message.status == OutboxStatus.DISPATCHED
            return self._publish(message)
        finally:
            with self._claim_lock:
                self._in_flight.discard(message_id)

    def _publish(self, message: OutboxMessage) -> bool:
        try:
            published = self._get_event_bus().publish(message.topic, message.payload, message.options)
            error = None if published else "event bus rejected publish"
        except Exception as e:
            published = False
            error = f"{type(e).__name__}: {e}"

        if published:
            self.store.mark_outbox_dispatched(message.id)
            logger.info(
                "outbox_message_dispatched",
                outbox_id=message.id,
                topic=message.topic,
                attempts=message.attempts + 1,
                correlation_id=message.options.correlation_id,
            )
            return True

        status = self.store.mark_outbox_attempt_failed(message.id, error, self.max_attempts)
        log = logger.error if status == OutboxStatus.FAILED else logger.warning
        log(
            "outbox_dispatch_failed",
            outbox_id=message.id,
            topic=message.topic,
            attempts=message.attempts + 1,
            status=status.value,
            error=error,
            correlation_id=message.options.correlation_id,
        )
        return False

    def dispatch_pending(self, limit: Optional[int] = None) -> int:
        """Publish every pending message once.

        Returns:
            Number of messages dispatched in this pass
        """
        dispatched = 0
        for message in self.store.pending_outbox(limit=limit):
            if self.dispatch(message.id):
                dispatched += 1
        return dispatched

    def prune(self) -> int:
        """Drop dispatched and failed messages older than the retention period."""
        removed = self.store.prune_outbox(utc_now() - timedelta(seconds=self.retention_seconds))
        if removed:
            logger.info("outbox_pruned", removed=removed, retention_seconds=self.retention_seconds)
        return removed

    def start(self) -> None:
        """Start the background retry loop."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="outbox-dispatcher", daemon=True)
        self._thread.start()
        logger.info("outbox_dispatcher_started", poll_interval_seconds=self.poll_interval_seconds)

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval_seconds):
            try:
                self.dispatch_pending()
                self.prune()
            except Exception as e:
                logger.error("outbox_pass_failed", error=str(e), exc_info=True)

    def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval_seconds + 1)
            self._thread = None
            logger.info("outbox_dispatcher_stopped")


_dispatcher: Optional[OutboxDispatcher] = None
_dispatcher_lock = threading.Lock()


def get_outbox_dispatcher() -> OutboxDispatcher:
    """Get or create the singleton OutboxDispatcher."""
    global _dispatcher
    if _dispatcher is None:
        with _dispatcher_lock:
            if _dispatcher is None:
                from membership_subscriptions.config import get_config
                from membership_subscriptions.repositories.subscription_store import get_subscription_store

                outbox_settings = get_config().outbox
                _dispatcher = OutboxDispatcher(
                    store=get_subscription_store(),
                    max_attempts=outbox_settings.max_attempts,
                    poll_interval_seconds=outbox_settings.poll_interval_seconds,
                    retention_seconds=outbox_settings.retention_seconds,
                )
    return _dispatcher


def reset_outbox_dispatcher() -> None:
    """Stop and drop the singleton (for testing)."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None:
            _dispatcher.stop()
            _dispatcher = None
