"""Subscription store - in-memory backend for yearly subscriptions.

Used for tests and local runs; MongoSubscriptionStore is the durable backend
with the same contract.

Enforces the record invariants inside the store lock:
- at most one record per (tenant, profile, subscription year)
- at most one current record per (tenant, profile); the swap of the current
  record happens in one operation together with the outbox entry announcing it
"""

import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from membership_subscriptions.exceptions import (
    DuplicateSubscriptionYearError,
    SubscriptionNotFoundError,
)
from membership_subscriptions.models.events import OutboxMessage, OutboxStatus
from membership_subscriptions.models.subscription import SubscriptionRecord, SubscriptionStatus
from membership_subscriptions.utils.membership_year import utc_now

if TYPE_CHECKING:
    from membership_subscriptions.repositories.mongo_subscription_store import MongoSubscriptionStore

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _in_scope(record: SubscriptionRecord, profile_id: str, tenant_id: Optional[str]) -> bool:
    """Profile match, narrowed to the tenant when one is given."""
    if record.profile_id != profile_id:
        return False
    return tenant_id is None or record.tenant_id == tenant_id


class SubscriptionStore:
    """In-memory storage for subscription records and their outbox.

    Thread-safe; every read returns a copy so callers never hold a reference to
    stored state outside the lock.
    """

    def __init__(self):
        """Initialize subscription store with empty storage."""
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._sequence: Dict[str, int] = {}
        self._outbox: Dict[str, OutboxMessage] = {}
        self._next_sequence = 0
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ writes

    def _check_year_unique(self, record: SubscriptionRecord) -> None:
        existing = self._find_for_year(record.profile_id, record.subscription_year, record.tenant_id)
        if existing is not None:
            raise DuplicateSubscriptionYearError(
                tenant_id=record.tenant_id,
                profile_id=record.profile_id,
                subscription_year=record.subscription_year,
                existing_id=existing.id,
            )

    def _store(self, record: SubscriptionRecord) -> SubscriptionRecord:
        now = utc_now()
        stored = record.model_copy(deep=True)
        stored.created_at = stored.created_at or now
        stored.updated_at = stored.updated_at or now
        self._subscriptions[stored.id] = stored
        self._sequence[stored.id] = self._next_sequence
        self._next_sequence += 1
        return stored

    def add(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        """Add a subscription record as-is.

        Args:
            subscription: SubscriptionRecord to store

        Returns:
            Stored copy with timestamps filled in

        Raises:
            ValueError: If the id exists or a second current record would be added
            DuplicateSubscriptionYearError: If the profile already has a record for the year
        """
        with self._lock:
            if subscription.id in self._subscriptions:
                raise ValueError(f"Subscription with id '{subscription.id}' already exists")
            self._check_year_unique(subscription)
            if subscription.is_current and self._find_current(
                subscription.profile_id, subscription.tenant_id, include_deleted=True
            ):
                raise ValueError(
                    f"Profile {subscription.profile_id} already has a current subscription"
                )
            return self._store(subscription).model_copy(deep=True)

    def insert_current(
        self,
        subscription: SubscriptionRecord,
        outbox_message: Optional[OutboxMessage] = None,
    ) -> SubscriptionRecord:
        """Insert a record as the profile's current subscription.

        Clears is_current on the profile's previous current records, inserts the new
        record and persists the outbox message in one locked operation.

        Args:
            subscription: New record (is_current is forced to True)
            outbox_message: Optional notification to persist with the write

        Returns:
            Stored copy of the new record

        Raises:
            DuplicateSubscriptionYearError: If the profile already has a record for the year
        """
        with self._lock:
            if subscription.id in self._subscriptions:
                raise ValueError(f"Subscription with id '{subscription.id}' already exists")
            self._check_year_unique(subscription)

            now = utc_now()
            for record in self._subscriptions.values():
                if record.is_current and _in_scope(record, subscription.profile_id, subscription.tenant_id):
                    record.set_current(False, reason=f"superseded by {subscription.subscription_year}")
                    record.updated_at = now

            new_record = subscription.model_copy(update={"is_current": True})
            stored = self._store(new_record)

            if outbox_message is not None:
                self._outbox[outbox_message.id] = outbox_message.model_copy(
                    update={"created_at": outbox_message.created_at or now}
                )

            return stored.model_copy(deep=True)

    def update_fields(self, subscription_id: str, **fields) -> SubscriptionRecord:
        """Set attributes on a stored record and stamp updated_at.

        Args:
            subscription_id: Record id
            **fields: Attribute values (already validated by the caller)

        Returns:
            Updated copy

        Raises:
            SubscriptionNotFoundError: If the id is unknown
        """
        with self._lock:
            record = self._get(subscription_id)
            for name, value in fields.items():
                if name not in SubscriptionRecord.model_fields:
                    raise ValueError(f"Unknown subscription field: {name}")
                setattr(record, name, value)
            record.updated_at = utc_now()
            return record.model_copy(deep=True)

    def apply(
        self, subscription_id: str, mutator: Callable[[SubscriptionRecord], None]
    ) -> SubscriptionRecord:
        """Run a mutation against the stored record under the store lock.

        Args:
            subscription_id: Record id
            mutator: Callable receiving the stored record

        Returns:
            Updated copy
        """
        with self._lock:
            record = self._get(subscription_id)
            mutator(record)
            record.updated_at = utc_now()
            return record.model_copy(deep=True)

    def soft_delete(self, subscription_id: str) -> SubscriptionRecord:
        """Flag a record as deleted. Records are never removed."""
        return self.update_fields(subscription_id, deleted=True)

    # ------------------------------------------------------------------- reads

    def _get(self, subscription_id: str) -> SubscriptionRecord:
        record = self._subscriptions.get(subscription_id)
        if record is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return record

    def _find_for_year(
        self, profile_id: str, subscription_year: int, tenant_id: Optional[str]
    ) -> Optional[SubscriptionRecord]:
        for record in self._subscriptions.values():
            if record.subscription_year == subscription_year and _in_scope(record, profile_id, tenant_id):
                return record
        return None

    def _find_current(
        self, profile_id: str, tenant_id: Optional[str], include_deleted: bool
    ) -> Optional[SubscriptionRecord]:
        for record in self._ordered(reverse=True):
            if not record.is_current or not _in_scope(record, profile_id, tenant_id):
                continue
            if record.deleted and not include_deleted:
                continue
            return record
        return None

    def _ordered(self, reverse: bool = False) -> List[SubscriptionRecord]:
        return sorted(
            self._subscriptions.values(),
            key=lambda r: (r.created_at or _EPOCH, self._sequence[r.id]),
            reverse=reverse,
        )

    def get_by_id(self, subscription_id: str) -> SubscriptionRecord:
        """Get subscription by id.

        Raises:
            SubscriptionNotFoundError: If id not found
        """
        with self._lock:
            return self._get(subscription_id).model_copy(deep=True)

    def find_by_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        """Find subscription by id (returns None if not found)."""
        with self._lock:
            record = self._subscriptions.get(subscription_id)
            return record.model_copy(deep=True) if record else None

    def find_for_year(
        self, profile_id: str, subscription_year: int, tenant_id: Optional[str] = None
    ) -> Optional[SubscriptionRecord]:
        """Find the profile's record for a subscription year (soft-deleted included)."""
        with self._lock:
            record = self._find_for_year(profile_id, subscription_year, tenant_id)
            return record.model_copy(deep=True) if record else None

    def find_current(
        self,
        profile_id: str,
        tenant_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[SubscriptionRecord]:
        """Find the profile's current record.

        Args:
            profile_id: Profile id
            tenant_id: Tenant scope; None matches any tenant
            include_deleted: Also match soft-deleted records

        Returns:
            Current SubscriptionRecord, or None
        """
        with self._lock:
            record = self._find_current(profile_id, tenant_id, include_deleted)
            return record.model_copy(deep=True) if record else None

    def list_for_profile(
        self, profile_id: str, tenant_id: Optional[str] = None
    ) -> List[SubscriptionRecord]:
        """All of a profile's records, newest start date first."""
        with self._lock:
            records = [r for r in self._subscriptions.values() if _in_scope(r, profile_id, tenant_id)]
            records.sort(key=lambda r: r.start_date, reverse=True)
            return [r.model_copy(deep=True) for r in records]

    def query(
        self,
        profile_id: Optional[str] = None,
        application_id: Optional[str] = None,
        is_current: Optional[bool] = None,
        tenant_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[SubscriptionRecord]:
        """Filter records, newest first by creation time.

        Args:
            profile_id: Only this profile
            application_id: Only this membership application
            is_current: Only current (True) or non-current (False) records
            tenant_id: Only this tenant
            include_deleted: Include soft-deleted records

        Returns:
            Matching SubscriptionRecord copies
        """
        with self._lock:
            results = []
            for record in self._ordered(reverse=True):
                if record.deleted and not include_deleted:
                    continue
                if profile_id is not None and record.profile_id != profile_id:
                    continue
                if application_id is not None and record.application_id != application_id:
                    continue
                if is_current is not None and record.is_current != is_current:
                    continue
                if tenant_id is not None and record.tenant_id != tenant_id:
                    continue
                results.append(record.model_copy(deep=True))
            return results

    def get_all(self) -> List[SubscriptionRecord]:
        """Get all subscriptions in insertion order."""
        with self._lock:
            return [r.model_copy(deep=True) for r in self._ordered()]

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # ------------------------------------------------------------------ outbox

    def get_outbox(self, message_id: str) -> Optional[OutboxMessage]:
        with self._lock:
            message = self._outbox.get(message_id)
            return message.model_copy(deep=True) if message else None

    def pending_outbox(self, limit: Optional[int] = None) -> List[OutboxMessage]:
        """Pending outbox messages, oldest first."""
        with self._lock:
            pending = [m.model_copy(deep=True) for m in self._outbox.values() if m.status == OutboxStatus.PENDING]
            return pending[:limit] if limit is not None else pending

    def mark_outbox_dispatched(self, message_id: str) -> None:
        with self._lock:
            message = self._outbox.get(message_id)
            if message is None:
                return
            message.status = OutboxStatus.DISPATCHED
            message.attempts += 1
            message.last_error = None
            message.dispatched_at = utc_now()

    def mark_outbox_attempt_failed(self, message_id: str, error: str, max_attempts: int) -> OutboxStatus:
        """Record a failed publish attempt.

        Returns:
            Resulting status (FAILED once max_attempts is reached)
        """
        with self._lock:
            message = self._outbox.get(message_id)
            if message is None:
                return OutboxStatus.FAILED
            message.attempts += 1
            message.last_error = error
            if message.attempts >= max_attempts:
                message.status = OutboxStatus.FAILED
            return message.status

    def prune_outbox(self, older_than: datetime) -> int:
        """Delete dispatched and failed messages created before older_than.

        Returns:
            Number of messages removed
        """
        with self._lock:
            expired = [
                message_id
                for message_id, message in self._outbox.items()
                if message.status != OutboxStatus.PENDING and (message.created_at or _EPOCH) < older_than
            ]
            for message_id in expired:
                del self._outbox[message_id]
            return len(expired)

    # ------------------------------------------------------------- maintenance

    def clear(self) -> None:
        """Clear all subscriptions and outbox messages.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()
            self._sequence.clear()
            self._outbox.clear()
            self._next_sequence = 0

    def get_statistics(self) -> Dict[str, int]:
        """Get store statistics.

        Returns:
            Dictionary with total, current, deleted and per-status counts plus the
            outbox backlog
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            stats = {
                "total_subscriptions": len(subscriptions),
                "unique_profiles": len({(s.tenant_id, s.profile_id) for s in subscriptions}),
                "current": sum(1 for s in subscriptions if s.is_current and not s.deleted),
                "deleted": sum(1 for s in subscriptions if s.deleted),
                "outbox_pending": sum(1 for m in self._outbox.values() if m.status == OutboxStatus.PENDING),
                "outbox_failed": sum(1 for m in self._outbox.values() if m.status == OutboxStatus.FAILED),
            }
            for status in SubscriptionStatus:
                stats[status.value.lower()] = sum(1 for s in subscriptions if s.subscription_status == status)
            return stats

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional["SubscriptionStore | MongoSubscriptionStore"] = None
_store_lock = threading.Lock()


def _create_store() -> "SubscriptionStore | MongoSubscriptionStore":
    from membership_subscriptions.config import get_config

    storage = get_config().storage
    if storage.backend == "mongo":
        from membership_subscriptions.repositories.mongo import get_database
        from membership_subscriptions.repositories.mongo_subscription_store import MongoSubscriptionStore

        return MongoSubscriptionStore(get_database(storage))
    return SubscriptionStore()


def get_subscription_store() -> "SubscriptionStore | MongoSubscriptionStore":
    """Get global subscription store instance (singleton), backed as configured."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = _create_store()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data)."""
    get_subscription_store().clear()
