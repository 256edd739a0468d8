"""MongoDB subscription store - durable system of record.

Same contract as the in-memory SubscriptionStore. The record invariants are
held by indexes:
- tenant_profile_year: unique (tenant_id, profile_id, subscription_year)
- one_current_per_profile: unique (tenant_id, profile_id) over is_current records

insert_current demotes the previous current record, inserts the new one and
writes its outbox message in a single transaction, so a crash never leaves a
committed record without its notification.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from membership_subscriptions.exceptions import (
    DuplicateSubscriptionYearError,
    SubscriptionNotFoundError,
    TransientInfraError,
)
from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.events import OutboxMessage, OutboxStatus
from membership_subscriptions.models.subscription import SubscriptionRecord, SubscriptionStatus
from membership_subscriptions.repositories.mongo import unavailable_as_transient
from membership_subscriptions.utils.membership_year import utc_now
from membership_subscriptions.utils.object_id import parse_object_id

logger = get_logger(__name__)

SUBSCRIPTIONS_COLLECTION = "subscriptionDetails"
OUTBOX_COLLECTION = "subscriptionOutbox"
YEAR_INDEX = "tenant_profile_year"
CURRENT_INDEX = "one_current_per_profile"
APPLY_ATTEMPTS = 3


def _oid(value: str) -> Optional[ObjectId]:
    parsed = parse_object_id(value)
    return ObjectId(parsed) if parsed else None


def _scope(profile_id: str, tenant_id: Optional[str]) -> Dict[str, Any]:
    """Profile match, narrowed to the tenant when one is given."""
    query: Dict[str, Any] = {"profile_id": profile_id}
    if tenant_id is not None:
        query["tenant_id"] = tenant_id
    return query


def _serialize(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    return value


def to_document(record: SubscriptionRecord) -> Dict[str, Any]:
    document = record.model_dump(exclude={"id"})
    document["_id"] = ObjectId(record.id)
    return document


def to_record(document: Dict[str, Any]) -> SubscriptionRecord:
    fields = {k: v for k, v in document.items() if k != "_id"}
    return SubscriptionRecord(id=str(document["_id"]), **fields)


def outbox_to_document(message: OutboxMessage) -> Dict[str, Any]:
    document = message.model_dump(exclude={"id"})
    document["_id"] = ObjectId(message.id)
    return document


def to_outbox_message(document: Dict[str, Any]) -> OutboxMessage:
    fields = {k: v for k, v in document.items() if k != "_id"}
    return OutboxMessage(id=str(document["_id"]), **fields)


class MongoSubscriptionStore:
    """Subscription records and their outbox in MongoDB."""

    def __init__(self, database: Database):
        self._database = database
        self._subscriptions = database[SUBSCRIPTIONS_COLLECTION]
        self._outbox = database[OUTBOX_COLLECTION]
        self.ensure_indexes()

    def ensure_indexes(self) -> None:
        """Create the invariant and lookup indexes (idempotent)."""
        with unavailable_as_transient("ensure_indexes"):
            self._subscriptions.create_index(
                [("tenant_id", ASCENDING), ("profile_id", ASCENDING), ("subscription_year", ASCENDING)],
                unique=True,
                name=YEAR_INDEX,
            )
            self._subscriptions.create_index(
                [("tenant_id", ASCENDING), ("profile_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"is_current": True},
                name=CURRENT_INDEX,
            )
            self._subscriptions.create_index([("application_id", ASCENDING)], name="application")
            self._subscriptions.create_index([("created_at", DESCENDING)], name="created_at")
            self._outbox.create_index([("status", ASCENDING), ("created_at", ASCENDING)], name="status_created")
        logger.info("mongo_indexes_ensured", collection=SUBSCRIPTIONS_COLLECTION)

    # ------------------------------------------------------------------ writes

    def _duplicate_year(self, record: SubscriptionRecord, error: DuplicateKeyError) -> Exception:
        existing = self._subscriptions.find_one(
            {**_scope(record.profile_id, record.tenant_id), "subscription_year": record.subscription_year},
            projection={"_id": 1},
        )
        if existing is None:
            return error
        return DuplicateSubscriptionYearError(
            tenant_id=record.tenant_id,
            profile_id=record.profile_id,
            subscription_year=record.subscription_year,
            existing_id=str(existing["_id"]),
        )

    def insert_current(
        self,
        subscription: SubscriptionRecord,
        outbox_message: Optional[OutboxMessage] = None,
    ) -> SubscriptionRecord:
        """Insert a record as the profile's current subscription.

        Args:
            subscription: New record (is_current is forced to True)
            outbox_message: Optional notification committed with the write

        Returns:
            Stored copy of the new record

        Raises:
            DuplicateSubscriptionYearError: If the profile already has a record for the year
            TransientInfraError: If MongoDB is unreachable
        """
        now = utc_now()
        new_record = subscription.model_copy(update={"is_current": True})
        new_record.created_at = new_record.created_at or now
        new_record.updated_at = new_record.updated_at or now
        current_filter = {**_scope(subscription.profile_id, subscription.tenant_id), "is_current": True}

        def write(session) -> List[Dict[str, Any]]:
            previous = list(self._subscriptions.find(current_filter, session=session))
            self._subscriptions.update_many(
                current_filter,
                {"$set": {"is_current": False, "updated_at": now}},
                session=session,
            )
            self._subscriptions.insert_one(to_document(new_record), session=session)
            if outbox_message is not None:
                message = outbox_message.model_copy(update={"created_at": outbox_message.created_at or now})
                self._outbox.insert_one(outbox_to_document(message), session=session)
            return previous

        with unavailable_as_transient("insert_current"):
            try:
                with self._database.client.start_session() as session:
                    previous = session.with_transaction(write)
            except DuplicateKeyError as e:
                raise self._duplicate_year(new_record, e) from e

        for document in previous:
            to_record(document).set_current(False, reason=f"superseded by {subscription.subscription_year}")
        return new_record

    def update_fields(self, subscription_id: str, **fields) -> SubscriptionRecord:
        """Set attributes on a stored record and stamp updated_at.

        Raises:
            SubscriptionNotFoundError: If the id is unknown
        """
        for name in fields:
            if name not in SubscriptionRecord.model_fields:
                raise ValueError(f"Unknown subscription field: {name}")

        changes = {name: _serialize(value) for name, value in fields.items()}
        changes["updated_at"] = utc_now()
        oid = _oid(subscription_id)
        with unavailable_as_transient("update_fields"):
            document = None
            if oid is not None:
                document = self._subscriptions.find_one_and_update(
                    {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
                )
        if document is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return to_record(document)

    def apply(
        self, subscription_id: str, mutator: Callable[[SubscriptionRecord], None]
    ) -> SubscriptionRecord:
        """Run a mutation against the stored record.

        The write only lands if nobody changed the record since it was read;
        otherwise the mutation is re-run on the fresh copy.

        Raises:
            SubscriptionNotFoundError: If the id is unknown
            TransientInfraError: If the record keeps changing underneath
        """
        for _ in range(APPLY_ATTEMPTS):
            record = self.get_by_id(subscription_id)
            seen_updated_at = record.updated_at
            mutator(record)
            record.updated_at = utc_now()
            with unavailable_as_transient("apply"):
                result = self._subscriptions.replace_one(
                    {"_id": ObjectId(record.id), "updated_at": seen_updated_at},
                    to_document(record),
                )
            if result.matched_count == 1:
                return record
            logger.warning("subscription_write_conflict", subscription_id=subscription_id)
        raise TransientInfraError(f"Subscription {subscription_id} kept changing during update")

    def soft_delete(self, subscription_id: str) -> SubscriptionRecord:
        """Flag a record as deleted. Records are never removed."""
        return self.update_fields(subscription_id, deleted=True)

    # ------------------------------------------------------------------- reads

    def find_by_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        oid = _oid(subscription_id)
        if oid is None:
            return None
        with unavailable_as_transient("find_by_id"):
            document = self._subscriptions.find_one({"_id": oid})
        return to_record(document) if document else None

    def get_by_id(self, subscription_id: str) -> SubscriptionRecord:
        record = self.find_by_id(subscription_id)
        if record is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return record

    def find_for_year(
        self, profile_id: str, subscription_year: int, tenant_id: Optional[str] = None
    ) -> Optional[SubscriptionRecord]:
        """Find the profile's record for a subscription year (soft-deleted included)."""
        with unavailable_as_transient("find_for_year"):
            document = self._subscriptions.find_one(
                {**_scope(profile_id, tenant_id), "subscription_year": subscription_year}
            )
        return to_record(document) if document else None

    def find_current(
        self,
        profile_id: str,
        tenant_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[SubscriptionRecord]:
        query = {**_scope(profile_id, tenant_id), "is_current": True}
        if not include_deleted:
            query["deleted"] = {"$ne": True}
        with unavailable_as_transient("find_current"):
            document = self._subscriptions.find_one(
                query, sort=[("created_at", DESCENDING), ("_id", DESCENDING)]
            )
        return to_record(document) if document else None

    def list_for_profile(
        self, profile_id: str, tenant_id: Optional[str] = None
    ) -> List[SubscriptionRecord]:
        """All of a profile's records, newest start date first."""
        with unavailable_as_transient("list_for_profile"):
            documents = list(
                self._subscriptions.find(_scope(profile_id, tenant_id)).sort("start_date", DESCENDING)
            )
        return [to_record(d) for d in documents]

    def query(
        self,
        profile_id: Optional[str] = None,
        application_id: Optional[str] = None,
        is_current: Optional[bool] = None,
        tenant_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[SubscriptionRecord]:
        """Filter records, newest first by creation time."""
        query: Dict[str, Any] = {}
        if not include_deleted:
            query["deleted"] = {"$ne": True}
        if profile_id is not None:
            query["profile_id"] = profile_id
        if application_id is not None:
            query["application_id"] = application_id
        if is_current is not None:
            query["is_current"] = is_current
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        with unavailable_as_transient("query"):
            documents = list(
                self._subscriptions.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            )
        return [to_record(d) for d in documents]

    def get_all(self) -> List[SubscriptionRecord]:
        with unavailable_as_transient("get_all"):
            documents = list(self._subscriptions.find({}).sort([("created_at", ASCENDING), ("_id", ASCENDING)]))
        return [to_record(d) for d in documents]

    def count(self) -> int:
        with unavailable_as_transient("count"):
            return self._subscriptions.count_documents({})

    # ------------------------------------------------------------------ outbox

    def get_outbox(self, message_id: str) -> Optional[OutboxMessage]:
        oid = _oid(message_id)
        if oid is None:
            return None
        with unavailable_as_transient("get_outbox"):
            document = self._outbox.find_one({"_id": oid})
        return to_outbox_message(document) if document else None

    def pending_outbox(self, limit: Optional[int] = None) -> List[OutboxMessage]:
        """Pending outbox messages, oldest first."""
        with unavailable_as_transient("pending_outbox"):
            cursor = self._outbox.find({"status": OutboxStatus.PENDING.value}).sort("created_at", ASCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            documents = list(cursor)
        return [to_outbox_message(d) for d in documents]

    def mark_outbox_dispatched(self, message_id: str) -> None:
        oid = _oid(message_id)
        if oid is None:
            return
        with unavailable_as_transient("mark_outbox_dispatched"):
            self._outbox.update_one(
                {"_id": oid},
                {
                    "$set": {
                        "status": OutboxStatus.DISPATCHED.value,
                        "last_error": None,
                        "dispatched_at": utc_now(),
                    },
                    "$inc": {"attempts": 1},
                },
            )

    def mark_outbox_attempt_failed(self, message_id: str, error: str, max_attempts: int) -> OutboxStatus:
        """Record a failed publish attempt in one atomic update.

        Returns:
            Resulting status (FAILED once max_attempts is reached)
        """
        oid = _oid(message_id)
        if oid is None:
            return OutboxStatus.FAILED
        attempts = {"$add": ["$attempts", 1]}
        with unavailable_as_transient("mark_outbox_attempt_failed"):
            document = self._outbox.find_one_and_update(
                {"_id": oid},
                [
                    {
                        "$set": {
                            "attempts": attempts,
                            "last_error": error,
                            "status": {
                                "$cond": [
                                    {"$gte": [attempts, max_attempts]},
                                    OutboxStatus.FAILED.value,
                                    "$status",
                                ]
                            },
                        }
                    }
                ],
                return_document=ReturnDocument.AFTER,
            )
        if document is None:
            return OutboxStatus.FAILED
        return OutboxStatus(document["status"])

    def prune_outbox(self, older_than: datetime) -> int:
        """Delete dispatched and failed messages created before older_than."""
        with unavailable_as_transient("prune_outbox"):
            result = self._outbox.delete_many(
                {
                    "status": {"$in": [OutboxStatus.DISPATCHED.value, OutboxStatus.FAILED.value]},
                    "created_at": {"$lt": older_than},
                }
            )
        return result.deleted_count

    # ------------------------------------------------------------- maintenance

    def clear(self) -> None:
        """Delete every subscription and outbox message.

        Warning: This removes all data. Use with caution.
        """
        with unavailable_as_transient("clear"):
            self._subscriptions.delete_many({})
            self._outbox.delete_many({})

    def get_statistics(self) -> Dict[str, int]:
        with unavailable_as_transient("get_statistics"):
            subscriptions = self._subscriptions
            stats = {
                "total_subscriptions": subscriptions.count_documents({}),
                "unique_profiles": len(
                    list(subscriptions.aggregate([{"$group": {"_id": {"t": "$tenant_id", "p": "$profile_id"}}}]))
                ),
                "current": subscriptions.count_documents({"is_current": True, "deleted": {"$ne": True}}),
                "deleted": subscriptions.count_documents({"deleted": True}),
                "outbox_pending": self._outbox.count_documents({"status": OutboxStatus.PENDING.value}),
                "outbox_failed": self._outbox.count_documents({"status": OutboxStatus.FAILED.value}),
            }
            for status in SubscriptionStatus:
                stats[status.value.lower()] = subscriptions.count_documents({"subscription_status": status.value})
        return stats

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"MongoSubscriptionStore(database={self._database.name})"
