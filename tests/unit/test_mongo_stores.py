"""Tests for the MongoDB-backed subscription and user stores.

Collections are mocks; these tests pin the queries, indexes and transaction
boundaries the stores rely on.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError, ServerSelectionTimeoutError

from membership_subscriptions.exceptions import (
    DuplicateSubscriptionYearError,
    SubscriptionNotFoundError,
    TransientInfraError,
)
from membership_subscriptions.models.events import OutboxMessage, OutboxStatus
from membership_subscriptions.models.subscription import (
    AuditMeta,
    PaymentType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from membership_subscriptions.repositories import mongo, subscription_store, user_store
from membership_subscriptions.repositories.mongo_subscription_store import (
    MongoSubscriptionStore,
    to_document,
    to_record,
)
from membership_subscriptions.repositories.mongo_user_store import MongoUserStore
from membership_subscriptions.utils.membership_year import end_of_year, start_of_next_year
from membership_subscriptions.utils.object_id import new_object_id

PROFILE_ID = "665f1c2e9b1e8a3d4c5b6a70"
TENANT = "tenant-1"


def make_record(year=2024, **overrides):
    start = datetime(year, 3, 10, tzinfo=timezone.utc)
    fields = dict(
        id=new_object_id(),
        tenant_id=TENANT,
        profile_id=PROFILE_ID,
        subscription_year=year,
        start_date=start,
        end_date=end_of_year(start),
        rollover_date=start_of_next_year(start),
        created_at=start,
        updated_at=start,
    )
    fields.update(overrides)
    return SubscriptionRecord(**fields)


def make_outbox():
    return OutboxMessage(
        id=new_object_id(),
        topic="members.subscription.current.updated.v1",
        payload={"subscriptionId": "s-1", "profileId": PROFILE_ID},
    )


@pytest.fixture
def collections():
    return {"subscriptionDetails": MagicMock(), "subscriptionOutbox": MagicMock(), "users": MagicMock()}


@pytest.fixture
def session():
    session = MagicMock()
    session.with_transaction.side_effect = lambda callback: callback(session)
    return session


@pytest.fixture
def database(collections, session):
    database = MagicMock()
    database.__getitem__.side_effect = lambda name: collections[name]
    database.client.start_session.return_value.__enter__.return_value = session
    return database


@pytest.fixture
def store(database):
    return MongoSubscriptionStore(database)


class TestIndexes:
    def test_record_invariants_are_indexed(self, store, collections):
        indexes = {c.kwargs["name"]: c for c in collections["subscriptionDetails"].create_index.call_args_list}

        year = indexes["tenant_profile_year"]
        assert year.args[0] == [("tenant_id", 1), ("profile_id", 1), ("subscription_year", 1)]
        assert year.kwargs["unique"] is True

        current = indexes["one_current_per_profile"]
        assert current.args[0] == [("tenant_id", 1), ("profile_id", 1)]
        assert current.kwargs["unique"] is True
        assert current.kwargs["partialFilterExpression"] == {"is_current": True}

    def test_unreachable_server_at_startup(self, database, collections):
        collections["subscriptionDetails"].create_index.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(TransientInfraError, match="ensure_indexes"):
            MongoSubscriptionStore(database)


class TestInsertCurrent:
    def test_swap_and_outbox_share_one_transaction(self, store, collections, session):
        subscriptions = collections["subscriptionDetails"]
        previous = make_record(year=2023, is_current=True)
        subscriptions.find.return_value = [to_document(previous)]
        record = make_record(year=2024, is_current=False)
        message = make_outbox()

        created = store.insert_current(record, message)

        session.with_transaction.assert_called_once()
        current_filter = {"profile_id": PROFILE_ID, "tenant_id": TENANT, "is_current": True}
        update_filter, update = subscriptions.update_many.call_args.args
        assert update_filter == current_filter
        assert update["$set"]["is_current"] is False
        assert subscriptions.update_many.call_args.kwargs["session"] is session

        inserted = subscriptions.insert_one.call_args
        assert inserted.args[0]["_id"] == ObjectId(record.id)
        assert inserted.args[0]["is_current"] is True
        assert inserted.kwargs["session"] is session

        outbox_insert = collections["subscriptionOutbox"].insert_one.call_args
        assert outbox_insert.args[0]["_id"] == ObjectId(message.id)
        assert outbox_insert.args[0]["status"] == OutboxStatus.PENDING.value
        assert outbox_insert.kwargs["session"] is session

        assert created.id == record.id
        assert created.is_current is True

    def test_duplicate_year_maps_to_domain_error(self, store, collections, session):
        winner_id = new_object_id()
        session.with_transaction.side_effect = DuplicateKeyError("E11000 duplicate key error")
        collections["subscriptionDetails"].find_one.return_value = {"_id": ObjectId(winner_id)}

        with pytest.raises(DuplicateSubscriptionYearError) as exc_info:
            store.insert_current(make_record(), make_outbox())

        assert exc_info.value.existing_id == winner_id
        query = collections["subscriptionDetails"].find_one.call_args.args[0]
        assert query == {"profile_id": PROFILE_ID, "tenant_id": TENANT, "subscription_year": 2024}

    def test_lost_connection_is_transient(self, store, session):
        session.with_transaction.side_effect = AutoReconnect("connection reset")

        with pytest.raises(TransientInfraError):
            store.insert_current(make_record(), make_outbox())


class TestRecordOperations:
    def test_document_keeps_every_field(self):
        record = make_record(
            payment_type=PaymentType.DIRECT_DEBIT,
            subscription_status=SubscriptionStatus.RESIGNED,
            meta=AuditMeta(created_by=new_object_id()),
        )

        assert to_record(to_document(record)) == record

    def test_update_fields_serializes_models(self, store, collections):
        record = make_record()
        subscriptions = collections["subscriptionDetails"]
        subscriptions.find_one_and_update.return_value = to_document(record)
        meta = AuditMeta(created_by="a", updated_by=None)

        store.update_fields(record.id, meta=meta, payment_type=PaymentType.CARD_PAYMENT)

        query, update = subscriptions.find_one_and_update.call_args.args
        assert query == {"_id": ObjectId(record.id)}
        assert update["$set"]["meta"] == {"created_by": "a", "updated_by": None}
        assert update["$set"]["payment_type"] == PaymentType.CARD_PAYMENT
        assert "updated_at" in update["$set"]

    def test_update_unknown_record(self, store, collections):
        collections["subscriptionDetails"].find_one_and_update.return_value = None

        with pytest.raises(SubscriptionNotFoundError):
            store.update_fields(new_object_id(), deleted=True)
        with pytest.raises(SubscriptionNotFoundError):
            store.update_fields("not-an-id", deleted=True)

    def test_apply_reruns_mutation_after_conflict(self, store, collections):
        record = make_record()
        subscriptions = collections["subscriptionDetails"]
        subscriptions.find_one.return_value = to_document(record)
        subscriptions.replace_one.side_effect = [Mock(matched_count=0), Mock(matched_count=1)]
        mutator = Mock()

        updated = store.apply(record.id, mutator)

        assert mutator.call_count == 2
        assert updated.id == record.id
        query = subscriptions.replace_one.call_args.args[0]
        assert query == {"_id": ObjectId(record.id), "updated_at": record.updated_at}

    def test_apply_gives_up_on_persistent_conflict(self, store, collections):
        record = make_record()
        collections["subscriptionDetails"].find_one.return_value = to_document(record)
        collections["subscriptionDetails"].replace_one.return_value = Mock(matched_count=0)

        with pytest.raises(TransientInfraError):
            store.apply(record.id, lambda r: None)

    def test_find_current_hides_deleted_and_prefers_newest(self, store, collections):
        record = make_record()
        subscriptions = collections["subscriptionDetails"]
        subscriptions.find_one.return_value = to_document(record)

        assert store.find_current(PROFILE_ID).id == record.id

        query = subscriptions.find_one.call_args.args[0]
        assert query == {"profile_id": PROFILE_ID, "is_current": True, "deleted": {"$ne": True}}
        assert subscriptions.find_one.call_args.kwargs["sort"] == [("created_at", -1), ("_id", -1)]

    def test_query_filters(self, store, collections):
        subscriptions = collections["subscriptionDetails"]
        subscriptions.find.return_value.sort.return_value = []

        store.query(profile_id=PROFILE_ID, is_current=False, tenant_id=TENANT)

        assert subscriptions.find.call_args.args[0] == {
            "deleted": {"$ne": True},
            "profile_id": PROFILE_ID,
            "is_current": False,
            "tenant_id": TENANT,
        }


class TestOutboxOperations:
    def test_attempt_failure_is_one_atomic_update(self, store, collections):
        outbox = collections["subscriptionOutbox"]
        message = make_outbox()
        outbox.find_one_and_update.return_value = {"_id": ObjectId(message.id), "status": "failed"}

        status = store.mark_outbox_attempt_failed(message.id, "timeout", max_attempts=3)

        assert status == OutboxStatus.FAILED
        query, pipeline = outbox.find_one_and_update.call_args.args
        assert query == {"_id": ObjectId(message.id)}
        stage = pipeline[0]["$set"]
        assert stage["last_error"] == "timeout"
        assert stage["status"]["$cond"][0] == {"$gte": [{"$add": ["$attempts", 1]}, 3]}

    def test_pending_oldest_first(self, store, collections):
        outbox = collections["subscriptionOutbox"]
        message = make_outbox()
        outbox.find.return_value.sort.return_value.limit.return_value = [
            {**message.model_dump(exclude={"id"}), "_id": ObjectId(message.id)}
        ]

        assert [m.id for m in store.pending_outbox(limit=5)] == [message.id]
        assert outbox.find.call_args.args[0] == {"status": "pending"}
        outbox.find.return_value.sort.assert_called_once_with("created_at", 1)

    def test_prune_only_settled_messages(self, store, collections):
        outbox = collections["subscriptionOutbox"]
        outbox.delete_many.return_value = Mock(deleted_count=4)
        cutoff = datetime(2025, 1, 1, tzinfo=timezone.utc)

        assert store.prune_outbox(cutoff) == 4
        assert outbox.delete_many.call_args.args[0] == {
            "status": {"$in": ["dispatched", "failed"]},
            "created_at": {"$lt": cutoff},
        }

    def test_unknown_outbox_id(self, store, collections):
        assert store.get_outbox("missing") is None
        collections["subscriptionOutbox"].find_one.assert_not_called()


class TestMongoUserStore:
    @pytest.fixture
    def users(self, database):
        return MongoUserStore(database)

    def test_unique_external_key(self, users, collections):
        indexes = {c.kwargs["name"]: c for c in collections["users"].create_index.call_args_list}

        assert indexes["tenant_user"].kwargs["unique"] is True
        assert indexes["tenant_user"].args[0] == [("tenant_id", 1), ("user_id", 1)]

    def test_upsert_sets_identity_once(self, users, collections):
        internal_id = ObjectId()
        collections["users"].find_one_and_update.return_value = {
            "_id": internal_id,
            "tenant_id": TENANT,
            "user_id": "crm-1",
            "user_full_name": "Ann Byrne",
        }

        user = users.upsert(TENANT, "crm-1", user_full_name="Ann Byrne")

        key, update = collections["users"].find_one_and_update.call_args.args
        assert key == {"tenant_id": TENANT, "user_id": "crm-1"}
        assert update["$set"]["user_full_name"] == "Ann Byrne"
        assert "user_email" not in update["$set"]
        assert update["$setOnInsert"]["tenant_id"] == TENANT
        assert collections["users"].find_one_and_update.call_args.kwargs["upsert"] is True
        assert user.id == str(internal_id)

    def test_concurrent_first_upsert_retries_as_update(self, users, collections):
        winner = {"_id": ObjectId(), "tenant_id": TENANT, "user_id": "crm-1"}
        collections["users"].find_one_and_update.side_effect = [DuplicateKeyError("E11000"), winner]

        assert users.upsert(TENANT, "crm-1", user_email="a@example.org").id == str(winner["_id"])
        assert "upsert" not in collections["users"].find_one_and_update.call_args.kwargs

    def test_find_by_id_ignores_malformed_ids(self, users, collections):
        assert users.find_by_id("nope") is None
        collections["users"].find_one.assert_not_called()


class TestBackendSelection:
    def test_mongo_backend_builds_durable_stores(self, monkeypatch, collections):
        monkeypatch.setenv("STORAGE_BACKEND", "mongo")
        monkeypatch.setenv("MONGODB_URI", "mongodb://db.internal:27017")
        monkeypatch.setattr(subscription_store, "_store_instance", None)
        monkeypatch.setattr(user_store, "_user_store", None)
        monkeypatch.setattr(mongo, "_client", None)

        with patch("membership_subscriptions.repositories.mongo.MongoClient") as client_class:
            client_class.return_value.__getitem__.return_value.__getitem__.side_effect = (
                lambda name: collections[name]
            )
            subscriptions = subscription_store.get_subscription_store()
            users = user_store.get_user_store()

        assert isinstance(subscriptions, MongoSubscriptionStore)
        assert isinstance(users, MongoUserStore)
        client_class.assert_called_once()
        args, kwargs = client_class.call_args
        assert args == ("mongodb://db.internal:27017",)
        assert kwargs["tz_aware"] is True
        client_class.return_value.__getitem__.assert_called_with("membership")

        mongo.close_mongo_client()
        client_class.return_value.close.assert_called_once()
