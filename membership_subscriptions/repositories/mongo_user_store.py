"""MongoDB user cache - durable copy of CRM users keyed by (tenant_id, user_id)."""

from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from membership_subscriptions.models.user import UserRecord
from membership_subscriptions.repositories.mongo import unavailable_as_transient
from membership_subscriptions.utils.membership_year import utc_now
from membership_subscriptions.utils.object_id import parse_object_id

USERS_COLLECTION = "users"


def to_user(document: Dict[str, Any]) -> UserRecord:
    fields = {k: v for k, v in document.items() if k != "_id"}
    return UserRecord(id=str(document["_id"]), **fields)


class MongoUserStore:
    """Same contract as the in-memory UserStore, backed by the users collection."""

    def __init__(self, database: Database):
        self._users = database[USERS_COLLECTION]
        with unavailable_as_transient("ensure_indexes"):
            self._users.create_index(
                [("tenant_id", ASCENDING), ("user_id", ASCENDING)], unique=True, name="tenant_user"
            )
            self._users.create_index([("tenant_id", ASCENDING), ("user_email", ASCENDING)], name="tenant_email")

    def upsert(self, tenant_id: str, user_id: str, **fields: Optional[str]) -> UserRecord:
        """Insert or update a user by (tenant_id, user_id); the internal id never changes."""
        now = utc_now()
        changes = {name: fields[name] for name in ("user_email", "user_full_name") if name in fields}
        changes["updated_at"] = now
        update = {
            "$set": changes,
            "$setOnInsert": {"_id": ObjectId(), "tenant_id": tenant_id, "user_id": user_id, "created_at": now},
        }
        key = {"tenant_id": tenant_id, "user_id": user_id}
        with unavailable_as_transient("user_upsert"):
            try:
                document = self._users.find_one_and_update(
                    key, update, upsert=True, return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                # Two first-time upserts raced; the loser now matches the winner's row.
                document = self._users.find_one_and_update(
                    key, {"$set": changes}, return_document=ReturnDocument.AFTER
                )
        return to_user(document)

    def find_by_key(self, tenant_id: str, user_id: str) -> Optional[UserRecord]:
        with unavailable_as_transient("user_find_by_key"):
            document = self._users.find_one({"tenant_id": tenant_id, "user_id": user_id})
        return to_user(document) if document else None

    def find_by_id(self, internal_id: str) -> Optional[UserRecord]:
        parsed = parse_object_id(internal_id)
        if parsed is None:
            return None
        with unavailable_as_transient("user_find_by_id"):
            document = self._users.find_one({"_id": ObjectId(parsed)})
        return to_user(document) if document else None

    def get_all(self) -> List[UserRecord]:
        with unavailable_as_transient("user_get_all"):
            return [to_user(d) for d in self._users.find({})]

    def count(self) -> int:
        with unavailable_as_transient("user_count"):
            return self._users.count_documents({})

    def clear(self) -> None:
        with unavailable_as_transient("user_clear"):
            self._users.delete_many({})

    def __len__(self) -> int:
        return self.count()
