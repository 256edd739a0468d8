"""User directory cache - in-memory copy of CRM users keyed by (tenant_id, user_id).

MongoUserStore is the durable backend with the same contract.
"""

import threading
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from membership_subscriptions.models.user import UserRecord
from membership_subscriptions.utils.membership_year import utc_now
from membership_subscriptions.utils.object_id import new_object_id

if TYPE_CHECKING:
    from membership_subscriptions.repositories.mongo_user_store import MongoUserStore


class UserStore:
    """In-memory cache of CRM user identity.

    Lookups by external key (tenant_id, user_id) and by internal id, which is what
    subscription audit fields reference.
    """

    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self._by_key: Dict[Tuple[str, str], str] = {}
        self._lock = threading.RLock()

    def upsert(
        self,
        tenant_id: str,
        user_id: str,
        **fields: Optional[str],
    ) -> UserRecord:
        """Insert or update a user by (tenant_id, user_id).

        Args:
            tenant_id: Tenant scope
            user_id: External CRM user id
            **fields: user_email / user_full_name values to write

        Returns:
            Stored copy of the user
        """
        with self._lock:
            now = utc_now()
            internal_id = self._by_key.get((tenant_id, user_id))
            if internal_id is None:
                user = UserRecord(
                    id=new_object_id(),
                    tenant_id=tenant_id,
                    user_id=user_id,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
                self._users[user.id] = user
                self._by_key[(tenant_id, user_id)] = user.id
                return user.model_copy()

            user = self._users[internal_id]
            for name in ("user_email", "user_full_name"):
                if name in fields:
                    setattr(user, name, fields[name])
            user.updated_at = now
            return user.model_copy()

    def find_by_key(self, tenant_id: str, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            internal_id = self._by_key.get((tenant_id, user_id))
            return self._users[internal_id].model_copy() if internal_id else None

    def find_by_id(self, internal_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(internal_id)
            return user.model_copy() if user else None

    def get_all(self) -> List[UserRecord]:
        with self._lock:
            return [u.model_copy() for u in self._users.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._users)

    def clear(self) -> None:
        with self._lock:
            self._users.clear()
            self._by_key.clear()

    def __len__(self) -> int:
        return self.count()


_user_store: Optional["UserStore | MongoUserStore"] = None
_user_store_lock = threading.Lock()


def get_user_store() -> "UserStore | MongoUserStore":
    """Get global user store instance (singleton), backed as configured."""
    global _user_store
    if _user_store is None:
        with _user_store_lock:
            if _user_store is None:
                from membership_subscriptions.config import get_config

                storage = get_config().storage
                if storage.backend == "mongo":
                    from membership_subscriptions.repositories.mongo import get_database
                    from membership_subscriptions.repositories.mongo_user_store import MongoUserStore

                    _user_store = MongoUserStore(get_database(storage))
                else:
                    _user_store = UserStore()
    return _user_store


def reset_user_store() -> None:
    """Clear the global user store."""
    get_user_store().clear()
