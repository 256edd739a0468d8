"""CRM user directory sync - keeps the local user cache current from CRM events."""

from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.events import CrmUserEvent
from membership_subscriptions.models.user import UserRecord
from membership_subscriptions.repositories.user_store import UserStore, get_user_store

logger = get_logger(__name__)


class UserDirectory:
    """Handles user.crm.created.v1 / user.crm.updated.v1 and answers identity lookups."""

    def __init__(self, user_store: Optional[UserStore] = None):
        self.store = user_store if user_store is not None else get_user_store()

    def _parse(self, payload: Dict[str, Any], event_name: str) -> Optional[CrmUserEvent]:
        try:
            event = CrmUserEvent.model_validate(payload or {})
        except PydanticValidationError as e:
            logger.warning("crm_user_event_invalid", event=event_name, error=str(e))
            return None

        if not event.data.user_id or not event.data.tenant_id:
            logger.warning(
                "crm_user_event_invalid",
                event=event_name,
                message="missing userId or tenantId",
                event_id=event.event_id,
            )
            return None
        return event

    def _upsert_from_event(
        self, payload: Dict[str, Any], event_name: str, log_event: str
    ) -> Optional[UserRecord]:
        event = self._parse(payload, event_name)
        if event is None:
            return None

        data = event.data
        user = self.store.upsert(
            data.tenant_id,
            data.user_id,
            user_email=data.user_email or None,
            user_full_name=data.user_full_name or None,
        )
        logger.info(log_event, user_id=data.user_id, tenant_id=data.tenant_id, internal_id=user.id)
        return user

    def handle_user_created(self, payload: Dict[str, Any]) -> Optional[UserRecord]:
        """Upsert a CRM user with every identity field from the event."""
        return self._upsert_from_event(payload, "user.crm.created", "crm_user_created")

    def handle_user_updated(self, payload: Dict[str, Any]) -> Optional[UserRecord]:
        """Refresh email and full name; an unknown user is inserted."""
        return self._upsert_from_event(payload, "user.crm.updated", "crm_user_updated")

    def find_internal_id(self, tenant_id: Optional[str], user_id: Optional[str]) -> Optional[str]:
        """Internal id for an external CRM user, or None (lookup failures included)."""
        if not tenant_id or not user_id:
            return None
        try:
            user = self.store.find_by_key(tenant_id, user_id)
        except Exception as e:
            logger.warning("user_lookup_failed", user_id=user_id, tenant_id=tenant_id, error=str(e))
            return None
        return user.id if user else None


_directory: Optional[UserDirectory] = None


def get_user_directory() -> UserDirectory:
    """Get global user directory (singleton)."""
    global _directory
    if _directory is None:
        _directory = UserDirectory()
    return _directory
