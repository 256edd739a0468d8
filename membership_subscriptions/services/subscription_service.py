"""Query and command operations behind the HTTP API.

- get_current_by_profile: minimal {startDate} view for high-frequency callers
- get_subscriptions: CRM listing enriched with cached user identity
- resign_membership: ends a profile's current subscription
"""

from typing import Any, List, Optional

from pydantic import BaseModel

from membership_subscriptions.exceptions import (
    EnrichmentFailure,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.subscription import (
    Resignation,
    SubscriptionRecord,
    SubscriptionStatus,
)
from membership_subscriptions.models.user import UserRecord
from membership_subscriptions.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from membership_subscriptions.repositories.user_store import UserStore, get_user_store
from membership_subscriptions.services.user_directory import UserDirectory
from membership_subscriptions.utils.membership_year import parse_date
from membership_subscriptions.utils.object_id import parse_object_id

logger = get_logger(__name__)


class EnrichedSubscription(BaseModel):
    """A subscription with its denormalized owner and last modifier."""

    subscription: SubscriptionRecord
    user: Optional[UserRecord] = None
    last_modified_by: Optional[str] = None


def _parse_is_current(value: Optional[Any]) -> Optional[bool]:
    """Only the literal strings "true" / "false" filter; anything else is ignored."""
    if value is True or value == "true":
        return True
    if value is False or value == "false":
        return False
    return None


class SubscriptionService:
    """Read and command operations over the subscription store."""

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        user_store: Optional[UserStore] = None,
    ):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.users = user_store if user_store is not None else get_user_store()
        self.directory = UserDirectory(self.users)

    def _require_profile_id(self, profile_id: Any) -> str:
        parsed = parse_object_id(profile_id)
        if parsed is None:
            raise SubscriptionValidationError("Invalid profileId")
        return parsed

    def get_current_by_profile(self, profile_id: str) -> Optional[dict]:
        """Start date of the profile's current, non-deleted subscription.

        Args:
            profile_id: Profile id

        Returns:
            {"startDate": datetime} or None

        Raises:
            SubscriptionValidationError: If profile_id is malformed
        """
        profile_id = self._require_profile_id(profile_id)
        current = self.store.find_current(profile_id)
        if current is None:
            logger.debug("current_subscription_not_found", profile_id=profile_id)
            return None
        return {"startDate": current.start_date}

    def get_subscriptions(
        self,
        profile_id: Optional[str] = None,
        application_id: Optional[str] = None,
        is_current: Optional[Any] = None,
    ) -> List[EnrichedSubscription]:
        """List non-deleted subscriptions, newest first, with identity enrichment.

        Args:
            profile_id: Filter by profile
            application_id: Filter by membership application
            is_current: "true" / "false" filter on the current flag

        Returns:
            EnrichedSubscription list; failed enrichments leave fields as None

        Raises:
            SubscriptionValidationError: If profile_id is given but malformed
        """
        if profile_id:
            profile_id = self._require_profile_id(profile_id)

        records = self.store.query(
            profile_id=profile_id or None,
            application_id=application_id or None,
            is_current=_parse_is_current(is_current),
        )
        return [self._enrich(record) for record in records]

    def _enrich(self, record: SubscriptionRecord) -> EnrichedSubscription:
        user = None
        last_modified_by = None

        try:
            user = self._lookup_owner(record)
        except EnrichmentFailure as e:
            logger.error("subscription_owner_lookup_failed", subscription_id=record.id, error=str(e))

        try:
            last_modified_by = self._lookup_modifier_name(record)
        except EnrichmentFailure as e:
            logger.error("subscription_modifier_lookup_failed", subscription_id=record.id, error=str(e))

        return EnrichedSubscription(subscription=record, user=user, last_modified_by=last_modified_by)

    def _lookup_owner(self, record: SubscriptionRecord) -> Optional[UserRecord]:
        if not record.user_id or not record.tenant_id:
            return None
        try:
            return self.users.find_by_key(record.tenant_id, record.user_id)
        except Exception as e:
            raise EnrichmentFailure(f"owner lookup failed: {e}") from e

    def _lookup_modifier_name(self, record: SubscriptionRecord) -> Optional[str]:
        if not record.meta.updated_by:
            return None
        try:
            user = self.users.find_by_id(record.meta.updated_by)
        except Exception as e:
            raise EnrichmentFailure(f"updatedBy lookup failed: {e}") from e
        return user.user_full_name if user else None

    def resign_membership(
        self,
        profile_id: str,
        date_resigned: Any,
        reason: Optional[str],
        actor_user_id: Optional[str] = None,
        actor_tenant_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Resign the profile's current subscription.

        The record stays in its year with its movement unchanged; it stops being
        current and no replacement is created.

        Args:
            profile_id: Profile id
            date_resigned: Resignation date (ISO 8601)
            reason: Resignation reason
            actor_user_id: External id of the CRM user making the change
            actor_tenant_id: Tenant of that user; narrows the lookup when present

        Returns:
            Updated SubscriptionRecord

        Raises:
            SubscriptionValidationError: Missing/invalid input
            SubscriptionNotFoundError: Profile has no current subscription
        """
        profile_id = self._require_profile_id(profile_id)

        if date_resigned in (None, "") or reason is None or not str(reason).strip():
            raise SubscriptionValidationError("dateResigned and reason are required")

        resigned_at = parse_date(date_resigned)
        if resigned_at is None:
            raise SubscriptionValidationError("Invalid dateResigned format")

        current = self.store.find_current(profile_id, tenant_id=actor_tenant_id or None)
        if current is None:
            raise SubscriptionNotFoundError("No current subscription found for this profile")

        updated_by = self.directory.find_internal_id(actor_tenant_id, actor_user_id)

        def resign(record: SubscriptionRecord) -> None:
            record.resignation = Resignation(date_resigned=resigned_at, reason=str(reason).strip())
            record.set_current(False, reason="resigned")
            record.set_status(SubscriptionStatus.RESIGNED, reason=str(reason).strip())
            record.meta.updated_by = updated_by

        updated = self.store.apply(current.id, resign)
        logger.info(
            "membership_resigned",
            subscription_id=updated.id,
            profile_id=profile_id,
            subscription_year=updated.subscription_year,
            updated_by=updated_by,
        )
        return updated


_service: Optional[SubscriptionService] = None


def get_subscription_service() -> SubscriptionService:
    """Get global subscription service (singleton)."""
    global _service
    if _service is None:
        _service = SubscriptionService()
    return _service
