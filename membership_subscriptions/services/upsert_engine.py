"""Subscription upsert engine - year rollover and movement decisions.

Responsibilities:
- Validate upsert requests from the profile service
- Derive the subscription year and its coverage dates
- Classify the membership movement (NewJoin / Rejoin / Reinstate)
- Update the existing record for the year, or create a new current record
- Persist and dispatch the "current subscription updated" notification
"""

from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from membership_subscriptions.exceptions import (
    DuplicateSubscriptionYearError,
    SubscriptionValidationError,
)
from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.events import (
    EventMetadata,
    EventType,
    OutboxMessage,
    PublishOptions,
    UpsertRequestedData,
    UpsertRequestedEvent,
)
from membership_subscriptions.models.subscription import (
    AuditMeta,
    MembershipMovement,
    PaymentFrequency,
    PaymentType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from membership_subscriptions.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from membership_subscriptions.state_logger import log_payment_details_change
from membership_subscriptions.utils.membership_year import (
    end_of_year,
    ensure_utc,
    parse_date,
    start_of_next_year,
    subscription_year_for,
    to_iso_millis,
)
from membership_subscriptions.utils.object_id import new_object_id, parse_object_id

logger = get_logger(__name__)

# Fields an upsert for an existing year may change
UPDATABLE_FIELDS = ("payment_type", "payment_frequency", "payroll_no")


class UpsertAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class UpsertOutcome(BaseModel):
    """Result of processing one upsert request."""

    action: UpsertAction
    subscription: SubscriptionRecord
    membership_movement: MembershipMovement
    published: bool = False
    outbox_id: Optional[str] = None


def classify_movement(existing: list[SubscriptionRecord], subscription_year: int) -> MembershipMovement:
    """Classify why a subscription period starts.

    Args:
        existing: The profile's existing records
        subscription_year: Year the request falls into

    Returns:
        NEW_JOIN without history, REJOIN if a record already started in the
        same year, REINSTATE otherwise
    """
    if not existing:
        return MembershipMovement.NEW_JOIN
    if any(s.start_date and ensure_utc(s.start_date).year == subscription_year for s in existing):
        return MembershipMovement.REJOIN
    return MembershipMovement.REINSTATE


class SubscriptionUpsertEngine:
    """Materializes yearly subscription records from upsert requests.

    The store enforces one record per (tenant, profile, year) and swaps the current
    record atomically; a lost insert race is handled as an update of the winner.
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        outbox_dispatcher=None,
        config=None,
    ):
        """Initialize upsert engine.

        Args:
            subscription_store: Subscription storage (defaults to global instance)
            outbox_dispatcher: Dispatcher for persisted notifications (defaults to global instance)
            config: Configuration (defaults to global instance)
        """
        if config is None:
            from membership_subscriptions.config import get_config

            config = get_config()

        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.config = config
        self._outbox_dispatcher = outbox_dispatcher

        logger.info("subscription_upsert_engine_initialized")

    def _get_outbox_dispatcher(self):
        """lazy load outbox dispatcher to avoid circular import"""
        if self._outbox_dispatcher is None:
            from membership_subscriptions.services.outbox_dispatcher import get_outbox_dispatcher

            self._outbox_dispatcher = get_outbox_dispatcher()
        return self._outbox_dispatcher

    def handle_upsert_requested(self, payload: Dict[str, Any]) -> UpsertOutcome:
        """Bus handler for members.subscription.upsert.requested.v1.

        Errors are logged with the event context and re-raised so the bus nacks
        the message and redelivers it.

        Args:
            payload: Decoded event envelope

        Returns:
            UpsertOutcome
        """
        payload = payload or {}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        logger.info(
            "subscription_upsert_received",
            event_id=payload.get("eventId"),
            correlation_id=payload.get("correlationId"),
            tenant_id=payload.get("tenantId"),
            profile_id=data.get("profileId"),
        )

        try:
            try:
                event = UpsertRequestedEvent.model_validate(payload)
            except PydanticValidationError as e:
                raise SubscriptionValidationError(f"Malformed upsert event: {e}") from e
            return self.process(event)
        except Exception as e:
            logger.error(
                "subscription_upsert_failed",
                error=str(e),
                error_type=type(e).__name__,
                event_id=payload.get("eventId"),
                correlation_id=payload.get("correlationId"),
                tenant_id=payload.get("tenantId"),
                profile_id=data.get("profileId"),
                date_joined=str(data.get("dateJoined")),
                exc_info=True,
            )
            raise

    def process(self, event: UpsertRequestedEvent) -> UpsertOutcome:
        """Decide between updating the year's record and creating a new current one.

        Args:
            event: Validated upsert request

        Returns:
            UpsertOutcome describing what was written

        Raises:
            SubscriptionValidationError: Missing/malformed profileId or dateJoined
        """
        data = event.data or UpsertRequestedData()
        tenant_id = event.tenant_id or None

        if data.profile_id is None or data.profile_id == "":
            raise SubscriptionValidationError("profileId is required")
        if data.date_joined is None or data.date_joined == "":
            raise SubscriptionValidationError("dateJoined is required")
        if not tenant_id:
            logger.warning("subscription_upsert_missing_tenant", event_id=event.event_id)

        profile_id = parse_object_id(data.profile_id)
        if profile_id is None:
            raise SubscriptionValidationError(f"Invalid profileId format: {data.profile_id}")

        start_date = parse_date(data.date_joined)
        if start_date is None:
            raise SubscriptionValidationError(f"Invalid dateJoined format: {data.date_joined}")

        subscription_year = subscription_year_for(start_date)
        end_date = end_of_year(start_date)
        rollover_date = start_of_next_year(start_date)

        logger.info(
            "subscription_upsert_processing",
            profile_id=profile_id,
            subscription_year=subscription_year,
            start_date=to_iso_millis(start_date),
            end_date=to_iso_millis(end_date),
            tenant_id=tenant_id,
        )

        existing = self.store.list_for_profile(profile_id, tenant_id)
        movement = classify_movement(existing, subscription_year)
        payment_fields = self._commercial_fields(data, profile_id)

        existing_for_year = self.store.find_for_year(profile_id, subscription_year, tenant_id)
        if existing_for_year is not None:
            return self._update_existing(existing_for_year, payment_fields, movement)

        record = SubscriptionRecord(
            id=new_object_id(),
            tenant_id=tenant_id,
            profile_id=profile_id,
            application_id=self._accept_text(data.application_id, "applicationId", profile_id),
            user_id=self._accept_text(data.user_id, "userId", profile_id),
            subscription_year=subscription_year,
            is_current=True,
            subscription_status=SubscriptionStatus.ACTIVE,
            start_date=start_date,
            end_date=end_date,
            rollover_date=rollover_date,
            membership_movement=movement,
            membership_category=self._accept_text(data.membership_category, "membershipCategory", profile_id),
            **payment_fields,
        )
        outbox_message = self._current_updated_message(record, event)

        try:
            created = self.store.insert_current(record, outbox_message)
        except DuplicateSubscriptionYearError as dup:
            # Another delivery created the year first; treat this one as the replay.
            logger.warning(
                "subscription_upsert_lost_race",
                profile_id=profile_id,
                subscription_year=subscription_year,
                existing_id=dup.existing_id,
            )
            winner = self.store.get_by_id(dup.existing_id)
            return self._update_existing(winner, payment_fields, movement)

        logger.info(
            "subscription_created",
            subscription_id=created.id,
            profile_id=profile_id,
            subscription_year=subscription_year,
            membership_movement=movement.value,
            tenant_id=tenant_id,
        )

        published = self._get_outbox_dispatcher().dispatch(outbox_message.id)
        if not published:
            logger.warning(
                "subscription_current_updated_pending",
                subscription_id=created.id,
                outbox_id=outbox_message.id,
            )

        return UpsertOutcome(
            action=UpsertAction.CREATED,
            subscription=created,
            membership_movement=movement,
            published=published,
            outbox_id=outbox_message.id,
        )

    def _update_existing(
        self,
        existing: SubscriptionRecord,
        payment_fields: Dict[str, Any],
        movement: MembershipMovement,
    ) -> UpsertOutcome:
        """Apply payment field changes to the year's record. Nothing else changes."""
        logger.info(
            "subscription_exists_for_year",
            subscription_id=existing.id,
            subscription_year=existing.subscription_year,
        )

        if not payment_fields:
            return UpsertOutcome(
                action=UpsertAction.UNCHANGED,
                subscription=existing,
                membership_movement=movement,
            )

        # System-originated change: no acting user
        meta = AuditMeta(created_by=existing.meta.created_by, updated_by=None)
        updated = self.store.update_fields(existing.id, meta=meta, **payment_fields)

        log_payment_details_change(
            subscription_id=existing.id,
            profile_id=existing.profile_id,
            changes={name: (getattr(existing, name), value) for name, value in payment_fields.items()},
            tenant_id=existing.tenant_id,
        )
        return UpsertOutcome(
            action=UpsertAction.UPDATED,
            subscription=updated,
            membership_movement=movement,
        )

    def _current_updated_message(
        self, record: SubscriptionRecord, event: UpsertRequestedEvent
    ) -> OutboxMessage:
        topic = EventType.SUBSCRIPTION_CURRENT_UPDATED.value
        return OutboxMessage(
            id=new_object_id(),
            topic=topic,
            payload={"subscriptionId": record.id, "profileId": record.profile_id},
            options=PublishOptions(
                tenant_id=event.tenant_id,
                correlation_id=event.correlation_id,
                exchange=self.config.pubsub.exchange,
                routing_key=topic,
                metadata=EventMetadata(
                    service=self.config.service.name,
                    version=self.config.service.version,
                ),
            ),
        )

    def _commercial_fields(self, data: UpsertRequestedData, profile_id: str) -> Dict[str, Any]:
        """Payment fields present and valid in the request."""
        candidates = {
            "payment_type": self._accept_enum(data.payment_type, PaymentType, "paymentType", profile_id),
            "payment_frequency": self._accept_enum(
                data.payment_frequency, PaymentFrequency, "paymentFrequency", profile_id
            ),
            "payroll_no": self._accept_text(data.payroll_no, "payrollNo", profile_id),
        }
        return {name: value for name, value in candidates.items() if value is not None}

    @staticmethod
    def _accept_enum(value: Any, enum_cls: Type[Enum], field: str, profile_id: str) -> Optional[Enum]:
        """Return the enum member for value, or None (logged) when it is not allowed."""
        if value is None:
            return None
        try:
            return enum_cls(value)
        except ValueError:
            logger.warning(
                "subscription_field_dropped",
                field=field,
                value=str(value),
                allowed=[member.value for member in enum_cls],
                profile_id=profile_id,
            )
            return None

    @staticmethod
    def _accept_text(value: Any, field: str, profile_id: str) -> Optional[str]:
        """Return a non-empty string for value, or None (logged when unusable)."""
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            logger.warning("subscription_field_dropped", field=field, value=str(value), profile_id=profile_id)
            return None
        text = str(value).strip()
        return text or None


_engine_instance: Optional[SubscriptionUpsertEngine] = None


def get_upsert_engine() -> SubscriptionUpsertEngine:
    """Get global upsert engine instance (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = SubscriptionUpsertEngine()
    return _engine_instance
