"""Subscription query/command API.

Implements:
- GET /api/v1/subscriptions/profile/{profileId}/current - Current subscription start date
- GET /api/v1/subscriptions - CRM listing with owner enrichment
- PUT /api/v1/subscriptions/resign/{profileId} - Resign the current subscription
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from membership_subscriptions.api.auth import CurrentUser, require_crm_user
from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models import (
    ApiEnvelope,
    CurrentSubscription,
    EnrichedSubscriptionView,
    ResignMembershipRequest,
    SubscriptionList,
    SubscriptionRecord,
    SubscriptionView,
    UserSummary,
)
from membership_subscriptions.models.api_response import (
    CancellationView,
    MetaView,
    ReminderView,
    ResignationView,
    YearendView,
)
from membership_subscriptions.services.subscription_service import (
    EnrichedSubscription,
    get_subscription_service,
)
from membership_subscriptions.utils.membership_year import to_iso_millis

logger = get_logger(__name__)
router = APIRouter(tags=["Subscriptions"], prefix="/api/v1/subscriptions")


def _enum_value(value) -> Optional[str]:
    return value.value if value is not None else None


def subscription_view(record: SubscriptionRecord) -> SubscriptionView:
    """Render a stored record with camelCase keys and ISO millisecond dates."""
    return SubscriptionView(**_view_fields(record))


def _view_fields(record: SubscriptionRecord) -> dict:
    cancellation = None
    if record.cancellation is not None:
        cancellation = CancellationView(
            dateCancelled=to_iso_millis(record.cancellation.date_cancelled),
            reason=record.cancellation.reason,
            gracePeriodEnd=to_iso_millis(record.cancellation.grace_period_end),
            reinstated=record.cancellation.reinstated,
        )

    resignation = None
    if record.resignation is not None:
        resignation = ResignationView(
            dateResigned=to_iso_millis(record.resignation.date_resigned),
            reason=record.resignation.reason,
        )

    return {
        "id": record.id,
        "tenantId": record.tenant_id,
        "profileId": record.profile_id,
        "applicationId": record.application_id,
        "userId": record.user_id,
        "subscriptionYear": record.subscription_year,
        "isCurrent": record.is_current,
        "subscriptionStatus": record.subscription_status.value,
        "startDate": to_iso_millis(record.start_date),
        "endDate": to_iso_millis(record.end_date),
        "rolloverDate": to_iso_millis(record.rollover_date),
        "cancellation": cancellation,
        "resignation": resignation,
        "reminders": [
            ReminderView(type=r.type.value, reminderDate=to_iso_millis(r.reminder_date)) for r in record.reminders
        ],
        "yearend": YearendView(
            processed=record.yearend.processed,
            processedAt=to_iso_millis(record.yearend.processed_at),
            result=_enum_value(record.yearend.result),
        ),
        "membershipMovement": record.membership_movement.value,
        "membershipCategory": record.membership_category,
        "paymentType": _enum_value(record.payment_type),
        "payrollNo": record.payroll_no,
        "paymentFrequency": _enum_value(record.payment_frequency),
        "meta": MetaView(createdBy=record.meta.created_by, updatedBy=record.meta.updated_by),
        "deleted": record.deleted,
        "createdAt": to_iso_millis(record.created_at),
        "updatedAt": to_iso_millis(record.updated_at),
    }


def enriched_view(item: EnrichedSubscription) -> EnrichedSubscriptionView:
    record = item.subscription
    user = None
    if item.user is not None:
        user = UserSummary(
            userId=item.user.user_id,
            userEmail=item.user.user_email,
            userFullName=item.user.user_full_name,
        )
    return EnrichedSubscriptionView(
        **_view_fields(record),
        user=user,
        lastModifiedBy=item.last_modified_by,
        lastModifiedAt=to_iso_millis(record.updated_at or record.created_at),
    )


@router.get(
    "/profile/{profile_id}/current",
    response_model=ApiEnvelope,
    summary="Get current subscription",
)
async def get_current_by_profile(profile_id: str) -> ApiEnvelope:
    """Start date of the profile's current subscription, or null.

    Raises:
        400: Malformed profileId
    """
    current = get_subscription_service().get_current_by_profile(profile_id)
    view = CurrentSubscription(startDate=to_iso_millis(current["startDate"])) if current else None
    return ApiEnvelope(status="success", data={"data": view.model_dump() if view else None})


@router.get(
    "",
    response_model=ApiEnvelope,
    summary="List subscriptions",
)
async def get_subscriptions(
    profile_id: Optional[str] = Query(None, alias="profileId"),
    application_id: Optional[str] = Query(None, alias="applicationId"),
    is_current: Optional[str] = Query(None, alias="isCurrent"),
    user: CurrentUser = Depends(require_crm_user),
) -> ApiEnvelope:
    """List non-deleted subscriptions, newest first (CRM only).

    Raises:
        400: Malformed profileId
        401: Missing or invalid token
        403: Caller is not a CRM user
    """
    items = get_subscription_service().get_subscriptions(
        profile_id=profile_id,
        application_id=application_id,
        is_current=is_current,
    )
    logger.info("subscriptions_listed", count=len(items), profile_id=profile_id, user_id=user.user_id)
    listing = SubscriptionList(count=len(items), data=[enriched_view(item) for item in items])
    return ApiEnvelope(status="success", data=listing.model_dump())


@router.put(
    "/resign/{profile_id}",
    response_model=ApiEnvelope,
    summary="Resign membership",
)
async def resign_membership(
    profile_id: str,
    request: ResignMembershipRequest,
    user: CurrentUser = Depends(require_crm_user),
) -> ApiEnvelope:
    """Resign the profile's current subscription (CRM only).

    Raises:
        400: Missing/invalid dateResigned or reason
        404: No current subscription for the profile
    """
    updated = get_subscription_service().resign_membership(
        profile_id=profile_id,
        date_resigned=request.dateResigned,
        reason=request.reason,
        actor_user_id=user.user_id,
        actor_tenant_id=user.tenant_id,
    )
    return ApiEnvelope(status="success", data=subscription_view(updated).model_dump())
