"""Pydantic models for records, bus events, configuration and the HTTP API."""

# Configuration models
from .settings import (
    AuthSettings,
    EventSettings,
    OutboxSettings,
    PubSubSettings,
    ServiceInfo,
    ServiceSettings,
)

# Subscription models
from .subscription import (
    AuditMeta,
    Cancellation,
    MembershipMovement,
    PaymentFrequency,
    PaymentType,
    Reminder,
    ReminderType,
    Resignation,
    SubscriptionRecord,
    SubscriptionStatus,
    Yearend,
    YearendResult,
)

# User cache
from .user import UserRecord

# Bus events
from .events import (
    CrmUserData,
    CrmUserEvent,
    EventEnvelope,
    EventMetadata,
    EventType,
    OutboxMessage,
    OutboxStatus,
    PublishOptions,
    UpsertRequestedData,
    UpsertRequestedEvent,
)

# API models
from .api_request import ResignMembershipRequest
from .api_response import (
    ApiEnvelope,
    CurrentSubscription,
    EnrichedSubscriptionView,
    SubscriptionList,
    SubscriptionView,
    UserSummary,
)

__all__ = [
    # Configuration
    "AuthSettings",
    "EventSettings",
    "OutboxSettings",
    "PubSubSettings",
    "ServiceInfo",
    "ServiceSettings",
    # Subscription
    "AuditMeta",
    "Cancellation",
    "MembershipMovement",
    "PaymentFrequency",
    "PaymentType",
    "Reminder",
    "ReminderType",
    "Resignation",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "Yearend",
    "YearendResult",
    # Users
    "UserRecord",
    # Events
    "CrmUserData",
    "CrmUserEvent",
    "EventEnvelope",
    "EventMetadata",
    "EventType",
    "OutboxMessage",
    "OutboxStatus",
    "PublishOptions",
    "UpsertRequestedData",
    "UpsertRequestedEvent",
    # API
    "ResignMembershipRequest",
    "ApiEnvelope",
    "CurrentSubscription",
    "EnrichedSubscriptionView",
    "SubscriptionList",
    "SubscriptionView",
    "UserSummary",
]
