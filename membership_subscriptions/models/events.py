"""Bus event models - inbound requests, outbound notifications and the outbox.

Inbound payloads use the platform's camelCase wire names; fields are declared with
aliases so both spellings validate.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Routing keys consumed or published by the service."""

    SUBSCRIPTION_UPSERT_REQUESTED = "members.subscription.upsert.requested.v1"
    SUBSCRIPTION_CURRENT_UPDATED = "members.subscription.current.updated.v1"
    CRM_USER_CREATED = "user.crm.created.v1"
    CRM_USER_UPDATED = "user.crm.updated.v1"


class UpsertRequestedData(BaseModel):
    """Body of a subscription upsert request.

    Values are kept raw; the upsert engine decides what is valid.
    """

    profile_id: Optional[Any] = Field(None, alias="profileId")
    application_id: Optional[Any] = Field(None, alias="applicationId")
    membership_category: Optional[Any] = Field(None, alias="membershipCategory")
    date_joined: Optional[Any] = Field(None, alias="dateJoined")
    payment_type: Optional[Any] = Field(None, alias="paymentType")
    payroll_no: Optional[Any] = Field(None, alias="payrollNo")
    payment_frequency: Optional[Any] = Field(None, alias="paymentFrequency")
    user_id: Optional[Any] = Field(None, alias="userId")

    class Config:
        populate_by_name = True


class UpsertRequestedEvent(BaseModel):
    """members.subscription.upsert.requested.v1"""

    event_id: Optional[str] = Field(None, alias="eventId")
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    data: Optional[UpsertRequestedData] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "eventId": "evt-1",
                "correlationId": "corr-1",
                "tenantId": "tenant-1",
                "data": {
                    "profileId": "665f1c2e9b1e8a3d4c5b6a70",
                    "dateJoined": "2024-03-10",
                    "paymentType": "Payroll Deduction",
                    "paymentFrequency": "Monthly",
                },
            }
        }


class CrmUserData(BaseModel):
    user_id: Optional[str] = Field(None, alias="userId")
    user_email: Optional[str] = Field(None, alias="userEmail")
    user_full_name: Optional[str] = Field(None, alias="userFullName")
    tenant_id: Optional[str] = Field(None, alias="tenantId")

    class Config:
        populate_by_name = True


class CrmUserEvent(BaseModel):
    """user.crm.created.v1 / user.crm.updated.v1"""

    event_id: Optional[str] = Field(None, alias="eventId")
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    data: CrmUserData = Field(default_factory=CrmUserData)

    class Config:
        populate_by_name = True


class EventMetadata(BaseModel):
    service: str
    version: str


class PublishOptions(BaseModel):
    """Routing options attached to a published event."""

    tenant_id: Optional[str] = None
    correlation_id: Optional[str] = None
    exchange: Optional[str] = None
    routing_key: Optional[str] = None
    metadata: Optional[EventMetadata] = None


class EventEnvelope(BaseModel):
    """JSON message body published to Pub/Sub."""

    event_id: str = Field(..., alias="eventId")
    event_type: str = Field(..., alias="eventType")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    occurred_at: str = Field(..., alias="occurredAt")
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[EventMetadata] = None

    class Config:
        populate_by_name = True


class OutboxStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class OutboxMessage(BaseModel):
    """Notification persisted with the write it announces, published afterwards."""

    id: str
    topic: str
    payload: dict[str, Any]
    options: PublishOptions = Field(default_factory=PublishOptions)
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
