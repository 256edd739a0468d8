"""API response models.

Every endpoint answers with the platform envelope:
- success: {"status": "success", "data": ...}
- validation / not found / auth failure: {"status": "fail", "data": "<message>"}
- server fault: {"status": "error", "data": "Server Error"}
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ApiEnvelope(BaseModel):
    status: str = Field(..., description="success, fail or error")
    data: Any = Field(None, description="Payload or failure message")


class CurrentSubscription(BaseModel):
    """Minimal current-subscription view for high-frequency callers."""

    startDate: Optional[str] = Field(None, description="Start date of the current subscription")


class UserSummary(BaseModel):
    userId: str
    userEmail: Optional[str] = None
    userFullName: Optional[str] = None


class CancellationView(BaseModel):
    dateCancelled: Optional[str] = None
    reason: Optional[str] = None
    gracePeriodEnd: Optional[str] = None
    reinstated: bool = False


class ResignationView(BaseModel):
    dateResigned: Optional[str] = None
    reason: Optional[str] = None


class ReminderView(BaseModel):
    type: str
    reminderDate: Optional[str] = None


class YearendView(BaseModel):
    processed: bool = False
    processedAt: Optional[str] = None
    result: Optional[str] = None


class MetaView(BaseModel):
    createdBy: Optional[str] = None
    updatedBy: Optional[str] = None


class SubscriptionView(BaseModel):
    """Subscription as returned to CRM callers."""

    id: str
    tenantId: Optional[str] = None
    profileId: str
    applicationId: Optional[str] = None
    userId: Optional[str] = None
    subscriptionYear: int
    isCurrent: bool
    subscriptionStatus: str
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    rolloverDate: Optional[str] = None
    cancellation: Optional[CancellationView] = None
    resignation: Optional[ResignationView] = None
    reminders: list[ReminderView] = Field(default_factory=list)
    yearend: YearendView = Field(default_factory=YearendView)
    membershipMovement: str
    membershipCategory: Optional[str] = None
    paymentType: Optional[str] = None
    payrollNo: Optional[str] = None
    paymentFrequency: Optional[str] = None
    meta: MetaView = Field(default_factory=MetaView)
    deleted: bool = False
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "665f1c2e9b1e8a3d4c5b6a79",
                "tenantId": "tenant-1",
                "profileId": "665f1c2e9b1e8a3d4c5b6a70",
                "subscriptionYear": 2024,
                "isCurrent": True,
                "subscriptionStatus": "Active",
                "startDate": "2024-03-10T00:00:00.000Z",
                "endDate": "2024-12-31T23:59:59.999Z",
                "rolloverDate": "2025-01-01T00:00:00.000Z",
                "membershipMovement": "NewJoin",
                "paymentType": "Payroll Deduction",
                "paymentFrequency": "Monthly",
            }
        }


class EnrichedSubscriptionView(SubscriptionView):
    """Subscription plus denormalized owner and last-modifier identity."""

    user: Optional[UserSummary] = None
    lastModifiedBy: Optional[str] = None
    lastModifiedAt: Optional[str] = None


class SubscriptionList(BaseModel):
    count: int
    data: list[EnrichedSubscriptionView] = Field(default_factory=list)
