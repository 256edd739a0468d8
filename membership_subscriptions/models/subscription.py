"""Subscription record, lifecycle enums and sub-structures.

One SubscriptionRecord exists per (tenant, profile, subscription year).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a yearly subscription."""

    ACTIVE = "Active"
    RESIGNED = "Resigned"
    CANCELLED = "Cancelled"
    SUSPENDED = "Suspended"
    ARCHIVED = "Archived"


class MembershipMovement(str, Enum):
    """Why a new subscription period started."""

    NEW_JOIN = "NewJoin"  # Profile has no subscription history
    REJOIN = "Rejoin"  # Profile already started a subscription in this year
    REINSTATE = "Reinstate"  # Profile returns after a gap year


class PaymentType(str, Enum):
    PAYROLL_DEDUCTION = "Payroll Deduction"
    DIRECT_DEBIT = "Direct Debit"
    CARD_PAYMENT = "Card Payment"
    SBO_PAYMENT = "Standing Bank Order"


class PaymentFrequency(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUALLY = "Annually"


class ReminderType(str, Enum):
    R1 = "R1"
    R2 = "R2"
    R3 = "R3"


class YearendResult(str, Enum):
    SUSPENDED = "Suspended"
    ARCHIVED = "Archived"
    RENEWED = "Renewed"


class Cancellation(BaseModel):
    """Cancellation workflow details."""

    date_cancelled: Optional[datetime] = None
    reason: Optional[str] = None
    grace_period_end: Optional[datetime] = Field(None, description="dateCancelled + 28 days")
    reinstated: bool = False


class Resignation(BaseModel):
    """Resignation workflow details."""

    date_resigned: Optional[datetime] = None
    reason: Optional[str] = None


class Reminder(BaseModel):
    type: ReminderType
    reminder_date: Optional[datetime] = None


class Yearend(BaseModel):
    """Year-end processing outcome."""

    processed: bool = False
    processed_at: Optional[datetime] = None
    result: Optional[YearendResult] = None


class AuditMeta(BaseModel):
    """Internal ids of the cached users that created / last updated the record."""

    created_by: Optional[str] = None
    updated_by: Optional[str] = None


class SubscriptionRecord(BaseModel):
    """Internal subscription record for one profile and one membership year."""

    id: str = Field(..., description="Subscription id (ObjectId hex)")
    tenant_id: Optional[str] = Field(None, description="Tenant scope")
    profile_id: str = Field(..., description="Owning profile id (ObjectId hex)")
    application_id: Optional[str] = Field(None, description="Membership application id")
    user_id: Optional[str] = Field(None, description="External user id of the profile owner")

    subscription_year: int = Field(..., description="UTC year of the join date")
    is_current: bool = Field(default=True, description="Only one record per profile is current")
    subscription_status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE)

    # Coverage
    start_date: datetime = Field(..., description="Join/renewal date")
    end_date: datetime = Field(..., description="Dec 31 23:59:59.999 UTC of the year")
    rollover_date: Optional[datetime] = Field(None, description="Jan 1 00:00 UTC of the next year")

    # Workflows
    cancellation: Optional[Cancellation] = None
    resignation: Optional[Resignation] = None
    reminders: list[Reminder] = Field(default_factory=list)
    yearend: Yearend = Field(default_factory=Yearend)

    # Classification, set once at creation
    membership_movement: MembershipMovement = Field(default=MembershipMovement.NEW_JOIN)

    # Commercial details
    membership_category: Optional[str] = Field(None, description="Accepted only at creation")
    payment_type: Optional[PaymentType] = None
    payroll_no: Optional[str] = None
    payment_frequency: Optional[PaymentFrequency] = None

    meta: AuditMeta = Field(default_factory=AuditMeta)
    deleted: bool = Field(default=False, description="Soft-delete flag")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Change subscription status and log the transition.

        Args:
            new_status: Status to transition to
            reason: Reason for the change
        """
        from membership_subscriptions.state_logger import log_subscription_status_change

        old_status = self.subscription_status
        if old_status != new_status:
            self.subscription_status = new_status
            log_subscription_status_change(
                subscription_id=self.id,
                profile_id=self.profile_id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
                tenant_id=self.tenant_id,
            )

    def set_current(self, is_current: bool, reason: Optional[str] = None) -> None:
        """Flip the current flag and log the change."""
        from membership_subscriptions.state_logger import log_current_flag_change

        if self.is_current != is_current:
            self.is_current = is_current
            log_current_flag_change(
                subscription_id=self.id,
                profile_id=self.profile_id,
                subscription_year=self.subscription_year,
                is_current=is_current,
                reason=reason,
                tenant_id=self.tenant_id,
            )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "665f1c2e9b1e8a3d4c5b6a79",
                "tenant_id": "tenant-1",
                "profile_id": "665f1c2e9b1e8a3d4c5b6a70",
                "subscription_year": 2024,
                "is_current": True,
                "subscription_status": SubscriptionStatus.ACTIVE,
                "start_date": "2024-03-10T00:00:00.000Z",
                "end_date": "2024-12-31T23:59:59.999Z",
                "rollover_date": "2025-01-01T00:00:00.000Z",
                "membership_movement": MembershipMovement.NEW_JOIN,
                "payment_type": PaymentType.PAYROLL_DEDUCTION,
                "payment_frequency": PaymentFrequency.MONTHLY,
            }
        }
