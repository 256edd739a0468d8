"""Cached CRM user identity, used only to attach display names."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class UserRecord(BaseModel):
    """Local copy of a CRM user, unique per (tenant_id, user_id)."""

    id: str = Field(..., description="Internal id referenced by subscription meta")
    tenant_id: str = Field(..., description="Tenant scope")
    user_id: str = Field(..., description="External CRM user id")
    user_email: Optional[str] = None
    user_full_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
