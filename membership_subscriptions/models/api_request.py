"""API request models for command endpoints."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ResignMembershipRequest(BaseModel):
    """Body of PUT /subscriptions/resign/{profileId}.

    Both fields are optional at the schema level so that missing values surface as
    the service's own validation message instead of a generic schema error.
    """

    dateResigned: Optional[Any] = Field(None, description="Date of resignation (ISO 8601)")
    reason: Optional[str] = Field(None, description="Reason for resignation")

    class Config:
        json_schema_extra = {
            "example": {
                "dateResigned": "2024-06-30",
                "reason": "Left employment",
            }
        }
