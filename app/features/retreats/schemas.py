"""
Pydantic schemas for retreats and memberships.
"""
from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

from app.features.retreats.models import RoleRequestStatus


class RetreatCreate(BaseModel):
    """Schema for creating a retreat."""
    name: str = Field(..., min_length=1, max_length=255)
    starts_on: Optional[date] = None
    ends_on: Optional[date] = None

    @model_validator(mode='after')
    def dates_in_order(self) -> "RetreatCreate":
        if self.starts_on and self.ends_on and self.ends_on < self.starts_on:
            raise ValueError('ends_on must not be before starts_on')
        return self


class RetreatResponse(BaseModel):
    id: str
    name: str
    starts_on: Optional[date]
    ends_on: Optional[date]
    created_by_id: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MemberAssign(BaseModel):
    """Schema for giving a user a role in a retreat."""
    user_id: str = Field(..., description="User ID")
    role: str = Field(..., description="Role name")


class MemberInvite(MemberAssign):
    """Schema for inviting a user into a retreat."""
    expires_in_days: Optional[int] = Field(None, gt=0, le=90, description="Defaults to INVITATION_EXPIRY_DAYS")


class MembershipResponse(BaseModel):
    id: str
    user_id: str
    retreat_id: str
    role: Optional[str]
    status: str
    invited_by_id: Optional[str]
    invited_at: Optional[datetime]
    expires_at: Optional[datetime]


class RetreatAccessResponse(BaseModel):
    """Summary of what the current user can do in a retreat."""
    retreat_id: str
    has_access: bool
    is_creator: bool
    roles: List[str] = []
    permissions: List[str] = []


class RoleRequestCreate(BaseModel):
    """Schema for asking to join a retreat with a role."""
    role: str = Field(..., min_length=1, max_length=50, description="Role name")
    message: Optional[str] = Field(None, max_length=1000)


class RoleRequestReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class RoleRequestResponse(BaseModel):
    id: str
    user_id: str
    retreat_id: str
    requested_role: str
    message: Optional[str]
    status: RoleRequestStatus
    reviewed_by_id: Optional[str]
    reviewed_at: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleRequestApprovalResponse(BaseModel):
    request: RoleRequestResponse
    membership: MembershipResponse
