"""
Pydantic schemas for permission management.

Request and response models for roles, permissions, checks, overrides,
delegations, rules and audit logs. Permission keys cross this boundary as
``"resource:operation"`` strings.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.keys import PermissionKey


def _validate_key(value: str) -> str:
    return str(PermissionKey.parse(value))


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    resource: str = Field(..., min_length=1, max_length=100, description="Resource type (e.g., 'payment', 'retreatInventory')")
    operation: str = Field(..., min_length=1, max_length=50, description="Operation (e.g., 'read', 'create', 'manage')")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""

    @field_validator('resource', 'operation')
    @classmethod
    def no_separator(cls, v: str) -> str:
        """Keys are rendered as resource:operation, so neither half may contain a colon."""
        if ':' in v:
            raise ValueError('Must not contain ":"')
        return v.strip()


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, underscores, and hyphens')
        return v


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class AssignPermissionToRole(BaseModel):
    """Schema for attaching a permission to a role."""
    permission: str = Field(..., description="Permission key, e.g. 'payment:read'")

    @field_validator('permission')
    @classmethod
    def valid_key(cls, v: str) -> str:
        return _validate_key(v)


class AssignGlobalRole(BaseModel):
    """Schema for granting a role outside any retreat."""
    user_id: str = Field(..., description="User ID")
    role: str = Field(..., description="Role name")


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if a user has a permission."""
    permission: str = Field(..., description="Permission key, e.g. 'payment:read'")
    retreat_id: Optional[str] = Field(None, description="Retreat ID (global roles only if omitted)")
    user_id: Optional[str] = Field(None, description="User to check (defaults to the current user)")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    reason: Optional[str] = None


class RetreatRoleResponse(BaseModel):
    retreat_id: str
    role: str
    status: str


class UserPermissionsResponse(BaseModel):
    """Everything the engine knows about a user, optionally inside one retreat."""
    user_id: str
    retreat_id: Optional[str] = None
    roles: List[str] = []
    retreats: List[RetreatRoleResponse] = []
    retreat_roles: List[str] = []
    permissions: List[str] = []  # Base permissions from roles and memberships
    inherited_permissions: List[str] = []
    effective_permissions: List[str] = []  # Final set after delegations and overrides


# ============================================================================
# Override Schemas
# ============================================================================

class OverrideEntrySchema(BaseModel):
    resource: str = Field(..., min_length=1, max_length=100)
    operation: str = Field(..., min_length=1, max_length=50)
    granted: bool
    expires_at: Optional[datetime] = None


class OverrideSet(BaseModel):
    """Replaces the whole entry list; order matters, the last entry for a key wins."""
    entries: List[OverrideEntrySchema]
    reason: Optional[str] = Field(None, max_length=1000)


class OverrideResponse(BaseModel):
    id: str
    user_id: str
    retreat_id: str
    entries: List[Dict[str, Any]]
    reason: Optional[str]
    set_by_id: Optional[str]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Delegation Schemas
# ============================================================================

class DelegationRequest(BaseModel):
    """Schema for checking or creating a delegation from the current user."""
    to_user_id: str = Field(..., description="Delegate user ID")
    retreat_id: str = Field(..., description="Retreat ID")
    permissions: List[str] = Field(..., min_length=1, description="Permission keys to delegate")
    duration_hours: Optional[int] = Field(None, gt=0, description="Defaults to the rule maximum")

    # Approval is a separate call by a retreat manager
    model_config = ConfigDict(extra="forbid")


class DelegationCheckResponse(BaseModel):
    can_delegate: bool
    requires_approval: bool = False
    max_duration: Optional[int] = None
    reason: Optional[str] = None


class DelegationCreatedResponse(BaseModel):
    id: str
    status: str


class DelegationResponse(BaseModel):
    id: str
    from_user_id: str
    to_user_id: str
    retreat_id: str
    permissions: List[str]
    expires_at: datetime
    status: str = "active"


# ============================================================================
# Rule Schemas
# ============================================================================

class PermissionConditionSchema(BaseModel):
    resource: str
    operation: str
    required: bool = True


class InheritanceRuleSchema(BaseModel):
    parent_role: str = Field(..., min_length=1, max_length=50)
    child_role: str = Field(..., min_length=1, max_length=50)
    inherit_permissions: bool = True
    inherit_delegation: bool = True
    conditions: List[PermissionConditionSchema] = []


class DelegationRuleSchema(BaseModel):
    from_role: str = Field(..., min_length=1, max_length=50)
    to_role: str = Field(..., min_length=1, max_length=50)
    permissions: List[str] = Field(..., min_length=1)
    max_duration_hours: Optional[int] = Field(None, gt=0)
    requires_approval: bool = False

    @field_validator('permissions')
    @classmethod
    def valid_keys(cls, v: List[str]) -> List[str]:
        return sorted({_validate_key(value) for value in v})


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    retreat_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
