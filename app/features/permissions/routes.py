"""
Permission management API routes.

Provides endpoints for permission checks, overrides, delegations and the
admin surface over roles, permissions, rules and audit logs.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.audit import AuditContext
from app.features.permissions.keys import PermissionKey, format_keys
from app.features.permissions.models import AuditLog, Permission, PermissionDelegation, Role
from app.features.permissions.overrides import OverrideEntry
from app.features.permissions.rules import DelegationRule, InheritanceRule, PermissionCondition
from app.features.permissions.schemas import (
    AssignGlobalRole,
    AssignPermissionToRole,
    AuditLogListResponse,
    AuditLogResponse,
    DelegationCheckResponse,
    DelegationCreatedResponse,
    DelegationRequest,
    DelegationResponse,
    DelegationRuleSchema,
    InheritanceRuleSchema,
    OverrideEntrySchema,
    OverrideResponse,
    OverrideSet,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreate,
    PermissionResponse,
    RetreatRoleResponse,
    RoleCreate,
    RoleResponse,
    RoleWithPermissions,
    UserPermissionsResponse,
)
from app.features.permissions.dependencies import (
    SYSTEM_ADMIN_PERMISSION,
    get_audit_context,
    get_permission_service,
    require_system_admin,
)
from app.features.permissions.service import PermissionService
from app.utils import as_utc, get_logger


log = get_logger(__name__)
router = APIRouter()


async def _ensure_can_inspect(
    db: AsyncSession,
    service: PermissionService,
    current_user: User,
    user_id: str,
    retreat_id: Optional[str],
) -> None:
    """Users may inspect themselves; others need retreat management or system admin."""
    if user_id == current_user.id:
        return
    if retreat_id and await service.can_manage_retreat(db, current_user.id, retreat_id):
        return
    if await service.has_permission(db, current_user.id, SYSTEM_ADMIN_PERMISSION):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized to view other users' permissions"
    )


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """Check if a user (the current one by default) has a specific permission."""
    user_id = check_request.user_id or current_user.id
    await _ensure_can_inspect(db, service, current_user, user_id, check_request.retreat_id)

    has_perm = await service.has_permission(db, user_id, check_request.permission, check_request.retreat_id)
    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied"
    )


@router.get("/users/{user_id}", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    retreat_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """Roles and permissions of a user, broken down by source when a retreat is given."""
    await _ensure_can_inspect(db, service, current_user, user_id, retreat_id)

    resolved = await service.get_user_permissions(db, user_id, retreat_id)
    response = UserPermissionsResponse(
        user_id=user_id,
        retreat_id=retreat_id,
        roles=sorted(resolved.roles),
        retreats=[
            RetreatRoleResponse(retreat_id=item.retreat_id, role=item.role, status=item.status.value)
            for item in resolved.retreats
        ],
        retreat_roles=sorted(resolved.retreat_roles),
        permissions=format_keys(resolved.permissions),
    )
    if retreat_id:
        response.inherited_permissions = format_keys(
            await service.get_inherited_permissions(db, user_id, retreat_id)
        )
        response.effective_permissions = format_keys(
            await service.effective_permissions(db, user_id, retreat_id)
        )
    else:
        response.effective_permissions = response.permissions
    return response


# ============================================================================
# Override Routes
# ============================================================================

@router.get("/retreats/{retreat_id}/overrides", response_model=List[OverrideResponse])
async def list_retreat_overrides(
    retreat_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """List every override record of a retreat (creator or superadmin)."""
    if not await service.can_manage_retreat(db, current_user.id, retreat_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this retreat")
    return await service.list_retreat_overrides(db, retreat_id)


@router.get("/retreats/{retreat_id}/overrides/{user_id}", response_model=List[OverrideEntrySchema])
async def get_permission_overrides(
    retreat_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    await _ensure_can_inspect(db, service, current_user, user_id, retreat_id)
    entries = await service.get_permission_overrides(db, user_id, retreat_id)
    return [OverrideEntrySchema(**entry.to_dict()) for entry in entries]


@router.put("/retreats/{retreat_id}/overrides/{user_id}", response_model=OverrideResponse)
async def set_permission_override(
    retreat_id: str,
    user_id: str,
    override: OverrideSet,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Replace a user's override entries in a retreat."""
    entries = [
        OverrideEntry(PermissionKey(item.resource, item.operation), item.granted, as_utc(item.expires_at))
        for item in override.entries
    ]
    return await service.set_permission_override(
        db, user_id, retreat_id, entries,
        set_by=current_user.id, reason=override.reason, context=audit,
    )


@router.delete("/retreats/{retreat_id}/overrides/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_permission_overrides(
    retreat_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    cleared = await service.clear_permission_overrides(
        db, user_id, retreat_id, cleared_by=current_user.id, context=audit,
    )
    if not cleared:
        raise HTTPException(status_code=404, detail="Override not found")
    return None


# ============================================================================
# Delegation Routes
# ============================================================================

@router.post("/delegations/check", response_model=DelegationCheckResponse)
async def check_delegation(
    delegation: DelegationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """Check whether the current user may delegate the given permissions."""
    check = await service.can_delegate_permissions(
        db, current_user.id, delegation.to_user_id, delegation.retreat_id, delegation.permissions,
    )
    return DelegationCheckResponse(
        can_delegate=check.can_delegate,
        requires_approval=check.requires_approval,
        max_duration=check.max_duration,
        reason=check.reason,
    )


@router.post("/delegations", response_model=DelegationCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_delegation(
    delegation: DelegationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Delegate permissions from the current user; some rules leave it pending approval."""
    delegation_id = await service.create_permission_delegation(
        db,
        current_user.id,
        delegation.to_user_id,
        delegation.retreat_id,
        delegation.permissions,
        duration_hours=delegation.duration_hours,
        context=audit,
    )
    created = await service.delegations.get(db, delegation_id)
    return DelegationCreatedResponse(id=delegation_id, status=created.status.value)


def _delegation_response(delegation: PermissionDelegation) -> DelegationResponse:
    return DelegationResponse(
        id=delegation.id,
        from_user_id=delegation.from_user_id,
        to_user_id=delegation.to_user_id,
        retreat_id=delegation.retreat_id,
        permissions=sorted(delegation.permissions or []),
        expires_at=as_utc(delegation.expires_at),
        status=delegation.status.value,
    )


@router.get("/delegations/pending", response_model=List[DelegationResponse])
async def list_pending_delegations(
    retreat_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """Delegations waiting for approval in a retreat (creator or superadmin)."""
    if not await service.can_manage_retreat(db, current_user.id, retreat_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot manage this retreat")
    return [_delegation_response(item) for item in await service.list_pending_delegations(db, retreat_id)]


@router.post("/delegations/{delegation_id}/approve", response_model=DelegationResponse)
async def approve_delegation(
    delegation_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    delegation = await service.approve_delegation(db, delegation_id, current_user.id, context=audit)
    return _delegation_response(delegation)


@router.get("/delegations", response_model=List[DelegationResponse])
async def list_active_delegations(
    retreat_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """Active delegations given or received by the current user."""
    delegations = await service.get_active_delegations(db, current_user.id, retreat_id)
    return [
        DelegationResponse(
            id=item.id,
            from_user_id=item.from_user_id,
            to_user_id=item.to_user_id,
            retreat_id=item.retreat_id,
            permissions=format_keys(item.permissions),
            expires_at=item.expires_at,
        )
        for item in delegations
    ]


@router.delete("/delegations/{delegation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_delegation(
    delegation_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    if not await service.revoke_delegation(db, delegation_id, current_user.id, context=audit):
        raise HTTPException(status_code=404, detail="Active delegation not found")
    return None


# ============================================================================
# Role and Permission Routes (admin)
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Create a permission (idempotent on resource and operation)."""
    return await service.create_permission(
        db, PermissionKey(permission.resource, permission.operation), permission.description, context=audit,
    )


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    resource: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    """List all permissions with optional filtering."""
    stmt = select(Permission)

    if resource:
        stmt = stmt.where(Permission.resource == resource)

    stmt = stmt.order_by(Permission.resource, Permission.operation).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Create a new role."""
    db_role = await service.create_role(db, role.name, role.description, context=audit)
    return RoleResponse.model_validate(db_role)


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    stmt = select(Role).order_by(Role.name).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/roles/{role_name}", response_model=RoleWithPermissions)
async def get_role(
    role_name: str,
    db: AsyncSession = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    """Get a role with its direct permissions."""
    result = await db.execute(select(Role).where(Role.name == role_name))
    role = result.scalars().first()

    if not role:
        raise HTTPException(status_code=404, detail="Role not found")

    return role


@router.delete("/roles/{role_name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_name: str,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    await service.delete_role(db, role_name, context=audit)
    return None


@router.post("/roles/{role_name}/permissions", status_code=status.HTTP_200_OK)
async def assign_permission_to_role(
    role_name: str,
    assignment: AssignPermissionToRole,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Assign a permission to a role."""
    if not await service.grant_role_permission(db, role_name, assignment.permission, context=audit):
        return {"message": f"Permission '{assignment.permission}' already assigned to role '{role_name}'"}
    return {"message": f"Permission '{assignment.permission}' assigned to role '{role_name}'"}


@router.delete("/roles/{role_name}/permissions/{permission}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission_from_role(
    role_name: str,
    permission: str,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Remove a permission from a role."""
    try:
        key = PermissionKey.parse(permission)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not await service.revoke_role_permission(db, role_name, key, context=audit):
        raise HTTPException(status_code=404, detail="Permission assignment not found")
    return None


@router.post("/assignments/global-role", status_code=status.HTTP_200_OK)
async def assign_global_role(
    assignment: AssignGlobalRole,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Grant a role to a user outside any retreat."""
    if not await service.assign_global_role(
        db, assignment.user_id, assignment.role, assigned_by=current_user.id, context=audit,
    ):
        return {"message": "Role already assigned to user"}
    return {"message": "Role assigned to user successfully"}


@router.delete("/assignments/global-role/{user_id}/{role_name}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_global_role(
    user_id: str,
    role_name: str,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    if not await service.revoke_global_role(db, user_id, role_name, context=audit):
        raise HTTPException(status_code=404, detail="Role assignment not found")
    return None


# ============================================================================
# Rule Routes (admin)
# ============================================================================

@router.get("/rules/inheritance", response_model=List[InheritanceRuleSchema])
async def list_inheritance_rules(
    _admin: User = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    return [
        InheritanceRuleSchema(
            parent_role=rule.parent_role,
            child_role=rule.child_role,
            inherit_permissions=rule.inherit_permissions,
            inherit_delegation=rule.inherit_delegation,
            conditions=[
                {"resource": c.resource, "operation": c.operation, "required": c.required}
                for c in rule.conditions
            ],
        )
        for rule in service.list_inheritance_rules()
    ]


@router.post("/rules/inheritance", response_model=InheritanceRuleSchema, status_code=status.HTTP_201_CREATED)
async def add_inheritance_rule(
    rule: InheritanceRuleSchema,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Add or replace the edge parent_role -> child_role."""
    await service.add_inheritance_rule(db, InheritanceRule(
        parent_role=rule.parent_role,
        child_role=rule.child_role,
        inherit_permissions=rule.inherit_permissions,
        inherit_delegation=rule.inherit_delegation,
        conditions=tuple(
            PermissionCondition(c.resource, c.operation, c.required) for c in rule.conditions
        ),
    ), context=audit)
    return rule


@router.delete("/rules/inheritance/{parent_role}/{child_role}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_inheritance_rule(
    parent_role: str,
    child_role: str,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    if not await service.remove_inheritance_rule(db, parent_role, child_role, context=audit):
        raise HTTPException(status_code=404, detail="Inheritance rule not found")
    return None


@router.get("/rules/delegation", response_model=List[DelegationRuleSchema])
async def list_delegation_rules(
    _admin: User = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    return [
        DelegationRuleSchema(
            from_role=rule.from_role,
            to_role=rule.to_role,
            permissions=format_keys(rule.permissions),
            max_duration_hours=rule.max_duration_hours,
            requires_approval=rule.requires_approval,
        )
        for rule in service.list_delegation_rules()
    ]


@router.post("/rules/delegation", response_model=DelegationRuleSchema, status_code=status.HTTP_201_CREATED)
async def add_delegation_rule(
    rule: DelegationRuleSchema,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    await service.add_delegation_rule(db, DelegationRule(
        from_role=rule.from_role,
        to_role=rule.to_role,
        permissions=frozenset(PermissionKey.parse(value) for value in rule.permissions),
        max_duration_hours=rule.max_duration_hours,
        requires_approval=rule.requires_approval,
    ), context=audit)
    return rule


@router.delete("/rules/delegation/{from_role}/{to_role}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_delegation_rule(
    from_role: str,
    to_role: str,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    if not await service.remove_delegation_rule(db, from_role, to_role, context=audit):
        raise HTTPException(status_code=404, detail="Delegation rule not found")
    return None


@router.get("/cache/stats")
async def cache_stats(
    _admin: User = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    return service.cache.stats()


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    retreat_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_system_admin),
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if retreat_id:
        stmt = stmt.where(AuditLog.retreat_id == retreat_id)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
