"""
Retreat API routes: creation, membership management, invitations and role requests.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.audit import AuditContext
from app.features.permissions.dependencies import get_audit_context, get_permission_service
from app.features.permissions.keys import format_keys
from app.features.permissions.models import Role
from app.features.permissions.service import PermissionService
from app.features.retreats import service as retreats
from app.features.retreats.models import Retreat, RetreatMembership
from app.features.retreats.schemas import (
    MemberAssign,
    MemberInvite,
    MembershipResponse,
    RetreatAccessResponse,
    RetreatCreate,
    RetreatResponse,
    RoleRequestApprovalResponse,
    RoleRequestCreate,
    RoleRequestReject,
    RoleRequestResponse,
)
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _membership_response(membership: RetreatMembership, role_name: Optional[str]) -> MembershipResponse:
    return MembershipResponse(
        id=membership.id,
        user_id=membership.user_id,
        retreat_id=membership.retreat_id,
        role=role_name,
        status=membership.status.value,
        invited_by_id=membership.invited_by_id,
        invited_at=membership.invited_at,
        expires_at=membership.expires_at,
    )


async def _get_accessible_retreat(
    db: AsyncSession,
    service: PermissionService,
    retreat_id: str,
    user: User,
) -> Retreat:
    retreat = await db.get(Retreat, retreat_id)
    if not retreat:
        raise HTTPException(status_code=404, detail="Retreat not found")
    if not await service.has_retreat_access(db, user.id, retreat_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this retreat")
    return retreat


@router.post("", response_model=RetreatResponse, status_code=status.HTTP_201_CREATED)
async def create_retreat(
    retreat: RetreatCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Create a retreat owned by the current user."""
    return await retreats.create_retreat(
        db, service, retreat.name, current_user.id,
        starts_on=retreat.starts_on, ends_on=retreat.ends_on, context=audit,
    )


@router.get("", response_model=List[RetreatResponse])
async def list_my_retreats(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await retreats.list_user_retreats(db, current_user.id)


@router.get("/{retreat_id}", response_model=RetreatResponse)
async def get_retreat(
    retreat_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    return await _get_accessible_retreat(db, service, retreat_id, current_user)


@router.get("/{retreat_id}/access", response_model=RetreatAccessResponse)
async def get_my_access(
    retreat_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """What the current user can do in a retreat."""
    has_access = await service.has_retreat_access(db, current_user.id, retreat_id)
    resolved = await service.get_user_permissions(db, current_user.id, retreat_id)
    return RetreatAccessResponse(
        retreat_id=retreat_id,
        has_access=has_access,
        is_creator=await service.is_retreat_creator(db, current_user.id, retreat_id),
        roles=sorted(resolved.retreat_roles),
        permissions=format_keys(await service.effective_permissions(db, current_user.id, retreat_id))
        if has_access else [],
    )


# ============================================================================
# Member Routes
# ============================================================================

@router.get("/{retreat_id}/members", response_model=List[MembershipResponse])
async def list_members(
    retreat_id: str,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    await _get_accessible_retreat(db, service, retreat_id, current_user)
    rows = await retreats.list_members(db, retreat_id, include_inactive=include_inactive)
    return [_membership_response(membership, role_name) for membership, role_name in rows]


@router.post("/{retreat_id}/members", response_model=MembershipResponse, status_code=status.HTTP_200_OK)
async def assign_member_role(
    retreat_id: str,
    assignment: MemberAssign,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Give a user an active role in the retreat (creator or superadmin)."""
    membership = await service.assign_retreat_role(
        db, assignment.user_id, retreat_id, assignment.role,
        assigned_by=current_user.id, context=audit,
    )
    return _membership_response(membership, assignment.role)


@router.delete("/{retreat_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    retreat_id: str,
    user_id: str,
    role: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Revoke one role, or every role when none is given."""
    revoked = await service.revoke_retreat_role(
        db, user_id, retreat_id, role, revoked_by=current_user.id, context=audit,
    )
    if not revoked:
        raise HTTPException(status_code=404, detail="Membership not found")
    return None


# ============================================================================
# Invitation Routes
# ============================================================================

@router.post("/{retreat_id}/invitations", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
async def invite_member(
    retreat_id: str,
    invitation: MemberInvite,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    membership = await retreats.invite_member(
        db, service, retreat_id, invitation.user_id, invitation.role,
        invited_by=current_user.id, expires_in_days=invitation.expires_in_days, context=audit,
    )
    return _membership_response(membership, invitation.role)


@router.post("/invitations/{membership_id}/accept", response_model=MembershipResponse)
async def accept_invitation(
    membership_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    membership = await retreats.respond_to_invitation(
        db, service, membership_id, current_user.id, accept=True, context=audit,
    )
    role = await db.get(Role, membership.role_id) if membership.role_id else None
    return _membership_response(membership, role.name if role else None)


@router.post("/invitations/{membership_id}/decline", response_model=MembershipResponse)
async def decline_invitation(
    membership_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    membership = await retreats.respond_to_invitation(
        db, service, membership_id, current_user.id, accept=False, context=audit,
    )
    role = await db.get(Role, membership.role_id) if membership.role_id else None
    return _membership_response(membership, role.name if role else None)


# ============================================================================
# Role Request Routes
# ============================================================================

@router.get("/role-requests/mine", response_model=List[RoleRequestResponse])
async def list_my_role_requests(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await retreats.list_user_requests(db, current_user.id)


@router.post("/{retreat_id}/role-requests", response_model=RoleRequestResponse, status_code=status.HTTP_201_CREATED)
async def request_role(
    retreat_id: str,
    body: RoleRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    """Ask the retreat creator for a role in this retreat."""
    return await retreats.request_role(
        db, service, retreat_id, current_user.id, body.role, message=body.message, context=audit,
    )


@router.get("/{retreat_id}/role-requests", response_model=List[RoleRequestResponse])
async def list_role_requests(
    retreat_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PermissionService = Depends(get_permission_service),
):
    """Pending requests; only the retreat creator or a superadmin may list them."""
    if not await db.get(Retreat, retreat_id):
        raise HTTPException(status_code=404, detail="Retreat not found")
    if not await service.can_manage_retreat(db, current_user.id, retreat_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the retreat creator can review role requests")
    return await retreats.list_retreat_requests(db, retreat_id)


@router.get("/{retreat_id}/role-requests/mine", response_model=RoleRequestResponse)
async def get_my_pending_request(
    retreat_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    request = await retreats.get_pending_request(db, current_user.id, retreat_id)
    if request is None:
        raise HTTPException(status_code=404, detail="No pending role request")
    return request


@router.post("/role-requests/{request_id}/approve", response_model=RoleRequestApprovalResponse)
async def approve_role_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    request, membership = await retreats.approve_role_request(
        db, service, request_id, approved_by=current_user.id, context=audit,
    )
    return RoleRequestApprovalResponse(
        request=RoleRequestResponse.model_validate(request),
        membership=_membership_response(membership, request.requested_role),
    )


@router.post("/role-requests/{request_id}/reject", response_model=RoleRequestResponse)
async def reject_role_request(
    request_id: str,
    body: Optional[RoleRequestReject] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditContext = Depends(get_audit_context),
    service: PermissionService = Depends(get_permission_service),
):
    return await retreats.reject_role_request(
        db, service, request_id, rejected_by=current_user.id,
        reason=body.reason if body else None, context=audit,
    )
