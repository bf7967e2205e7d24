"""
Retreat creation and the membership invitation workflow.

Invitations are pending memberships with an expiry. The invited user accepts
(pending -> active) or declines (pending -> revoked); unanswered invitations
are expired by ``scripts/cleanup_expired.py``.

Role requests go the other way: a user asks to join with a role and the
retreat creator (or a superadmin) approves or rejects the request.
"""
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions.audit import AuditContext, record_audit
from app.features.permissions.exceptions import NotFoundError, PolicyViolationError, UnauthorizedError
from app.features.permissions.models import Role
from app.features.permissions.service import PermissionService
from app.features.retreats.models import (
    LIVE_MEMBERSHIP_STATUSES, MembershipStatus, Retreat, RetreatMembership, RoleRequest, RoleRequestStatus,
)
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)


async def create_retreat(
    db: AsyncSession,
    service: PermissionService,
    name: str,
    created_by: str,
    starts_on: Optional[date] = None,
    ends_on: Optional[date] = None,
    context: Optional[AuditContext] = None,
) -> Retreat:
    """Create a retreat and make its creator a member with the creator role, if defined."""
    retreat = Retreat(name=name, starts_on=starts_on, ends_on=ends_on, created_by_id=created_by)
    db.add(retreat)
    await db.flush()
    record_audit(db, context, "create", "retreat", retreat.id, retreat.id, {"name": name})
    await db.commit()
    await db.refresh(retreat)

    role = await db.execute(select(Role.id).where(Role.name == config.RETREAT_CREATOR_ROLE))
    if role.scalar_one_or_none() is not None:
        await service.assign_retreat_role(
            db, created_by, retreat.id, config.RETREAT_CREATOR_ROLE, context=context,
        )
    else:
        log.warning("Role %s not found, creator of retreat %s has no membership",
                    config.RETREAT_CREATOR_ROLE, retreat.id)
    return retreat


async def invite_member(
    db: AsyncSession,
    service: PermissionService,
    retreat_id: str,
    user_id: str,
    role_name: str,
    invited_by: str,
    expires_in_days: Optional[int] = None,
    context: Optional[AuditContext] = None,
) -> RetreatMembership:
    """Create a pending membership that lapses after ``expires_in_days``."""
    days = expires_in_days or config.INVITATION_EXPIRY_DAYS
    return await service.assign_retreat_role(
        db, user_id, retreat_id, role_name,
        assigned_by=invited_by,
        status=MembershipStatus.PENDING,
        expires_at=utcnow() + timedelta(days=days),
        context=context,
    )


async def respond_to_invitation(
    db: AsyncSession,
    service: PermissionService,
    membership_id: str,
    user_id: str,
    accept: bool,
    context: Optional[AuditContext] = None,
) -> RetreatMembership:
    """
    Accept or decline a pending invitation.

    Raises:
        NotFoundError: no such membership.
        UnauthorizedError: the invitation belongs to another user.
        PolicyViolationError: the invitation is no longer pending.
    """
    membership = await db.get(RetreatMembership, membership_id)
    if membership is None:
        raise NotFoundError(f"Invitation {membership_id} not found")
    if membership.user_id != user_id:
        raise UnauthorizedError("This invitation belongs to another user")
    expires_at = as_utc(membership.expires_at)
    if membership.status != MembershipStatus.PENDING or (expires_at is not None and expires_at <= utcnow()):
        raise PolicyViolationError("Invitation is no longer pending")

    service.invalidate_membership(user_id, membership.retreat_id)
    membership.status = MembershipStatus.ACTIVE if accept else MembershipStatus.REVOKED
    membership.expires_at = None
    record_audit(
        db, context, "accept_invitation" if accept else "decline_invitation",
        "membership", membership.id, membership.retreat_id,
    )
    await db.commit()
    await db.refresh(membership)
    service.invalidate_membership(user_id, membership.retreat_id)
    return membership


async def list_members(db: AsyncSession, retreat_id: str, include_inactive: bool = False) -> list[tuple[RetreatMembership, Optional[str]]]:
    """Memberships of a retreat with their role names; rows with a deleted role carry None."""
    stmt = (
        select(RetreatMembership, Role.name)
        .outerjoin(Role, Role.id == RetreatMembership.role_id)
        .where(RetreatMembership.retreat_id == retreat_id)
        .order_by(RetreatMembership.created_at)
    )
    if not include_inactive:
        stmt = stmt.where(RetreatMembership.status.in_(LIVE_MEMBERSHIP_STATUSES))
    result = await db.execute(stmt)
    return [(membership, role_name) for membership, role_name in result.all()]


async def list_user_retreats(db: AsyncSession, user_id: str) -> list[Retreat]:
    """Retreats the user created or holds an active or pending membership in."""
    member_of = (
        select(RetreatMembership.retreat_id)
        .where(
            RetreatMembership.user_id == user_id,
            RetreatMembership.status.in_(LIVE_MEMBERSHIP_STATUSES),
        )
    )
    stmt = (
        select(Retreat)
        .where(or_(Retreat.created_by_id == user_id, Retreat.id.in_(member_of)))
        .order_by(Retreat.starts_on, Retreat.name)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================================
# Role requests
# ============================================================================

async def request_role(
    db: AsyncSession,
    service: PermissionService,
    retreat_id: str,
    user_id: str,
    role_name: str,
    message: Optional[str] = None,
    context: Optional[AuditContext] = None,
) -> RoleRequest:
    """
    Ask to join a retreat with ``role_name``.

    Raises:
        NotFoundError: the retreat or role does not exist.
        PolicyViolationError: the role is only assignable globally, the user
            already holds it, or a request is already pending.
    """
    if await db.get(Retreat, retreat_id) is None:
        raise NotFoundError(f"Retreat {retreat_id} not found")
    role = await service.require_retreat_role(db, role_name)
    if await service.has_retreat_role(db, user_id, retreat_id, role_name):
        raise PolicyViolationError(f"User already has role {role_name!r} in this retreat")
    if await get_pending_request(db, user_id, retreat_id) is not None:
        raise PolicyViolationError("A role request for this retreat is already pending")

    request = RoleRequest(
        user_id=user_id,
        retreat_id=retreat_id,
        role_id=role.id,
        requested_role=role.name,
        message=message,
        status=RoleRequestStatus.PENDING,
    )
    db.add(request)
    await db.flush()
    record_audit(db, context, "request_role", "role_request", request.id, retreat_id, {"role": role.name})
    await db.commit()
    await db.refresh(request)
    log.info("User %s requested role %s in retreat %s", user_id, role.name, retreat_id)
    return request


async def get_pending_request(db: AsyncSession, user_id: str, retreat_id: str) -> Optional[RoleRequest]:
    stmt = (
        select(RoleRequest)
        .where(
            RoleRequest.user_id == user_id,
            RoleRequest.retreat_id == retreat_id,
            RoleRequest.status == RoleRequestStatus.PENDING,
        )
        .order_by(RoleRequest.created_at.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_retreat_requests(db: AsyncSession, retreat_id: str) -> list[RoleRequest]:
    """Pending requests of a retreat, oldest first."""
    stmt = (
        select(RoleRequest)
        .where(RoleRequest.retreat_id == retreat_id, RoleRequest.status == RoleRequestStatus.PENDING)
        .order_by(RoleRequest.created_at, RoleRequest.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_user_requests(db: AsyncSession, user_id: str) -> list[RoleRequest]:
    """Every request the user made, newest first."""
    stmt = (
        select(RoleRequest)
        .where(RoleRequest.user_id == user_id)
        .order_by(RoleRequest.created_at.desc(), RoleRequest.id.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _get_reviewable_request(
    db: AsyncSession,
    service: PermissionService,
    request_id: str,
    reviewer_id: str,
) -> RoleRequest:
    request = await db.get(RoleRequest, request_id)
    if request is None:
        raise NotFoundError(f"Role request {request_id} not found")
    if not await service.can_manage_retreat(db, reviewer_id, request.retreat_id):
        raise UnauthorizedError("Only the retreat creator or a superadmin can review role requests")
    if request.status != RoleRequestStatus.PENDING:
        raise PolicyViolationError("Role request is no longer pending")
    return request


async def approve_role_request(
    db: AsyncSession,
    service: PermissionService,
    request_id: str,
    approved_by: str,
    context: Optional[AuditContext] = None,
) -> tuple[RoleRequest, RetreatMembership]:
    """Approve a pending request and give the user the requested role."""
    request = await _get_reviewable_request(db, service, request_id, approved_by)

    request.status = RoleRequestStatus.APPROVED
    request.reviewed_by_id = approved_by
    request.reviewed_at = utcnow()
    record_audit(
        db, context, "approve_role_request", "role_request", request.id, request.retreat_id,
        {"role": request.requested_role, "user_id": request.user_id},
    )
    membership = await service.assign_retreat_role(
        db, request.user_id, request.retreat_id, request.requested_role,
        assigned_by=approved_by, context=context,
    )
    # assign_retreat_role skips the commit when the membership already exists
    await db.commit()
    await db.refresh(request)
    return request, membership


async def reject_role_request(
    db: AsyncSession,
    service: PermissionService,
    request_id: str,
    rejected_by: str,
    reason: Optional[str] = None,
    context: Optional[AuditContext] = None,
) -> RoleRequest:
    request = await _get_reviewable_request(db, service, request_id, rejected_by)

    request.status = RoleRequestStatus.REJECTED
    request.reviewed_by_id = rejected_by
    request.reviewed_at = utcnow()
    request.rejection_reason = reason
    record_audit(
        db, context, "reject_role_request", "role_request", request.id, request.retreat_id,
        {"role": request.requested_role, "user_id": request.user_id, "reason": reason},
    )
    await db.commit()
    await db.refresh(request)
    return request
