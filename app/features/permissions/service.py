"""
Permission aggregation and the mutation surface of the access-control engine.

``PermissionService`` combines the five permission sources of a retreat:

    effective = overrides.apply(
        resolved(user, retreat)
        | expand(role, retreat) for each retreat role
        | permissions delegated to the user
    )

Every mutation invalidates the cache entries it affects before writing and
again after its commit, so a read issued right after a mutation in this
process always observes it.

Usage:
    service = build_permission_service()
    allowed = await service.has_permission(db, user_id, "payment:read", retreat_id)
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.cache import CacheStore, MISS, make_key
from app.features.permissions.audit import AuditContext, record_audit
from app.features.permissions.delegation import ActiveDelegation, DelegationCheck, DelegationEngine
from app.features.permissions.exceptions import NotFoundError, PolicyViolationError, UnauthorizedError
from app.features.permissions.inheritance import INHERITANCE_NS, InheritanceEngine
from app.features.permissions.keys import PLATFORM_RESOURCE, PermissionKey, format_keys, parse_keys
from app.features.permissions.models import (
    Permission, PermissionDelegation, PermissionOverride, Role, role_permissions, user_roles,
)
from app.features.permissions.overrides import OverrideEntry, OverrideLayer, apply_entries, earliest_expiry
from app.features.permissions.resolver import (
    MEMBERSHIPS_NS,
    PERMISSIONS_NS,
    ResolvedPermissions,
    RolePermissionResolver,
    seconds_until,
)
from app.features.permissions.rules import (
    DEFAULT_DELEGATION_RULES,
    DEFAULT_INHERITANCE_RULES,
    DelegationRule,
    DelegationRuleRepository,
    InheritanceRule,
    InheritanceRuleRepository,
    InMemoryDelegationRuleRepository,
    InMemoryInheritanceRuleRepository,
)
from app.features.retreats.models import LIVE_MEMBERSHIP_STATUSES, MembershipStatus, Retreat, RetreatMembership
from app.features.users.models import User
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

EFFECTIVE_NS = "effective"

PermissionLike = Union[str, PermissionKey]


class PermissionService:
    def __init__(
        self,
        cache: CacheStore,
        resolver: RolePermissionResolver,
        inheritance: InheritanceEngine,
        delegations: DelegationEngine,
        overrides: OverrideLayer,
        superadmin_role: str = config.SUPERADMIN_ROLE,
    ):
        self.cache = cache
        self.resolver = resolver
        self.inheritance = inheritance
        self.delegations = delegations
        self.overrides = overrides
        self.superadmin_role = superadmin_role

    # ========================================================================
    # Checks
    # ========================================================================

    async def effective_permissions(self, db: AsyncSession, user_id: str, retreat_id: str) -> frozenset[PermissionKey]:
        key = make_key(retreat_id, user_id)
        token = self.cache.token(EFFECTIVE_NS)
        cached = self.cache.get(EFFECTIVE_NS, key)
        if cached is not MISS:
            return cached

        now = utcnow()
        resolved = await self.resolver.resolve(db, user_id, retreat_id)
        permissions = set(resolved.permissions)

        for role_name in sorted(resolved.retreat_roles):
            permissions |= await self.inheritance.expand(db, role_name, retreat_id)

        delegated = [
            delegation for delegation in await self.delegations.get_active(db, user_id, retreat_id)
            if delegation.to_user_id == user_id
        ]
        for delegation in delegated:
            permissions |= delegation.permissions

        entries = await self.overrides.get(db, user_id, retreat_id)
        result = apply_entries(permissions, entries, now)
        # Platform permissions only ever come from global roles
        result = frozenset(key for key in result if not key.is_platform or key in resolved.permissions)

        expiries = [moment for moment in (
            resolved.valid_until,
            min((delegation.expires_at for delegation in delegated), default=None),
            earliest_expiry(entries, now),
        ) if moment is not None]
        ttl = seconds_until(min(expiries) if expiries else None, self.resolver.ttl, now)
        self.cache.set(EFFECTIVE_NS, key, result, ttl=ttl, token=token)
        return result

    async def has_permission(
        self,
        db: AsyncSession,
        user_id: str,
        permission: PermissionLike,
        retreat_id: Optional[str] = None
    ) -> bool:
        """
        Check a single permission.

        Without a retreat only global roles and memberships count; inside a
        retreat the full effective set applies. Malformed keys are denied.
        """
        try:
            key = PermissionKey.parse(permission)
        except ValueError:
            log.warning("Denied check for malformed permission %r", permission)
            return False

        if retreat_id is None:
            resolved = await self.resolver.resolve(db, user_id)
            return key in resolved.permissions
        return key in await self.effective_permissions(db, user_id, retreat_id)

    async def has_role(self, db: AsyncSession, user_id: str, role_name: str, retreat_id: Optional[str] = None) -> bool:
        resolved = await self.resolver.resolve(db, user_id)
        if role_name in resolved.roles:
            return True
        if retreat_id is None:
            return False
        return await self.has_retreat_role(db, user_id, retreat_id, role_name)

    async def is_superadmin(self, db: AsyncSession, user_id: str) -> bool:
        resolved = await self.resolver.resolve(db, user_id)
        return self.superadmin_role in resolved.roles

    async def has_retreat_access(self, db: AsyncSession, user_id: str, retreat_id: str) -> bool:
        # Superadmins see every retreat, checked before any retreat-keyed lookup
        if await self.is_superadmin(db, user_id):
            return True
        scoped = await self.resolver.resolve(db, user_id, retreat_id)
        if scoped.retreat_roles:
            return True
        return await self.is_retreat_creator(db, user_id, retreat_id)

    async def has_retreat_role(self, db: AsyncSession, user_id: str, retreat_id: str, role_name: str) -> bool:
        scoped = await self.resolver.resolve(db, user_id, retreat_id)
        return role_name in scoped.retreat_roles

    async def is_retreat_creator(self, db: AsyncSession, user_id: str, retreat_id: str) -> bool:
        """Direct ownership check, independent of roles and cache."""
        stmt = select(Retreat.created_by_id).where(Retreat.id == retreat_id)
        result = await db.execute(stmt)
        created_by = result.scalar_one_or_none()
        return created_by is not None and created_by == user_id

    async def can_manage_retreat(self, db: AsyncSession, user_id: str, retreat_id: str) -> bool:
        if await self.is_superadmin(db, user_id):
            return True
        return await self.is_retreat_creator(db, user_id, retreat_id)

    async def get_user_permissions(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: Optional[str] = None
    ) -> ResolvedPermissions:
        return await self.resolver.resolve(db, user_id, retreat_id)

    async def get_inherited_permissions(self, db: AsyncSession, user_id: str, retreat_id: str) -> frozenset[PermissionKey]:
        """Permissions reachable through the inheritance graph from the user's retreat roles."""
        resolved = await self.resolver.resolve(db, user_id, retreat_id)
        inherited: set[PermissionKey] = set()
        for role_name in sorted(resolved.retreat_roles):
            inherited |= await self.inheritance.expand(db, role_name, retreat_id)
        return frozenset(inherited)

    # ========================================================================
    # Memberships and global roles
    # ========================================================================

    async def assign_retreat_role(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: str,
        role_name: str,
        assigned_by: Optional[str] = None,
        status: MembershipStatus = MembershipStatus.ACTIVE,
        expires_at: Optional[datetime] = None,
        context: Optional[AuditContext] = None,
    ) -> RetreatMembership:
        """
        Give a user a role in a retreat.

        Idempotent: an existing live membership with that role is returned
        unchanged, and a previously revoked or expired row is reactivated
        instead of adding a new one. ``assigned_by`` must be the retreat
        creator or a superadmin; None marks a trusted internal caller.

        Raises:
            NotFoundError: the user, retreat or role does not exist.
            PolicyViolationError: the role is only assignable globally.
            UnauthorizedError: ``assigned_by`` may not manage the retreat.
        """
        await self._require_user(db, user_id)
        await self._require_retreat(db, retreat_id)
        role = await self.require_retreat_role(db, role_name)
        await self._require_manager(db, assigned_by, retreat_id)

        now = utcnow()
        stmt = (
            select(RetreatMembership)
            .where(
                RetreatMembership.user_id == user_id,
                RetreatMembership.retreat_id == retreat_id,
                RetreatMembership.role_id == role.id,
            )
            .order_by(RetreatMembership.created_at.desc())
        )
        rows = list((await db.execute(stmt)).scalars().all())
        live = [
            row for row in rows
            if row.status in LIVE_MEMBERSHIP_STATUSES and (row.expires_at is None or as_utc(row.expires_at) > now)
        ]
        active = next((row for row in live if row.status == MembershipStatus.ACTIVE), None)
        if active is not None:
            return active
        if live and status == MembershipStatus.PENDING:
            return live[0]

        self.invalidate_membership(user_id, retreat_id)
        if live or rows:
            membership = (live or rows)[0]
            previous = membership.status
        else:
            membership = RetreatMembership(user_id=user_id, retreat_id=retreat_id, role_id=role.id)
            db.add(membership)
            previous = None
        membership.status = status
        membership.invited_by_id = assigned_by
        membership.invited_at = now
        membership.expires_at = expires_at
        await db.flush()

        record_audit(
            db, context, "assign_role", "membership", membership.id, retreat_id,
            {"user_id": user_id, "role": role_name, "status": status.value,
             "previous_status": previous.value if previous else None},
        )
        await db.commit()
        await db.refresh(membership)
        self.invalidate_membership(user_id, retreat_id)

        log.info("User %s assigned role %s in retreat %s (%s)", user_id, role_name, retreat_id, status.value)
        return membership

    async def revoke_retreat_role(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: str,
        role_name: Optional[str] = None,
        revoked_by: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> int:
        """Revoke the user's live memberships in a retreat (one role, or all). Returns the count."""
        await self._require_retreat(db, retreat_id)
        await self._require_manager(db, revoked_by, retreat_id)

        stmt = update(RetreatMembership).where(
            RetreatMembership.user_id == user_id,
            RetreatMembership.retreat_id == retreat_id,
            RetreatMembership.status.in_(LIVE_MEMBERSHIP_STATUSES),
        )
        if role_name is not None:
            role = await self._require_role(db, role_name)
            stmt = stmt.where(RetreatMembership.role_id == role.id)

        self.invalidate_membership(user_id, retreat_id)
        result = await db.execute(stmt.values(status=MembershipStatus.REVOKED))
        count = result.rowcount or 0
        if count:
            record_audit(
                db, context, "revoke_role", "membership", user_id, retreat_id,
                {"role": role_name, "count": count},
            )
        await db.commit()
        self.invalidate_membership(user_id, retreat_id)
        return count

    async def expire_overdue_memberships(self, db: AsyncSession, context: Optional[AuditContext] = None) -> int:
        """Move live memberships past their expiry (including stale invitations) to expired."""
        stmt = (
            update(RetreatMembership)
            .where(
                RetreatMembership.status.in_(LIVE_MEMBERSHIP_STATUSES),
                RetreatMembership.expires_at.is_not(None),
                RetreatMembership.expires_at <= utcnow(),
            )
            .values(status=MembershipStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        result = await db.execute(stmt)
        count = result.rowcount or 0
        if count:
            record_audit(db, context, "expire", "membership", details={"count": count})
        await db.commit()
        if count:
            self.invalidate_all()
            log.info("Expired %d overdue memberships", count)
        return count

    async def assign_global_role(
        self,
        db: AsyncSession,
        user_id: str,
        role_name: str,
        assigned_by: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> bool:
        """Grant a role outside any retreat. Returns False if the user already had it."""
        await self._require_user(db, user_id)
        role = await self._require_role(db, role_name)

        existing = await db.execute(
            select(user_roles).where(user_roles.c.user_id == user_id, user_roles.c.role_id == role.id)
        )
        if existing.first():
            return False

        self.invalidate_global_roles(user_id)
        await db.execute(insert(user_roles).values(
            user_id=user_id, role_id=role.id, assigned_at=utcnow(), assigned_by_id=assigned_by,
        ))
        record_audit(db, context, "assign_global_role", "user", user_id, details={"role": role_name})
        await db.commit()
        self.invalidate_global_roles(user_id)
        return True

    async def revoke_global_role(
        self,
        db: AsyncSession,
        user_id: str,
        role_name: str,
        context: Optional[AuditContext] = None,
    ) -> bool:
        role = await self._require_role(db, role_name)

        self.invalidate_global_roles(user_id)
        result = await db.execute(
            delete(user_roles).where(user_roles.c.user_id == user_id, user_roles.c.role_id == role.id)
        )
        removed = (result.rowcount or 0) > 0
        if removed:
            record_audit(db, context, "revoke_global_role", "user", user_id, details={"role": role_name})
        await db.commit()
        self.invalidate_global_roles(user_id)
        return removed

    # ========================================================================
    # Overrides
    # ========================================================================

    async def set_permission_override(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: str,
        entries: Iterable[Union[OverrideEntry, Dict[str, Any]]],
        set_by: Optional[str] = None,
        reason: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> PermissionOverride:
        """
        Replace the override entries of a user in a retreat.

        Overrides adjust an existing permission surface: the target must
        already have access to the retreat.

        Raises:
            NotFoundError: the retreat does not exist.
            UnauthorizedError: ``set_by`` is neither creator nor superadmin.
            PolicyViolationError: the target has no retreat access, or an
                entry is malformed.
        """
        await self._require_retreat(db, retreat_id)
        await self._require_manager(db, set_by, retreat_id)
        try:
            parsed = [entry if isinstance(entry, OverrideEntry) else OverrideEntry.from_dict(entry) for entry in entries]
        except ValueError as e:
            raise PolicyViolationError(str(e)) from e
        if not await self.has_retreat_access(db, user_id, retreat_id):
            raise PolicyViolationError("Overrides require the user to already have access to the retreat")

        self.invalidate_effective(user_id, retreat_id)
        record = await self.overrides.set(db, user_id, retreat_id, parsed, set_by=set_by, reason=reason)
        record_audit(
            db, context, "set_override", "permission_override", record.id, retreat_id,
            {"user_id": user_id, "entries": record.entries, "reason": reason},
        )
        await db.commit()
        await db.refresh(record)
        self.invalidate_effective(user_id, retreat_id)
        return record

    async def get_permission_overrides(self, db: AsyncSession, user_id: str, retreat_id: str) -> list[OverrideEntry]:
        return await self.overrides.get(db, user_id, retreat_id)

    async def clear_permission_overrides(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: str,
        cleared_by: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> bool:
        await self._require_retreat(db, retreat_id)
        await self._require_manager(db, cleared_by, retreat_id)

        self.invalidate_effective(user_id, retreat_id)
        cleared = await self.overrides.clear(db, user_id, retreat_id)
        if cleared:
            record_audit(db, context, "clear_override", "permission_override", user_id, retreat_id)
        await db.commit()
        self.invalidate_effective(user_id, retreat_id)
        return cleared

    async def list_retreat_overrides(self, db: AsyncSession, retreat_id: str) -> list[PermissionOverride]:
        return await self.overrides.list_for_retreat(db, retreat_id)

    # ========================================================================
    # Delegations
    # ========================================================================

    async def can_delegate_permissions(
        self,
        db: AsyncSession,
        from_user_id: str,
        to_user_id: str,
        retreat_id: str,
        permissions: Iterable[PermissionLike],
    ) -> DelegationCheck:
        try:
            keys = parse_keys(permissions)
        except ValueError as e:
            return DelegationCheck(False, reason=str(e))
        return await self.delegations.can_delegate(db, from_user_id, to_user_id, retreat_id, keys)

    async def create_permission_delegation(
        self,
        db: AsyncSession,
        from_user_id: str,
        to_user_id: str,
        retreat_id: str,
        permissions: Iterable[PermissionLike],
        duration_hours: Optional[int] = None,
        context: Optional[AuditContext] = None,
    ) -> str:
        """
        Create a delegation and return its id.

        When the matching rule requires approval the delegation is pending
        and grants nothing until ``approve_delegation``.

        Raises:
            NotFoundError: the retreat does not exist.
            PolicyViolationError: the request is outside the delegation rules.
        """
        await self._require_retreat(db, retreat_id)
        try:
            keys = parse_keys(permissions)
        except ValueError as e:
            raise PolicyViolationError(str(e)) from e

        self.invalidate_effective(to_user_id, retreat_id)
        delegation = await self.delegations.create(
            db, from_user_id, to_user_id, retreat_id, keys, duration_hours=duration_hours,
        )
        record_audit(
            db, context, "create_delegation", "delegation", delegation.id, retreat_id,
            {"from_user_id": from_user_id, "to_user_id": to_user_id, "status": delegation.status.value,
             "permissions": format_keys(keys), "expires_at": delegation.expires_at.isoformat()},
        )
        await db.commit()
        self.invalidate_effective(to_user_id, retreat_id)
        return delegation.id

    async def approve_delegation(
        self,
        db: AsyncSession,
        delegation_id: str,
        approved_by: str,
        context: Optional[AuditContext] = None,
    ) -> PermissionDelegation:
        """
        Approve a pending delegation as ``approved_by``.

        Raises:
            NotFoundError: no such delegation.
            UnauthorizedError: ``approved_by`` is neither creator nor superadmin.
            PolicyViolationError: the delegation is not pending or no longer allowed.
        """
        delegation = await self.delegations.get(db, delegation_id)
        if delegation is None:
            raise NotFoundError(f"Delegation {delegation_id} not found")
        await db.refresh(delegation)
        if not await self.can_manage_retreat(db, approved_by, delegation.retreat_id):
            raise UnauthorizedError("Only the retreat creator or a superadmin can approve delegations")

        self.invalidate_effective(delegation.to_user_id, delegation.retreat_id)
        await self.delegations.approve(db, delegation, approved_by)
        record_audit(
            db, context, "approve_delegation", "delegation", delegation.id, delegation.retreat_id,
            {"expires_at": delegation.expires_at.isoformat()},
        )
        await db.commit()
        await db.refresh(delegation)
        self.invalidate_effective(delegation.to_user_id, delegation.retreat_id)
        return delegation

    async def list_pending_delegations(self, db: AsyncSession, retreat_id: str) -> list[PermissionDelegation]:
        return await self.delegations.list_pending(db, retreat_id)

    async def revoke_delegation(
        self,
        db: AsyncSession,
        delegation_id: str,
        revoked_by: str,
        context: Optional[AuditContext] = None,
    ) -> bool:
        """Revoke (or reject) an open delegation. False if it is absent or already closed."""
        delegation = await self.delegations.get(db, delegation_id)
        if delegation is None:
            return False
        if revoked_by not in (delegation.from_user_id, delegation.to_user_id) and \
                not await self.can_manage_retreat(db, revoked_by, delegation.retreat_id):
            raise UnauthorizedError("Only a party to the delegation, the retreat creator or a superadmin can revoke it")

        self.invalidate_effective(delegation.to_user_id, delegation.retreat_id)
        revoked = await self.delegations.revoke(db, delegation_id, revoked_by)
        if revoked:
            record_audit(db, context, "revoke_delegation", "delegation", delegation_id, delegation.retreat_id)
        await db.commit()
        self.invalidate_effective(delegation.to_user_id, delegation.retreat_id)
        return revoked

    async def get_active_delegations(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: Optional[str] = None
    ) -> list[ActiveDelegation]:
        return await self.delegations.get_active(db, user_id, retreat_id)

    async def cleanup_expired_delegations(self, db: AsyncSession, context: Optional[AuditContext] = None) -> int:
        count = await self.delegations.cleanup_expired(db)
        if count:
            record_audit(db, context, "expire", "delegation", details={"count": count})
        await db.commit()
        if count:
            self.cache.invalidate(EFFECTIVE_NS)
            log.info("Expired %d delegations", count)
        return count

    # ========================================================================
    # Roles and permissions (admin)
    # ========================================================================

    async def create_role(
        self,
        db: AsyncSession,
        name: str,
        description: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> Role:
        existing = await self._get_role(db, name)
        if existing is not None:
            raise PolicyViolationError(f"Role {name!r} already exists")
        role = Role(name=name, description=description)
        db.add(role)
        await db.flush()
        record_audit(db, context, "create", "role", role.id, details={"name": name})
        await db.commit()
        await db.refresh(role)
        return role

    async def delete_role(self, db: AsyncSession, name: str, context: Optional[AuditContext] = None) -> None:
        """Delete a role. Memberships that carried it stay behind without a role and grant nothing."""
        role = await self._require_role(db, name)
        self.invalidate_all()
        await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role.id))
        await db.execute(delete(user_roles).where(user_roles.c.role_id == role.id))
        await db.execute(
            update(RetreatMembership).where(RetreatMembership.role_id == role.id).values(role_id=None)
        )
        await db.execute(delete(Role).where(Role.id == role.id))
        record_audit(db, context, "delete", "role", role.id, details={"name": name})
        await db.commit()
        self.invalidate_all()

    async def create_permission(
        self,
        db: AsyncSession,
        permission: PermissionLike,
        description: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> Permission:
        """Get or create the permission row for a key."""
        key = PermissionKey.parse(permission)
        existing = await self._get_permission(db, key)
        if existing is not None:
            return existing
        row = Permission(resource=key.resource, operation=key.operation, description=description)
        db.add(row)
        await db.flush()
        record_audit(db, context, "create", "permission", row.id, details={"key": str(key)})
        await db.commit()
        await db.refresh(row)
        return row

    async def grant_role_permission(
        self,
        db: AsyncSession,
        role_name: str,
        permission: PermissionLike,
        context: Optional[AuditContext] = None,
    ) -> bool:
        """Attach a permission to a role, creating the permission if needed. False if already attached."""
        role = await self._require_role(db, role_name)
        key = PermissionKey.parse(permission)
        row = await self._get_permission(db, key)
        if row is None:
            row = Permission(resource=key.resource, operation=key.operation)
            db.add(row)
            await db.flush()

        existing = await db.execute(select(role_permissions).where(
            role_permissions.c.role_id == role.id,
            role_permissions.c.permission_id == row.id,
        ))
        if existing.first():
            return False

        self.invalidate_all()
        await db.execute(insert(role_permissions).values(role_id=role.id, permission_id=row.id))
        record_audit(db, context, "grant_permission", "role", role.id, details={"permission": str(key)})
        await db.commit()
        self.invalidate_all()
        return True

    async def revoke_role_permission(
        self,
        db: AsyncSession,
        role_name: str,
        permission: PermissionLike,
        context: Optional[AuditContext] = None,
    ) -> bool:
        role = await self._require_role(db, role_name)
        key = PermissionKey.parse(permission)
        row = await self._get_permission(db, key)
        if row is None:
            return False

        self.invalidate_all()
        result = await db.execute(delete(role_permissions).where(
            role_permissions.c.role_id == role.id,
            role_permissions.c.permission_id == row.id,
        ))
        removed = (result.rowcount or 0) > 0
        if removed:
            record_audit(db, context, "revoke_permission", "role", role.id, details={"permission": str(key)})
        await db.commit()
        self.invalidate_all()
        return removed

    # ========================================================================
    # Rules (admin)
    # ========================================================================

    @property
    def inheritance_rules(self) -> InheritanceRuleRepository:
        return self.inheritance.rules

    @property
    def delegation_rules(self) -> DelegationRuleRepository:
        return self.delegations.rules

    def list_inheritance_rules(self) -> list[InheritanceRule]:
        return self.inheritance_rules.list()

    async def add_inheritance_rule(
        self,
        db: AsyncSession,
        rule: InheritanceRule,
        context: Optional[AuditContext] = None,
    ) -> None:
        self.inheritance_rules.add(rule)
        self._invalidate_rules()
        record_audit(
            db, context, "add_rule", "inheritance_rule", make_key(rule.parent_role, rule.child_role),
            details={"inherit_permissions": rule.inherit_permissions,
                     "conditions": [str(condition.key) for condition in rule.conditions]},
        )
        await db.commit()

    async def remove_inheritance_rule(
        self,
        db: AsyncSession,
        parent_role: str,
        child_role: str,
        context: Optional[AuditContext] = None,
    ) -> bool:
        removed = self.inheritance_rules.remove(parent_role, child_role)
        if removed:
            self._invalidate_rules()
            record_audit(db, context, "remove_rule", "inheritance_rule", make_key(parent_role, child_role))
            await db.commit()
        return removed

    def list_delegation_rules(self) -> list[DelegationRule]:
        return self.delegation_rules.list()

    async def add_delegation_rule(
        self,
        db: AsyncSession,
        rule: DelegationRule,
        context: Optional[AuditContext] = None,
    ) -> None:
        # Existing delegations keep their grants; rules only gate new ones
        self.delegation_rules.add(rule)
        record_audit(
            db, context, "add_rule", "delegation_rule", make_key(rule.from_role, rule.to_role),
            details={"permissions": format_keys(rule.permissions),
                     "max_duration_hours": rule.max_duration_hours,
                     "requires_approval": rule.requires_approval},
        )
        await db.commit()

    async def remove_delegation_rule(
        self,
        db: AsyncSession,
        from_role: str,
        to_role: str,
        context: Optional[AuditContext] = None,
    ) -> bool:
        removed = self.delegation_rules.remove(from_role, to_role)
        if removed:
            record_audit(db, context, "remove_rule", "delegation_rule", make_key(from_role, to_role))
            await db.commit()
        return removed

    # ========================================================================
    # Cache invalidation
    # ========================================================================

    def invalidate_membership(self, user_id: str, retreat_id: str) -> None:
        """A membership change can flip inheritance conditions for the whole retreat."""
        self.resolver.invalidate_user(user_id)
        self.inheritance.invalidate_retreat(retreat_id)
        self.cache.invalidate(EFFECTIVE_NS, make_key(retreat_id))

    def invalidate_global_roles(self, user_id: str) -> None:
        self.resolver.invalidate_user(user_id)
        self.cache.invalidate(EFFECTIVE_NS)

    def invalidate_effective(self, user_id: str, retreat_id: str) -> None:
        self.cache.invalidate(EFFECTIVE_NS, make_key(retreat_id, user_id))

    def invalidate_all(self) -> None:
        for namespace in (MEMBERSHIPS_NS, PERMISSIONS_NS, INHERITANCE_NS, EFFECTIVE_NS):
            self.cache.invalidate(namespace)

    def _invalidate_rules(self) -> None:
        self.inheritance.invalidate_all()
        self.cache.invalidate(EFFECTIVE_NS)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _require_manager(self, db: AsyncSession, actor_id: Optional[str], retreat_id: str) -> None:
        if actor_id is None:
            return
        if not await self.can_manage_retreat(db, actor_id, retreat_id):
            raise UnauthorizedError("Only the retreat creator or a superadmin can do this")

    async def _require_user(self, db: AsyncSession, user_id: str) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def _require_retreat(self, db: AsyncSession, retreat_id: str) -> Retreat:
        retreat = await db.get(Retreat, retreat_id)
        if retreat is None:
            raise NotFoundError(f"Retreat {retreat_id} not found")
        return retreat

    async def _get_role(self, db: AsyncSession, name: str) -> Optional[Role]:
        result = await db.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def _require_role(self, db: AsyncSession, name: str) -> Role:
        role = await self._get_role(db, name)
        if role is None:
            raise NotFoundError(f"Role {name!r} not found")
        return role

    async def require_retreat_role(self, db: AsyncSession, name: str) -> Role:
        """A role that may be held through a retreat membership."""
        role = await self._require_role(db, name)
        if role.name == self.superadmin_role:
            raise PolicyViolationError(f"Role {name!r} can only be assigned globally")
        stmt = (
            select(Permission.id)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .where(role_permissions.c.role_id == role.id, Permission.resource == PLATFORM_RESOURCE)
            .limit(1)
        )
        if (await db.execute(stmt)).first() is not None:
            raise PolicyViolationError(f"Role {name!r} carries platform permissions and can only be assigned globally")
        return role

    async def _get_permission(self, db: AsyncSession, key: PermissionKey) -> Optional[Permission]:
        result = await db.execute(select(Permission).where(
            Permission.resource == key.resource,
            Permission.operation == key.operation,
        ))
        return result.scalar_one_or_none()


def build_permission_service(
    cache: Optional[CacheStore] = None,
    inheritance_rules: Optional[InheritanceRuleRepository] = None,
    delegation_rules: Optional[DelegationRuleRepository] = None,
) -> PermissionService:
    """
    Composition root: wire the cache, engines and rule repositories once per process.

    Rule repositories default to in-memory stores seeded with the default
    retreat role hierarchy.
    """
    cache = cache or CacheStore(default_ttl=config.PERMISSION_CACHE_TTL_SECONDS)
    if inheritance_rules is None:
        inheritance_rules = InMemoryInheritanceRuleRepository(DEFAULT_INHERITANCE_RULES)
    if delegation_rules is None:
        delegation_rules = InMemoryDelegationRuleRepository(DEFAULT_DELEGATION_RULES)

    return PermissionService(
        cache=cache,
        resolver=RolePermissionResolver(cache),
        inheritance=InheritanceEngine(inheritance_rules, cache),
        delegations=DelegationEngine(delegation_rules),
        overrides=OverrideLayer(),
    )
