"""
Role-permission resolution.

Turns a user's global roles and retreat memberships into a base permission
set. Results are cached per user (global call) and per user and retreat
(scoped call); the membership list is cached separately per user.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CacheStore, MISS, make_key
from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import Permission, Role, role_permissions, user_roles
from app.features.retreats.models import LIVE_MEMBERSHIP_STATUSES, MembershipStatus, RetreatMembership
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

MEMBERSHIPS_NS = "memberships"
PERMISSIONS_NS = "permissions"


@dataclass(frozen=True)
class MembershipRow:
    retreat_id: str
    role_id: Optional[str]
    role_name: Optional[str]
    status: MembershipStatus
    expires_at: Optional[datetime]

    def is_live(self, now: datetime) -> bool:
        if self.status not in LIVE_MEMBERSHIP_STATUSES:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class RetreatRole:
    retreat_id: str
    role: str
    status: MembershipStatus


@dataclass(frozen=True)
class ResolvedPermissions:
    permissions: frozenset[PermissionKey]
    roles: frozenset[str]
    retreats: tuple[RetreatRole, ...]
    # Roles held in the requested retreat, empty for global calls
    retreat_roles: frozenset[str] = frozenset()
    # Earliest membership expiry that would change this answer
    valid_until: Optional[datetime] = None

    @property
    def retreat_specific_role(self) -> Optional[str]:
        return min(self.retreat_roles) if self.retreat_roles else None

    def has_permission(self, key: PermissionKey) -> bool:
        return key in self.permissions


EMPTY_RESOLUTION = ResolvedPermissions(frozenset(), frozenset(), ())


def seconds_until(moment: Optional[datetime], default: float, now: Optional[datetime] = None) -> float:
    """Cap a cache TTL so the entry does not outlive ``moment``."""
    if moment is None:
        return default
    remaining = (moment - (now or utcnow())).total_seconds()
    return max(0.0, min(default, remaining))


class RolePermissionResolver:
    """
    Compute base permissions from global roles plus retreat memberships.

    A global call unions every live membership; a scoped call only the
    memberships of the requested retreat, so a role held in one retreat never
    leaks permissions into another.
    """

    def __init__(self, cache: CacheStore, ttl: Optional[float] = None):
        self.cache = cache
        self.ttl = cache.default_ttl if ttl is None else ttl

    async def resolve(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: Optional[str] = None
    ) -> ResolvedPermissions:
        key = make_key(user_id, retreat_id) if retreat_id else make_key(user_id)
        token = self.cache.token(PERMISSIONS_NS)
        cached = self.cache.get(PERMISSIONS_NS, key)
        if cached is not MISS:
            return cached

        now = utcnow()
        memberships = [row for row in await self.get_memberships(db, user_id) if row.is_live(now)]
        global_roles = await self._get_global_roles(db, user_id)

        resolvable = [row for row in memberships if row.role_id and row.role_name]
        if len(resolvable) < len(memberships):
            log.warning("Dropped %d membership(s) with unresolvable role for user %s",
                        len(memberships) - len(resolvable), user_id)

        scoped = [row for row in resolvable if retreat_id is None or row.retreat_id == retreat_id]
        global_ids = {role_id for role_id, _ in global_roles}
        permissions = await self._get_role_permissions(db, global_ids)
        membership_keys = await self._get_role_permissions(db, {row.role_id for row in scoped} - global_ids)
        platform = {key for key in membership_keys if key.is_platform}
        if platform:
            log.warning("Ignoring platform permissions %s held through memberships of user %s",
                        sorted(map(str, platform)), user_id)
        permissions = permissions | (membership_keys - platform)

        expiries = [row.expires_at for row in resolvable if row.expires_at is not None]
        result = ResolvedPermissions(
            permissions=permissions,
            roles=frozenset(name for _, name in global_roles),
            retreats=tuple(
                RetreatRole(row.retreat_id, row.role_name, row.status) for row in resolvable
            ),
            retreat_roles=frozenset(
                row.role_name for row in resolvable if retreat_id and row.retreat_id == retreat_id
            ),
            valid_until=min(expiries) if expiries else None,
        )

        self.cache.set(
            PERMISSIONS_NS, key, result,
            ttl=seconds_until(result.valid_until, self.ttl, now),
            token=token,
        )
        log.debug("Resolved %d permissions for user %s (retreat=%s)", len(permissions), user_id, retreat_id)
        return result

    async def get_memberships(self, db: AsyncSession, user_id: str) -> list[MembershipRow]:
        """Active and pending memberships of a user, cached per user."""
        token = self.cache.token(MEMBERSHIPS_NS)
        cached = self.cache.get(MEMBERSHIPS_NS, make_key(user_id))
        if cached is not MISS:
            return cached

        stmt = (
            select(
                RetreatMembership.retreat_id,
                RetreatMembership.role_id,
                Role.name,
                RetreatMembership.status,
                RetreatMembership.expires_at,
            )
            .outerjoin(Role, Role.id == RetreatMembership.role_id)
            .where(
                RetreatMembership.user_id == user_id,
                RetreatMembership.status.in_(LIVE_MEMBERSHIP_STATUSES),
            )
        )
        result = await db.execute(stmt)
        rows = [
            MembershipRow(retreat_id, role_id, role_name, status, as_utc(expires_at))
            for retreat_id, role_id, role_name, status, expires_at in result.all()
        ]

        self.cache.set(MEMBERSHIPS_NS, make_key(user_id), rows, ttl=self.ttl, token=token)
        return rows

    async def _get_global_roles(self, db: AsyncSession, user_id: str) -> list[tuple[str, str]]:
        stmt = (
            select(Role.id, Role.name)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .where(user_roles.c.user_id == user_id)
        )
        result = await db.execute(stmt)
        return [(role_id, name) for role_id, name in result.all()]

    async def _get_role_permissions(self, db: AsyncSession, role_ids: Iterable[str]) -> frozenset[PermissionKey]:
        role_ids = list(role_ids)
        if not role_ids:
            return frozenset()
        stmt = (
            select(Permission.resource, Permission.operation)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .where(role_permissions.c.role_id.in_(role_ids))
        )
        result = await db.execute(stmt)
        return frozenset(PermissionKey(resource, operation) for resource, operation in result.all())

    def invalidate_user(self, user_id: str) -> None:
        self.cache.invalidate(MEMBERSHIPS_NS, make_key(user_id))
        # Drops the global entry and every user:retreat entry
        self.cache.invalidate(PERMISSIONS_NS, make_key(user_id))
