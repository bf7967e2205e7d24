"""
Role inheritance expansion.

Walks the parent -> child rule graph depth-first from a role and collects
the permissions of every reachable role. Rules are operator data and may be
malformed, so the walk keeps a visited set and silently stops at any role it
has already expanded.
"""
from typing import Dict, Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CacheStore, MISS, make_key
from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import Permission, Role, role_permissions
from app.features.permissions.rules import InheritanceRuleRepository, PermissionCondition
from app.features.retreats.models import MembershipStatus, RetreatMembership
from app.utils import get_logger, utcnow


log = get_logger(__name__)

INHERITANCE_NS = "inheritance"


class InheritanceEngine:
    """
    Expand a role name into its effective permission set within a retreat.

    Conditional rules only activate when the organizational role they depend
    on is actually in use: a condition holds when at least one active member
    of the retreat already holds the permission it names.
    """

    def __init__(self, rules: InheritanceRuleRepository, cache: CacheStore, ttl: Optional[float] = None):
        self.rules = rules
        self.cache = cache
        self.ttl = ttl

    async def expand(self, db: AsyncSession, role_name: str, retreat_id: str) -> frozenset[PermissionKey]:
        key = make_key(retreat_id, role_name)
        token = self.cache.token(INHERITANCE_NS)
        cached = self.cache.get(INHERITANCE_NS, key)
        if cached is not MISS:
            return cached

        collected: set[PermissionKey] = set()
        visited: set[str] = set()
        condition_results: Dict[PermissionKey, bool] = {}
        stack = [role_name]

        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)

            collected |= await self.get_role_permissions(db, current)

            children = []
            for rule in self.rules.children_of(current):
                if not rule.inherit_permissions:
                    continue
                if not await self._conditions_met(db, rule.conditions, retreat_id, condition_results):
                    log.debug("Inheritance %s -> %s inactive in retreat %s",
                              rule.parent_role, rule.child_role, retreat_id)
                    continue
                children.append(rule.child_role)
            # Reversed so children are expanded in rule order
            stack.extend(reversed(children))

        result = frozenset(collected)
        self.cache.set(INHERITANCE_NS, key, result, ttl=self.ttl, token=token)
        log.debug("Expanded role %s in retreat %s via %s", role_name, retreat_id, sorted(visited))
        return result

    async def get_role_permissions(self, db: AsyncSession, role_name: str) -> frozenset[PermissionKey]:
        """Direct permissions of a role; unknown roles have none."""
        stmt = (
            select(Permission.resource, Permission.operation)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .join(Role, Role.id == role_permissions.c.role_id)
            .where(Role.name == role_name)
        )
        result = await db.execute(stmt)
        return frozenset(PermissionKey(resource, operation) for resource, operation in result.all())

    async def _conditions_met(
        self,
        db: AsyncSession,
        conditions: Iterable[PermissionCondition],
        retreat_id: str,
        memo: Dict[PermissionKey, bool],
    ) -> bool:
        for condition in conditions:
            # Optional conditions never block
            if not condition.required:
                continue
            if condition.key not in memo:
                memo[condition.key] = await self.retreat_has_permission(db, retreat_id, condition.key)
            if not memo[condition.key]:
                return False
        return True

    async def retreat_has_permission(self, db: AsyncSession, retreat_id: str, key: PermissionKey) -> bool:
        """True if any active member of the retreat holds ``key`` through their role."""
        stmt = (
            select(func.count())
            .select_from(RetreatMembership)
            .join(role_permissions, role_permissions.c.role_id == RetreatMembership.role_id)
            .join(Permission, Permission.id == role_permissions.c.permission_id)
            .where(
                RetreatMembership.retreat_id == retreat_id,
                RetreatMembership.status == MembershipStatus.ACTIVE,
                or_(RetreatMembership.expires_at.is_(None), RetreatMembership.expires_at > utcnow()),
                Permission.resource == key.resource,
                Permission.operation == key.operation,
            )
        )
        result = await db.execute(stmt)
        return result.scalar_one() > 0

    def invalidate_retreat(self, retreat_id: str) -> None:
        self.cache.invalidate(INHERITANCE_NS, make_key(retreat_id))

    def invalidate_all(self) -> None:
        self.cache.invalidate(INHERITANCE_NS)
