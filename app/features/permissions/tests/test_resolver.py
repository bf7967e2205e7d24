"""Tests for role-permission resolution."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.cache import MISS
from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import Role
from app.features.permissions.resolver import PERMISSIONS_NS, RolePermissionResolver
from app.features.retreats.models import MembershipStatus, RetreatMembership
from app.utils import utcnow


@pytest.fixture
def resolver(cache):
    return RolePermissionResolver(cache)


class TestResolve:
    @pytest.mark.asyncio
    async def test_user_without_roles_resolves_empty(self, db, factory, resolver):
        """Test that a user with no role rows has no permissions."""
        user = await factory.user()
        retreat = await factory.retreat()

        resolved = await resolver.resolve(db, user.id, retreat.id)

        assert resolved.permissions == frozenset()
        assert resolved.roles == frozenset()
        assert resolved.retreat_roles == frozenset()
        assert resolved.retreat_specific_role is None

    @pytest.mark.asyncio
    async def test_global_and_membership_roles_are_unioned(self, db, factory, resolver):
        user = await factory.user()
        retreat = await factory.retreat()
        regular = await factory.role("regular", "retreat:create")
        treasurer = await factory.role("treasurer", "payment:read")
        await factory.global_role(user, regular)
        await factory.membership(user, retreat, treasurer)

        resolved = await resolver.resolve(db, user.id)

        assert resolved.permissions == {PermissionKey("retreat", "create"), PermissionKey("payment", "read")}
        assert resolved.roles == {"regular"}
        assert [(r.retreat_id, r.role) for r in resolved.retreats] == [(retreat.id, "treasurer")]

    @pytest.mark.asyncio
    async def test_scoped_call_without_membership_keeps_global_permissions(self, db, factory, resolver):
        """Test that a retreat with no membership still yields the user's global permissions."""
        user = await factory.user()
        other = await factory.retreat()
        regular = await factory.role("regular", "retreat:list")
        await factory.global_role(user, regular)

        resolved = await resolver.resolve(db, user.id, other.id)

        assert resolved.permissions == {PermissionKey("retreat", "list")}
        assert resolved.retreat_roles == frozenset()

    @pytest.mark.asyncio
    async def test_scoped_call_does_not_leak_other_retreats(self, db, factory, resolver):
        """Test that a role held in one retreat grants nothing in another."""
        user = await factory.user()
        first = await factory.retreat()
        second = await factory.retreat()
        treasurer = await factory.role("treasurer", "payment:read")
        await factory.membership(user, first, treasurer)

        assert PermissionKey("payment", "read") in (await resolver.resolve(db, user.id, first.id)).permissions
        assert (await resolver.resolve(db, user.id, second.id)).permissions == frozenset()

    @pytest.mark.asyncio
    async def test_inactive_memberships_are_ignored(self, db, factory, resolver):
        user = await factory.user()
        retreat = await factory.retreat()
        treasurer = await factory.role("treasurer", "payment:read")
        logistics = await factory.role("logistics", "house:read")
        admin = await factory.role("admin", "retreat:update")
        await factory.membership(user, retreat, treasurer, status=MembershipStatus.REVOKED)
        await factory.membership(user, retreat, logistics, expires_at=utcnow() - timedelta(minutes=1))
        await factory.membership(user, retreat, admin, status=MembershipStatus.PENDING)

        resolved = await resolver.resolve(db, user.id, retreat.id)

        assert resolved.permissions == {PermissionKey("retreat", "update")}
        assert resolved.retreat_roles == {"admin"}

    @pytest.mark.asyncio
    async def test_unresolvable_role_is_dropped(self, db, factory, resolver):
        """Test that a membership pointing at a missing role does not fail resolution."""
        user = await factory.user()
        retreat = await factory.retreat()
        treasurer = await factory.role("treasurer", "payment:read")
        await factory.membership(user, retreat, treasurer)
        await factory.membership(user, retreat, None)

        resolved = await resolver.resolve(db, user.id, retreat.id)

        assert resolved.permissions == {PermissionKey("payment", "read")}
        assert len(resolved.retreats) == 1

    @pytest.mark.asyncio
    async def test_valid_until_is_earliest_membership_expiry(self, db, factory, resolver):
        user = await factory.user()
        retreat = await factory.retreat()
        treasurer = await factory.role("treasurer", "payment:read")
        expires_at = utcnow() + timedelta(hours=2)
        await factory.membership(user, retreat, treasurer, expires_at=expires_at)

        resolved = await resolver.resolve(db, user.id, retreat.id)

        assert resolved.valid_until is not None
        assert abs((resolved.valid_until - expires_at).total_seconds()) < 1


class TestCaching:
    @pytest.mark.asyncio
    async def test_result_is_cached_until_invalidated(self, db, factory, resolver, cache):
        user = await factory.user()
        retreat = await factory.retreat()
        treasurer = await factory.role("treasurer", "payment:read")
        await factory.membership(user, retreat, treasurer)

        first = await resolver.resolve(db, user.id, retreat.id)
        await db.execute(
            update(RetreatMembership)
            .where(RetreatMembership.user_id == user.id)
            .values(status=MembershipStatus.REVOKED)
        )
        await db.commit()

        assert await resolver.resolve(db, user.id, retreat.id) is first

        resolver.invalidate_user(user.id)
        assert (await resolver.resolve(db, user.id, retreat.id)).permissions == frozenset()

    @pytest.mark.asyncio
    async def test_invalidate_user_drops_global_and_scoped_entries(self, db, factory, resolver, cache):
        user = await factory.user()
        retreat = await factory.retreat()
        await resolver.resolve(db, user.id)
        await resolver.resolve(db, user.id, retreat.id)

        resolver.invalidate_user(user.id)

        assert cache.get(PERMISSIONS_NS, user.id) is MISS
        assert cache.get(PERMISSIONS_NS, f"{user.id}:{retreat.id}") is MISS

    @pytest.mark.asyncio
    async def test_renamed_role_seen_after_invalidation(self, db, factory, resolver):
        user = await factory.user()
        retreat = await factory.retreat()
        role = await factory.role("treasurer", "payment:read")
        await factory.membership(user, retreat, role)
        assert (await resolver.resolve(db, user.id, retreat.id)).retreat_roles == {"treasurer"}

        await db.execute(update(Role).where(Role.id == role.id).values(name="bookkeeper"))
        await db.commit()
        resolver.invalidate_user(user.id)

        assert (await resolver.resolve(db, user.id, retreat.id)).retreat_roles == {"bookkeeper"}
