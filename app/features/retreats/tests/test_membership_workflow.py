"""Tests for retreat creation, invitations and role requests."""

from datetime import timedelta

import pytest

from app.features.permissions.audit import AuditContext
from app.features.permissions.exceptions import NotFoundError, PolicyViolationError, UnauthorizedError
from app.features.retreats import service as retreats
from app.features.retreats.models import MembershipStatus, RoleRequestStatus
from app.utils import as_utc, utcnow


@pytest.fixture
async def roles(factory):
    return {
        "admin": await factory.role("admin", "retreat:update", "retreat:invite"),
        "treasurer": await factory.role("treasurer", "payment:read"),
    }


class TestCreateRetreat:
    @pytest.mark.asyncio
    async def test_creator_becomes_admin(self, db, factory, service, roles):
        creator = await factory.user()
        context = AuditContext(actor_id=creator.id)

        retreat = await retreats.create_retreat(db, service, "Spring retreat", creator.id, context=context)

        assert retreat.created_by_id == creator.id
        assert await service.has_retreat_role(db, creator.id, retreat.id, "admin") is True
        assert await service.has_permission(db, creator.id, "retreat:update", retreat.id) is True

    @pytest.mark.asyncio
    async def test_without_creator_role_only_ownership_applies(self, db, factory, service):
        creator = await factory.user()

        retreat = await retreats.create_retreat(db, service, "Quiet retreat", creator.id)

        assert await service.has_retreat_role(db, creator.id, retreat.id, "admin") is False
        assert await service.has_retreat_access(db, creator.id, retreat.id) is True
        assert await service.can_manage_retreat(db, creator.id, retreat.id) is True

    @pytest.mark.asyncio
    async def test_list_user_retreats(self, db, factory, service, roles):
        creator = await factory.user()
        member = await factory.user()
        own = await retreats.create_retreat(db, service, "A retreat", creator.id)
        other = await retreats.create_retreat(db, service, "B retreat", member.id)
        await service.assign_retreat_role(db, creator.id, other.id, "treasurer")
        await retreats.create_retreat(db, service, "C retreat", member.id)

        listed = await retreats.list_user_retreats(db, creator.id)

        assert [r.id for r in listed] == [own.id, other.id]


class TestInvitations:
    @pytest.fixture
    async def retreat(self, db, factory, service, roles):
        creator = await factory.user("Creator")
        return await retreats.create_retreat(db, service, "Summer retreat", creator.id)

    @pytest.mark.asyncio
    async def test_invite_creates_pending_membership(self, db, factory, service, retreat):
        guest = await factory.user()
        before = utcnow()

        invitation = await retreats.invite_member(
            db, service, retreat.id, guest.id, "treasurer", invited_by=retreat.created_by_id,
        )

        assert invitation.status == MembershipStatus.PENDING
        assert invitation.invited_by_id == retreat.created_by_id
        assert timedelta(days=7) <= as_utc(invitation.expires_at) - before < timedelta(days=7, minutes=1)
        # Pending members already count towards permissions
        assert await service.has_permission(db, guest.id, "payment:read", retreat.id) is True

    @pytest.mark.asyncio
    async def test_reinvite_returns_pending_invitation(self, db, factory, service, retreat):
        guest = await factory.user()

        first = await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer",
                                             invited_by=retreat.created_by_id)
        second = await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer",
                                              invited_by=retreat.created_by_id, expires_in_days=1)

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_only_creator_or_superadmin_invites(self, db, factory, service, retreat):
        guest = await factory.user()
        member = await factory.user()
        await service.assign_retreat_role(db, member.id, retreat.id, "admin")

        with pytest.raises(UnauthorizedError):
            await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer", invited_by=member.id)

    @pytest.mark.asyncio
    async def test_accept(self, db, factory, service, retreat):
        guest = await factory.user()
        invitation = await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer",
                                                  invited_by=retreat.created_by_id)

        membership = await retreats.respond_to_invitation(db, service, invitation.id, guest.id, accept=True)

        assert membership.status == MembershipStatus.ACTIVE
        assert membership.expires_at is None
        assert await service.has_retreat_role(db, guest.id, retreat.id, "treasurer") is True

        with pytest.raises(PolicyViolationError):
            await retreats.respond_to_invitation(db, service, invitation.id, guest.id, accept=True)

    @pytest.mark.asyncio
    async def test_decline_removes_access(self, db, factory, service, retreat):
        guest = await factory.user()
        invitation = await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer",
                                                  invited_by=retreat.created_by_id)
        assert await service.has_retreat_access(db, guest.id, retreat.id) is True

        membership = await retreats.respond_to_invitation(db, service, invitation.id, guest.id, accept=False)

        assert membership.status == MembershipStatus.REVOKED
        assert await service.has_retreat_access(db, guest.id, retreat.id) is False

    @pytest.mark.asyncio
    async def test_cannot_answer_someone_elses_invitation(self, db, factory, service, retreat):
        guest = await factory.user()
        intruder = await factory.user()
        invitation = await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer",
                                                  invited_by=retreat.created_by_id)

        with pytest.raises(UnauthorizedError):
            await retreats.respond_to_invitation(db, service, invitation.id, intruder.id, accept=True)

    @pytest.mark.asyncio
    async def test_lapsed_invitation(self, db, factory, service, retreat, roles):
        guest = await factory.user()
        invitation = await factory.membership(
            guest, retreat, roles["treasurer"],
            status=MembershipStatus.PENDING, expires_at=utcnow() - timedelta(hours=1),
        )

        with pytest.raises(PolicyViolationError):
            await retreats.respond_to_invitation(db, service, invitation.id, guest.id, accept=True)
        assert await service.expire_overdue_memberships(db) == 1

    @pytest.mark.asyncio
    async def test_list_members(self, db, factory, service, retreat):
        guest = await factory.user()
        leaver = await factory.user()
        await retreats.invite_member(db, service, retreat.id, guest.id, "treasurer",
                                     invited_by=retreat.created_by_id)
        await service.assign_retreat_role(db, leaver.id, retreat.id, "treasurer")
        await service.revoke_retreat_role(db, leaver.id, retreat.id)

        live = await retreats.list_members(db, retreat.id)
        everyone = await retreats.list_members(db, retreat.id, include_inactive=True)

        assert {(m.user_id, role) for m, role in live} == {
            (retreat.created_by_id, "admin"),
            (guest.id, "treasurer"),
        }
        assert len(everyone) == 3


class TestRoleRequests:
    @pytest.fixture
    async def retreat(self, db, factory, service, roles):
        creator = await factory.user("Creator")
        return await retreats.create_retreat(db, service, "Winter retreat", creator.id)

    @pytest.mark.asyncio
    async def test_request_is_pending_and_grants_nothing(self, db, factory, service, retreat):
        guest = await factory.user()

        request = await retreats.request_role(db, service, retreat.id, guest.id, "treasurer", message="I can help")

        assert request.status == RoleRequestStatus.PENDING
        assert request.requested_role == "treasurer"
        assert request.message == "I can help"
        assert await service.has_retreat_access(db, guest.id, retreat.id) is False
        assert (await retreats.get_pending_request(db, guest.id, retreat.id)).id == request.id

    @pytest.mark.asyncio
    async def test_one_pending_request_per_retreat(self, db, factory, service, retreat):
        guest = await factory.user()
        await retreats.request_role(db, service, retreat.id, guest.id, "treasurer")

        with pytest.raises(PolicyViolationError):
            await retreats.request_role(db, service, retreat.id, guest.id, "admin")

        other = await retreats.create_retreat(db, service, "Other retreat", retreat.created_by_id)
        await retreats.request_role(db, service, other.id, guest.id, "admin")
        assert len(await retreats.list_user_requests(db, guest.id)) == 2

    @pytest.mark.asyncio
    async def test_invalid_requests(self, db, factory, service, retreat):
        guest = await factory.user()
        await factory.role("superadmin", "system:admin")

        with pytest.raises(NotFoundError):
            await retreats.request_role(db, service, "missing", guest.id, "treasurer")
        with pytest.raises(NotFoundError):
            await retreats.request_role(db, service, retreat.id, guest.id, "juggler")
        with pytest.raises(PolicyViolationError):
            await retreats.request_role(db, service, retreat.id, guest.id, "superadmin")
        with pytest.raises(PolicyViolationError):
            await retreats.request_role(db, service, retreat.id, retreat.created_by_id, "admin")

    @pytest.mark.asyncio
    async def test_approve_creates_active_membership(self, db, factory, service, retreat):
        guest = await factory.user()
        request = await retreats.request_role(db, service, retreat.id, guest.id, "treasurer")

        approved, membership = await retreats.approve_role_request(
            db, service, request.id, approved_by=retreat.created_by_id,
        )

        assert approved.status == RoleRequestStatus.APPROVED
        assert approved.reviewed_by_id == retreat.created_by_id
        assert approved.reviewed_at is not None
        assert membership.status == MembershipStatus.ACTIVE
        assert membership.invited_by_id == retreat.created_by_id
        assert await service.has_permission(db, guest.id, "payment:read", retreat.id) is True
        assert await retreats.list_retreat_requests(db, retreat.id) == []
        assert await retreats.get_pending_request(db, guest.id, retreat.id) is None

        with pytest.raises(PolicyViolationError):
            await retreats.approve_role_request(db, service, request.id, approved_by=retreat.created_by_id)

    @pytest.mark.asyncio
    async def test_only_creator_or_superadmin_reviews(self, db, factory, service, retreat, roles):
        guest = await factory.user()
        member = await factory.user()
        await factory.membership(member, retreat, roles["admin"])
        request = await retreats.request_role(db, service, retreat.id, guest.id, "treasurer")

        for reviewer in (guest, member):
            with pytest.raises(UnauthorizedError):
                await retreats.approve_role_request(db, service, request.id, approved_by=reviewer.id)
            with pytest.raises(UnauthorizedError):
                await retreats.reject_role_request(db, service, request.id, rejected_by=reviewer.id)

        with pytest.raises(NotFoundError):
            await retreats.approve_role_request(db, service, "missing", approved_by=retreat.created_by_id)
        assert [r.id for r in await retreats.list_retreat_requests(db, retreat.id)] == [request.id]

    @pytest.mark.asyncio
    async def test_reject_keeps_reason_and_allows_new_request(self, db, factory, service, retreat):
        guest = await factory.user()
        request = await retreats.request_role(db, service, retreat.id, guest.id, "admin")
        context = AuditContext(actor_id=retreat.created_by_id)

        rejected = await retreats.reject_role_request(
            db, service, request.id, rejected_by=retreat.created_by_id, reason="Roster is full", context=context,
        )

        assert rejected.status == RoleRequestStatus.REJECTED
        assert rejected.rejection_reason == "Roster is full"
        assert await service.has_retreat_access(db, guest.id, retreat.id) is False
        with pytest.raises(PolicyViolationError):
            await retreats.approve_role_request(db, service, request.id, approved_by=retreat.created_by_id)

        again = await retreats.request_role(db, service, retreat.id, guest.id, "treasurer")
        assert again.id != request.id
