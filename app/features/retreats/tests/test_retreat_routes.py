"""API tests for the /retreats routes."""

import pytest


@pytest.fixture
async def people(factory):
    await factory.role("admin", "retreat:update", "payment:manage")
    await factory.role("treasurer", "payment:read")
    await factory.role("superadmin", "system:admin")
    return {
        "creator": await factory.user("Creator"),
        "guest": await factory.user("Guest"),
        "stranger": await factory.user("Stranger"),
    }


@pytest.fixture
async def retreat(client, headers, people):
    response = await client.post(
        "/retreats",
        json={"name": "Autumn retreat", "starts_on": "2026-10-01", "ends_on": "2026-10-04"},
        headers=headers(people["creator"]),
    )
    assert response.status_code == 201
    return response.json()


class TestRetreats:
    @pytest.mark.asyncio
    async def test_create(self, retreat, people):
        assert retreat["name"] == "Autumn retreat"
        assert retreat["created_by_id"] == people["creator"].id

    @pytest.mark.asyncio
    async def test_end_before_start_is_rejected(self, client, headers, people):
        response = await client.post(
            "/retreats",
            json={"name": "Backwards", "starts_on": "2026-10-04", "ends_on": "2026-10-01"},
            headers=headers(people["creator"]),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_my_retreats(self, client, headers, people, retreat):
        mine = await client.get("/retreats", headers=headers(people["creator"]))
        theirs = await client.get("/retreats", headers=headers(people["stranger"]))

        assert [r["id"] for r in mine.json()] == [retreat["id"]]
        assert theirs.json() == []

    @pytest.mark.asyncio
    async def test_get(self, client, headers, people, retreat):
        ok = await client.get(f"/retreats/{retreat['id']}", headers=headers(people["creator"]))
        hidden = await client.get(f"/retreats/{retreat['id']}", headers=headers(people["stranger"]))
        missing = await client.get("/retreats/does-not-exist", headers=headers(people["creator"]))

        assert ok.status_code == 200
        assert hidden.status_code == 403
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_access_summary(self, client, headers, people, retreat):
        response = await client.get(f"/retreats/{retreat['id']}/access", headers=headers(people["creator"]))

        body = response.json()
        assert body["has_access"] is True
        assert body["is_creator"] is True
        assert body["roles"] == ["admin"]
        # admin inherits treasurer because an active member holds payment:manage
        assert body["permissions"] == ["payment:manage", "payment:read", "retreat:update"]

    @pytest.mark.asyncio
    async def test_access_summary_for_stranger(self, client, headers, people, retreat):
        response = await client.get(f"/retreats/{retreat['id']}/access", headers=headers(people["stranger"]))

        assert response.json() == {
            "retreat_id": retreat["id"], "has_access": False, "is_creator": False,
            "roles": [], "permissions": [],
        }


class TestMembers:
    @pytest.mark.asyncio
    async def test_creator_assigns_and_removes(self, client, headers, people, retreat):
        url = f"/retreats/{retreat['id']}/members"
        creator = headers(people["creator"])

        assigned = await client.post(url, json={"user_id": people["guest"].id, "role": "treasurer"},
                                     headers=creator)
        assert assigned.status_code == 200
        assert assigned.json()["status"] == "active"

        members = await client.get(url, headers=headers(people["guest"]))
        assert {(m["user_id"], m["role"]) for m in members.json()} == {
            (people["creator"].id, "admin"),
            (people["guest"].id, "treasurer"),
        }

        removed = await client.delete(f"{url}/{people['guest'].id}", params={"role": "treasurer"},
                                      headers=creator)
        assert removed.status_code == 204
        again = await client.delete(f"{url}/{people['guest'].id}", headers=creator)
        assert again.status_code == 404

        access = await client.get(f"/retreats/{retreat['id']}/access", headers=headers(people["guest"]))
        assert access.json()["has_access"] is False

    @pytest.mark.asyncio
    async def test_stranger_cannot_assign(self, client, headers, people, retreat):
        response = await client.post(
            f"/retreats/{retreat['id']}/members",
            json={"user_id": people["stranger"].id, "role": "admin"},
            headers=headers(people["stranger"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_role(self, client, headers, people, retreat):
        response = await client.post(
            f"/retreats/{retreat['id']}/members",
            json={"user_id": people["guest"].id, "role": "juggler"},
            headers=headers(people["creator"]),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_creator_cannot_make_themselves_superadmin(self, client, headers, people, retreat):
        creator = headers(people["creator"])
        assert (await client.get("/permissions/rules/inheritance", headers=creator)).status_code == 403

        for url, body in (
            (f"/retreats/{retreat['id']}/members", {"user_id": people["creator"].id, "role": "superadmin"}),
            (f"/retreats/{retreat['id']}/invitations", {"user_id": people["guest"].id, "role": "superadmin"}),
            (f"/retreats/{retreat['id']}/role-requests", {"role": "superadmin"}),
        ):
            response = await client.post(url, json=body, headers=creator)
            assert response.status_code == 422, url

        assert (await client.get("/permissions/rules/inheritance", headers=creator)).status_code == 403
        access = await client.get(f"/retreats/{retreat['id']}/access", headers=creator)
        assert "superadmin" not in access.json()["roles"]
        assert "system:admin" not in access.json()["permissions"]


class TestInvitations:
    async def _invite(self, client, headers, people, retreat, **extra):
        return await client.post(
            f"/retreats/{retreat['id']}/invitations",
            json={"user_id": people["guest"].id, "role": "treasurer", **extra},
            headers=headers(people["creator"]),
        )

    @pytest.mark.asyncio
    async def test_invite_and_accept(self, client, headers, people, retreat):
        invited = await self._invite(client, headers, people, retreat, expires_in_days=3)
        assert invited.status_code == 201
        assert invited.json()["status"] == "pending"
        assert invited.json()["expires_at"] is not None

        accepted = await client.post(
            f"/retreats/invitations/{invited.json()['id']}/accept",
            headers=headers(people["guest"]),
        )

        assert accepted.status_code == 200
        assert accepted.json()["status"] == "active"
        assert accepted.json()["role"] == "treasurer"
        assert accepted.json()["expires_at"] is None

    @pytest.mark.asyncio
    async def test_decline(self, client, headers, people, retreat):
        invited = await self._invite(client, headers, people, retreat)

        declined = await client.post(
            f"/retreats/invitations/{invited.json()['id']}/decline",
            headers=headers(people["guest"]),
        )
        assert declined.json()["status"] == "revoked"

        again = await client.post(
            f"/retreats/invitations/{invited.json()['id']}/accept",
            headers=headers(people["guest"]),
        )
        assert again.status_code == 422

    @pytest.mark.asyncio
    async def test_only_invitee_can_answer(self, client, headers, people, retreat):
        invited = await self._invite(client, headers, people, retreat)

        response = await client.post(
            f"/retreats/invitations/{invited.json()['id']}/accept",
            headers=headers(people["stranger"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_invitation(self, client, headers, people):
        response = await client.post("/retreats/invitations/nope/accept", headers=headers(people["guest"]))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_expiry_is_bounded(self, client, headers, people, retreat):
        response = await self._invite(client, headers, people, retreat, expires_in_days=365)
        assert response.status_code == 400


class TestRoleRequests:
    @pytest.mark.asyncio
    async def test_request_and_approve(self, client, headers, people, retreat):
        guest = headers(people["guest"])

        created = await client.post(f"/retreats/{retreat['id']}/role-requests",
                                    json={"role": "treasurer", "message": "Happy to count coins"}, headers=guest)
        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        request_id = created.json()["id"]

        duplicate = await client.post(f"/retreats/{retreat['id']}/role-requests",
                                      json={"role": "admin"}, headers=guest)
        assert duplicate.status_code == 422

        mine = await client.get(f"/retreats/{retreat['id']}/role-requests/mine", headers=guest)
        assert mine.json()["id"] == request_id
        hidden = await client.get(f"/retreats/{retreat['id']}/role-requests", headers=guest)
        assert hidden.status_code == 403
        listing = await client.get(f"/retreats/{retreat['id']}/role-requests", headers=headers(people["creator"]))
        assert [r["id"] for r in listing.json()] == [request_id]

        denied = await client.post(f"/retreats/role-requests/{request_id}/approve", headers=guest)
        assert denied.status_code == 403
        approved = await client.post(f"/retreats/role-requests/{request_id}/approve",
                                     headers=headers(people["creator"]))
        assert approved.status_code == 200
        assert approved.json()["request"]["status"] == "approved"
        assert approved.json()["membership"]["role"] == "treasurer"
        assert approved.json()["membership"]["status"] == "active"

        access = await client.get(f"/retreats/{retreat['id']}/access", headers=guest)
        assert access.json()["roles"] == ["treasurer"]
        none_pending = await client.get(f"/retreats/{retreat['id']}/role-requests/mine", headers=guest)
        assert none_pending.status_code == 404

    @pytest.mark.asyncio
    async def test_reject_with_reason(self, client, headers, people, retreat):
        guest = headers(people["guest"])
        created = await client.post(f"/retreats/{retreat['id']}/role-requests", json={"role": "admin"}, headers=guest)
        request_id = created.json()["id"]

        rejected = await client.post(f"/retreats/role-requests/{request_id}/reject",
                                     json={"reason": "Not this year"}, headers=headers(people["creator"]))
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "rejected"
        assert rejected.json()["rejection_reason"] == "Not this year"

        again = await client.post(f"/retreats/role-requests/{request_id}/approve",
                                  headers=headers(people["creator"]))
        assert again.status_code == 422

        history = await client.get("/retreats/role-requests/mine", headers=guest)
        assert [(r["id"], r["status"]) for r in history.json()] == [(request_id, "rejected")]

    @pytest.mark.asyncio
    async def test_unknown_retreat_or_request(self, client, headers, people):
        guest = headers(people["guest"])

        assert (await client.post("/retreats/missing/role-requests", json={"role": "treasurer"},
                                  headers=guest)).status_code == 404
        assert (await client.get("/retreats/missing/role-requests", headers=guest)).status_code == 404
        assert (await client.post("/retreats/role-requests/missing/reject", headers=guest)).status_code == 404
