"""Tests for override entries and the override layer."""

from datetime import timedelta

import pytest

from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import PermissionOverride
from app.features.permissions.overrides import OverrideEntry, OverrideLayer, apply_entries, earliest_expiry
from app.utils import utcnow


XY = PermissionKey("x", "y")
HOUSE_READ = PermissionKey("house", "read")


class TestApplyEntries:
    def test_grant_adds(self):
        assert apply_entries(set(), [OverrideEntry(XY, True)]) == {XY}

    def test_deny_removes(self):
        assert apply_entries({XY, HOUSE_READ}, [OverrideEntry(XY, False)]) == {HOUSE_READ}

    def test_last_entry_wins_deny(self):
        """Test that grant followed by deny for the same key ends denied."""
        entries = [OverrideEntry(XY, True), OverrideEntry(XY, False)]
        assert XY not in apply_entries(set(), entries)

    def test_last_entry_wins_grant(self):
        entries = [OverrideEntry(XY, False), OverrideEntry(XY, True)]
        assert XY in apply_entries(set(), entries)

    def test_expired_entries_are_skipped(self):
        now = utcnow()
        entries = [
            OverrideEntry(XY, True),
            OverrideEntry(XY, False, expires_at=now - timedelta(seconds=1)),
        ]
        assert XY in apply_entries(set(), entries, now)

    def test_future_expiry_still_applies(self):
        now = utcnow()
        assert apply_entries({XY}, [OverrideEntry(XY, False, expires_at=now + timedelta(hours=1))], now) == set()

    def test_base_is_not_mutated(self):
        base = {XY}
        apply_entries(base, [OverrideEntry(XY, False)])
        assert base == {XY}


class TestOverrideEntry:
    def test_dict_form(self):
        expires_at = utcnow() + timedelta(days=1)
        entry = OverrideEntry(XY, True, expires_at)

        restored = OverrideEntry.from_dict(entry.to_dict())

        assert restored.key == XY
        assert restored.granted is True
        assert restored.expires_at == expires_at

    def test_naive_timestamp_is_read_as_utc(self):
        entry = OverrideEntry.from_dict({"resource": "x", "operation": "y", "granted": False,
                                         "expires_at": "2030-01-01T00:00:00"})
        assert entry.expires_at.tzinfo is not None

    @pytest.mark.parametrize("data", [
        {"resource": "x", "granted": True},
        {"resource": "x", "operation": "", "granted": True},
        {"resource": "x", "operation": "y", "granted": "yes"},
        {"resource": "x", "operation": "y", "granted": True, "expires_at": "tomorrow"},
        None,
    ])
    def test_malformed(self, data):
        with pytest.raises(ValueError):
            OverrideEntry.from_dict(data)


def test_earliest_expiry_ignores_past_and_permanent_entries():
    now = utcnow()
    soon = now + timedelta(minutes=5)
    entries = [
        OverrideEntry(XY, True),
        OverrideEntry(XY, True, now - timedelta(minutes=5)),
        OverrideEntry(HOUSE_READ, False, now + timedelta(hours=1)),
        OverrideEntry(HOUSE_READ, True, soon),
    ]
    assert earliest_expiry(entries, now) == soon
    assert earliest_expiry([OverrideEntry(XY, True)], now) is None


class TestOverrideLayer:
    @pytest.fixture
    def layer(self):
        return OverrideLayer()

    @pytest.mark.asyncio
    async def test_set_replaces_whole_list(self, db, factory, layer):
        user = await factory.user()
        retreat = await factory.retreat()

        await layer.set(db, user.id, retreat.id, [OverrideEntry(XY, True), OverrideEntry(HOUSE_READ, True)])
        await layer.set(db, user.id, retreat.id, [OverrideEntry(XY, False)], reason="audit")
        await db.commit()

        entries = await layer.get(db, user.id, retreat.id)
        assert [(e.key, e.granted) for e in entries] == [(XY, False)]
        assert len(await layer.list_for_retreat(db, retreat.id)) == 1

    @pytest.mark.asyncio
    async def test_stored_order_is_kept(self, db, factory, layer):
        user = await factory.user()
        retreat = await factory.retreat()
        await layer.set(db, user.id, retreat.id, [OverrideEntry(XY, True), OverrideEntry(XY, False)])
        await db.commit()

        assert await layer.apply(db, user.id, retreat.id, set()) == frozenset()

    @pytest.mark.asyncio
    async def test_clear(self, db, factory, layer):
        user = await factory.user()
        retreat = await factory.retreat()
        await layer.set(db, user.id, retreat.id, [OverrideEntry(XY, True)])
        await db.commit()

        assert await layer.clear(db, user.id, retreat.id) is True
        assert await layer.clear(db, user.id, retreat.id) is False
        await db.commit()
        assert await layer.get(db, user.id, retreat.id) == []

    @pytest.mark.asyncio
    async def test_malformed_stored_entries_are_skipped(self, db, factory, layer):
        user = await factory.user()
        retreat = await factory.retreat()
        db.add(PermissionOverride(user_id=user.id, retreat_id=retreat.id, entries=[
            {"resource": "x", "operation": "y", "granted": True},
            {"resource": "broken"},
        ]))
        await db.commit()

        entries = await layer.get(db, user.id, retreat.id)

        assert [e.key for e in entries] == [XY]
