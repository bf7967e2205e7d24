"""
Per-user, per-retreat permission overrides.

An override record holds an ordered list of allow/deny entries that is
applied on top of every other permission source. Entries past their expiry
are skipped, not deleted, so history stays visible to operators.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import PermissionOverride
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)


@dataclass(frozen=True)
class OverrideEntry:
    key: PermissionKey
    granted: bool
    expires_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OverrideEntry":
        """Build an entry from its stored form. Raises ValueError when malformed."""
        try:
            key = PermissionKey(str(data["resource"]), str(data["operation"]))
            granted = data["granted"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed override entry: {data!r}") from e
        if not key.resource or not key.operation or not isinstance(granted, bool):
            raise ValueError(f"Malformed override entry: {data!r}")

        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(key, granted, as_utc(expires_at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.key.resource,
            "operation": self.key.operation,
            "granted": self.granted,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def apply_entries(
    base: Iterable[PermissionKey],
    entries: Iterable[OverrideEntry],
    now: Optional[datetime] = None,
) -> frozenset[PermissionKey]:
    """
    Adjust ``base`` with override entries.

    Entries are applied in stored order; a grant adds its key, a denial
    removes it, so the last unexpired entry for a key decides the outcome.
    """
    now = now or utcnow()
    result = set(base)
    for entry in entries:
        if entry.is_expired(now):
            continue
        if entry.granted:
            result.add(entry.key)
        else:
            result.discard(entry.key)
    return frozenset(result)


def earliest_expiry(entries: Iterable[OverrideEntry], now: Optional[datetime] = None) -> Optional[datetime]:
    now = now or utcnow()
    pending = [entry.expires_at for entry in entries if entry.expires_at and entry.expires_at > now]
    return min(pending) if pending else None


class OverrideLayer:
    async def get_record(self, db: AsyncSession, user_id: str, retreat_id: str) -> Optional[PermissionOverride]:
        stmt = select(PermissionOverride).where(
            PermissionOverride.user_id == user_id,
            PermissionOverride.retreat_id == retreat_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, db: AsyncSession, user_id: str, retreat_id: str) -> list[OverrideEntry]:
        """Stored entries in order; malformed ones are skipped with a warning."""
        record = await self.get_record(db, user_id, retreat_id)
        if record is None:
            return []
        return self.parse(record)

    async def set(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: str,
        entries: Iterable[OverrideEntry],
        set_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> PermissionOverride:
        """Replace the whole entry list for (user, retreat)."""
        stored = [entry.to_dict() for entry in entries]
        record = await self.get_record(db, user_id, retreat_id)
        if record is None:
            record = PermissionOverride(user_id=user_id, retreat_id=retreat_id)
            db.add(record)
        record.entries = stored
        record.reason = reason
        record.set_by_id = set_by
        await db.flush()

        log.info("Override for user %s in retreat %s set with %d entries", user_id, retreat_id, len(stored))
        return record

    async def clear(self, db: AsyncSession, user_id: str, retreat_id: str) -> bool:
        stmt = delete(PermissionOverride).where(
            PermissionOverride.user_id == user_id,
            PermissionOverride.retreat_id == retreat_id,
        )
        result = await db.execute(stmt)
        return (result.rowcount or 0) > 0

    async def apply(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: str,
        base: Iterable[PermissionKey],
    ) -> frozenset[PermissionKey]:
        return apply_entries(base, await self.get(db, user_id, retreat_id))

    async def list_for_retreat(self, db: AsyncSession, retreat_id: str) -> list[PermissionOverride]:
        stmt = (
            select(PermissionOverride)
            .where(PermissionOverride.retreat_id == retreat_id)
            .order_by(PermissionOverride.user_id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    def parse(self, record: PermissionOverride) -> list[OverrideEntry]:
        entries = []
        for data in record.entries or []:
            try:
                entries.append(OverrideEntry.from_dict(data))
            except ValueError:
                log.warning("Skipping malformed override entry %r for user %s in retreat %s",
                            data, record.user_id, record.retreat_id)
        return entries
