"""
Time-bounded permission delegation between retreat members.

Every delegation is validated against a static ``DelegationRule`` matching
the (from_role, to_role) pair of the two users at creation time. Requests
outside a rule are policy violations and are rejected whole. Rules that
require approval leave the delegation pending until a retreat manager
approves it.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions.exceptions import PolicyViolationError
from app.features.permissions.keys import PermissionKey, format_keys, parse_keys
from app.features.permissions.models import DelegationStatus, PermissionDelegation, Role
from app.features.permissions.rules import DelegationRule, DelegationRuleRepository
from app.features.retreats.models import MembershipStatus, RetreatMembership
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

OPEN_DELEGATION_STATUSES = (DelegationStatus.PENDING, DelegationStatus.ACTIVE)


@dataclass(frozen=True)
class DelegationCheck:
    """Outcome of matching a delegation request against the rules."""
    can_delegate: bool
    requires_approval: bool = False
    max_duration: Optional[int] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "can_delegate": self.can_delegate,
            "requires_approval": self.requires_approval,
            "max_duration": self.max_duration,
        }


@dataclass(frozen=True)
class ActiveDelegation:
    id: str
    from_user_id: str
    to_user_id: str
    retreat_id: str
    permissions: frozenset[PermissionKey]
    expires_at: datetime


class DelegationEngine:
    def __init__(self, rules: DelegationRuleRepository):
        self.rules = rules

    async def _active_role_names(self, db: AsyncSession, user_id: str, retreat_id: str) -> list[str]:
        stmt = (
            select(Role.name)
            .join(RetreatMembership, RetreatMembership.role_id == Role.id)
            .where(
                RetreatMembership.user_id == user_id,
                RetreatMembership.retreat_id == retreat_id,
                RetreatMembership.status == MembershipStatus.ACTIVE,
                or_(RetreatMembership.expires_at.is_(None), RetreatMembership.expires_at > utcnow()),
            )
            .order_by(Role.name)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def can_delegate(
        self,
        db: AsyncSession,
        from_user_id: str,
        to_user_id: str,
        retreat_id: str,
        permissions: Iterable[PermissionKey],
    ) -> DelegationCheck:
        """
        Check whether ``from_user_id`` may lend ``permissions`` to ``to_user_id``.

        Both users need an active membership in the retreat. Every requested
        permission must be in the permission set of a rule matching their
        roles; if users hold several roles, any covering pair is enough.
        """
        requested = frozenset(permissions)
        if not requested:
            return DelegationCheck(False, reason="No permissions requested")
        if from_user_id == to_user_id:
            return DelegationCheck(False, reason="Cannot delegate permissions to yourself")

        from_roles = await self._active_role_names(db, from_user_id, retreat_id)
        to_roles = await self._active_role_names(db, to_user_id, retreat_id)
        if not from_roles or not to_roles:
            return DelegationCheck(False, reason="Both users need an active role in this retreat")

        first_match: Optional[DelegationRule] = None
        for from_role in from_roles:
            for to_role in to_roles:
                rule = self.rules.find(from_role, to_role)
                if rule is None:
                    continue
                if requested <= rule.permissions:
                    return DelegationCheck(True, rule.requires_approval, rule.max_duration_hours)
                first_match = first_match or rule

        if first_match is None:
            return DelegationCheck(False, reason="Permission delegation not allowed between these roles")

        exceeding = format_keys(requested - first_match.permissions)
        return DelegationCheck(
            False,
            first_match.requires_approval,
            first_match.max_duration_hours,
            reason=f"Requested permissions exceed the delegation rule: {', '.join(exceeding)}",
        )

    async def create(
        self,
        db: AsyncSession,
        from_user_id: str,
        to_user_id: str,
        retreat_id: str,
        permissions: Iterable[PermissionKey],
        duration_hours: Optional[int] = None,
    ) -> PermissionDelegation:
        """
        Create a delegation after re-validating it against the rules.

        It starts active, or pending when the matching rule requires approval;
        a pending delegation grants nothing until ``approve`` is called.

        Raises:
            PolicyViolationError: no matching rule, permissions outside the
                rule, or a duration above the rule maximum.
        """
        requested = frozenset(permissions)
        check = await self.can_delegate(db, from_user_id, to_user_id, retreat_id, requested)
        if not check.can_delegate:
            raise PolicyViolationError(check.reason or "Permission delegation not allowed")

        hours = self._duration(check, duration_hours)
        delegation = PermissionDelegation(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            retreat_id=retreat_id,
            permissions=format_keys(requested),
            expires_at=utcnow() + timedelta(hours=hours),
            duration_hours=hours,
            status=DelegationStatus.PENDING if check.requires_approval else DelegationStatus.ACTIVE,
        )
        db.add(delegation)
        await db.flush()

        log.info("Delegation %s created (%s): %s -> %s in retreat %s for %sh",
                 delegation.id, delegation.status.value, from_user_id, to_user_id, retreat_id, hours)
        return delegation

    @staticmethod
    def _duration(check: DelegationCheck, duration_hours: Optional[int]) -> int:
        hours = duration_hours if duration_hours is not None else (
            check.max_duration or config.DEFAULT_DELEGATION_HOURS
        )
        if hours <= 0:
            raise PolicyViolationError("Delegation duration must be positive")
        if check.max_duration is not None and hours > check.max_duration:
            raise PolicyViolationError(
                f"Delegation duration {hours}h exceeds the rule maximum of {check.max_duration}h"
            )
        return hours

    async def approve(self, db: AsyncSession, delegation: PermissionDelegation, approved_by: str) -> PermissionDelegation:
        """
        Activate a pending delegation; its lifetime starts now.

        The request is checked against the rules again, since roles may have
        changed while it waited.

        Raises:
            PolicyViolationError: not pending, lapsed, or no longer allowed.
        """
        now = utcnow()
        if delegation.status != DelegationStatus.PENDING or as_utc(delegation.expires_at) <= now:
            raise PolicyViolationError("Delegation is not awaiting approval")

        try:
            requested = parse_keys(delegation.permissions or [])
        except ValueError as e:
            raise PolicyViolationError(str(e)) from e
        check = await self.can_delegate(
            db, delegation.from_user_id, delegation.to_user_id, delegation.retreat_id, requested,
        )
        if not check.can_delegate:
            raise PolicyViolationError(check.reason or "Permission delegation not allowed")
        hours = self._duration(check, delegation.duration_hours)

        delegation.status = DelegationStatus.ACTIVE
        delegation.approved_by_id = approved_by
        delegation.expires_at = now + timedelta(hours=hours)
        await db.flush()

        log.info("Delegation %s approved by %s", delegation.id, approved_by)
        return delegation

    async def list_pending(self, db: AsyncSession, retreat_id: str) -> list[PermissionDelegation]:
        """Delegations of a retreat still waiting for approval."""
        stmt = (
            select(PermissionDelegation)
            .where(
                PermissionDelegation.retreat_id == retreat_id,
                PermissionDelegation.status == DelegationStatus.PENDING,
                PermissionDelegation.expires_at > utcnow(),
            )
            .order_by(PermissionDelegation.created_at)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get(self, db: AsyncSession, delegation_id: str) -> Optional[PermissionDelegation]:
        return await db.get(PermissionDelegation, delegation_id)

    async def get_active(
        self,
        db: AsyncSession,
        user_id: str,
        retreat_id: Optional[str] = None
    ) -> list[ActiveDelegation]:
        """Unexpired active delegations where the user is either party."""
        now = utcnow()
        stmt = select(PermissionDelegation).where(
            PermissionDelegation.status == DelegationStatus.ACTIVE,
            PermissionDelegation.expires_at > now,
            or_(PermissionDelegation.from_user_id == user_id, PermissionDelegation.to_user_id == user_id),
        )
        if retreat_id:
            stmt = stmt.where(PermissionDelegation.retreat_id == retreat_id)

        result = await db.execute(stmt.order_by(PermissionDelegation.expires_at))
        delegations = []
        for row in result.scalars().all():
            expires_at = as_utc(row.expires_at)
            if expires_at <= now:
                continue
            keys = set()
            for value in row.permissions or []:
                try:
                    keys.add(PermissionKey.parse(value))
                except ValueError:
                    log.warning("Skipping malformed permission %r in delegation %s", value, row.id)
            delegations.append(ActiveDelegation(
                id=row.id,
                from_user_id=row.from_user_id,
                to_user_id=row.to_user_id,
                retreat_id=row.retreat_id,
                permissions=frozenset(keys),
                expires_at=expires_at,
            ))
        return delegations

    async def revoke(self, db: AsyncSession, delegation_id: str, revoked_by: str) -> bool:
        """Revoke an active or pending delegation. False if absent or already closed."""
        stmt = (
            update(PermissionDelegation)
            .where(
                PermissionDelegation.id == delegation_id,
                PermissionDelegation.status.in_(OPEN_DELEGATION_STATUSES),
            )
            .values(status=DelegationStatus.REVOKED, revoked_by_id=revoked_by, revoked_at=utcnow())
        )
        result = await db.execute(stmt)
        return (result.rowcount or 0) > 0

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Mark active and pending delegations past their expiry as expired."""
        stmt = (
            update(PermissionDelegation)
            .where(
                PermissionDelegation.status.in_(OPEN_DELEGATION_STATUSES),
                PermissionDelegation.expires_at <= utcnow(),
            )
            .values(status=DelegationStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        result = await db.execute(stmt)
        return result.rowcount or 0
