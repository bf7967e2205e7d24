"""
Retreat and membership models.

A retreat is the tenant unit: almost every permission is scoped to one.
Users join a retreat through a membership row that carries their role in it,
either by invitation or by a role request the creator approves.
"""
from datetime import date, datetime
from sqlalchemy import String, ForeignKey, Date, DateTime, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column
import enum

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Retreat(Base, TimestampMixin):
    """
    Retreat model representing one organized event.

    ``created_by_id`` is the ownership anchor: the creator keeps control of
    the retreat regardless of the state of any role data.
    """
    __tablename__ = "retreats"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    starts_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    ends_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    def __repr__(self) -> str:
        return f"<Retreat(id={self.id}, name={self.name!r}, created_by={self.created_by_id})>"


class MembershipStatus(str, enum.Enum):
    """Status of a retreat membership."""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


# Statuses that count towards a user's permissions
LIVE_MEMBERSHIP_STATUSES = (MembershipStatus.ACTIVE, MembershipStatus.PENDING)


class RetreatMembership(Base, TimestampMixin):
    """
    A user's role within one retreat.

    At most one active row per (user, retreat, role). Status only moves
    forward (pending -> active -> expired/revoked) except when a re-invitation
    reactivates an existing row.
    """
    __tablename__ = "retreat_memberships"
    __table_args__ = (
        Index("ix_retreat_memberships_user_retreat", "user_id", "retreat_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    retreat_id: Mapped[str] = mapped_column(String(26), ForeignKey("retreats.id", ondelete="CASCADE"), nullable=False, index=True)
    # Nullable so a deleted role leaves a dangling row that readers skip
    role_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[MembershipStatus] = mapped_column(
        SQLEnum(MembershipStatus),
        default=MembershipStatus.ACTIVE,
        nullable=False,
        index=True
    )

    invited_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    invited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RetreatMembership(id={self.id}, user_id={self.user_id}, retreat_id={self.retreat_id}, "
            f"role_id={self.role_id}, status={self.status})>"
        )


class RoleRequestStatus(str, enum.Enum):
    """Status of a role request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RoleRequest(Base, TimestampMixin):
    """
    A user's request to join a retreat with a given role.

    At most one pending request per (user, retreat). Approval turns it into an
    active membership; rejection keeps the row with an optional reason.
    """
    __tablename__ = "role_requests"
    __table_args__ = (
        Index("ix_role_requests_user_retreat", "user_id", "retreat_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    retreat_id: Mapped[str] = mapped_column(String(26), ForeignKey("retreats.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    # Name at request time, kept for display after the role is gone
    requested_role: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[RoleRequestStatus] = mapped_column(
        SQLEnum(RoleRequestStatus),
        default=RoleRequestStatus.PENDING,
        nullable=False,
        index=True
    )

    reviewed_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RoleRequest(id={self.id}, user_id={self.user_id}, retreat_id={self.retreat_id}, "
            f"role={self.requested_role!r}, status={self.status})>"
        )
