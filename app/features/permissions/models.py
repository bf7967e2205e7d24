"""
Permission, Role, delegation and override models for retreat-scoped RBAC.

This module implements the persistent side of the permission system:
- Global roles and their permissions
- Global user role assignments
- Time-bounded permission delegations between users of a retreat
- Per-user, per-retreat permission overrides
- Audit log of permission-affecting mutations
"""
from datetime import datetime
from typing import Any, Dict, List
from sqlalchemy import String, ForeignKey, Table, Column, JSON, Text, DateTime, Integer, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
import enum

from app.core.database.base import Base, TimestampMixin, generate_ulid


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

# Global (not retreat-scoped) role assignments
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, default=datetime.now),
    Column("assigned_by_id", String(26), ForeignKey("users.id"), nullable=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission model: one operation on one resource.

    Examples:
    - resource="payment", operation="manage"
    - resource="retreatInventory", operation="read"
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("resource", "operation", name="uq_permissions_resource_operation"),
    )

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="selectin"
    )

    @property
    def key(self) -> str:
        return f"{self.resource}:{self.operation}"

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, resource={self.resource}, operation={self.operation})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Roles are global definitions; they are granted either globally
    (``user_roles``) or per retreat (``retreat_memberships``).
    Examples: superadmin, admin, treasurer, logistics, regular_server
    """
    __tablename__ = "roles"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Role definition
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r})>"


class DelegationStatus(str, enum.Enum):
    """Status of a permission delegation."""
    # Waiting for the retreat creator or a superadmin to approve
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class PermissionDelegation(Base, TimestampMixin):
    """
    Temporary grant of specific permissions from one retreat member to another.

    Only ever created after validation against a delegation rule. Rules that
    require approval create it pending; it grants nothing until approved.
    """
    __tablename__ = "permission_delegations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    from_user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    to_user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    retreat_id: Mapped[str] = mapped_column(String(26), ForeignKey("retreats.id", ondelete="CASCADE"), nullable=False, index=True)

    # "resource:operation" strings
    permissions: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # Lifetime granted on approval; expires_at bounds the wait while pending
    duration_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[DelegationStatus] = mapped_column(
        SQLEnum(DelegationStatus),
        default=DelegationStatus.ACTIVE,
        nullable=False,
        index=True
    )

    approved_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    revoked_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PermissionDelegation(id={self.id}, from={self.from_user_id}, to={self.to_user_id}, "
            f"retreat={self.retreat_id}, status={self.status})>"
        )


class PermissionOverride(Base, TimestampMixin):
    """
    Explicit allow/deny adjustments for one user in one retreat.

    ``entries`` is an ordered JSON array of
    ``{"resource", "operation", "granted", "expires_at"}``; order matters,
    the last entry for a permission wins.
    """
    __tablename__ = "permission_overrides"
    __table_args__ = (
        UniqueConstraint("user_id", "retreat_id", name="uq_permission_overrides_user_retreat"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    retreat_id: Mapped[str] = mapped_column(String(26), ForeignKey("retreats.id", ondelete="CASCADE"), nullable=False, index=True)

    entries: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    set_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self) -> str:
        return f"<PermissionOverride(id={self.id}, user_id={self.user_id}, retreat_id={self.retreat_id})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking permission-related actions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Context
    retreat_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("retreats.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
