"""
Declarative base, timestamp columns and primary key generation shared by all tables.
"""
from datetime import datetime
from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import ulid


def generate_ulid() -> str:
    """Sortable 26-character primary key."""
    return str(ulid.new())


class Base(DeclarativeBase):
    """Base class for users, retreats, memberships and the permission tables."""
    pass


class TimestampMixin:
    """
    Adds server-side created_at/updated_at columns.

    SQLite returns these without tzinfo; read them through ``app.utils.as_utc``
    before comparing with aware datetimes.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
