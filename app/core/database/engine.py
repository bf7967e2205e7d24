"""
Async engine and session management.

DATABASE_URL selects the backend: sqlite+aiosqlite by default, any other
SQLAlchemy async driver URL (e.g. postgresql+asyncpg) works unchanged.
"""
from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core import config

engine = create_async_engine(
    config.SQLALCHEMY_DATABASE_URL,
    # aiosqlite connections are not shared across event loops
    poolclass=NullPool if config.SQLALCHEMY_DATABASE_URL.startswith("sqlite") else None,
    echo=False,
    future=True,
)

# Objects stay readable after commit; the permission services refresh explicitly
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Create any missing tables for users, retreats and the permission system."""
    from app.core.database.base import Base

    # Register every mapped table on Base.metadata
    from app.features.users.models import User  # noqa: F401
    from app.features.retreats.models import Retreat, RetreatMembership, RoleRequest  # noqa: F401
    from app.features.permissions.models import (  # noqa: F401
        Permission, Role, PermissionDelegation, PermissionOverride, AuditLog
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
