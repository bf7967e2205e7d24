"""Shared fixtures: in-memory database, permission service, data factories and an API client."""

import itertools
import os
from datetime import datetime
from typing import Optional

# Read by app.core.config at import time
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.cache import CacheStore
from app.core.database.base import Base
from app.core.database.engine import get_db
from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import Permission, Role, role_permissions, user_roles
from app.features.permissions.service import build_permission_service
from app.features.retreats.models import MembershipStatus, Retreat, RetreatMembership
from app.features.users.auth import create_access_token
from app.features.users.models import User
from app.utils import utcnow


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return CacheStore(default_ttl=300)


@pytest.fixture
def service(cache):
    return build_permission_service(cache=cache)


class Factory:
    """Inserts rows directly, bypassing the service and its cache invalidation."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._seq = itertools.count(1)

    async def user(self, name: Optional[str] = None, is_active: bool = True) -> User:
        n = next(self._seq)
        user = User(email=f"user{n}@example.com", name=name or f"User {n}", is_active=is_active)
        self.db.add(user)
        await self.db.commit()
        return user

    async def permission(self, key: str) -> Permission:
        parsed = PermissionKey.parse(key)
        result = await self.db.execute(select(Permission).where(
            Permission.resource == parsed.resource,
            Permission.operation == parsed.operation,
        ))
        permission = result.scalar_one_or_none()
        if permission is None:
            permission = Permission(resource=parsed.resource, operation=parsed.operation)
            self.db.add(permission)
            await self.db.flush()
        return permission

    async def role(self, name: str, *permissions: str) -> Role:
        role = Role(name=name)
        self.db.add(role)
        await self.db.flush()
        for key in permissions:
            permission = await self.permission(key)
            await self.db.execute(insert(role_permissions).values(role_id=role.id, permission_id=permission.id))
        await self.db.commit()
        return role

    async def retreat(self, created_by: Optional[User] = None, name: Optional[str] = None) -> Retreat:
        retreat = Retreat(
            name=name or f"Retreat {next(self._seq)}",
            created_by_id=created_by.id if created_by else None,
        )
        self.db.add(retreat)
        await self.db.commit()
        return retreat

    async def membership(
        self,
        user: User,
        retreat: Retreat,
        role: Optional[Role],
        status: MembershipStatus = MembershipStatus.ACTIVE,
        expires_at: Optional[datetime] = None,
    ) -> RetreatMembership:
        membership = RetreatMembership(
            user_id=user.id,
            retreat_id=retreat.id,
            role_id=role.id if role else None,
            status=status,
            invited_at=utcnow(),
            expires_at=expires_at,
        )
        self.db.add(membership)
        await self.db.commit()
        return membership

    async def global_role(self, user: User, role: Role) -> None:
        await self.db.execute(insert(user_roles).values(user_id=user.id, role_id=role.id, assigned_at=utcnow()))
        await self.db.commit()


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
async def client(session_factory, service):
    """API client bound to the test database and service."""
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.permission_service = service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def headers():
    return auth_headers
