"""
Expire overdue memberships, invitations and delegations.

Meant to be run periodically by an external scheduler (cron, systemd timer).
It only moves rows forward (active/pending -> expired) and is safe to run
while the API is serving requests.

Usage:
    python -m scripts.cleanup_expired
"""
import asyncio

from app.core.database.engine import get_db, init_db
from app.features.permissions.service import build_permission_service
from app.utils import configure_logging, get_logger


log = get_logger(__name__)


async def main():
    configure_logging()
    await init_db()
    service = build_permission_service()

    async for db in get_db():
        memberships = await service.expire_overdue_memberships(db)
        delegations = await service.cleanup_expired_delegations(db)
        log.info("Cleanup done: %d memberships, %d delegations expired", memberships, delegations)
        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
