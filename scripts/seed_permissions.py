"""
Seed script to populate default permissions and roles.

Run this script after database initialization to create:
- Default permissions for every retreat resource
- Default global and retreat roles
- Initial role-permission assignments

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db, init_db
from app.features.permissions.keys import PermissionKey
from app.features.permissions.models import Permission, Role
from app.utils import configure_logging, get_logger


log = get_logger(__name__)


DEFAULT_OPERATIONS = ("create", "read", "update", "delete", "list")

RESOURCES = {
    "house": DEFAULT_OPERATIONS,
    "inventoryItem": DEFAULT_OPERATIONS,
    "retreat": DEFAULT_OPERATIONS + ("invite",),
    "participant": DEFAULT_OPERATIONS,
    "user": DEFAULT_OPERATIONS + ("manage",),
    "table": DEFAULT_OPERATIONS,
    "payment": DEFAULT_OPERATIONS + ("manage",),
    "retreatInventory": DEFAULT_OPERATIONS + ("manage",),
    "responsability": DEFAULT_OPERATIONS,
    "messageTemplate": DEFAULT_OPERATIONS,
    "globalMessageTemplate": DEFAULT_OPERATIONS,
    "audit": ("read",),
    "system": ("admin",),
}


def _all(resource: str) -> list[str]:
    return [f"{resource}:{operation}" for operation in RESOURCES[resource]]


DEFAULT_ROLES = {
    config.SUPERADMIN_ROLE: {
        "description": "Global administrator with every permission and access to every retreat",
        "permissions": "ALL",  # Special case - gets all permissions
    },
    "region_admin": {
        "description": "Global role overseeing the retreats of a region",
        "permissions": [
            "retreat:read", "retreat:list", "user:read", "user:list", "audit:read",
        ],
    },
    "regular": {
        "description": "Global role of every registered user",
        "permissions": ["retreat:create", "retreat:list"],
    },
    "admin": {
        "description": "Retreat administrator",
        "permissions": [
            "retreat:read", "retreat:update", "retreat:invite",
            *_all("participant"), *_all("house"), *_all("table"),
            *_all("responsability"), *_all("messageTemplate"),
            "payment:manage", "retreatInventory:manage",
        ],
    },
    "treasurer": {
        "description": "Handles payments of a retreat",
        "permissions": [
            "retreat:read", "participant:read", "participant:list",
            "payment:create", "payment:read", "payment:update", "payment:delete", "payment:list",
        ],
    },
    "logistics": {
        "description": "Handles houses, tables and inventory of a retreat",
        "permissions": [
            "retreat:read", "participant:read", "participant:list",
            "retreatInventory:create", "retreatInventory:read", "retreatInventory:update",
            "retreatInventory:delete", "retreatInventory:list", *_all("inventoryItem"),
            "house:read", "house:list", "table:read", "table:update", "table:list",
        ],
    },
    "communications": {
        "description": "Handles messages to participants of a retreat",
        "permissions": [
            "retreat:read", "participant:read", "participant:list",
            *_all("messageTemplate"),
        ],
    },
    "regular_server": {
        "description": "Serves at a retreat",
        "permissions": [
            "retreat:read", "participant:read", "participant:list",
            "house:read", "table:read", "responsability:read",
        ],
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping "resource:operation" keys to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}

    for resource, operations in RESOURCES.items():
        for operation in operations:
            key = str(PermissionKey(resource, operation))
            stmt = select(Permission).where(
                Permission.resource == resource,
                Permission.operation == operation,
            )
            result = await db.execute(stmt)
            existing = result.scalars().first()

            if existing:
                log.debug("Permission '%s' already exists, skipping", key)
                permissions_map[key] = existing
                continue

            permission = Permission(
                resource=resource,
                operation=operation,
                description=f"{operation.capitalize()} {resource}",
            )
            db.add(permission)
            permissions_map[key] = permission
            log.info("Created permission: %s", key)

    await db.commit()

    # Refresh all permissions to get IDs
    for perm in permissions_map.values():
        await db.refresh(perm)

    log.info("Seeded %d permissions", len(permissions_map))
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]):
    """
    Create default roles and assign permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission key -> Permission object
    """
    log.info("Creating default roles...")

    for role_name, role_config in DEFAULT_ROLES.items():
        stmt = select(Role).where(Role.name == role_name)
        result = await db.execute(stmt)
        existing = result.scalars().first()

        if existing:
            log.debug("Role '%s' already exists, skipping", role_name)
            continue

        role = Role(name=role_name, description=role_config["description"])

        if role_config["permissions"] == "ALL":
            role.permissions = list(permissions_map.values())
            log.info("Created role '%s' with ALL permissions", role_name)
        else:
            granted = []
            for key in role_config["permissions"]:
                if key in permissions_map:
                    granted.append(permissions_map[key])
                else:
                    log.warning("Permission '%s' not found for role '%s'", key, role_name)

            role.permissions = granted
            log.info("Created role '%s' with %d permissions", role_name, len(granted))

        db.add(role)

    await db.commit()
    log.info("Default roles created successfully")


async def main():
    """Main function to seed permissions and roles."""
    configure_logging()
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)

            log.info("Permission seeding completed successfully!")
            for role_name, role_config in DEFAULT_ROLES.items():
                log.info("  - %s: %s", role_name, role_config["description"])

        except Exception as e:
            log.error("Error seeding permissions: %s", e, exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
