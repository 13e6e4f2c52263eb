"""
Seed script to populate the permission catalog, roles, default grants and
feature flag settings.

Run this script after database initialization. It only inserts what is
missing, so grants and flags edited by admins are left alone.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigpanel.core.database.engine import get_db, init_db
from gigpanel.features.permissions.catalog import PermissionCatalog, default_catalog
from gigpanel.features.permissions.models import Permission, Role, RolePermission, SystemSetting
from gigpanel.features.permissions.roles import DEFAULT_ROLE_GRANTS, Mode, RoleKey
from gigpanel.utils import get_logger


log = get_logger(__name__)


DEFAULT_FEATURE_SETTINGS: Dict[str, Dict[str, Any]] = {
    "features.transactions": {
        "description": "Transaction management features",
        "value": {
            "moduleEnabled": True,
            "withdrawalsEnabled": True,
            "approveEnabled": True,
            "rejectEnabled": True,
            "adjustmentsEnabled": True,
        },
    },
    "features.users": {
        "description": "User management features",
        "value": {"editEnabled": True, "deleteEnabled": False, "banEnabled": True},
    },
    "features.orders": {
        "description": "Order management features",
        "value": {"moduleEnabled": True, "editEnabled": True, "refundEnabled": True, "cancelEnabled": True},
    },
    "features.tasks": {
        "description": "Task review features",
        "value": {"moduleEnabled": True, "reviewEnabled": True, "approveEnabled": True, "rejectEnabled": True},
    },
}


def default_grant_rows(catalog: PermissionCatalog = default_catalog) -> List[Dict[str, Any]]:
    """
    Grant rows for a fresh install.

    Admin-panel roles get an explicit row for every catalog key (allow=False
    for the ones they are not given) so the admin UI shows the full matrix.
    """
    rows = []
    for role, by_mode in DEFAULT_ROLE_GRANTS.items():
        for mode, keys in by_mode.items():
            if keys == "*":
                allowed = {p.key for p in catalog}
            else:
                allowed = {catalog.get_permission(key).key for key in keys}
            full_matrix = mode is Mode.ALL
            for permission in catalog:
                if permission.key in allowed or full_matrix:
                    rows.append({
                        "role_key": role.value,
                        "permission_key": permission.key,
                        "mode": mode.value,
                        "allow": permission.key in allowed,
                    })
    return rows


async def seed_catalog(db: AsyncSession, catalog: PermissionCatalog = default_catalog) -> int:
    """Create missing catalog rows. Returns how many were created."""
    log.info("Creating catalog permissions...")
    result = await db.execute(select(Permission.key))
    existing = set(result.scalars().all())

    created = 0
    for permission in catalog:
        if permission.key in existing:
            log.debug(f"Permission '{permission.key}' already exists, skipping")
            continue
        db.add(Permission(key=permission.key, label=permission.label, group=permission.group))
        created += 1

    stale = existing - {p.key for p in catalog}
    if stale:
        log.warning(f"Database has permissions that are not in the catalog: {sorted(stale)}")

    await db.commit()
    log.info(f"Created {created} permissions")
    return created


async def seed_roles(db: AsyncSession) -> int:
    log.info("Creating roles...")
    result = await db.execute(select(Role.key))
    existing = set(result.scalars().all())

    created = 0
    for role in RoleKey:
        if role.value in existing:
            continue
        db.add(Role(key=role.value, label=role.label))
        created += 1
        log.info(f"Created role: {role.value}")

    await db.commit()
    return created


async def seed_role_grants(db: AsyncSession, catalog: PermissionCatalog = default_catalog) -> int:
    """Create missing default grants. Existing rows keep their allow value."""
    log.info("Creating default role grants...")
    result = await db.execute(select(RolePermission.role_key, RolePermission.permission_key, RolePermission.mode))
    existing = {tuple(row) for row in result.all()}

    created = 0
    for row in default_grant_rows(catalog):
        if (row["role_key"], row["permission_key"], row["mode"]) in existing:
            continue
        db.add(RolePermission(**row))
        created += 1

    await db.commit()
    log.info(f"Created {created} role grants")
    return created


async def seed_feature_flags(db: AsyncSession) -> int:
    log.info("Creating feature flag settings...")
    created = 0
    for key, setting in DEFAULT_FEATURE_SETTINGS.items():
        if await db.get(SystemSetting, key) is not None:
            log.debug(f"Setting '{key}' already exists, skipping")
            continue
        db.add(SystemSetting(key=key, value=setting["value"], description=setting["description"]))
        created += 1

    await db.commit()
    return created


async def main():
    """Main function to seed the permission core."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            await seed_catalog(db)
            await seed_roles(db)
            await seed_role_grants(db)
            await seed_feature_flags(db)
            log.info("Permission seeding completed successfully!")
        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
