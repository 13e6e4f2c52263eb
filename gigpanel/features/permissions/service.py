"""
Admin-side operations on the permission core, and the wiring that builds it.

Writes that change what a role may do go through PermissionAdminService so the
cache invalidation and the audit event can never be skipped.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gigpanel.core import config
from gigpanel.features.permissions.audit import AuditEvent, AuditSink, LoggingAuditSink
from gigpanel.features.permissions.cache import PermissionCache
from gigpanel.features.permissions.catalog import PermissionCatalog, default_catalog
from gigpanel.features.permissions.engine import ResolutionEngine
from gigpanel.features.permissions.roles import Mode, RoleKey
from gigpanel.features.permissions.store import FeatureFlagStore, Grant, OverrideStore, RoleGrantStore
from gigpanel.features.users.store import UserRoleStore
from gigpanel.utils import get_logger


log = get_logger(__name__)


class PermissionAdminService:
    def __init__(
        self,
        catalog: PermissionCatalog,
        grants: RoleGrantStore,
        cache: PermissionCache,
        overrides: OverrideStore,
        user_roles: UserRoleStore,
        audit: AuditSink,
    ):
        self.catalog = catalog
        self._grants = grants
        self._cache = cache
        self._overrides = overrides
        self._user_roles = user_roles
        self._audit = audit

    async def get_role_grants(self, role: "str | RoleKey", mode: "str | Mode | None" = None) -> List[Grant]:
        """Stored grant rows of ``role``, optionally only those of one mode."""
        role = RoleKey.parse(role)
        grants = await self._grants.load_role_grants(role)
        if mode is not None:
            mode = Mode.parse(mode)
            grants = [grant for grant in grants if grant.mode is mode]
        return sorted(grants, key=lambda g: (g.permission_key, g.mode.value))

    async def set_role_permission(
        self,
        actor_id: Optional[str],
        role: "str | RoleKey",
        permission_key: str,
        mode: "str | Mode | None",
        allow: bool,
    ) -> Optional[bool]:
        """
        Create or change one grant.

        The role's cached map is dropped before this returns, so the next
        resolution for that role reads the new grant. Returns the previous
        ``allow`` value (None if there was no row).
        """
        role = RoleKey.parse(role)
        mode = Mode.parse(mode)
        permission = self.catalog.get_permission(permission_key)

        previous = await self._grants.upsert_grant(role, permission.key, mode, allow)
        self._cache.invalidate_role(role)

        await self._audit.emit(AuditEvent(
            action="role_permission_updated",
            actor_id=actor_id,
            resource_type="role_permissions",
            resource_id=role.value,
            details={
                "role": role.value,
                "permission": permission.key,
                "mode": mode.value,
                "previous": previous,
                "allow": allow,
            },
        ))
        log.info(f"Grant {role.value}/{permission.key}/{mode.value} set to {allow} by {actor_id} (was {previous})")
        return previous

    async def get_user_restrictions(self, user_id: str) -> FrozenSet[str]:
        return await self._overrides.list_restrictions(user_id)

    async def set_user_restrictions(
        self,
        actor_id: Optional[str],
        user_id: str,
        permission_keys: Iterable[str],
    ) -> FrozenSet[str]:
        await self._overrides.set_restrictions(user_id, permission_keys, actor_id=actor_id)
        return await self._overrides.get_restrictions(user_id)

    async def bulk_set_user_restrictions(
        self,
        actor_id: Optional[str],
        user_ids: Iterable[str],
        permission_keys: Iterable[str],
    ) -> Dict[str, FrozenSet[str]]:
        return await self._overrides.set_restrictions_many(user_ids, permission_keys, actor_id=actor_id)

    async def get_user_roles(self, user_id: str) -> List[RoleKey]:
        return await self._user_roles.get_role_keys(user_id)

    async def assign_role(self, actor_id: Optional[str], user_id: str, role: "str | RoleKey") -> bool:
        return await self._user_roles.assign_role(user_id, RoleKey.parse(role), actor_id=actor_id)

    async def remove_role(self, actor_id: Optional[str], user_id: str, role: "str | RoleKey") -> bool:
        return await self._user_roles.remove_role(user_id, RoleKey.parse(role), actor_id=actor_id)


@dataclass
class PermissionServices:
    """Everything the routes and guards need, built once per app."""
    catalog: PermissionCatalog
    cache: PermissionCache
    engine: ResolutionEngine
    grants: RoleGrantStore
    overrides: OverrideStore
    flags: FeatureFlagStore
    user_roles: UserRoleStore
    admin: PermissionAdminService
    audit: AuditSink


def build_permission_services(
    session_factory: async_sessionmaker[AsyncSession],
    audit: Optional[AuditSink] = None,
    catalog: Optional[PermissionCatalog] = None,
    clock: Callable[[], float] = time.monotonic,
    ttl: Optional[float] = None,
    timeout: Optional[float] = None,
    fail_open: Optional[bool] = None,
) -> PermissionServices:
    """
    Build the permission core on top of ``session_factory``.

    Anything not passed falls back to ``gigpanel.core.config``.
    """
    audit = audit or LoggingAuditSink()
    catalog = catalog or default_catalog
    ttl = config.PERMISSION_CACHE_TTL_SECONDS if ttl is None else ttl
    timeout = config.RESOLUTION_TIMEOUT_SECONDS if timeout is None else timeout
    fail_open = config.PERMISSIONS_FAIL_OPEN if fail_open is None else fail_open
    if fail_open:
        log.warning("Permission resolution will fail open when role grants cannot be loaded")

    grants = RoleGrantStore(session_factory)
    cache = PermissionCache(grants, ttl=ttl, clock=clock, catalog=catalog)
    overrides = OverrideStore(session_factory, catalog, audit=audit)
    flags = FeatureFlagStore(session_factory)
    user_roles = UserRoleStore(session_factory, audit=audit)
    engine = ResolutionEngine(catalog, cache, overrides, flags, timeout=timeout, fail_open=fail_open)
    admin = PermissionAdminService(catalog, grants, cache, overrides, user_roles, audit)

    return PermissionServices(
        catalog=catalog,
        cache=cache,
        engine=engine,
        grants=grants,
        overrides=overrides,
        flags=flags,
        user_roles=user_roles,
        admin=admin,
        audit=audit,
    )
