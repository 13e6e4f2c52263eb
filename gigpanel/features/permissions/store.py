"""
Database access for grants, user restrictions and feature flags.

Each store opens its own short-lived session from the session factory it was
built with. Driver and connection failures surface as StoreUnavailable so the
cache and the engine can tell "the store is down" apart from bugs.
"""
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import select, delete, insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gigpanel.features.permissions.audit import AuditEvent, AuditSink, LoggingAuditSink
from gigpanel.features.permissions.catalog import PermissionCatalog
from gigpanel.features.permissions.exceptions import StoreUnavailable, UnknownMode, UserNotFound
from gigpanel.features.permissions.models import RolePermission, SystemSetting, UserRestrictedPermission
from gigpanel.features.permissions.roles import Mode, RoleKey
from gigpanel.features.users.models import User
from gigpanel.utils import get_logger


log = get_logger(__name__)


@asynccontextmanager
async def open_session(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
) -> AsyncIterator[AsyncSession]:
    """Open a session, translating driver errors into StoreUnavailable."""
    try:
        async with session_factory() as session:
            yield session
    except DBAPIError as e:
        log.error(f"{operation} failed: {e}")
        raise StoreUnavailable(f"{operation} failed") from e


@dataclass(frozen=True)
class Grant:
    permission_key: str
    mode: Mode
    allow: bool


# ============================================================================
# Role grants
# ============================================================================

class RoleGrantStore:
    """Reads and writes the role_permissions table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load_role_grants(self, role: RoleKey) -> List[Grant]:
        async with open_session(self._session_factory, f"Loading grants for {role.value}") as db:
            result = await db.execute(
                select(RolePermission.permission_key, RolePermission.mode, RolePermission.allow)
                .where(RolePermission.role_key == role.value)
            )
            rows = result.all()

        grants = []
        for permission_key, mode, allow in rows:
            try:
                grants.append(Grant(permission_key=permission_key, mode=Mode.parse(mode), allow=bool(allow)))
            except UnknownMode:
                log.error(f"Ignoring grant with unknown mode {mode!r} for {role.value}/{permission_key}")
        return grants

    async def upsert_grant(
        self,
        role: RoleKey,
        permission_key: str,
        mode: Mode,
        allow: bool,
    ) -> Optional[bool]:
        """
        Create or update one grant.

        Returns the previous ``allow`` value, or None if the row did not exist.
        """
        async with open_session(self._session_factory, f"Writing grant {role.value}/{permission_key}") as db:
            async with db.begin():
                result = await db.execute(
                    select(RolePermission).where(
                        RolePermission.role_key == role.value,
                        RolePermission.permission_key == permission_key,
                        RolePermission.mode == mode.value,
                    )
                )
                grant = result.scalars().first()
                if grant is None:
                    db.add(RolePermission(
                        role_key=role.value,
                        permission_key=permission_key,
                        mode=mode.value,
                        allow=allow,
                    ))
                    return None
                previous = bool(grant.allow)
                grant.allow = allow
                return previous


# ============================================================================
# User restrictions
# ============================================================================

class OverrideStore:
    """
    Per-user permission restrictions.

    Reads always go to the database: a restriction has to apply on the very
    next request after it is written.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PermissionCatalog,
        audit: AuditSink | None = None,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._audit = audit or LoggingAuditSink()

    async def get_restrictions(self, user_id: str) -> FrozenSet[str]:
        async with open_session(self._session_factory, f"Loading restrictions for user {user_id}") as db:
            result = await db.execute(
                select(UserRestrictedPermission.permission_key)
                .where(UserRestrictedPermission.user_id == user_id)
            )
            return frozenset(result.scalars().all())

    async def list_restrictions(self, user_id: str) -> FrozenSet[str]:
        """Like get_restrictions, but raises UserNotFound for an unknown user."""
        async with open_session(self._session_factory, f"Loading restrictions for user {user_id}") as db:
            result = await db.execute(select(User.id).where(User.id == user_id))
            if result.scalar_one_or_none() is None:
                raise UserNotFound(user_id)
            result = await db.execute(
                select(UserRestrictedPermission.permission_key)
                .where(UserRestrictedPermission.user_id == user_id)
            )
            return frozenset(result.scalars().all())

    async def set_restrictions(
        self,
        user_id: str,
        permission_keys: Iterable[str],
        actor_id: Optional[str] = None,
    ) -> FrozenSet[str]:
        """
        Replace the user's restrictions with ``permission_keys``.

        Unknown keys raise UnknownPermission before anything is written.
        Returns the restriction set as it was before the write.
        """
        before = await self.set_restrictions_many([user_id], permission_keys, actor_id, bulk=False)
        return before[user_id]

    async def set_restrictions_many(
        self,
        user_ids: Iterable[str],
        permission_keys: Iterable[str],
        actor_id: Optional[str] = None,
        bulk: bool = True,
    ) -> Dict[str, FrozenSet[str]]:
        """
        Replace the restrictions of several users with the same set.

        Every user must exist; otherwise UserNotFound is raised and nothing is
        written. One audit event is emitted per user. Returns user id -> the
        restriction set before the write.
        """
        user_ids = list(dict.fromkeys(user_ids))
        after = frozenset(p.key for p in self._catalog.require_all(permission_keys))

        async with open_session(self._session_factory, "Writing user restrictions") as db:
            async with db.begin():
                result = await db.execute(select(User.id).where(User.id.in_(user_ids)))
                found = set(result.scalars().all())
                missing = [user_id for user_id in user_ids if user_id not in found]
                if missing:
                    raise UserNotFound(missing)

                result = await db.execute(
                    select(UserRestrictedPermission.user_id, UserRestrictedPermission.permission_key)
                    .where(UserRestrictedPermission.user_id.in_(user_ids))
                )
                before: Dict[str, set] = {user_id: set() for user_id in user_ids}
                for user_id, permission_key in result.all():
                    before[user_id].add(permission_key)

                await db.execute(
                    delete(UserRestrictedPermission).where(UserRestrictedPermission.user_id.in_(user_ids))
                )
                rows = [
                    {"user_id": user_id, "permission_key": key, "restricted_by_id": actor_id}
                    for user_id in user_ids
                    for key in sorted(after)
                ]
                if rows:
                    await db.execute(insert(UserRestrictedPermission), rows)

        for user_id in user_ids:
            old = before[user_id]
            await self._audit.emit(AuditEvent(
                action="permission_restriction_bulk_updated" if bulk else "permission_restriction_updated",
                actor_id=actor_id,
                resource_type="user_permissions",
                resource_id=user_id,
                target_user_id=user_id,
                details={
                    "before": sorted(old),
                    "after": sorted(after),
                    "added": sorted(after - old),
                    "removed": sorted(old - after),
                    "bulk": bulk,
                },
            ))
            log.info(f"Restrictions for user {user_id} set to {sorted(after)} by {actor_id}")

        return {user_id: frozenset(keys) for user_id, keys in before.items()}


# ============================================================================
# Feature flags
# ============================================================================

def _candidate_keys(path: str) -> List[str]:
    """'features.a.b' -> ['features.a.b', 'features.a', 'features']"""
    parts = path.split(".")
    return [".".join(parts[:i]) for i in range(len(parts), 0, -1)]


def _decode(value: Any) -> Any:
    # Some MySQL drivers hand JSON columns back as text
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


_FALSE_STRINGS = frozenset({"", "0", "false", "no", "off"})


def _as_flag(path: str, value: Any) -> bool:
    """A configured value read as a switch; only a missing key counts as unset."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        enabled = value.strip().lower() not in _FALSE_STRINGS
    else:
        enabled = bool(value)
    log.warning(f"Feature flag {path} has non-boolean value {value!r}; reading it as {enabled}")
    return enabled


class FeatureFlagStore:
    """
    Read-only view of feature flags in system_settings.

    A flag path is matched against the longest settings key that prefixes it,
    and the rest of the path is looked up inside that row's JSON value.
    ``None`` means the flag is not configured, which callers treat as enabled.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_flag(self, path: str) -> Optional[bool]:
        flags = await self.get_flags([path])
        return flags[path]

    async def get_flags(self, paths: Iterable[str]) -> Dict[str, Optional[bool]]:
        paths = list(dict.fromkeys(paths))
        if not paths:
            return {}
        candidates = {key for path in paths for key in _candidate_keys(path)}

        async with open_session(self._session_factory, "Loading feature flags") as db:
            result = await db.execute(
                select(SystemSetting.key, SystemSetting.value).where(SystemSetting.key.in_(sorted(candidates)))
            )
            settings = {key: _decode(value) for key, value in result.all()}

        return {path: self._lookup(path, settings) for path in paths}

    @staticmethod
    def _lookup(path: str, settings: Dict[str, Any]) -> Optional[bool]:
        for key in _candidate_keys(path):
            if key not in settings:
                continue
            value = settings[key]
            remainder = path[len(key) + 1:].split(".") if len(key) < len(path) else []
            for segment in remainder:
                if not isinstance(value, dict) or segment not in value:
                    return None
                value = value[segment]
            return _as_flag(path, value)
        return None
