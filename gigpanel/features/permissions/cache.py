"""
In-memory cache of role permission maps.

Each role has one immutable RolePermissionMap. A refresh builds a complete new
map and swaps it in with a single dict assignment, so readers either see the
old map or the new one, never a mix. Readers with a fresh map never wait.

Refreshes for the same role are shared: concurrent misses await one load.
Invalidation bumps the role's generation, so a load that was already running
when a grant was written cannot install its (older) result.
"""
import asyncio
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

from gigpanel.features.permissions.catalog import PermissionCatalog
from gigpanel.features.permissions.exceptions import StoreUnavailable
from gigpanel.features.permissions.roles import Mode, RoleKey
from gigpanel.features.permissions.store import Grant
from gigpanel.utils import get_logger


log = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0


class GrantSource(Protocol):
    async def load_role_grants(self, role: RoleKey) -> Sequence[Grant]:
        ...


@dataclass(frozen=True)
class RolePermissionMap:
    """
    Every grant of one role, as loaded at ``loaded_at`` (cache clock).

    ``views`` has one read-only mapping per mode. The ``all`` view holds the
    mode=all rows; each persona view is the ``all`` rows overlaid with that
    mode's own rows, which is the mode-then-all fallback.
    """
    role: RoleKey
    loaded_at: float
    views: Mapping[Mode, Mapping[str, bool]]

    def for_mode(self, mode: Mode = Mode.ALL) -> Mapping[str, bool]:
        return self.views[mode]

    def is_allowed(self, permission_key: str, mode: Mode = Mode.ALL) -> bool:
        return self.views[mode].get(permission_key, False)


def build_permission_map(
    role: RoleKey,
    grants: Iterable[Grant],
    loaded_at: float,
    catalog: Optional[PermissionCatalog] = None,
) -> RolePermissionMap:
    by_mode: Dict[Mode, Dict[str, bool]] = {mode: {} for mode in Mode}
    for grant in grants:
        if catalog is not None and grant.permission_key not in catalog:
            log.error(f"Role {role.value} has a grant for unknown permission {grant.permission_key!r}; ignoring it")
            continue
        by_mode[grant.mode][grant.permission_key] = grant.allow

    base = by_mode[Mode.ALL]
    views = {Mode.ALL: MappingProxyType(dict(base))}
    for mode in (Mode.TASK_DOER, Mode.TASK_GIVER):
        merged = dict(base)
        merged.update(by_mode[mode])
        views[mode] = MappingProxyType(merged)
    return RolePermissionMap(role=role, loaded_at=loaded_at, views=MappingProxyType(views))


class PermissionCache:
    """
    Per-role permission maps with TTL freshness and explicit invalidation.

    Usage:
        cache = PermissionCache(RoleGrantStore(AsyncSessionLocal), ttl=300)
        allowed = (await cache.get_role_permission_map(RoleKey.ADMIN)).get("users.ban", False)
        cache.invalidate_role(RoleKey.ADMIN)  # after editing admin's grants

    If the store fails during a refresh, the last map that was loaded
    successfully is served (and the failure logged). With no such map the
    StoreUnavailable error propagates.
    """

    def __init__(
        self,
        source: GrantSource,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        catalog: Optional[PermissionCatalog] = None,
    ):
        self._source = source
        self._ttl = ttl
        self._clock = clock
        self._catalog = catalog
        self._maps: Dict[RoleKey, RolePermissionMap] = {}
        self._last_good: Dict[RoleKey, RolePermissionMap] = {}
        self._generations: Dict[RoleKey, int] = {role: 0 for role in RoleKey}
        self._inflight: Dict[RoleKey, Tuple[int, asyncio.Future]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    async def get_map(self, role: RoleKey) -> RolePermissionMap:
        current = self._maps.get(role)
        if current is not None and self._clock() - current.loaded_at < self._ttl:
            return current

        generation = self._generations[role]
        inflight = self._inflight.get(role)
        if inflight is not None and inflight[0] == generation:
            task = inflight[1]
        else:
            task = asyncio.ensure_future(self._refresh(role, generation))
            self._inflight[role] = (generation, task)
            task.add_done_callback(lambda done, role=role: self._forget(role, done))
        # A caller timing out must not cancel the load other callers share
        return await asyncio.shield(task)

    async def get_role_permission_map(self, role: RoleKey, mode: Mode = Mode.ALL) -> Mapping[str, bool]:
        return (await self.get_map(role)).for_mode(mode)

    async def refresh(self, role: RoleKey) -> RolePermissionMap:
        """Reload ``role`` from the store now."""
        self.invalidate_role(role)
        return await self.get_map(role)

    async def warm(self, roles: Optional[Iterable[RoleKey]] = None) -> None:
        """Load maps ahead of the first request."""
        await asyncio.gather(*(self.get_map(role) for role in (roles or RoleKey)))

    def invalidate_role(self, role: RoleKey) -> None:
        self._generations[role] += 1
        self._maps.pop(role, None)
        log.debug(f"Permission cache invalidated for {role.value}")

    def invalidate(self) -> None:
        for role in RoleKey:
            self._generations[role] += 1
        self._maps.clear()
        log.info("Permission cache invalidated")

    def snapshot_age(self, role: RoleKey) -> Optional[float]:
        """Seconds since the cached map for ``role`` was loaded, or None."""
        current = self._maps.get(role)
        if current is None:
            return None
        return self._clock() - current.loaded_at

    async def _refresh(self, role: RoleKey, generation: int) -> RolePermissionMap:
        started = self._clock()
        try:
            grants = await self._source.load_role_grants(role)
        except StoreUnavailable:
            fallback = self._last_good.get(role)
            if fallback is None:
                log.error(f"Could not load permissions for {role.value} and no previous map is available")
                raise
            log.warning(
                f"Could not refresh permissions for {role.value}; "
                f"serving map loaded {started - fallback.loaded_at:.1f}s ago"
            )
            return fallback

        snapshot = build_permission_map(role, grants, loaded_at=started, catalog=self._catalog)
        self._last_good[role] = snapshot
        if self._generations[role] == generation:
            self._maps[role] = snapshot
        else:
            log.debug(f"Discarding permission map for {role.value}; invalidated while loading")
        log.info(f"Permission cache refreshed for {role.value} ({len(grants)} grants)")
        return snapshot

    def _forget(self, role: RoleKey, done: asyncio.Future) -> None:
        inflight = self._inflight.get(role)
        if inflight is not None and inflight[1] is done:
            del self._inflight[role]
        if not done.cancelled():
            # Mark the exception retrieved; waiters that are still around re-raise it
            done.exception()
