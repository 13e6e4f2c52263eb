"""
Permission resolution.

The one place that decides whether an actor may use a permission. Rules, in
order, first decisive rule wins:

1. super_admin skips the grant table (but not rules 2 and 4)
2. a user restriction on the permission denies        -> USER_RESTRICTED
3. no grant for (role, permission, mode or all) denies -> NO_GRANT
4. any of its feature flags set to false denies       -> FEATURE_DISABLED
5. otherwise allow                                    -> ROLE_GRANT / SUPER_ADMIN_OVERRIDE

Restrictions are read from the store before the role map is fetched, so a
restriction written before the call started always applies.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Protocol

from gigpanel.features.permissions.cache import PermissionCache
from gigpanel.features.permissions.catalog import Permission, PermissionCatalog
from gigpanel.features.permissions.exceptions import ResolutionTimeout, StoreUnavailable
from gigpanel.features.permissions.roles import Mode, RoleKey
from gigpanel.utils import get_logger


log = get_logger(__name__)


class ReasonCode(str, Enum):
    SUPER_ADMIN_OVERRIDE = "SUPER_ADMIN_OVERRIDE"
    USER_RESTRICTED = "USER_RESTRICTED"
    NO_GRANT = "NO_GRANT"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    ROLE_GRANT = "ROLE_GRANT"
    # Only produced when fail-open was switched on explicitly
    STORE_UNAVAILABLE_FAIL_OPEN = "STORE_UNAVAILABLE_FAIL_OPEN"


@dataclass(frozen=True)
class Decision:
    permission: str
    allow: bool
    reason: ReasonCode

    def __bool__(self) -> bool:
        return self.allow


class RestrictionSource(Protocol):
    async def get_restrictions(self, user_id: str) -> FrozenSet[str]:
        ...


class FlagSource(Protocol):
    async def get_flags(self, paths: Iterable[str]) -> Dict[str, Optional[bool]]:
        ...


_UNSET = object()


class ResolutionEngine:
    """
    Combines role grants, user restrictions and feature flags.

    Usage:
        engine = ResolutionEngine(catalog, cache, override_store, flag_store, timeout=5)
        decision = await engine.resolve("admin", "transactions.approve", "all", user.id)
        if not decision:
            ...  # decision.reason tells why
    """

    def __init__(
        self,
        catalog: PermissionCatalog,
        cache: PermissionCache,
        restrictions: RestrictionSource,
        flags: FlagSource,
        timeout: Optional[float] = None,
        fail_open: bool = False,
    ):
        self.catalog = catalog
        self.cache = cache
        self._restrictions = restrictions
        self._flags = flags
        self._timeout = timeout
        self._fail_open = fail_open

    async def resolve(
        self,
        role: "str | RoleKey",
        permission_key: str,
        mode: "str | Mode | None" = Mode.ALL,
        user_id: Optional[str] = None,
        timeout=_UNSET,
    ) -> Decision:
        decisions = await self.resolve_many(role, [permission_key], mode, user_id, timeout=timeout)
        return decisions[permission_key]

    async def resolve_many(
        self,
        role: "str | RoleKey",
        permission_keys: Iterable[str],
        mode: "str | Mode | None" = Mode.ALL,
        user_id: Optional[str] = None,
        timeout=_UNSET,
    ) -> Dict[str, Decision]:
        """
        Resolve several permissions for one actor with one restriction read,
        one role map fetch and one flag read.

        Raises UnknownRole, UnknownMode or UnknownPermission before any I/O.
        """
        role = RoleKey.parse(role)
        mode = Mode.parse(mode)
        permissions = self.catalog.require_all(permission_keys)
        if not permissions:
            return {}

        if timeout is _UNSET:
            timeout = self._timeout

        gather = self._gather(role, mode, user_id, permissions)
        if timeout is None or timeout <= 0:
            restricted, grants, flags = await gather
        else:
            try:
                restricted, grants, flags = await asyncio.wait_for(gather, timeout)
            except asyncio.TimeoutError:
                log.warning(f"Resolution for role={role.value} user={user_id} timed out after {timeout}s")
                raise ResolutionTimeout(timeout) from None

        decisions = {}
        for permission in permissions:
            decision = self._decide(role, permission, restricted, grants, flags)
            log.debug(
                f"{'Granted' if decision.allow else 'Denied'} {permission.key} to role={role.value} "
                f"mode={mode.value} user={user_id}: {decision.reason.value}"
            )
            decisions[permission.key] = decision
        return decisions

    async def effective_permissions(
        self,
        role: "str | RoleKey",
        mode: "str | Mode | None" = Mode.ALL,
        user_id: Optional[str] = None,
    ) -> Dict[str, bool]:
        """
        Permission key -> allowed, for every catalog entry.

        Meant for the UI to hide controls. Routes still check each action.
        """
        decisions = await self.resolve_many(role, [p.key for p in self.catalog], mode, user_id)
        return {key: decision.allow for key, decision in decisions.items()}

    async def _gather(self, role: RoleKey, mode: Mode, user_id: Optional[str], permissions):
        # Restrictions first: rule 2 must see every restriction written before this call
        restricted = await self._restrictions.get_restrictions(user_id) if user_id else frozenset()

        grants: Optional[Mapping[str, bool]] = None
        if role is not RoleKey.SUPER_ADMIN:
            try:
                grants = await self.cache.get_role_permission_map(role, mode)
            except StoreUnavailable:
                if not self._fail_open:
                    raise
                log.error(f"No permission map for {role.value}; allowing because fail-open is enabled")

        flag_paths = self.catalog.feature_flags(permissions)
        flags = await self._flags.get_flags(flag_paths) if flag_paths else {}
        return restricted, grants, flags

    def _decide(
        self,
        role: RoleKey,
        permission: Permission,
        restricted: FrozenSet[str],
        grants: Optional[Mapping[str, bool]],
        flags: Mapping[str, Optional[bool]],
    ) -> Decision:
        if permission.key in restricted:
            return Decision(permission.key, False, ReasonCode.USER_RESTRICTED)

        if role is RoleKey.SUPER_ADMIN:
            reason = ReasonCode.SUPER_ADMIN_OVERRIDE
        elif grants is None:
            reason = ReasonCode.STORE_UNAVAILABLE_FAIL_OPEN
        elif grants.get(permission.key, False):
            reason = ReasonCode.ROLE_GRANT
        else:
            return Decision(permission.key, False, ReasonCode.NO_GRANT)

        if any(flags.get(path) is False for path in permission.feature_flags):
            return Decision(permission.key, False, ReasonCode.FEATURE_DISABLED)

        return Decision(permission.key, True, reason)
