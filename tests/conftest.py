"""
Shared fixtures: fake clock and stores for the cache and engine, and a
throwaway aiosqlite database for the store and HTTP tests.
"""
import asyncio
from typing import Dict, FrozenSet, Iterable, List, Optional

import pytest

from gigpanel.core.database.engine import create_engine, create_session_factory, init_db
from gigpanel.features.permissions.cache import PermissionCache
from gigpanel.features.permissions.catalog import default_catalog
from gigpanel.features.permissions.engine import ResolutionEngine
from gigpanel.features.permissions.exceptions import StoreUnavailable
from gigpanel.features.permissions.roles import Mode, RoleKey
from gigpanel.features.permissions.store import Grant
from gigpanel.features.users.models import User


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGrantSource:
    """In-memory grants. ``gate`` holds loads until set; ``fail`` makes loads raise."""

    def __init__(self, grants: Optional[Dict[RoleKey, List[Grant]]] = None):
        self.grants = grants or {}
        self.loads = 0
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    def grant(self, role: RoleKey, key: str, allow: bool = True, mode: Mode = Mode.ALL) -> None:
        rows = [g for g in self.grants.get(role, []) if (g.permission_key, g.mode) != (key, mode)]
        rows.append(Grant(permission_key=key, mode=mode, allow=allow))
        self.grants[role] = rows

    async def load_role_grants(self, role: RoleKey) -> List[Grant]:
        self.loads += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise StoreUnavailable("grant store is down")
        return list(self.grants.get(role, []))


class FakeRestrictions:
    def __init__(self):
        self.restrictions: Dict[str, FrozenSet[str]] = {}
        self.reads = 0
        self.delay = 0.0

    async def get_restrictions(self, user_id: str) -> FrozenSet[str]:
        self.reads += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.restrictions.get(user_id, frozenset())


class FakeFlags:
    def __init__(self):
        self.flags: Dict[str, Optional[bool]] = {}
        self.reads = 0

    async def get_flags(self, paths: Iterable[str]) -> Dict[str, Optional[bool]]:
        self.reads += 1
        return {path: self.flags.get(path) for path in paths}


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    async def emit(self, event) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def grant_source():
    return FakeGrantSource()


@pytest.fixture
def restrictions():
    return FakeRestrictions()


@pytest.fixture
def flags():
    return FakeFlags()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def cache(grant_source, clock):
    return PermissionCache(grant_source, ttl=300, clock=clock, catalog=default_catalog)


@pytest.fixture
def engine(cache, restrictions, flags):
    return ResolutionEngine(default_catalog, cache, restrictions, flags, timeout=None)


@pytest.fixture
async def session_factory(tmp_path):
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(db_engine)
    yield create_session_factory(db_engine)
    await db_engine.dispose()


@pytest.fixture
async def users(session_factory):
    """Two users, ids ``u1`` and ``u2``."""
    async with session_factory() as db:
        db.add_all([
            User(id="u1", email="one@example.com", name="One"),
            User(id="u2", email="two@example.com", name="Two"),
        ])
        await db.commit()
    return ["u1", "u2"]
