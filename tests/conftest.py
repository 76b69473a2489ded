"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of xpengine.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

from xpengine.database.models import Base  # noqa: E402
from xpengine.database.store import MemoryStore, SqlStore  # noqa: E402
from xpengine.errors import PersistenceError, PlatformError  # noqa: E402
from xpengine.services.engine import XPEngine  # noqa: E402

GUILD = "111111111111111111"
ROLE_L5 = "500000000000000005"
ROLE_L10 = "500000000000000010"
ROLE_L20 = "500000000000000020"


def run_async(coro):
    """Run a coroutine on a fresh event loop (no pytest-asyncio needed)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------
class FailingStore(MemoryStore):
    """MemoryStore whose operations can be switched to raise PersistenceError."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False
        self.entries_calls = 0

    async def get(self, key, namespace):
        if self.fail_reads:
            raise PersistenceError("store offline")
        return await super().get(key, namespace)

    async def set(self, key, value, namespace):
        if self.fail_writes:
            raise PersistenceError("store offline")
        await super().set(key, value, namespace)

    async def entries(self, namespace):
        self.entries_calls += 1
        if self.fail_reads:
            raise PersistenceError("store offline")
        return await super().entries(namespace)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with the kv_entries table.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in SqlStore).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def sql_store(db_engine) -> SqlStore:
    return SqlStore(db_engine)


@pytest.fixture
def store() -> FailingStore:
    return FailingStore()


# ---------------------------------------------------------------------------
# Platform
# ---------------------------------------------------------------------------
class FakePlatform:
    """In-memory role platform that records every call."""

    def __init__(self) -> None:
        self.roles: dict[tuple[str, str], set[str]] = {}
        self.calls: list[tuple[str, str, str, str]] = []
        self.failing_roles: set[str] = set()
        self.fail_reads = False

    def member(self, guild_id: str, user_id: str, *roles: str) -> None:
        self.roles[(guild_id, user_id)] = set(roles)

    async def get_member_roles(self, guild_id, user_id):
        await asyncio.sleep(0)
        if self.fail_reads:
            raise PlatformError("rate limited")
        held = self.roles.get((guild_id, user_id))
        return None if held is None else set(held)

    async def grant_role(self, guild_id, user_id, role_id, reason):
        await asyncio.sleep(0)
        self.calls.append(("grant", guild_id, user_id, role_id))
        if role_id in self.failing_roles:
            raise PlatformError("Missing permissions")
        self.roles.setdefault((guild_id, user_id), set()).add(role_id)

    async def revoke_role(self, guild_id, user_id, role_id, reason):
        await asyncio.sleep(0)
        self.calls.append(("revoke", guild_id, user_id, role_id))
        if role_id in self.failing_roles:
            raise PlatformError("Missing permissions")
        self.roles.setdefault((guild_id, user_id), set()).discard(role_id)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def xp_engine(store, platform) -> XPEngine:
    return XPEngine.create(store, platform=platform)


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------
@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin", is_admin: bool = True) -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from xpengine.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(xp_engine):
    """FastAPI TestClient wired to the in-memory engine."""
    from fastapi.testclient import TestClient

    from xpengine.api.deps import get_engine
    from xpengine.api.main import app

    app.dependency_overrides[get_engine] = lambda: xp_engine
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
