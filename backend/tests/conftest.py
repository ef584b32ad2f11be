# backend/tests/conftest.py
"""
Pytest configuration for the authorization engine.

Tests never reach a real Redis or database: the counter store and grant
cache run against an in-memory Redis stand-in driven by a controllable clock,
and grants live in an in-memory SQLite database per test.
"""

import os

# Set testing mode BEFORE any scopegate imports!
os.environ["is_testing"] = "true"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["AUTHZ_FAILURE_POLICY"] = "fail_open"
os.environ["GRANT_CACHE_ENABLED"] = "true"

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set

from fastapi.testclient import TestClient
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.orm import sessionmaker

from scopegate.core.enums import DataScope
from scopegate.database import Base, build_engine, init_db
from scopegate.domain.authorization import PermissionCondition
from scopegate.main import create_app
from scopegate.middleware.permission_enforcer import PermissionEnforcer
from scopegate.ratelimit.counter_store import ARM_EXPIRY_LUA, RedisCounterStore
from scopegate.ratelimit.limiter import FixedWindowRateLimiter
from scopegate.services.grant_cache import FILL_IF_CURRENT_LUA, INVALIDATE_LUA, GrantCache
from scopegate.services.grant_store import PermissionGrantStore
from scopegate.services.permission_service import PermissionService

# Monday
START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeRedis:
    """
    In-memory stand-in for the handful of Redis commands the engine uses.

    Expiries follow the shared FakeClock. Operations named in fail_ops raise a
    connection error; operations named in hang_ops never answer in time.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.values: Dict[str, str] = {}
        self.expiries: Dict[str, datetime] = {}
        self.fail_ops: Set[str] = set()
        self.hang_ops: Set[str] = set()
        self.calls: list = []

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_ops:
            raise RedisConnectionError(f"{op} refused")
        if op in self.hang_ops:
            await asyncio.sleep(5)

    def _purge(self, key: str) -> None:
        expiry = self.expiries.get(key)
        if expiry is not None and self.clock.now() >= expiry:
            self.values.pop(key, None)
            self.expiries.pop(key, None)

    def ttl_seconds(self, key: str) -> Optional[float]:
        self._purge(key)
        expiry = self.expiries.get(key)
        if expiry is None:
            return None
        return (expiry - self.clock.now()).total_seconds()

    async def ping(self) -> bool:
        await self._enter("ping")
        return True

    async def incr(self, key: str) -> int:
        await self._enter("incr")
        self._purge(key)
        value = int(self.values.get(key, "0")) + 1
        self.values[key] = str(value)
        return value

    async def get(self, key: str) -> Optional[str]:
        await self._enter("get")
        self._purge(key)
        return self.values.get(key)

    async def delete(self, key: str) -> int:
        await self._enter("delete")
        self.expiries.pop(key, None)
        return 1 if self.values.pop(key, None) is not None else 0

    async def pttl(self, key: str) -> int:
        await self._enter("pttl")
        self._purge(key)
        if key not in self.values:
            return -2
        if key not in self.expiries:
            return -1
        return int((self.expiries[key] - self.clock.now()).total_seconds() * 1000)

    async def eval(self, script: str, numkeys: int, *keys_and_args) -> int:
        await self._enter("eval")
        keys, args = keys_and_args[:numkeys], keys_and_args[numkeys:]
        if script == ARM_EXPIRY_LUA:
            return self._arm_expiry(keys[0], int(args[0]))
        if script == FILL_IF_CURRENT_LUA:
            return self._fill_if_current(keys[0], keys[1], str(args[0]), int(args[1]), args[2])
        if script == INVALIDATE_LUA:
            return self._invalidate(keys[0], keys[1], int(args[0]))
        raise AssertionError(f"unexpected script: {script[:40]!r}")

    def _arm_expiry(self, key: str, ttl: int) -> int:
        self._purge(key)
        if key in self.values and key not in self.expiries:
            self.expiries[key] = self.clock.now() + timedelta(seconds=ttl)
            return 1
        return 0

    def _fill_if_current(
        self, generation_key: str, key: str, expected: str, ttl: int, value: str
    ) -> int:
        self._purge(generation_key)
        if self.values.get(generation_key, "0") != expected:
            return 0
        self.values[key] = value
        self.expiries[key] = self.clock.now() + timedelta(seconds=ttl)
        return 1

    def _invalidate(self, generation_key: str, key: str, generation_ttl: int) -> int:
        self._purge(generation_key)
        generation = int(self.values.get(generation_key, "0")) + 1
        self.values[generation_key] = str(generation)
        self.expiries[generation_key] = self.clock.now() + timedelta(seconds=generation_ttl)
        self.values.pop(key, None)
        self.expiries.pop(key, None)
        return generation

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        await self._enter("setex")
        self.values[key] = value
        self.expiries[key] = self.clock.now() + timedelta(seconds=ttl)
        return True

    async def aclose(self) -> None:
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def redis_factory(fake_redis):
    async def _factory():
        return fake_redis

    return _factory


@pytest.fixture
def counter_store(redis_factory):
    return RedisCounterStore(client_factory=redis_factory, timeout_seconds=0.05)


@pytest.fixture
def limiter(counter_store, clock):
    return FixedWindowRateLimiter(store=counter_store, namespace="test", clock=clock.now)


@pytest.fixture
def db_engine():
    engine = build_engine("sqlite://")
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def grant_cache(redis_factory):
    return GrantCache(client_factory=redis_factory, ttl_seconds=60, namespace="test")


@pytest.fixture
def grant_store(session_factory, grant_cache):
    return PermissionGrantStore(session_factory=session_factory, cache=grant_cache, use_cache=True)


@pytest.fixture
def permission_service(grant_store, limiter, clock):
    return PermissionService(grant_store=grant_store, rate_limiter=limiter, clock=clock.now)


@pytest.fixture
def enforcer(permission_service, clock):
    return PermissionEnforcer(permission_service, clock=clock.now)


@pytest.fixture
def app(permission_service, enforcer):
    application = create_app(service=permission_service)
    application.state.permission_enforcer = enforcer
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def grant_admin(permission_service):
    """admin-1 may grant and revoke for any subject."""
    condition = PermissionCondition(scope=DataScope.ALL)
    for action in ("grant", "revoke"):
        asyncio.run(
            permission_service.grant_permission(
                "admin-1", "permission", action, condition, "bootstrap"
            )
        )
