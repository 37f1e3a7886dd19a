"""Shared fixtures: a hand-driven clock, an in-memory cache and fresh services."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from shield.app.container import build_services
from shield.app.core.cache import CacheBackend, GuardedCache, InMemoryCache
from shield.app.core.clock import ManualClock
from shield.app.core.config import Settings
from shield.app.main import create_app

ADMIN_TOKEN = "test-admin-token"
TRUSTED_ORIGIN = "http://localhost:3000"


class BrokenBackend(CacheBackend):
    """Backend whose every call fails like an unreachable Redis."""

    def _fail(self):
        raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._fail()

    async def set(self, key, value, ttl, tags=None):
        self._fail()

    async def delete(self, key):
        self._fail()

    async def exists(self, key):
        self._fail()

    async def clear(self):
        self._fail()

    async def incr(self, key, amount=1, ttl=0, tags=None):
        self._fail()

    async def invalidate_by_tags(self, tags):
        self._fail()

    async def scan(self, prefix):
        self._fail()


class YieldingCache(InMemoryCache):
    """In-memory cache that gives up the loop on every call, like a Redis round trip."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl, tags=None):
        await asyncio.sleep(0)
        await super().set(key, value, ttl, tags)

    async def delete(self, key):
        await asyncio.sleep(0)
        await super().delete(key)

    async def incr(self, key, amount=1, ttl=0, tags=None):
        await asyncio.sleep(0)
        return await super().incr(key, amount, ttl, tags)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return GuardedCache(InMemoryCache(clock=clock), timeout_ms=1000)


@pytest.fixture
def yielding_cache(clock):
    return GuardedCache(YieldingCache(clock=clock), timeout_ms=1000)


@pytest.fixture
def broken_cache():
    return GuardedCache(BrokenBackend(), timeout_ms=1000)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        admin_token=ADMIN_TOKEN,
        csrf_secret="test-secret",
        csrf_trusted_origins=[TRUSTED_ORIGIN],
        instance_id="test-instance",
    )


@pytest.fixture
def services(settings, clock, cache):
    return build_services(settings, clock=clock, cache=cache)


@pytest.fixture
def app(services):
    return create_app(services=services)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
