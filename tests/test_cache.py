"""Tests for the cache abstraction layer."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from shield.app.core.cache import (
    GuardedCache,
    InMemoryCache,
    RedisCache,
    _CacheEntry,
    create_cache,
)
from shield.app.core.clock import ManualClock
from shield.app.exceptions import CacheUnavailableError


class TestCacheEntry:
    """Tests for the internal _CacheEntry class."""

    def test_cache_entry_no_expiry(self):
        """Entry without expiry never expires."""
        entry = _CacheEntry(value=b"test", expires_at=None)
        assert not entry.is_expired(now=10**12)

    def test_cache_entry_expired(self):
        entry = _CacheEntry(value=b"test", expires_at=100.0)
        assert entry.is_expired(now=100.0)
        assert entry.is_expired(now=101.0)

    def test_cache_entry_not_expired(self):
        entry = _CacheEntry(value=b"test", expires_at=100.0)
        assert not entry.is_expired(now=99.999)


class TestInMemoryCache:
    """Tests for the InMemoryCache implementation."""

    @pytest.fixture
    def clock(self):
        return ManualClock(start_ms=1_000_000)

    @pytest.fixture
    def cache(self, clock):
        return InMemoryCache(clock=clock)

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        await cache.set("key1", b"value1", ttl=60)
        assert await cache.get("key1") == b"value1"

    @pytest.mark.asyncio
    async def test_get_nonexistent_key(self, cache):
        assert await cache.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_delete_nonexistent_key(self, cache):
        """Deleting nonexistent key does not raise error."""
        await cache.delete("nonexistent")

    @pytest.mark.asyncio
    async def test_ttl_expiry_follows_clock(self, cache, clock):
        """Entries expire against the injected clock, with millisecond TTLs."""
        await cache.set("key1", b"value1", ttl=0.5)
        clock.advance(499)
        assert await cache.exists("key1") is True
        clock.advance(1)
        assert await cache.get("key1") is None

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, cache, clock):
        await cache.set("key1", b"value1", ttl=0)
        clock.advance(10**9)
        assert await cache.get("key1") == b"value1"

    @pytest.mark.asyncio
    async def test_json_round_trip(self, cache):
        await cache.set_json("key1", {"count": 3, "items": [1, 2]}, ttl=60)
        assert await cache.get_json("key1") == {"count": 3, "items": [1, 2]}
        assert await cache.get_json("missing") is None

    @pytest.mark.asyncio
    async def test_incr_creates_and_increments(self, cache):
        assert await cache.incr("counter", 1, ttl=60) == 1
        assert await cache.incr("counter", 1, ttl=60) == 2
        assert await cache.incr("counter", -1, ttl=60) == 1

    @pytest.mark.asyncio
    async def test_incr_ttl_applies_only_on_create(self, cache, clock):
        await cache.incr("counter", 1, ttl=1)
        clock.advance(900)
        await cache.incr("counter", 1, ttl=1)
        clock.advance(100)
        # Second increment must not have extended the expiry
        assert await cache.get("counter") is None

    @pytest.mark.asyncio
    async def test_invalidate_by_tags(self, cache):
        await cache.set("a", b"1", ttl=60, tags=["group", "a-only"])
        await cache.set("b", b"2", ttl=60, tags=["group"])
        await cache.set("c", b"3", ttl=60, tags=["other"])

        removed = await cache.invalidate_by_tags(["group"])

        assert removed == 2
        assert await cache.get("a") is None
        assert await cache.get("b") is None
        assert await cache.get("c") == b"3"

    @pytest.mark.asyncio
    async def test_overwrite_drops_old_tags(self, cache):
        await cache.set("a", b"1", ttl=60, tags=["old"])
        await cache.set("a", b"2", ttl=60, tags=["new"])

        assert await cache.invalidate_by_tags(["old"]) == 0
        assert await cache.get("a") == b"2"

    @pytest.mark.asyncio
    async def test_scan_returns_live_keys_with_prefix(self, cache, clock):
        await cache.set("auth:1", b"x", ttl=60)
        await cache.set("auth:2", b"x", ttl=0.1)
        await cache.set("csrf:1", b"x", ttl=60)
        clock.advance(200)

        assert await cache.scan("auth:") == ["auth:1"]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, cache, clock):
        await cache.set("short", b"x", ttl=0.1)
        await cache.set("long", b"x", ttl=60)
        clock.advance(200)

        assert await cache.cleanup_expired() == 1
        assert await cache.get("long") == b"x"

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, cache):
        await asyncio.gather(*(cache.incr("counter", 1, ttl=60) for _ in range(50)))
        assert await cache.get("counter") == b"50"


class TestRedisCache:
    """Tests for RedisCache against a mocked redis.asyncio client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value=b"value")
        client.set = AsyncMock()
        client.delete = AsyncMock(return_value=2)
        client.sadd = AsyncMock()
        client.pexpire = AsyncMock()
        client.smembers = AsyncMock(return_value={b"a", b"b"})
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_set_uses_millisecond_expiry_and_tags(self, client):
        cache = RedisCache("redis://localhost:6379/0", client=client)
        await cache.set("key", b"value", ttl=1.5, tags=["group"])

        client.set.assert_awaited_once_with("key", b"value", px=1500)
        client.sadd.assert_awaited_once_with("tag:group", "key")
        client.pexpire.assert_awaited_once_with("tag:group", 1500)

    @pytest.mark.asyncio
    async def test_get(self, client):
        cache = RedisCache("redis://localhost:6379/0", client=client)
        assert await cache.get("key") == b"value"

    @pytest.mark.asyncio
    async def test_invalidate_by_tags_deletes_members(self, client):
        cache = RedisCache("redis://localhost:6379/0", client=client)
        removed = await cache.invalidate_by_tags(["group"])

        assert removed == 2
        client.smembers.assert_awaited_once_with("tag:group")

    @pytest.mark.asyncio
    async def test_incr_runs_script(self, client):
        script = AsyncMock(return_value=3)
        client.register_script = MagicMock(return_value=script)
        cache = RedisCache("redis://localhost:6379/0", client=client)

        assert await cache.incr("counter", 1, ttl=2) == 3
        script.assert_awaited_once_with(keys=["counter"], args=[1, 2000])

    @pytest.mark.asyncio
    async def test_close(self, client):
        cache = RedisCache("redis://localhost:6379/0", client=client)
        await cache.close()
        client.aclose.assert_awaited_once()


class TestGuardedCache:
    """Tests for the timeout and error guard."""

    @pytest.mark.asyncio
    async def test_passes_through(self):
        cache = GuardedCache(InMemoryCache(), timeout_ms=1000)
        await cache.set_json("key", {"a": 1}, ttl=60)
        assert await cache.get_json("key") == {"a": 1}

    @pytest.mark.asyncio
    async def test_backend_error_becomes_unavailable(self, broken_cache):
        with pytest.raises(CacheUnavailableError) as exc_info:
            await broken_cache.get("key")
        assert exc_info.value.operation == "get"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_becomes_unavailable(self):
        backend = InMemoryCache()

        async def slow_get(key):
            await asyncio.sleep(1)

        backend.get = slow_get
        cache = GuardedCache(backend, timeout_ms=10)

        with pytest.raises(CacheUnavailableError) as exc_info:
            await cache.get("key")
        assert exc_info.value.detail == "timeout"


class TestCreateCache:
    def test_memory_backend(self):
        cache = create_cache(backend="memory")
        assert isinstance(cache, GuardedCache)
        assert isinstance(cache.backend, InMemoryCache)

    def test_redis_backend(self):
        cache = create_cache(backend="redis", redis_url="redis://example:6379/1", timeout_ms=25)
        assert isinstance(cache.backend, RedisCache)
        assert cache.timeout == pytest.approx(0.025)
