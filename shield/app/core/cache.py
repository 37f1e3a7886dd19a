"""Cache abstraction layer for the abuse-prevention pipeline.

Provides a pluggable cache backend system with in-memory and Redis
implementations, plus a guard that bounds every call with a timeout.
All counter state (attempt records, token buckets, window logs, CSRF tokens)
lives behind this interface with a TTL.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Iterable, Optional, TypeVar
import asyncio
import json
import time

from redis.exceptions import RedisError

from shield.app.core.clock import Clock
from shield.app.core.logging import get_logger
from shield.app.exceptions import CacheUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


# Atomic increment that sets the expiry only when the key is created
INCR_WITH_TTL_SCRIPT = """
    local value = redis.call('INCRBY', KEYS[1], ARGV[1])
    local ttl_ms = tonumber(ARGV[2])
    if ttl_ms > 0 and redis.call('PTTL', KEYS[1]) < 0 then
        redis.call('PEXPIRE', KEYS[1], ttl_ms)
    end
    return value
"""


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None
    tags: frozenset[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    All cache implementations must inherit from this class and implement
    the abstract methods. TTLs are seconds as floats, so millisecond
    windows survive the round trip; a TTL of zero or less never expires.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve a value from the cache.

        Args:
            key: The cache key to look up.

        Returns:
            The cached value as bytes, or None if not found or expired.
        """

    @abstractmethod
    async def set(
        self,
        key: str,
        value: bytes,
        ttl: float,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Store a value in the cache.

        Args:
            key: The cache key.
            value: The value to store (as bytes).
            ttl: Time-to-live in seconds.
            tags: Optional tags for group invalidation.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a value from the cache."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists and is not expired."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from the cache."""

    @abstractmethod
    async def incr(
        self,
        key: str,
        amount: int = 1,
        ttl: float = 0,
        tags: Optional[Iterable[str]] = None,
    ) -> int:
        """Atomically add ``amount`` to an integer counter.

        The TTL is applied only when the counter is created.

        Returns:
            The counter value after the increment.
        """

    @abstractmethod
    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every entry carrying any of ``tags``.

        Returns:
            Number of entries removed.
        """

    @abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        """Return a snapshot of live keys starting with ``prefix``."""

    async def get_json(self, key: str) -> Any:
        """Retrieve and decode a JSON value, or None when absent."""
        raw = await self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(
        self,
        key: str,
        value: Any,
        ttl: float,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Encode a value as JSON and store it."""
        await self.set(key, json.dumps(value, separators=(",", ":")).encode(), ttl, tags)

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCache(CacheBackend):
    """In-memory cache implementation with TTL and tag support.

    This is the default cache backend. It stores all data in a Python
    dictionary and expires entries lazily based on TTL.

    Note: This cache is not distributed and data is lost when the
    application restarts.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        """Initialize the in-memory cache.

        Args:
            clock: Optional clock; entries expire against it when given.
        """
        self._data: dict[str, _CacheEntry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock.now_ms() / 1000.0
        return time.time()

    def _expires_at(self, ttl: float) -> float | None:
        return self._now() + ttl if ttl > 0 else None

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._now()):
            self._remove(key)
            return None
        return entry

    def _remove(self, key: str) -> None:
        entry = self._data.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            members = self._tag_index.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tag_index[tag]

    def _store(self, key: str, entry: _CacheEntry) -> None:
        self._remove(key)
        self._data[key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    async def set(
        self,
        key: str,
        value: bytes,
        ttl: float,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        async with self._lock:
            self._store(
                key,
                _CacheEntry(
                    value=value,
                    expires_at=self._expires_at(ttl),
                    tags=frozenset(tags or ()),
                ),
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._remove(key)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()
            self._tag_index.clear()

    async def incr(
        self,
        key: str,
        amount: int = 1,
        ttl: float = 0,
        tags: Optional[Iterable[str]] = None,
    ) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                value = amount
                entry = _CacheEntry(
                    value=str(value).encode(),
                    expires_at=self._expires_at(ttl),
                    tags=frozenset(tags or ()),
                )
                self._store(key, entry)
                return value
            value = int(entry.value) + amount
            entry.value = str(value).encode()
            return value

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        async with self._lock:
            keys: set[str] = set()
            for tag in tags:
                keys.update(self._tag_index.get(tag, ()))
            for key in keys:
                self._remove(key)
            return len(keys)

    async def scan(self, prefix: str) -> list[str]:
        async with self._lock:
            now = self._now()
            return [
                key
                for key, entry in self._data.items()
                if key.startswith(prefix) and not entry.is_expired(now)
            ]

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self._now()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                self._remove(key)
            return len(expired_keys)


class RedisCache(CacheBackend):
    """Redis-based cache implementation.

    Tags are kept as Redis sets named ``tag:<tag>`` listing member keys.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=0.5)
    """

    TAG_PREFIX = "tag:"

    def __init__(self, redis_url: str, client: Optional[Any] = None) -> None:
        """Initialize the Redis cache.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Optional pre-built redis.asyncio client (for testing)
        """
        import redis.asyncio as aioredis

        self._redis_url = redis_url
        self._redis: Any | None = client
        self._client_class = aioredis.from_url
        self._incr_script: Any | None = None

    async def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            self._redis = self._client_class(self._redis_url)
        return self._redis

    @staticmethod
    def _ttl_ms(ttl: float) -> int | None:
        return max(1, int(ttl * 1000)) if ttl > 0 else None

    async def _tag(self, client: Any, key: str, ttl: float, tags: Optional[Iterable[str]]) -> None:
        ttl_ms = self._ttl_ms(ttl)
        for tag in tags or ():
            tag_key = f"{self.TAG_PREFIX}{tag}"
            await client.sadd(tag_key, key)
            if ttl_ms is not None:
                await client.pexpire(tag_key, ttl_ms)

    async def get(self, key: str) -> bytes | None:
        client = await self._get_client()
        return await client.get(key)

    async def set(
        self,
        key: str,
        value: bytes,
        ttl: float,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        client = await self._get_client()
        await client.set(key, value, px=self._ttl_ms(ttl))
        await self._tag(client, key, ttl, tags)

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        await client.delete(key)

    async def exists(self, key: str) -> bool:
        client = await self._get_client()
        return await client.exists(key) > 0

    async def clear(self) -> None:
        """Clear all entries from the cache.

        WARNING: This uses FLUSHDB which clears the entire Redis database.
        Be careful when using a shared Redis instance.
        """
        client = await self._get_client()
        await client.flushdb()

    async def incr(
        self,
        key: str,
        amount: int = 1,
        ttl: float = 0,
        tags: Optional[Iterable[str]] = None,
    ) -> int:
        client = await self._get_client()
        if self._incr_script is None:
            self._incr_script = client.register_script(INCR_WITH_TTL_SCRIPT)
        value = await self._incr_script(keys=[key], args=[amount, self._ttl_ms(ttl) or 0])
        if tags:
            await self._tag(client, key, ttl, tags)
        return int(value)

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        client = await self._get_client()
        removed = 0
        for tag in tags:
            tag_key = f"{self.TAG_PREFIX}{tag}"
            members = await client.smembers(tag_key)
            if members:
                removed += await client.delete(*members)
            await client.delete(tag_key)
        return removed

    async def scan(self, prefix: str) -> list[str]:
        client = await self._get_client()
        keys: list[str] = []
        async for key in client.scan_iter(match=f"{prefix}*"):
            keys.append(key.decode() if isinstance(key, bytes) else key)
        return keys

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class GuardedCache(CacheBackend):
    """Wraps a backend so no call can hang a request.

    Every operation is bounded by ``timeout_ms``; timeouts and backend
    errors surface as ``CacheUnavailableError`` so each pipeline stage can
    apply its own failure policy.
    """

    def __init__(self, backend: CacheBackend, timeout_ms: int = 50) -> None:
        self.backend = backend
        self.timeout = timeout_ms / 1000.0

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                f"Cache {operation} timed out after {self.timeout * 1000:.0f}ms",
                extra={"error_code": "cache_unavailable"},
            )
            raise CacheUnavailableError(operation, "timeout") from e
        except (RedisError, OSError) as e:
            logger.error(
                f"Cache {operation} failed: {e}",
                extra={"error_code": "cache_unavailable"},
            )
            raise CacheUnavailableError(operation, str(e)) from e

    async def get(self, key: str) -> bytes | None:
        return await self._call("get", self.backend.get(key))

    async def set(
        self,
        key: str,
        value: bytes,
        ttl: float,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        await self._call("set", self.backend.set(key, value, ttl, tags))

    async def delete(self, key: str) -> None:
        await self._call("delete", self.backend.delete(key))

    async def exists(self, key: str) -> bool:
        return await self._call("exists", self.backend.exists(key))

    async def clear(self) -> None:
        await self._call("clear", self.backend.clear())

    async def incr(
        self,
        key: str,
        amount: int = 1,
        ttl: float = 0,
        tags: Optional[Iterable[str]] = None,
    ) -> int:
        return await self._call("incr", self.backend.incr(key, amount, ttl, tags))

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        return await self._call("invalidate_by_tags", self.backend.invalidate_by_tags(list(tags)))

    async def scan(self, prefix: str) -> list[str]:
        return await self._call("scan", self.backend.scan(prefix))

    async def close(self) -> None:
        await self.backend.close()


def create_cache(
    backend: str = "memory",
    redis_url: str = "redis://localhost:6379/0",
    timeout_ms: int = 50,
    clock: Optional[Clock] = None,
) -> GuardedCache:
    """Build the cache used by every pipeline stage.

    Args:
        backend: 'memory' or 'redis'.
        redis_url: Redis connection URL, used when backend is 'redis'.
        timeout_ms: Bound for each cache call.
        clock: Optional clock for in-memory expiry.

    Returns:
        A GuardedCache wrapping the selected backend.
    """
    if backend == "redis":
        logger.info("Using Redis cache backend")
        inner: CacheBackend = RedisCache(redis_url)
    else:
        logger.debug("Using in-memory cache backend")
        inner = InMemoryCache(clock=clock)
    return GuardedCache(inner, timeout_ms=timeout_ms)
