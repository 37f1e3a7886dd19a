"""Throttling algorithms over the cache abstraction.

Each algorithm owns one cache key per (identifier, algorithm, scope) and
returns a ``RateLimitResult``. Read-modify-write algorithms serialize on a
per-key lock so concurrent checks never lose an update; the distributed
algorithm only uses atomic cache increments so it needs no lock at all.
"""

import math
from abc import ABC, abstractmethod
from typing import Sequence

from shield.app.core.cache import CacheBackend
from shield.app.core.clock import fixed_window_start, ms_to_seconds, retry_after_seconds
from shield.app.core.locks import KeyedLocks
from shield.app.services.rate_limit.models import (
    FixedWindowState,
    RateLimitConfig,
    RateLimitResult,
    SlidingWindowLog,
    TokenBucketState,
)


def _allowed(config: RateLimitConfig, remaining: int, reset_time: int, total: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        limit=config.max_requests,
        remaining=remaining,
        reset_time=reset_time,
        total_requests=total,
    )


def _denied(config: RateLimitConfig, reset_time: int, total: int, now: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=False,
        limit=config.max_requests,
        remaining=0,
        reset_time=reset_time,
        total_requests=total,
        retry_after=retry_after_seconds(reset_time, now),
    )


class RateLimitAlgorithm(ABC):
    """Abstract base class for throttling algorithms."""

    def __init__(self, cache: CacheBackend, locks: KeyedLocks):
        self._cache = cache
        self._locks = locks

    @abstractmethod
    async def check(
        self,
        key: str,
        config: RateLimitConfig,
        now: int,
        tags: Sequence[str] = (),
    ) -> RateLimitResult:
        """Count one request against ``key`` and decide whether it may pass.

        Args:
            key: Cache key for this identifier's state
            config: Limit and window to enforce
            now: Current time in epoch milliseconds
            tags: Cache tags used for reset/reset-all

        Returns:
            RateLimitResult with allowed status and metadata
        """


class FixedWindowAlgorithm(RateLimitAlgorithm):
    """Counter per calendar-aligned window.

    Windows start at ``floor(now / window) * window``. A caller can spend a
    full quota at the end of one window and another at the start of the
    next, so up to twice the limit may pass around a boundary.
    """

    async def check(self, key, config, now, tags=()):
        window_start = fixed_window_start(now, config.window_ms)
        reset_time = window_start + config.window_ms

        async with self._locks.hold(key):
            data = await self._cache.get_json(key)
            state = FixedWindowState.from_dict(data) if data else FixedWindowState(0, window_start)

            # Reset if new window
            if state.window_start != window_start:
                state = FixedWindowState(0, window_start)

            if state.count >= config.max_requests:
                return _denied(config, reset_time, state.count, now)

            state.count += 1
            await self._cache.set_json(
                key, state.to_dict(), ttl=ms_to_seconds(config.window_ms * 2), tags=tags
            )

        return _allowed(config, config.max_requests - state.count, reset_time, state.count)


class SlidingWindowAlgorithm(RateLimitAlgorithm):
    """Log of request timestamps within ``[now - window, now]``.

    Denied requests are not logged, so a caller hammering the limit does not
    push its own reset time further out.
    """

    async def check(self, key, config, now, tags=()):
        ttl = ms_to_seconds(config.window_ms * 2)

        async with self._locks.hold(key):
            data = await self._cache.get_json(key)
            log = SlidingWindowLog(list(data) if data else [])
            pruned = log.prune(now, config.window_ms)

            if len(log) >= config.max_requests:
                if pruned:
                    await self._cache.set_json(key, log.timestamps, ttl=ttl, tags=tags)
                reset_time = log.timestamps[0] + config.window_ms
                return _denied(config, reset_time, len(log), now)

            log.append(now)
            await self._cache.set_json(key, log.timestamps, ttl=ttl, tags=tags)

        reset_time = log.timestamps[0] + config.window_ms
        return _allowed(config, config.max_requests - len(log), reset_time, len(log))


class TokenBucketAlgorithm(RateLimitAlgorithm):
    """Bucket of ``max_requests`` tokens refilled at ``max_requests / window``.

    Bursts up to the bucket capacity pass immediately; the long-run average
    stays at the configured rate.
    """

    async def check(self, key, config, now, tags=()):
        capacity = float(config.max_requests)
        rate = capacity / config.window_ms  # tokens per millisecond

        async with self._locks.hold(key):
            data = await self._cache.get_json(key)
            bucket = (
                TokenBucketState.from_dict(data)
                if data
                else TokenBucketState(tokens=capacity, last_refill=now)
            )

            # Calculate tokens to add based on time elapsed
            elapsed = max(0, now - bucket.last_refill)
            tokens = min(capacity, bucket.tokens + elapsed * rate)

            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            tokens = max(0.0, tokens)

            await self._cache.set_json(
                key,
                TokenBucketState(tokens=tokens, last_refill=now).to_dict(),
                ttl=ms_to_seconds(config.window_ms * 2),
                tags=tags,
            )

        remaining = int(math.floor(tokens))
        if not allowed:
            reset_time = now + math.ceil((1.0 - tokens) / rate)
            return _denied(config, reset_time, config.max_requests, now)

        # The bucket is full again once the spent tokens have been refilled
        reset_time = now + math.ceil((capacity - tokens) / rate)
        return _allowed(config, remaining, reset_time, config.max_requests - remaining)


class DistributedAlgorithm(RateLimitAlgorithm):
    """Fair-share limiting across worker instances without cross-instance locks.

    A global counter and a per-instance counter are incremented atomically.
    A request passes only when the global count stays within the total limit
    and this instance stays within ``ceil(total / max_instances)``. Counters
    live in per-window keys so they reset on the fixed window boundary.
    """

    def __init__(
        self,
        cache: CacheBackend,
        locks: KeyedLocks,
        instance_id: str = "local",
        max_instances: int = 10,
    ):
        super().__init__(cache, locks)
        if max_instances < 1:
            raise ValueError("max_instances must be at least 1")
        self.instance_id = instance_id
        self.max_instances = max_instances

    def instance_limit(self, config: RateLimitConfig) -> int:
        return math.ceil(config.max_requests / self.max_instances)

    async def check(self, key, config, now, tags=()):
        window_start = fixed_window_start(now, config.window_ms)
        reset_time = window_start + config.window_ms
        global_key = f"{key}:{window_start}"
        instance_key = f"{global_key}:{self.instance_id}"
        ttl = ms_to_seconds(config.window_ms)
        instance_limit = self.instance_limit(config)

        global_count = await self._cache.incr(global_key, 1, ttl=ttl, tags=tags)
        instance_count = await self._cache.incr(instance_key, 1, ttl=ttl, tags=tags)

        if global_count > config.max_requests or instance_count > instance_limit:
            # Give back the optimistic increments so denials do not consume quota
            await self._cache.incr(global_key, -1, ttl=ttl, tags=tags)
            await self._cache.incr(instance_key, -1, ttl=ttl, tags=tags)
            return _denied(config, reset_time, global_count - 1, now)

        remaining = min(config.max_requests - global_count, instance_limit - instance_count)
        return _allowed(config, remaining, reset_time, global_count)
