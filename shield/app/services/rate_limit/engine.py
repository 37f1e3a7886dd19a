"""Rate limiting engine.

Selects one of four throttling algorithms per check, applies whitelist and
blacklist short-circuits before any counter is touched, resolves route-class
policies, and swaps the whole policy table when emergency mode is toggled.
"""

import math
from collections import OrderedDict
import os
import socket
from typing import Callable, Mapping, Optional

from shield.app.core.cache import CacheBackend
from shield.app.core.clock import Clock, SystemClock
from shield.app.core.locks import KeyedLocks
from shield.app.core.logging import get_logger
from shield.app.core.security import hash_identifier
from shield.app.exceptions import CacheUnavailableError
from shield.app.services.rate_limit.algorithms import (
    DistributedAlgorithm,
    FixedWindowAlgorithm,
    RateLimitAlgorithm,
    SlidingWindowAlgorithm,
    TokenBucketAlgorithm,
)
from shield.app.services.rate_limit.models import (
    Algorithm,
    RateLimitConfig,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitStats,
    RouteClass,
)

logger = get_logger(__name__)

KEY_PREFIX = "rate-limit"
TAG_ALL = "ratelimit"

LimitCallback = Callable[[str, RateLimitConfig, RateLimitResult], None]


def default_instance_id() -> str:
    """Identify this worker as ``hostname-pid``."""
    return f"{socket.gethostname()}-{os.getpid()}"


class RateLimitEngine:
    """Request throttling over a shared cache.

    State for each identifier lives in the cache under keys derived from a
    hash of the identifier, the algorithm and the policy scope, so the same
    caller is counted separately per route class.
    """

    def __init__(
        self,
        cache: CacheBackend,
        clock: Optional[Clock] = None,
        policies: Optional[Mapping[RouteClass, RateLimitPolicy]] = None,
        emergency_policies: Optional[Mapping[RouteClass, RateLimitPolicy]] = None,
        instance_id: Optional[str] = None,
        max_instances: int = 10,
        fail_closed: bool = True,
        on_limit_reached: Optional[LimitCallback] = None,
        max_stats_entries: int = 10_000,
    ):
        """Initialize the engine.

        Args:
            cache: Shared cache holding all counter state
            clock: Time source shared by every algorithm
            policies: Route-class policy table used in normal operation
            emergency_policies: Tighter table swapped in by emergency mode
            instance_id: Identity of this worker for fair-share counting
            max_instances: Assumed worker count for fair-share division
            fail_closed: Deny requests when the cache is unavailable
            on_limit_reached: Called with (identifier, config, result) on denial
            max_stats_entries: Identifiers kept in stats; least recently seen are evicted
        """
        self._cache = cache
        self._clock = clock or SystemClock()
        self._locks = KeyedLocks()
        self._fail_closed = fail_closed
        self._on_limit_reached = on_limit_reached

        self._default_policies: dict[RouteClass, RateLimitPolicy] = dict(policies or {})
        self._emergency_policies: dict[RouteClass, RateLimitPolicy] = dict(
            emergency_policies or self._default_policies
        )
        self._policies = self._default_policies
        self._emergency = False

        self._whitelist: set[str] = set()
        self._blacklist: set[str] = set()
        self._stats: OrderedDict[str, RateLimitStats] = OrderedDict()
        self._max_stats_entries = max_stats_entries

        self._algorithms: dict[Algorithm, RateLimitAlgorithm] = {
            Algorithm.FIXED_WINDOW: FixedWindowAlgorithm(cache, self._locks),
            Algorithm.SLIDING_WINDOW: SlidingWindowAlgorithm(cache, self._locks),
            Algorithm.TOKEN_BUCKET: TokenBucketAlgorithm(cache, self._locks),
            Algorithm.DISTRIBUTED: DistributedAlgorithm(
                cache,
                self._locks,
                instance_id=instance_id or default_instance_id(),
                max_instances=max_instances,
            ),
        }

    # ============================================
    # Checks
    # ============================================

    async def check(
        self,
        identifier: str,
        config: RateLimitConfig,
        algorithm: Algorithm = Algorithm.TOKEN_BUCKET,
    ) -> RateLimitResult:
        """Count one request for ``identifier`` and decide whether it passes.

        Raises:
            CacheUnavailableError: If the cache fails and the engine fails closed
        """
        now = self._clock.now_ms()

        if identifier in self._blacklist:
            result = RateLimitResult(
                allowed=False,
                limit=config.max_requests,
                remaining=0,
                reset_time=now + config.window_ms,
                total_requests=config.max_requests,
                retry_after=math.ceil(config.window_ms / 1000),
            )
            self._record_stats(identifier, result, now)
            return result

        if identifier in self._whitelist:
            # Whitelisted callers never touch stored counters
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=config.max_requests,
                reset_time=now + config.window_ms,
                total_requests=0,
            )

        hashed = hash_identifier(identifier)
        key = f"{KEY_PREFIX}:{Algorithm(algorithm).value}:{config.scope}:{hashed}"
        tags = (TAG_ALL, f"{TAG_ALL}:{hashed}")

        try:
            result = await self._algorithms[Algorithm(algorithm)].check(key, config, now, tags)
        except CacheUnavailableError:
            if self._fail_closed:
                logger.error(
                    "Rate limiting fail-closed triggered: cache unavailable",
                    extra={"stage": "rate_limit", "error_code": "cache_unavailable"},
                )
                raise
            logger.warning(
                "Rate limiting fail-open triggered: cache unavailable, request allowed",
                extra={"stage": "rate_limit", "error_code": "cache_unavailable"},
            )
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=0,
                reset_time=now + config.window_ms,
                total_requests=0,
            )

        self._record_stats(identifier, result, now)
        if not result.allowed:
            logger.warning(
                f"{config.message} ({Algorithm(algorithm).value}, scope={config.scope})",
                extra={"stage": "rate_limit", "route_class": config.scope},
            )
            if self._on_limit_reached is not None:
                self._on_limit_reached(identifier, config, result)
        return result

    async def check_route(self, identifier: str, route_class: RouteClass) -> RateLimitResult:
        """Check ``identifier`` against the active policy for ``route_class``."""
        policy = self.policy_for(route_class)
        return await self.check(identifier, policy.config, policy.algorithm)

    async def check_adaptive(
        self,
        identifier: str,
        config: RateLimitConfig,
        system_load: float = 0.5,
    ) -> RateLimitResult:
        """Token bucket check with the limit reduced under system load.

        Args:
            system_load: Load factor in [0, 1]; at full load the limit halves
        """
        load = min(1.0, max(0.0, system_load))
        adjusted = max(1, math.floor(config.max_requests * (1 - load * 0.5)))
        adaptive = RateLimitConfig(
            max_requests=adjusted,
            window_ms=config.window_ms,
            scope=f"{config.scope}:adaptive",
            message=config.message,
        )
        return await self.check(identifier, adaptive, Algorithm.TOKEN_BUCKET)

    # ============================================
    # Policies and emergency mode
    # ============================================

    def policy_for(self, route_class: RouteClass) -> RateLimitPolicy:
        policies = self._policies
        policy = policies.get(RouteClass(route_class)) or policies.get(RouteClass.DEFAULT)
        if policy is None:
            raise KeyError(f"No rate limit policy configured for {route_class}")
        return policy

    @property
    def policies(self) -> dict[RouteClass, RateLimitPolicy]:
        return dict(self._policies)

    @property
    def emergency_mode(self) -> bool:
        return self._emergency

    def enable_emergency_mode(self) -> None:
        """Swap in the emergency policy table."""
        self._policies = self._emergency_policies
        self._emergency = True
        logger.warning("Emergency mode enabled: rate limits tightened")

    def disable_emergency_mode(self) -> None:
        """Restore the default policy table."""
        self._policies = self._default_policies
        self._emergency = False
        logger.info("Emergency mode disabled: default rate limits restored")

    # ============================================
    # Whitelist / blacklist
    # ============================================

    def add_to_whitelist(self, identifier: str) -> None:
        self._whitelist.add(identifier)
        self._blacklist.discard(identifier)

    def remove_from_whitelist(self, identifier: str) -> bool:
        if identifier not in self._whitelist:
            return False
        self._whitelist.discard(identifier)
        return True

    def add_to_blacklist(self, identifier: str) -> None:
        self._blacklist.add(identifier)
        self._whitelist.discard(identifier)

    def remove_from_blacklist(self, identifier: str) -> bool:
        if identifier not in self._blacklist:
            return False
        self._blacklist.discard(identifier)
        return True

    def is_whitelisted(self, identifier: str) -> bool:
        return identifier in self._whitelist

    def is_blacklisted(self, identifier: str) -> bool:
        return identifier in self._blacklist

    # ============================================
    # Administration
    # ============================================

    async def reset(self, identifier: str) -> int:
        """Drop every counter stored for ``identifier``.

        Returns:
            Number of cache entries removed
        """
        removed = await self._cache.invalidate_by_tags([f"{TAG_ALL}:{hash_identifier(identifier)}"])
        self._stats.pop(identifier, None)
        logger.info(f"Rate limit state reset for one identifier ({removed} entries)")
        return removed

    async def reset_all(self) -> int:
        """Drop every rate limit counter."""
        removed = await self._cache.invalidate_by_tags([TAG_ALL])
        self._stats.clear()
        logger.info(f"All rate limit state reset ({removed} entries)")
        return removed

    def _record_stats(self, identifier: str, result: RateLimitResult, now: int) -> None:
        stats = self._stats.get(identifier)
        if stats is None:
            stats = self._stats[identifier] = RateLimitStats(identifier=identifier)
            while len(self._stats) > self._max_stats_entries:
                self._stats.popitem(last=False)
        else:
            self._stats.move_to_end(identifier)
        stats.requests += 1
        if not result.allowed:
            stats.blocked += 1
        stats.last_request = now

    def get_stats(self, identifier: Optional[str] = None) -> dict:
        """Per-identifier counters, or a summary over all identifiers."""
        if identifier is not None:
            stats = self._stats.get(identifier)
            return (stats or RateLimitStats(identifier=identifier)).to_dict()

        return {
            "tracked_identifiers": len(self._stats),
            "total_requests": sum(s.requests for s in self._stats.values()),
            "total_blocked": sum(s.blocked for s in self._stats.values()),
            "whitelist_size": len(self._whitelist),
            "blacklist_size": len(self._blacklist),
            "emergency_mode": self._emergency,
            "policies": {
                route_class.value: {
                    "algorithm": policy.algorithm.value,
                    "max_requests": policy.config.max_requests,
                    "window_ms": policy.config.window_ms,
                }
                for route_class, policy in self._policies.items()
            },
        }

    def clear_stats(self) -> None:
        self._stats.clear()
