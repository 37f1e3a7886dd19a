"""Authentication attempt limiter.

A sliding counter keyed by (identity, source address) with asymmetric
semantics: failures increment, a success deletes the record. A background
sweep removes records whose window has elapsed so memory stays bounded
regardless of access patterns.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Optional

from shield.app.core.cache import CacheBackend
from shield.app.core.clock import (
    Clock,
    SystemClock,
    ms_to_iso,
    ms_to_seconds,
    retry_after_seconds,
    window_elapsed,
)
from shield.app.core.locks import KeyedLocks
from shield.app.core.logging import get_logger
from shield.app.core.security import hash_identifier
from shield.app.exceptions import CacheUnavailableError

logger = get_logger(__name__)

KEY_PREFIX = "auth:attempts:"
TAG = "auth-attempts"


@dataclass(frozen=True)
class AuthAttemptConfig:
    """Failures tolerated per window."""
    max_attempts: int = 5
    window_ms: int = 15 * 60 * 1000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")


@dataclass
class AttemptRecord:
    """Failure counter for one (identity, address) pair."""
    identity_key: str
    count: int
    window_start: int
    last_seen: int
    blocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AttemptRecord":
        return cls(
            identity_key=data["identity_key"],
            count=int(data["count"]),
            window_start=int(data["window_start"]),
            last_seen=int(data["last_seen"]),
            blocked=bool(data.get("blocked", False)),
        )


@dataclass
class AuthAttemptResult:
    """Decision for an authentication attempt. ``reset_time`` is epoch ms."""
    allowed: bool
    remaining: int
    reset_time: int
    total_attempts: int
    blocked: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_time": ms_to_iso(self.reset_time),
            "total_attempts": self.total_attempts,
            "blocked": self.blocked,
        }


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


class AuthAttemptLimiter:
    """Tracks failed authentication attempts per (identity, address).

    All records live in the shared cache; per-key locks make concurrent
    failures for the same pair count exactly once each.
    """

    def __init__(
        self,
        cache: CacheBackend,
        clock: Optional[Clock] = None,
        config: Optional[AuthAttemptConfig] = None,
        cleanup_interval: float = 300.0,
        fail_closed: bool = True,
    ):
        self._cache = cache
        self._clock = clock or SystemClock()
        self._config = config or AuthAttemptConfig()
        self._cleanup_interval = cleanup_interval
        self._fail_closed = fail_closed
        self._locks = KeyedLocks()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def config(self) -> AuthAttemptConfig:
        return self._config

    def apply_config(self, config: AuthAttemptConfig) -> None:
        """Replace thresholds, e.g. when emergency mode tightens them."""
        self._config = config
        logger.info(
            f"Auth attempt limits set to {config.max_attempts} per {config.window_ms}ms"
        )

    def _key(self, identity: str, address: str) -> str:
        return KEY_PREFIX + hash_identifier(f"{address}:{normalize_identity(identity)}")

    async def _load(self, key: str) -> Optional[AttemptRecord]:
        data = await self._cache.get_json(key)
        return AttemptRecord.from_dict(data) if data else None

    def _fresh(self, now: int) -> AuthAttemptResult:
        return AuthAttemptResult(
            allowed=True,
            remaining=self._config.max_attempts,
            reset_time=now + self._config.window_ms,
            total_attempts=0,
            blocked=False,
        )

    def _unavailable(self, now: int, operation: str) -> AuthAttemptResult:
        if self._fail_closed:
            logger.error(
                f"Auth limiter fail-closed triggered during {operation}: cache unavailable",
                extra={"stage": "auth_limit", "error_code": "cache_unavailable"},
            )
            return AuthAttemptResult(
                allowed=False,
                remaining=0,
                reset_time=now + self._config.window_ms,
                total_attempts=0,
                blocked=True,
            )
        logger.warning(
            f"Auth limiter fail-open triggered during {operation}: cache unavailable",
            extra={"stage": "auth_limit", "error_code": "cache_unavailable"},
        )
        return self._fresh(now)

    def _is_live(self, record: Optional[AttemptRecord], now: int) -> bool:
        return record is not None and not window_elapsed(
            record.window_start, now, self._config.window_ms
        )

    # ============================================
    # Attempt tracking
    # ============================================

    async def check_status(self, identity: str, address: str) -> AuthAttemptResult:
        """Report the current decision without changing any state."""
        now = self._clock.now_ms()
        try:
            record = await self._load(self._key(identity, address))
        except CacheUnavailableError:
            return self._unavailable(now, "check_status")

        if not self._is_live(record, now):
            return self._fresh(now)

        blocked = record.blocked or record.count >= self._config.max_attempts
        return AuthAttemptResult(
            allowed=not blocked,
            remaining=max(0, self._config.max_attempts - record.count),
            reset_time=record.window_start + self._config.window_ms,
            total_attempts=record.count,
            blocked=blocked,
        )

    async def record_failed_attempt(self, identity: str, address: str) -> AuthAttemptResult:
        """Count a failed attempt; a new window starts once the old one elapsed."""
        now = self._clock.now_ms()
        key = self._key(identity, address)
        try:
            async with self._locks.hold(key):
                record = await self._load(key)
                if not self._is_live(record, now):
                    record = AttemptRecord(
                        identity_key=key, count=1, window_start=now, last_seen=now
                    )
                else:
                    record.count += 1
                    record.last_seen = now
                    record.blocked = record.count > self._config.max_attempts

                await self._cache.set_json(
                    key,
                    record.to_dict(),
                    ttl=ms_to_seconds(self._config.window_ms),
                    tags=[TAG],
                )
        except CacheUnavailableError:
            return self._unavailable(now, "record_failed_attempt")

        if record.blocked:
            logger.warning(
                f"Authentication blocked after {record.count} failed attempts",
                extra={"stage": "auth_limit"},
            )
        return AuthAttemptResult(
            allowed=not record.blocked,
            remaining=max(0, self._config.max_attempts - record.count),
            reset_time=record.window_start + self._config.window_ms,
            total_attempts=record.count,
            blocked=record.blocked,
        )

    async def record_successful_attempt(self, identity: str, address: str) -> None:
        """Forget every failure for the pair after a successful login."""
        key = self._key(identity, address)
        async with self._locks.hold(key):
            await self._cache.delete(key)

    async def is_blocked(self, identity: str, address: str) -> bool:
        """Blocked flag for the pair; elapsed records are evicted on the way."""
        now = self._clock.now_ms()
        key = self._key(identity, address)
        try:
            async with self._locks.hold(key):
                record = await self._load(key)
                if record is not None and not self._is_live(record, now):
                    await self._cache.delete(key)
        except CacheUnavailableError:
            return self._unavailable(now, "is_blocked").blocked

        status = await self.check_status(identity, address)
        return status.blocked

    # ============================================
    # Administration
    # ============================================

    async def reset(self, identity: str, address: str) -> None:
        key = self._key(identity, address)
        async with self._locks.hold(key):
            await self._cache.delete(key)
        logger.info("Auth attempts reset for one identity")

    async def reset_all(self) -> int:
        removed = await self._cache.invalidate_by_tags([TAG])
        logger.info(f"All auth attempt records reset ({removed} entries)")
        return removed

    async def get_stats(self) -> dict[str, Any]:
        """Summary of live records: tracked, blocked, total attempts, oldest."""
        now = self._clock.now_ms()
        tracked = blocked = total = 0
        oldest: Optional[int] = None

        for key in await self._cache.scan(KEY_PREFIX):
            record = await self._load(key)
            if not self._is_live(record, now):
                continue
            tracked += 1
            total += record.count
            if record.blocked or record.count >= self._config.max_attempts:
                blocked += 1
            if oldest is None or record.window_start < oldest:
                oldest = record.window_start

        return {
            "tracked_identifiers": tracked,
            "blocked_count": blocked,
            "total_attempts": total,
            "oldest_attempt": ms_to_iso(oldest),
        }

    # ============================================
    # Background sweep
    # ============================================

    async def sweep(self) -> int:
        """Delete records whose window has elapsed.

        Keys are snapshotted first and each one is re-read under its own lock,
        so live checks only ever wait for a single key's delete.

        Returns:
            Number of records removed
        """
        now = self._clock.now_ms()
        removed = 0
        for key in list(await self._cache.scan(KEY_PREFIX)):
            async with self._locks.hold(key):
                record = await self._load(key)
                if record is not None and not self._is_live(record, now):
                    await self._cache.delete(key)
                    removed += 1
        if removed:
            logger.debug(f"Auth attempt sweep removed {removed} records")
        return removed

    async def start_cleanup(self) -> None:
        """Start the periodic sweep task."""
        if self._cleanup_task is not None:
            return
        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Started auth attempt sweep (interval: {self._cleanup_interval}s)")

    async def stop_cleanup(self) -> None:
        """Stop the periodic sweep task."""
        if self._cleanup_task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        finally:
            self._cleanup_task = None
            logger.info("Stopped auth attempt sweep")

    async def _cleanup_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.sweep()
            except CacheUnavailableError as e:
                logger.error(f"Auth attempt sweep skipped: {e.detail or e.message}")


def build_rate_limit_error(result: AuthAttemptResult, now_ms: int) -> dict[str, Any]:
    """Response body for a blocked authentication attempt."""
    return {
        "success": False,
        "error": "Too many authentication attempts. Please try again later.",
        "code": "RATE_LIMITED",
        "rate_limit_info": {
            "remaining": result.remaining,
            "reset_time": ms_to_iso(result.reset_time),
            "total_attempts": result.total_attempts,
            "retry_after": retry_after_seconds(result.reset_time, now_ms),
        },
    }
