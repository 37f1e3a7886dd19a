"""Rate limiting data models.

This module contains dataclasses for rate limit configuration, results and
the per-algorithm state persisted in the cache.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from shield.app.core.clock import ms_to_iso


class Algorithm(str, Enum):
    """Throttling algorithms the engine can apply."""
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    DISTRIBUTED = "distributed"


class RouteClass(str, Enum):
    """Groups of routes sharing one rate limit policy."""
    AUTH = "auth"
    API = "api"
    REPORT = "report"
    DEFAULT = "default"


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit of ``max_requests`` per ``window_ms`` milliseconds."""
    max_requests: int
    window_ms: int
    scope: str = "default"
    message: str = "Rate limit exceeded"

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")


@dataclass(frozen=True)
class RateLimitPolicy:
    """Configuration plus the algorithm that enforces it."""
    config: RateLimitConfig
    algorithm: Algorithm


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``reset_time`` is epoch milliseconds; ``retry_after`` is whole seconds
    and only set on denial.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    total_requests: int
    retry_after: Optional[int] = None

    def __post_init__(self) -> None:
        self.remaining = max(0, self.remaining)

    @property
    def reset_time_iso(self) -> str:
        return ms_to_iso(self.reset_time)

    def to_dict(self) -> dict[str, Any]:
        """Decision payload embedded in HTTP responses."""
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_time": self.reset_time_iso,
            "total_attempts": self.total_requests,
            "blocked": not self.allowed,
        }


@dataclass
class FixedWindowState:
    """Counter for the fixed window starting at ``window_start``."""
    count: int
    window_start: int

    def to_dict(self) -> dict[str, int]:
        return {"count": self.count, "window_start": self.window_start}

    @classmethod
    def from_dict(cls, data: dict) -> "FixedWindowState":
        return cls(count=int(data["count"]), window_start=int(data["window_start"]))


@dataclass
class TokenBucketState:
    """Token bucket state; ``tokens`` stays within ``[0, capacity]``."""
    tokens: float
    last_refill: int

    def to_dict(self) -> dict[str, float]:
        return {"tokens": self.tokens, "last_refill": self.last_refill}

    @classmethod
    def from_dict(cls, data: dict) -> "TokenBucketState":
        return cls(tokens=float(data["tokens"]), last_refill=int(data["last_refill"]))


@dataclass
class SlidingWindowLog:
    """Request timestamps, oldest first, all within the current window."""
    timestamps: list[int] = field(default_factory=list)

    def prune(self, now_ms: int, window_ms: int) -> bool:
        """Drop timestamps older than ``now - window``.

        Returns:
            True if anything was removed
        """
        cutoff = now_ms - window_ms
        kept = [t for t in self.timestamps if t >= cutoff]
        pruned = len(kept) != len(self.timestamps)
        self.timestamps = kept
        return pruned

    def append(self, now_ms: int) -> None:
        # Entries are non-decreasing even if two checks share a timestamp.
        if self.timestamps and now_ms < self.timestamps[-1]:
            now_ms = self.timestamps[-1]
        self.timestamps.append(now_ms)

    def __len__(self) -> int:
        return len(self.timestamps)


@dataclass
class RateLimitStats:
    """Per-identifier counters kept for the admin surface."""
    identifier: str
    requests: int = 0
    blocked: int = 0
    last_request: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "requests": self.requests,
            "blocked": self.blocked,
            "last_request": ms_to_iso(self.last_request),
        }
