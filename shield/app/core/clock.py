"""Time and window math shared by every throttling algorithm.

All timestamps in the pipeline are integer milliseconds taken from a single
clock instance, so counters, buckets and tokens never disagree about "now".
"""

import math
import time
from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Source of the current time in epoch milliseconds."""

    def now_ms(self) -> int:
        ...


class SystemClock:
    """Wall clock that never moves backwards.

    The epoch offset is captured once at construction and then advanced with
    ``time.monotonic()``, so NTP steps or manual clock changes cannot shrink
    a window and lock callers out.
    """

    def __init__(self) -> None:
        self._epoch_ms = time.time() * 1000.0
        self._anchor = time.monotonic()

    def now_ms(self) -> int:
        return int(self._epoch_ms + (time.monotonic() - self._anchor) * 1000.0)


class ManualClock:
    """Clock driven by hand, for deterministic tests and simulations."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = int(start_ms)

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: float) -> int:
        self._now += int(ms)
        return self._now

    def set(self, ms: int) -> None:
        self._now = int(ms)


def fixed_window_start(now_ms: int, window_ms: int) -> int:
    """Start of the fixed window containing ``now_ms``."""
    return (now_ms // window_ms) * window_ms


def window_elapsed(start_ms: int, now_ms: int, window_ms: int) -> bool:
    """True once a window that began at ``start_ms`` lies fully in the past."""
    return start_ms < now_ms - window_ms


def retry_after_seconds(reset_ms: int, now_ms: int) -> int:
    """Seconds until ``reset_ms``, rounded up and never negative."""
    return max(0, math.ceil((reset_ms - now_ms) / 1000))


def ms_to_iso(ms: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds as an ISO-8601 UTC timestamp."""
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat(
        timespec="milliseconds"
    ).replace("+00:00", "Z")


def ms_to_seconds(ms: int) -> float:
    """Convert a millisecond duration to a cache TTL in seconds."""
    return ms / 1000.0
