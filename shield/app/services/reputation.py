"""IP reputation registry.

Tracks which source addresses are whitelisted, suspicious or blocked.
Suspicious and blocked states expire after a cool-down. The registry is
process-wide and guarded by a ``threading.Lock`` so it is safe to share with
threadpool-run handlers as well as the event loop.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from shield.app.core.clock import Clock, SystemClock, ms_to_iso
from shield.app.core.logging import get_logger

logger = get_logger(__name__)


class ReputationStatus(str, Enum):
    WHITELISTED = "whitelisted"
    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class ReputationConfig:
    """Escalation thresholds; durations are milliseconds."""
    suspicious_threshold: int = 2
    block_threshold: int = 5
    violation_window_ms: int = 60 * 60 * 1000
    suspicious_ttl_ms: int = 30 * 60 * 1000
    block_ttl_ms: int = 60 * 60 * 1000
    # Full sweep of every address at most this often, on the violation path
    sweep_interval_ms: int = 5 * 60 * 1000


class IPReputationRegistry:
    """Process-wide address reputation with automatic expiry."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        config: Optional[ReputationConfig] = None,
        whitelist: Iterable[str] = (),
    ):
        self._clock = clock or SystemClock()
        self._config = config or ReputationConfig()
        self._lock = threading.Lock()
        self._whitelist: set[str] = set(whitelist)
        # address -> expiry in epoch ms
        self._suspicious: dict[str, int] = {}
        self._blocked: dict[str, int] = {}
        # address -> violation timestamps inside the violation window
        self._violations: dict[str, list[int]] = {}
        self._last_sweep = self._clock.now_ms()

    def _purge_address(self, ip: str, now: int) -> None:
        # Caller holds the lock
        for table in (self._suspicious, self._blocked):
            expires = table.get(ip)
            if expires is not None and expires <= now:
                del table[ip]
        timestamps = self._violations.get(ip)
        if timestamps is None:
            return
        cutoff = now - self._config.violation_window_ms
        kept = [t for t in timestamps if t > cutoff]
        if kept:
            self._violations[ip] = kept
        else:
            del self._violations[ip]

    def _purge(self, now: int) -> int:
        # Caller holds the lock
        removed = 0
        for table in (self._suspicious, self._blocked):
            for ip in [ip for ip, expires in table.items() if expires <= now]:
                del table[ip]
                removed += 1
        cutoff = now - self._config.violation_window_ms
        for ip in list(self._violations):
            kept = [t for t in self._violations[ip] if t > cutoff]
            if kept:
                self._violations[ip] = kept
            else:
                del self._violations[ip]
                removed += 1
        self._last_sweep = now
        return removed

    def sweep(self) -> int:
        """Drop every expired entry across all addresses.

        Returns:
            Number of addresses removed from the suspicious, blocked and
            violation tables
        """
        now = self._clock.now_ms()
        with self._lock:
            removed = self._purge(now)
        if removed:
            logger.debug(f"Reputation sweep removed {removed} entries")
        return removed

    # ============================================
    # Whitelist
    # ============================================

    def add_to_whitelist(self, ip: str) -> None:
        with self._lock:
            self._whitelist.add(ip)
            self._suspicious.pop(ip, None)
            self._blocked.pop(ip, None)
            self._violations.pop(ip, None)
        logger.info("Address added to reputation whitelist", extra={"client_ip": ip})

    def remove_from_whitelist(self, ip: str) -> bool:
        with self._lock:
            if ip not in self._whitelist:
                return False
            self._whitelist.discard(ip)
        return True

    def is_whitelisted(self, ip: str) -> bool:
        with self._lock:
            return ip in self._whitelist

    # ============================================
    # Escalation
    # ============================================

    def record_violation(self, ip: str, reason: str = "violation") -> ReputationStatus:
        """Count a violation and escalate the address when thresholds are crossed."""
        now = self._clock.now_ms()
        with self._lock:
            if ip in self._whitelist:
                return ReputationStatus.WHITELISTED
            if now - self._last_sweep >= self._config.sweep_interval_ms:
                self._purge(now)
            else:
                self._purge_address(ip, now)
            timestamps = self._violations.setdefault(ip, [])
            timestamps.append(now)
            count = len(timestamps)

        if count >= self._config.block_threshold:
            self.block(ip, f"{reason} ({count} violations)")
            return ReputationStatus.BLOCKED
        if count >= self._config.suspicious_threshold:
            self.mark_suspicious(ip)
            return ReputationStatus.SUSPICIOUS
        return self.status(ip)

    def mark_suspicious(self, ip: str, ttl_ms: Optional[int] = None) -> None:
        now = self._clock.now_ms()
        with self._lock:
            if ip in self._whitelist:
                return
            self._suspicious[ip] = now + (ttl_ms or self._config.suspicious_ttl_ms)
        logger.warning("Address marked suspicious", extra={"client_ip": ip, "stage": "reputation"})

    def block(self, ip: str, reason: str = "Rate limit exceeded", ttl_ms: Optional[int] = None) -> None:
        now = self._clock.now_ms()
        with self._lock:
            if ip in self._whitelist:
                return
            self._blocked[ip] = now + (ttl_ms or self._config.block_ttl_ms)
            self._violations.pop(ip, None)
        logger.warning(f"Blocked address: {reason}", extra={"client_ip": ip, "stage": "reputation"})

    def unblock(self, ip: str) -> bool:
        with self._lock:
            removed = self._blocked.pop(ip, None) is not None
            self._suspicious.pop(ip, None)
            self._violations.pop(ip, None)
        if removed:
            logger.info("Unblocked address", extra={"client_ip": ip})
        return removed

    # ============================================
    # Queries
    # ============================================

    def is_blocked(self, ip: str) -> bool:
        return self.status(ip) is ReputationStatus.BLOCKED

    def is_suspicious(self, ip: str) -> bool:
        return self.status(ip) is ReputationStatus.SUSPICIOUS

    def status(self, ip: str) -> ReputationStatus:
        now = self._clock.now_ms()
        with self._lock:
            if ip in self._whitelist:
                return ReputationStatus.WHITELISTED
            self._purge_address(ip, now)
            if ip in self._blocked:
                return ReputationStatus.BLOCKED
            if ip in self._suspicious:
                return ReputationStatus.SUSPICIOUS
        return ReputationStatus.CLEAN

    def violation_count(self, ip: str) -> int:
        now = self._clock.now_ms()
        with self._lock:
            self._purge_address(ip, now)
            return len(self._violations.get(ip, ()))

    def get_stats(self) -> dict:
        now = self._clock.now_ms()
        with self._lock:
            self._purge(now)
            return {
                "blocked_ips": [
                    {"ip": ip, "expires_at": ms_to_iso(expires)}
                    for ip, expires in sorted(self._blocked.items())
                ],
                "suspicious_ips": [
                    {"ip": ip, "expires_at": ms_to_iso(expires)}
                    for ip, expires in sorted(self._suspicious.items())
                ],
                "whitelisted_count": len(self._whitelist),
                "tracked_violations": sum(len(v) for v in self._violations.values()),
            }

    def clear(self) -> None:
        with self._lock:
            self._suspicious.clear()
            self._blocked.clear()
            self._violations.clear()
