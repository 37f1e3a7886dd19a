"""Rate limiting engine and its algorithms."""

from shield.app.services.rate_limit.engine import RateLimitEngine, default_instance_id
from shield.app.services.rate_limit.models import (
    Algorithm,
    RateLimitConfig,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitStats,
    RouteClass,
)

__all__ = [
    "RateLimitEngine",
    "default_instance_id",
    "Algorithm",
    "RateLimitConfig",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitStats",
    "RouteClass",
]
