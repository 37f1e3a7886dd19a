"""Core utilities for the abuse-prevention pipeline."""

from shield.app.core.cache import (
    CacheBackend,
    GuardedCache,
    InMemoryCache,
    RedisCache,
    create_cache,
)
from shield.app.core.clock import Clock, ManualClock, SystemClock
from shield.app.core.config import Settings
from shield.app.core.logging import get_logger, setup_logging
from shield.app.core.utils import render_template

__all__ = [
    "CacheBackend",
    "GuardedCache",
    "InMemoryCache",
    "RedisCache",
    "create_cache",
    "Clock",
    "ManualClock",
    "SystemClock",
    "Settings",
    "get_logger",
    "setup_logging",
    "render_template",
]
