"""Composition root.

Every service is constructed here from ``Settings`` and handed to the
application through ``app.state``. Nothing in the pipeline is a module-level
singleton, so tests build a fresh set of services per case.
"""

from dataclasses import dataclass
from typing import Optional

from shield.app.core.cache import CacheBackend, create_cache
from shield.app.core.clock import Clock, SystemClock
from shield.app.core.config import Settings
from shield.app.services.auth_limiter import AuthAttemptConfig, AuthAttemptLimiter
from shield.app.services.csrf import CSRFConfig, CSRFManager
from shield.app.services.injection import InjectionDetector
from shield.app.services.orchestrator import RoutingConfig, SecurityOrchestrator
from shield.app.services.rate_limit import (
    Algorithm,
    RateLimitConfig,
    RateLimitEngine,
    RateLimitPolicy,
    RouteClass,
)
from shield.app.services.reputation import IPReputationRegistry, ReputationConfig

_MESSAGES = {
    RouteClass.AUTH: "Too many authentication attempts. Please try again later.",
    RouteClass.API: "API rate limit exceeded. Please slow down.",
    RouteClass.REPORT: "Report generation limit exceeded. Please try again later.",
    RouteClass.DEFAULT: "Rate limit exceeded. Please try again later.",
}


@dataclass
class SecurityServices:
    """Everything the HTTP layer needs, with process-wide lifetime."""
    settings: Settings
    clock: Clock
    cache: CacheBackend
    engine: RateLimitEngine
    auth_limiter: AuthAttemptLimiter
    csrf: CSRFManager
    detector: InjectionDetector
    reputation: IPReputationRegistry
    orchestrator: SecurityOrchestrator

    async def start(self) -> None:
        await self.auth_limiter.start_cleanup()

    async def shutdown(self) -> None:
        await self.auth_limiter.stop_cleanup()
        await self.cache.close()


def build_policies(settings: Settings, emergency: bool = False) -> dict[RouteClass, RateLimitPolicy]:
    """Route-class policy table from settings.

    Emergency policies reuse each class's algorithm with the tightened
    limits and windows.
    """
    policies = {}
    for route_class in RouteClass:
        name = route_class.value
        algorithm = Algorithm(getattr(settings, f"{name}_rate_limit_algorithm"))
        if emergency:
            max_requests = getattr(settings, f"emergency_{name}_max_requests")
            window_ms = getattr(settings, f"emergency_{name}_window_ms")
        else:
            max_requests = getattr(settings, f"{name}_rate_limit_max_requests")
            window_ms = getattr(settings, f"{name}_rate_limit_window_ms")
        policies[route_class] = RateLimitPolicy(
            config=RateLimitConfig(
                max_requests=max_requests,
                window_ms=window_ms,
                scope=name,
                message=_MESSAGES[route_class],
            ),
            algorithm=algorithm,
        )
    return policies


def build_services(
    settings: Settings,
    clock: Optional[Clock] = None,
    cache: Optional[CacheBackend] = None,
) -> SecurityServices:
    """Wire every pipeline service from ``settings``.

    Args:
        settings: Application settings
        clock: Shared time source; defaults to the system clock
        cache: Pre-built cache; defaults to the configured backend
    """
    clock = clock or SystemClock()
    cache = cache or create_cache(
        backend=settings.cache_backend,
        redis_url=settings.redis_url,
        timeout_ms=settings.cache_timeout_ms,
        clock=clock,
    )

    engine = RateLimitEngine(
        cache,
        clock=clock,
        policies=build_policies(settings),
        emergency_policies=build_policies(settings, emergency=True),
        instance_id=settings.instance_id or None,
        max_instances=settings.distributed_max_instances,
        fail_closed=settings.rate_limit_fail_closed,
        max_stats_entries=settings.rate_limit_stats_max_entries,
    )

    auth_limiter = AuthAttemptLimiter(
        cache,
        clock=clock,
        config=AuthAttemptConfig(
            max_attempts=settings.auth_max_attempts,
            window_ms=settings.auth_window_ms,
        ),
        cleanup_interval=settings.auth_cleanup_interval_seconds,
        fail_closed=settings.rate_limit_fail_closed,
    )

    csrf = CSRFManager(
        cache,
        clock=clock,
        config=CSRFConfig(
            token_bytes=settings.csrf_token_bytes,
            token_ttl_seconds=settings.csrf_token_ttl_seconds,
            header_name=settings.csrf_header_name,
            cookie_name=settings.csrf_cookie_name,
            same_site=settings.csrf_cookie_same_site,
            secure=settings.csrf_cookie_secure,
            http_only=settings.csrf_cookie_http_only,
            strict_ip=settings.csrf_strict_ip,
            trusted_origins=list(settings.csrf_trusted_origins),
        ),
        secret=settings.csrf_secret,
        fail_closed=settings.csrf_fail_closed,
    )

    detector = InjectionDetector(max_input_length=settings.injection_max_input_length)

    reputation = IPReputationRegistry(
        clock=clock,
        config=ReputationConfig(
            suspicious_threshold=settings.reputation_suspicious_threshold,
            block_threshold=settings.reputation_block_threshold,
            violation_window_ms=settings.reputation_violation_window_seconds * 1000,
            suspicious_ttl_ms=settings.reputation_suspicious_ttl_seconds * 1000,
            block_ttl_ms=settings.reputation_block_ttl_seconds * 1000,
        ),
        whitelist=settings.reputation_whitelist,
    )

    orchestrator = SecurityOrchestrator(
        engine=engine,
        auth_limiter=auth_limiter,
        csrf=csrf,
        detector=detector,
        reputation=reputation,
        clock=clock,
        routing=RoutingConfig(
            auth_prefixes=tuple(settings.auth_path_prefixes),
            report_prefixes=tuple(settings.report_path_prefixes),
            api_prefixes=tuple(settings.api_path_prefixes),
            csrf_exempt_prefixes=tuple(settings.csrf_exempt_path_prefixes),
        ),
        emergency_auth_config=AuthAttemptConfig(
            max_attempts=settings.emergency_auth_max_attempts,
            window_ms=settings.emergency_auth_window_ms,
        ),
    )

    return SecurityServices(
        settings=settings,
        clock=clock,
        cache=cache,
        engine=engine,
        auth_limiter=auth_limiter,
        csrf=csrf,
        detector=detector,
        reputation=reputation,
        orchestrator=orchestrator,
    )
