"""Security orchestrator.

Runs every request through the stages in a fixed order:

    reputation -> injection -> rate limit -> CSRF -> handler

The first stage that denies ends evaluation; later stages never run and so
never record side effects for a request that was already rejected.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from shield.app.core.clock import Clock, SystemClock, retry_after_seconds
from shield.app.core.logging import get_log_context, get_logger
from shield.app.core.security import hash_identifier
from shield.app.exceptions import (
    BlockedError,
    CacheUnavailableError,
    InjectionDetectedError,
    RateLimitedError,
    ShieldException,
)
from shield.app.services.auth_limiter import (
    AuthAttemptConfig,
    AuthAttemptLimiter,
    AuthAttemptResult,
)
from shield.app.services.csrf import CSRFManager
from shield.app.services.csrf.models import SAFE_METHODS
from shield.app.services.injection import FieldThreats, InjectionDetector
from shield.app.services.rate_limit import RateLimitEngine, RateLimitResult, RouteClass
from shield.app.services.reputation import IPReputationRegistry

logger = get_logger(__name__)

T = TypeVar("T")


class Stage(str, Enum):
    REPUTATION = "reputation"
    INJECTION = "injection"
    RATE_LIMIT = "rate_limit"
    CSRF = "csrf"
    COMPLETE = "complete"


@dataclass
class RequestContext:
    """Identifying attributes of one request."""
    ip_address: str
    method: str
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    query: Optional[Mapping[str, Any]] = None
    identity: Optional[str] = None
    session_id: Optional[str] = None
    route_class: Optional[RouteClass] = None
    user_agent: Optional[str] = None

    @property
    def rate_limit_identifier(self) -> str:
        return f"user:{self.identity}" if self.identity else f"ip:{self.ip_address}"


@dataclass
class PipelineDecision:
    """Outcome of evaluating a request.

    ``stage`` names the stage that denied, or ``complete`` when every stage
    passed.
    """
    allowed: bool
    stage: Stage
    route_class: RouteClass
    error: Optional[ShieldException] = None
    rate_limit: Optional[RateLimitResult] = None
    auth_status: Optional[AuthAttemptResult] = None
    threats: list[FieldThreats] = field(default_factory=list)
    sanitized_body: Any = None
    sanitized_query: Any = None
    retry_after: Optional[int] = None

    @property
    def status_code(self) -> int:
        return self.error.status_code if self.error else 200

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def to_response(self) -> dict[str, Any]:
        """JSON body for a denial, with the decision payload embedded."""
        payload = self.error.to_response() if self.error else {"success": True}
        if self.rate_limit is not None:
            payload["decision"] = self.rate_limit.to_dict()
        elif self.auth_status is not None:
            payload["decision"] = self.auth_status.to_dict()
        return payload

    def headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.rate_limit is not None:
            headers["X-RateLimit-Limit"] = str(self.rate_limit.limit)
            headers["X-RateLimit-Remaining"] = str(self.rate_limit.remaining)
            headers["X-RateLimit-Reset"] = str(self.rate_limit.reset_time // 1000)
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        if isinstance(self.error, BlockedError):
            headers["X-Blocked-IP"] = self.error.ip_address
        return headers


@dataclass(frozen=True)
class RoutingConfig:
    """Path prefixes that decide a request's route class."""
    auth_prefixes: Sequence[str] = ("/api/auth", "/auth")
    report_prefixes: Sequence[str] = ("/api/reports",)
    api_prefixes: Sequence[str] = ("/api",)
    csrf_exempt_prefixes: Sequence[str] = ("/csrf/token",)


def _matches(path: str, prefixes: Sequence[str]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


class SecurityOrchestrator:
    """Composes reputation, injection, rate limit and CSRF checks."""

    def __init__(
        self,
        engine: RateLimitEngine,
        auth_limiter: AuthAttemptLimiter,
        csrf: CSRFManager,
        detector: InjectionDetector,
        reputation: IPReputationRegistry,
        clock: Optional[Clock] = None,
        routing: Optional[RoutingConfig] = None,
        emergency_auth_config: Optional[AuthAttemptConfig] = None,
    ):
        self.engine = engine
        self.auth_limiter = auth_limiter
        self.csrf = csrf
        self.detector = detector
        self.reputation = reputation
        self._clock = clock or SystemClock()
        self._routing = routing or RoutingConfig()
        self._default_auth_config = auth_limiter.config
        self._emergency_auth_config = emergency_auth_config or AuthAttemptConfig(
            max_attempts=2, window_ms=5 * 60 * 1000
        )

    def classify_route(self, path: str) -> RouteClass:
        for prefixes, route_class in (
            (self._routing.auth_prefixes, RouteClass.AUTH),
            (self._routing.report_prefixes, RouteClass.REPORT),
            (self._routing.api_prefixes, RouteClass.API),
        ):
            if _matches(path, prefixes):
                return route_class
        return RouteClass.DEFAULT

    # ============================================
    # Pipeline
    # ============================================

    async def evaluate(self, ctx: RequestContext) -> PipelineDecision:
        """Run the stages in order and stop at the first denial."""
        route_class = ctx.route_class or self.classify_route(ctx.path)
        log_extra = get_log_context(
            client_ip=ctx.ip_address,
            identity=hash_identifier(ctx.identity, 12) if ctx.identity else None,
            route_class=route_class.value,
            path=ctx.path,
            method=ctx.method,
        )

        def deny(stage: Stage, error: ShieldException, **kwargs: Any) -> PipelineDecision:
            decision = PipelineDecision(
                allowed=False, stage=stage, route_class=route_class, error=error, **kwargs
            )
            extra = {**log_extra, "stage": stage.value, "error_code": error.error_code}
            if isinstance(error, CacheUnavailableError):
                logger.error(f"Request denied at {stage.value}: cache unavailable", extra=extra)
            else:
                logger.warning(f"Request denied at {stage.value}: {error.message}", extra=extra)
            return decision

        # Reputation
        if self.reputation.is_blocked(ctx.ip_address):
            return deny(Stage.REPUTATION, BlockedError(ctx.ip_address))

        # Injection
        inspection = self.detector.validate_request(ctx.body, ctx.query)
        if not inspection.is_valid:
            self.reputation.record_violation(ctx.ip_address, "Injection attempt")
            return deny(
                Stage.INJECTION,
                InjectionDetectedError(inspection.critical_fields),
                threats=inspection.threats,
            )

        # Rate limiting
        now = self._clock.now_ms()
        if route_class is RouteClass.AUTH and ctx.identity:
            auth_status = await self.auth_limiter.check_status(ctx.identity, ctx.ip_address)
            if not auth_status.allowed:
                self.reputation.record_violation(ctx.ip_address, "Multiple authentication failures")
                retry_after = retry_after_seconds(auth_status.reset_time, now)
                return deny(
                    Stage.RATE_LIMIT,
                    RateLimitedError(
                        "Too many authentication attempts. Please try again later.",
                        retry_after=retry_after,
                    ),
                    auth_status=auth_status,
                    retry_after=retry_after,
                )

        try:
            result = await self.engine.check_route(ctx.rate_limit_identifier, route_class)
        except CacheUnavailableError as e:
            return deny(Stage.RATE_LIMIT, e)

        if not result.allowed:
            self.reputation.record_violation(ctx.ip_address, "Rate limit exceeded")
            message = self.engine.policy_for(route_class).config.message
            return deny(
                Stage.RATE_LIMIT,
                RateLimitedError(message, retry_after=result.retry_after),
                rate_limit=result,
                retry_after=result.retry_after,
            )

        # CSRF
        if ctx.method.upper() not in SAFE_METHODS and not _matches(
            ctx.path, self._routing.csrf_exempt_prefixes
        ):
            body = inspection.sanitized_body if isinstance(ctx.body, Mapping) else None
            csrf_decision = await self.csrf.protect(
                ctx.method,
                ctx.headers,
                body,
                ctx.session_id,
                user_agent=ctx.user_agent,
                ip_address=ctx.ip_address,
            )
            if not csrf_decision.allowed:
                return deny(Stage.CSRF, csrf_decision.error, rate_limit=result)

        return PipelineDecision(
            allowed=True,
            stage=Stage.COMPLETE,
            route_class=route_class,
            rate_limit=result,
            threats=inspection.threats,
            sanitized_body=inspection.sanitized_body,
            sanitized_query=inspection.sanitized_query,
        )

    async def run(
        self,
        ctx: RequestContext,
        handler: Callable[[PipelineDecision], Awaitable[T]],
    ) -> T:
        """Evaluate ``ctx`` and invoke ``handler`` only when it is allowed.

        Raises:
            ShieldException: The denying stage's error
        """
        decision = await self.evaluate(ctx)
        if not decision.allowed:
            raise decision.error
        return await handler(decision)

    # ============================================
    # Emergency mode
    # ============================================

    @property
    def emergency_mode(self) -> bool:
        return self.engine.emergency_mode

    def enable_emergency_mode(self) -> None:
        """Tighten route policies and auth attempt limits together."""
        self.engine.enable_emergency_mode()
        self.auth_limiter.apply_config(self._emergency_auth_config)

    def disable_emergency_mode(self) -> None:
        self.engine.disable_emergency_mode()
        self.auth_limiter.apply_config(self._default_auth_config)

    async def get_stats(self) -> dict[str, Any]:
        return {
            "emergency_mode": self.emergency_mode,
            "rate_limit": self.engine.get_stats(),
            "auth_attempts": await self.auth_limiter.get_stats(),
            "reputation": self.reputation.get_stats(),
            "injection": self.detector.get_stats(),
            "csrf": {"trusted_origins": self.csrf.get_config()["trusted_origins"]},
        }
