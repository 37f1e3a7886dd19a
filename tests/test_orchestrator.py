"""Tests for the security orchestrator's stage ordering and decisions."""

import pytest
from unittest.mock import AsyncMock

from shield.app.container import build_services
from shield.app.exceptions import (
    BlockedError,
    CacheUnavailableError,
    CSRFTokenInvalidError,
    InjectionDetectedError,
    OriginInvalidError,
    RateLimitedError,
)
from shield.app.services.orchestrator import RequestContext, Stage
from shield.app.services.rate_limit import RouteClass

ORIGIN = "http://localhost:3000"


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


def _ctx(**kwargs):
    defaults = {"ip_address": "1.1.1.1", "method": "GET", "path": "/api/items"}
    defaults.update(kwargs)
    return RequestContext(**defaults)


class TestRouteClassification:
    @pytest.mark.parametrize(
        ("path", "route_class"),
        [
            ("/api/auth/login", RouteClass.AUTH),
            ("/auth", RouteClass.AUTH),
            ("/api/reports/monthly", RouteClass.REPORT),
            ("/api/items", RouteClass.API),
            ("/api", RouteClass.API),
            ("/apiary", RouteClass.DEFAULT),
            ("/", RouteClass.DEFAULT),
        ],
    )
    def test_classify(self, orchestrator, path, route_class):
        assert orchestrator.classify_route(path) is route_class

    def test_rate_limit_identifier(self):
        assert _ctx().rate_limit_identifier == "ip:1.1.1.1"
        assert _ctx(identity="42").rate_limit_identifier == "user:42"


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_allowed_request(self, orchestrator):
        decision = await orchestrator.evaluate(_ctx())

        assert decision.allowed is True
        assert decision.stage is Stage.COMPLETE
        assert decision.route_class is RouteClass.API
        assert decision.status_code == 200
        headers = decision.headers()
        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "99"

    @pytest.mark.asyncio
    async def test_blocked_ip_short_circuits(self, orchestrator, services):
        services.reputation.block("1.1.1.1", "test")

        decision = await orchestrator.evaluate(_ctx(query={"q": "' OR '1'='1"}))

        assert decision.stage is Stage.REPUTATION
        assert isinstance(decision.error, BlockedError)
        assert decision.status_code == 403
        assert decision.headers()["X-Blocked-IP"] == "1.1.1.1"
        # Later stages never ran
        assert services.engine.get_stats()["total_requests"] == 0
        assert services.detector.get_stats()["validations"] == 0

    @pytest.mark.asyncio
    async def test_injection_denied_before_rate_limit(self, orchestrator, services):
        decision = await orchestrator.evaluate(_ctx(query={"id": "1 UNION SELECT password"}))

        assert decision.stage is Stage.INJECTION
        assert isinstance(decision.error, InjectionDetectedError)
        assert decision.error.fields == ["query.id"]
        assert decision.error_code == "security_violation"
        assert services.reputation.violation_count("1.1.1.1") == 1
        assert services.engine.get_stats()["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_low_severity_input_is_sanitized(self, orchestrator):
        decision = await orchestrator.evaluate(_ctx(query={"name": "admin'--"}))

        assert decision.allowed is True
        assert decision.sanitized_query == {"name": "admin''"}
        assert decision.threats[0].field == "name"

    @pytest.mark.asyncio
    async def test_auth_attempts_block_login(self, orchestrator, services):
        for _ in range(5):
            await services.auth_limiter.record_failed_attempt("alice", "1.1.1.1")

        decision = await orchestrator.evaluate(
            _ctx(method="GET", path="/api/auth/login", identity="alice")
        )

        assert decision.stage is Stage.RATE_LIMIT
        assert isinstance(decision.error, RateLimitedError)
        assert decision.status_code == 429
        assert decision.retry_after == 15 * 60
        assert decision.to_response()["decision"]["total_attempts"] == 5
        assert decision.headers()["Retry-After"] == str(15 * 60)

    @pytest.mark.asyncio
    async def test_rate_limit_exceeded(self, orchestrator):
        for _ in range(10):
            assert (await orchestrator.evaluate(_ctx(path="/api/reports/x"))).allowed

        decision = await orchestrator.evaluate(_ctx(path="/api/reports/x"))

        assert decision.stage is Stage.RATE_LIMIT
        assert decision.message == "Report generation limit exceeded. Please try again later."
        assert decision.retry_after > 0
        body = decision.to_response()
        assert body["success"] is False
        assert body["error"]["code"] == "rate_limit_exceeded"
        assert body["decision"]["blocked"] is True

    @pytest.mark.asyncio
    async def test_repeated_violations_block_address(self, orchestrator, services):
        for _ in range(10):
            await orchestrator.evaluate(_ctx(path="/api/reports/x"))
        for _ in range(5):
            await orchestrator.evaluate(_ctx(path="/api/reports/x"))

        assert services.reputation.is_blocked("1.1.1.1")
        decision = await orchestrator.evaluate(_ctx())
        assert decision.stage is Stage.REPUTATION

    @pytest.mark.asyncio
    async def test_cache_outage_fails_closed(self, settings, clock, broken_cache):
        services = build_services(settings, clock=clock, cache=broken_cache)

        decision = await services.orchestrator.evaluate(_ctx())

        assert decision.allowed is False
        assert decision.stage is Stage.RATE_LIMIT
        assert isinstance(decision.error, CacheUnavailableError)
        assert decision.status_code == 503


class TestCSRFStage:
    @pytest.mark.asyncio
    async def test_mutation_without_origin(self, orchestrator):
        decision = await orchestrator.evaluate(_ctx(method="POST", session_id="s1"))

        assert decision.stage is Stage.CSRF
        assert isinstance(decision.error, OriginInvalidError)
        # The request was still counted by the rate limiter
        assert decision.rate_limit is not None

    @pytest.mark.asyncio
    async def test_mutation_without_token(self, orchestrator):
        decision = await orchestrator.evaluate(
            _ctx(method="POST", session_id="s1", headers={"origin": ORIGIN})
        )

        assert isinstance(decision.error, CSRFTokenInvalidError)
        assert decision.error.to_response()["error"]["reason"] == "missing_token"

    @pytest.mark.asyncio
    async def test_mutation_with_token_in_body(self, orchestrator, services):
        token = await services.csrf.generate("s1")

        decision = await orchestrator.evaluate(
            _ctx(
                method="PUT",
                session_id="s1",
                headers={"origin": ORIGIN},
                body={"csrfToken": token, "name": "widget"},
            )
        )

        assert decision.allowed is True
        assert decision.sanitized_body["name"] == "widget"

    @pytest.mark.asyncio
    async def test_token_endpoint_is_exempt(self, orchestrator):
        decision = await orchestrator.evaluate(_ctx(method="POST", path="/csrf/token"))
        assert decision.allowed is True


class TestRun:
    @pytest.mark.asyncio
    async def test_handler_runs_when_allowed(self, orchestrator):
        handler = AsyncMock(return_value="ok")

        assert await orchestrator.run(_ctx(), handler) == "ok"
        handler.assert_awaited_once()
        assert handler.call_args.args[0].allowed is True

    @pytest.mark.asyncio
    async def test_handler_skipped_when_denied(self, orchestrator, services):
        services.reputation.block("1.1.1.1")
        handler = AsyncMock()

        with pytest.raises(BlockedError):
            await orchestrator.run(_ctx(), handler)
        handler.assert_not_awaited()


class TestEmergencyMode:
    def test_tightens_rate_and_auth_limits(self, orchestrator, services):
        orchestrator.enable_emergency_mode()

        assert orchestrator.emergency_mode is True
        assert services.auth_limiter.config.max_attempts == 2
        assert services.engine.policy_for(RouteClass.API).config.max_requests == 20

        orchestrator.disable_emergency_mode()

        assert orchestrator.emergency_mode is False
        assert services.auth_limiter.config.max_attempts == 5

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator):
        await orchestrator.evaluate(_ctx())

        stats = await orchestrator.get_stats()

        assert set(stats) == {"emergency_mode", "rate_limit", "auth_attempts", "reputation", "injection", "csrf"}
        assert stats["rate_limit"]["total_requests"] == 1
        assert stats["csrf"]["trusted_origins"] == [ORIGIN]
