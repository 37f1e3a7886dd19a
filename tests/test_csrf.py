"""Tests for CSRF token issuance, validation and origin checks."""

import pytest

from shield.app.exceptions import (
    CacheUnavailableError,
    CSRFFailure,
    CSRFTokenInvalidError,
    OriginInvalidError,
)
from shield.app.services.csrf import CSRFConfig, CSRFManager
from shield.app.services.csrf.origin import (
    is_trusted_origin,
    origin_from_url,
    validate_origin,
)

TRUSTED = "http://localhost:3000"


@pytest.fixture
def manager(cache, clock):
    return CSRFManager(
        cache,
        clock=clock,
        config=CSRFConfig(token_ttl_seconds=3600, trusted_origins=[TRUSTED]),
        secret="test-secret",
    )


class TestOriginValidation:
    def test_exact_match(self):
        assert is_trusted_origin("http://localhost:3000", [TRUSTED])
        assert is_trusted_origin("HTTP://LOCALHOST:3000/", [TRUSTED])
        assert not is_trusted_origin("http://localhost:3001", [TRUSTED])

    def test_wildcard_matches_subdomains_only(self):
        trusted = ["*.example.com"]

        assert is_trusted_origin("https://app.example.com", trusted)
        assert is_trusted_origin("https://a.b.example.com", trusted)
        assert not is_trusted_origin("https://evilexample.com", trusted)
        assert not is_trusted_origin("https://example.com.evil.net", trusted)

    def test_bare_wildcard_accepts_any_scheme(self):
        assert is_trusted_origin("http://app.example.com", ["*.example.com"])

    def test_wildcard_with_scheme(self):
        trusted = ["https://*.example.com"]

        assert is_trusted_origin("https://app.example.com", trusted)
        assert not is_trusted_origin("http://app.example.com", trusted)
        assert not is_trusted_origin("https://evilexample.com", trusted)

    def test_wildcard_with_port(self):
        trusted = ["https://*.example.com:8443"]

        assert is_trusted_origin("https://app.example.com:8443", trusted)
        assert not is_trusted_origin("https://app.example.com", trusted)

    def test_missing_headers(self):
        check = validate_origin(None, None, [TRUSTED])
        assert check.valid is False
        assert check.reason == "Missing origin and referer headers"

    def test_untrusted_origin(self):
        check = validate_origin("https://evil.com", None, [TRUSTED])
        assert check.valid is False
        assert check.reason == "Untrusted origin: https://evil.com"

    def test_origin_takes_precedence_over_referer(self):
        check = validate_origin("https://evil.com", f"{TRUSTED}/page", [TRUSTED])
        assert check.valid is False

    def test_referer_fallback(self):
        assert validate_origin(None, f"{TRUSTED}/settings?tab=1", [TRUSTED]).valid is True

        check = validate_origin(None, "https://evil.com/page", [TRUSTED])
        assert check.reason == "Untrusted referer: https://evil.com"

    def test_malformed_referer(self):
        check = validate_origin(None, "not a url", [TRUSTED])
        assert check.valid is False
        assert check.reason == "Invalid referer header"

    def test_origin_from_url(self):
        assert origin_from_url("https://App.Example.com:8443/path") == "https://app.example.com:8443"
        assert origin_from_url("/relative/path") is None


class TestTokenLifecycle:
    @pytest.mark.asyncio
    async def test_generated_token_has_required_entropy(self, manager):
        token = await manager.generate("session-1")
        assert len(token) == 64
        assert token != await manager.generate("session-1")

    @pytest.mark.asyncio
    async def test_validation_is_repeatable(self, manager):
        token = await manager.generate("session-1")

        first = await manager.validate(token, "session-1")
        second = await manager.validate(token, "session-1")

        assert first.valid is True
        assert second.valid is True

    @pytest.mark.asyncio
    async def test_missing_token(self, manager):
        result = await manager.validate(None, "session-1")
        assert result.reason is CSRFFailure.MISSING_TOKEN

    @pytest.mark.asyncio
    async def test_unknown_token(self, manager):
        result = await manager.validate("deadbeef", "session-1")
        assert result.reason is CSRFFailure.TOKEN_NOT_FOUND

    @pytest.mark.asyncio
    async def test_session_mismatch(self, manager):
        token = await manager.generate("session-1")
        result = await manager.validate(token, "session-2")
        assert result.reason is CSRFFailure.SESSION_MISMATCH

    @pytest.mark.asyncio
    async def test_expired_token_is_invalidated(self, cache, clock):
        # Stored entry outlives the token so the age check itself is exercised
        manager = CSRFManager(cache, clock=clock, config=CSRFConfig(token_ttl_seconds=10))
        token = await manager.generate("session-1")
        await cache.set_json(
            f"csrf:{token}",
            {"token": token, "session_id": "session-1", "created_at": clock.now_ms()},
            ttl=60,
        )
        clock.advance(10_001)

        result = await manager.validate(token, "session-1")
        assert result.reason is CSRFFailure.EXPIRED
        assert (await manager.validate(token, "session-1")).reason is CSRFFailure.TOKEN_NOT_FOUND

    @pytest.mark.asyncio
    async def test_cache_expiry_removes_token(self, manager, clock):
        token = await manager.generate("session-1")
        clock.advance(3_600_001)

        result = await manager.validate(token, "session-1")
        assert result.valid is False

    @pytest.mark.asyncio
    async def test_user_agent_mismatch_only_warns(self, manager):
        token = await manager.generate("session-1", user_agent="Firefox")
        result = await manager.validate(token, "session-1", user_agent="Chrome")
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_strict_ip_binding(self, cache, clock):
        manager = CSRFManager(cache, clock=clock, config=CSRFConfig(strict_ip=True))
        token = await manager.generate("session-1", ip_address="1.1.1.1")

        assert (await manager.validate(token, "session-1", ip_address="1.1.1.1")).valid is True
        result = await manager.validate(token, "session-1", ip_address="2.2.2.2")
        assert result.reason is CSRFFailure.IP_MISMATCH

    @pytest.mark.asyncio
    async def test_ip_change_allowed_without_strict_mode(self, manager):
        token = await manager.generate("session-1", ip_address="1.1.1.1")
        assert (await manager.validate(token, "session-1", ip_address="2.2.2.2")).valid is True

    @pytest.mark.asyncio
    async def test_invalidate(self, manager):
        token = await manager.generate("session-1")
        await manager.invalidate(token)
        assert (await manager.validate(token, "session-1")).valid is False

    @pytest.mark.asyncio
    async def test_invalidate_all_for_session(self, manager):
        tokens = [await manager.generate("session-1") for _ in range(3)]
        other = await manager.generate("session-2")

        assert await manager.invalidate_all_for_session("session-1") == 3
        for token in tokens:
            assert (await manager.validate(token, "session-1")).valid is False
        assert (await manager.validate(other, "session-2")).valid is True


class TestTokenExtraction:
    def test_header_first(self, manager):
        token = manager.extract_token({"X-CSRF-Token": "from-header"}, {"csrfToken": "from-body"})
        assert token == "from-header"

    def test_body_fields(self, manager):
        assert manager.extract_token({}, {"csrfToken": "a"}) == "a"
        assert manager.extract_token({}, {"_token": "b"}) == "b"
        assert manager.extract_token({}, {"csrfToken": 123}) is None
        assert manager.extract_token({}, None) is None


class TestProtect:
    @pytest.mark.asyncio
    async def test_safe_methods_skip_checks(self, manager):
        for method in ("GET", "head", "OPTIONS"):
            decision = await manager.protect(method, {}, None, None)
            assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_origin_checked_before_token(self, manager):
        token = await manager.generate("session-1")

        decision = await manager.protect(
            "POST", {"origin": "https://evil.com", "x-csrf-token": token}, None, "session-1"
        )

        assert decision.allowed is False
        assert isinstance(decision.error, OriginInvalidError)
        assert decision.error_code == "csrf_origin_invalid"

    @pytest.mark.asyncio
    async def test_valid_origin_still_needs_token(self, manager):
        decision = await manager.protect("POST", {"origin": TRUSTED}, None, "session-1")

        assert decision.allowed is False
        assert isinstance(decision.error, CSRFTokenInvalidError)
        assert decision.error.reason is CSRFFailure.MISSING_TOKEN

    @pytest.mark.asyncio
    async def test_no_session(self, manager):
        decision = await manager.protect("POST", {"origin": TRUSTED}, None, None)
        assert decision.error_code == "csrf_no_session"
        assert decision.error.message == "No valid session found"

    @pytest.mark.asyncio
    async def test_valid_request(self, manager):
        token = await manager.generate("session-1")

        decision = await manager.protect(
            "DELETE", {"Origin": TRUSTED}, {"_token": token}, "session-1"
        )
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_fail_closed_on_cache_outage(self, broken_cache, clock):
        manager = CSRFManager(broken_cache, clock=clock, config=CSRFConfig(trusted_origins=[TRUSTED]))

        decision = await manager.protect(
            "POST", {"origin": TRUSTED, "x-csrf-token": "abc"}, None, "session-1"
        )

        assert decision.allowed is False
        assert isinstance(decision.error, CacheUnavailableError)

    @pytest.mark.asyncio
    async def test_fail_open_on_cache_outage(self, broken_cache, clock):
        manager = CSRFManager(
            broken_cache,
            clock=clock,
            config=CSRFConfig(trusted_origins=[TRUSTED]),
            fail_closed=False,
        )

        decision = await manager.protect(
            "POST", {"origin": TRUSTED, "x-csrf-token": "abc"}, None, "session-1"
        )
        assert decision.allowed is True


class TestClientIssuance:
    def test_cookie_attributes(self, cache, clock):
        manager = CSRFManager(
            cache,
            clock=clock,
            config=CSRFConfig(token_ttl_seconds=600, secure=True, http_only=True),
        )

        cookie = manager.build_cookie("abc")

        assert cookie.startswith("csrf-token=abc.")
        assert "Max-Age=600" in cookie
        assert "SameSite=Strict" in cookie
        assert "Path=/" in cookie
        assert "Secure" in cookie
        assert "HttpOnly" in cookie

    def test_default_cookie_is_script_readable(self, manager):
        cookie = manager.build_cookie("abc")
        assert "HttpOnly" not in cookie
        assert "Secure" not in cookie

    def test_read_cookie_verifies_signature(self, manager):
        value = manager.build_cookie("abc").split(";")[0].split("=", 1)[1]

        assert manager.read_cookie(value) == "abc"
        assert manager.read_cookie("abc.forged") is None
        assert manager.read_cookie(None) is None

    @pytest.mark.asyncio
    async def test_issue_creates_session_when_missing(self, manager):
        issued = await manager.issue_for_client(None)

        assert issued.new_session is True
        assert issued.session_id
        assert (await manager.validate(issued.token, issued.session_id)).valid is True

    @pytest.mark.asyncio
    async def test_issue_rotates_previous_token(self, manager):
        first = await manager.issue_for_client("session-1")
        previous_cookie = first.cookie.split(";")[0].split("=", 1)[1]

        second = await manager.issue_for_client("session-1", previous_cookie=previous_cookie)

        assert second.new_session is False
        assert (await manager.validate(first.token, "session-1")).valid is False
        assert (await manager.validate(second.token, "session-1")).valid is True


class TestConfiguration:
    def test_trusted_origins_are_normalized(self, manager):
        manager.add_trusted_origin("HTTPS://App.Example.com/")
        manager.add_trusted_origin("https://app.example.com")

        origins = manager.get_config()["trusted_origins"]
        assert origins.count("https://app.example.com") == 1

        assert manager.remove_trusted_origin("https://app.example.com") is True
        assert manager.remove_trusted_origin("https://app.example.com") is False

    def test_get_config(self, manager):
        config = manager.get_config()
        assert config["header_name"] == "x-csrf-token"
        assert config["body_token_fields"] == ["csrfToken", "_token"]
