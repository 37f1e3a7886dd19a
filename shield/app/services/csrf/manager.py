"""CSRF token manager.

Tokens move through Issued -> Validated (any number of times) ->
Expired/Invalidated. Origin validation and token validation are independent
gates and a mutating request must pass both.
"""

import uuid
from typing import Any, Mapping, Optional

from shield.app.core.cache import CacheBackend
from shield.app.core.clock import Clock, SystemClock
from shield.app.core.logging import get_logger
from shield.app.core.security import (
    derive_signing_key,
    generate_token,
    hash_identifier,
    sign_value,
    unsign_value,
)
from shield.app.exceptions import (
    CacheUnavailableError,
    CSRFFailure,
    CSRFTokenInvalidError,
    OriginInvalidError,
)
from shield.app.services.csrf.models import (
    CSRFConfig,
    CSRFDecision,
    CSRFToken,
    CSRFValidation,
    IssuedToken,
    OriginCheck,
)
from shield.app.services.csrf.origin import normalize_origin, validate_origin

logger = get_logger(__name__)

TOKEN_PREFIX = "csrf:"
TAG_ALL = "csrf"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _session_tag(session_id: str) -> str:
    return f"csrf:session:{hash_identifier(session_id)}"


class CSRFManager:
    """Issues and validates per-session anti-forgery tokens."""

    def __init__(
        self,
        cache: CacheBackend,
        clock: Optional[Clock] = None,
        config: Optional[CSRFConfig] = None,
        secret: str = "",
        fail_closed: bool = True,
    ):
        self._cache = cache
        self._clock = clock or SystemClock()
        self._config = config or CSRFConfig()
        self._signing_key = derive_signing_key(secret)
        self._fail_closed = fail_closed

    # ============================================
    # Token lifecycle
    # ============================================

    async def generate(
        self,
        session_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """Issue a new token bound to ``session_id``."""
        token = generate_token(self._config.token_bytes)
        record = CSRFToken(
            token=token,
            session_id=session_id,
            created_at=self._clock.now_ms(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        await self._cache.set_json(
            TOKEN_PREFIX + token,
            record.to_dict(),
            ttl=self._config.token_ttl_seconds,
            tags=[TAG_ALL, _session_tag(session_id)],
        )
        return token

    async def validate(
        self,
        token: Optional[str],
        session_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CSRFValidation:
        """Check a token against its stored metadata.

        Validation is repeatable: a valid token stays valid until it expires
        or is invalidated.
        """
        if not token:
            return CSRFValidation(False, CSRFFailure.MISSING_TOKEN)

        data = await self._cache.get_json(TOKEN_PREFIX + token)
        if data is None:
            return CSRFValidation(False, CSRFFailure.TOKEN_NOT_FOUND)
        record = CSRFToken.from_dict(data)

        if record.session_id != session_id:
            return CSRFValidation(False, CSRFFailure.SESSION_MISMATCH)

        if self._clock.now_ms() - record.created_at > self._config.token_ttl_seconds * 1000:
            await self.invalidate(token)
            return CSRFValidation(False, CSRFFailure.EXPIRED)

        if record.user_agent and user_agent and record.user_agent != user_agent:
            logger.warning(
                "CSRF token user agent mismatch",
                extra={"stage": "csrf", "client_ip": ip_address or "unknown"},
            )

        if self._config.strict_ip and record.ip_address and ip_address:
            if record.ip_address != ip_address:
                return CSRFValidation(False, CSRFFailure.IP_MISMATCH)

        return CSRFValidation(True)

    async def invalidate(self, token: str) -> None:
        await self._cache.delete(TOKEN_PREFIX + token)

    async def invalidate_all_for_session(self, session_id: str) -> int:
        """Invalidate every token issued to ``session_id``."""
        removed = await self._cache.invalidate_by_tags([_session_tag(session_id)])
        logger.info(f"Invalidated {removed} CSRF tokens for a session")
        return removed

    # ============================================
    # Request protection
    # ============================================

    def validate_origin(self, origin: Optional[str], referer: Optional[str]) -> OriginCheck:
        return validate_origin(origin, referer, self._config.trusted_origins)

    def extract_token(
        self,
        headers: Mapping[str, str],
        body: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """Token from the CSRF header, else from a known body field."""
        token = _header(headers, self._config.header_name)
        if token:
            return token
        if body:
            for field_name in self._config.body_token_fields:
                value = body.get(field_name)
                if isinstance(value, str) and value:
                    return value
        return None

    async def protect(
        self,
        method: str,
        headers: Mapping[str, str],
        body: Optional[Mapping[str, Any]],
        session_id: Optional[str],
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CSRFDecision:
        """Run the origin gate then the token gate for a mutating request."""
        if method.upper() in self._config.ignore_methods:
            return CSRFDecision(True)

        origin_check = self.validate_origin(_header(headers, "origin"), _header(headers, "referer"))
        if not origin_check.valid:
            logger.warning(
                f"CSRF origin validation failed: {origin_check.reason}",
                extra={"stage": "csrf", "error_code": "csrf_origin_invalid"},
            )
            return CSRFDecision(False, OriginInvalidError(origin_check.reason))

        if not session_id:
            return CSRFDecision(False, CSRFTokenInvalidError(CSRFFailure.NO_SESSION))

        token = self.extract_token(headers, body)
        try:
            validation = await self.validate(token, session_id, user_agent, ip_address)
        except CacheUnavailableError as e:
            if self._fail_closed:
                logger.error(
                    "CSRF fail-closed triggered: cache unavailable",
                    extra={"stage": "csrf", "error_code": "cache_unavailable"},
                )
                return CSRFDecision(False, e)
            logger.warning(
                "CSRF fail-open triggered: cache unavailable, token not checked",
                extra={"stage": "csrf", "error_code": "cache_unavailable"},
            )
            return CSRFDecision(True)

        if not validation.valid:
            logger.warning(
                f"CSRF token validation failed: {validation.reason.value}",
                extra={"stage": "csrf", "error_code": "csrf_token_invalid"},
            )
            return CSRFDecision(False, CSRFTokenInvalidError(validation.reason))
        return CSRFDecision(True)

    # ============================================
    # Client issuance
    # ============================================

    def build_cookie(self, token: str) -> str:
        """``Set-Cookie`` value carrying the signed token."""
        parts = [
            f"{self._config.cookie_name}={sign_value(self._signing_key, token)}",
            f"Max-Age={self._config.token_ttl_seconds}",
            f"SameSite={self._config.same_site.capitalize()}",
            "Path=/",
        ]
        if self._config.secure:
            parts.append("Secure")
        if self._config.http_only:
            parts.append("HttpOnly")
        return "; ".join(parts)

    def read_cookie(self, value: Optional[str]) -> Optional[str]:
        """Token from a signed cookie value, or None if the signature fails."""
        if not value:
            return None
        return unsign_value(self._signing_key, value)

    async def issue_for_client(
        self,
        session_id: Optional[str],
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        previous_cookie: Optional[str] = None,
    ) -> IssuedToken:
        """Issue a token for a browser, rotating the one in ``previous_cookie``.

        A caller without a session gets a fresh session id so the token is
        still bound to something the next request can present.
        """
        new_session = not session_id
        if new_session:
            session_id = str(uuid.uuid4())

        previous = self.read_cookie(previous_cookie)
        if previous:
            await self.invalidate(previous)

        token = await self.generate(session_id, user_agent, ip_address)
        return IssuedToken(
            token=token,
            cookie=self.build_cookie(token),
            session_id=session_id,
            new_session=new_session,
        )

    # ============================================
    # Configuration
    # ============================================

    @property
    def cookie_name(self) -> str:
        return self._config.cookie_name

    def get_config(self) -> dict[str, Any]:
        return self._config.to_dict()

    def add_trusted_origin(self, origin: str) -> None:
        origin = normalize_origin(origin)
        if origin not in self._config.trusted_origins:
            self._config.trusted_origins.append(origin)
            logger.info(f"Added trusted origin: {origin}")

    def remove_trusted_origin(self, origin: str) -> bool:
        origin = normalize_origin(origin)
        if origin not in self._config.trusted_origins:
            return False
        self._config.trusted_origins.remove(origin)
        logger.info(f"Removed trusted origin: {origin}")
        return True
