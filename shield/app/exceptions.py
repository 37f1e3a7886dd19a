"""Custom exceptions for the abuse-prevention pipeline.

Every denial the pipeline can produce is a ``ShieldException`` subclass with
an HTTP status code and a stable machine-readable error code. They are all
recoverable at the pipeline boundary: the orchestrator turns them into
structured decisions instead of letting them escape as crashes.
"""

from enum import Enum
from typing import Any, Optional


class ShieldException(Exception):
    """Base class for pipeline exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and error_code for consistent responses.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Request rejected"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.message,
            },
        }


class RateLimitedError(ShieldException):
    """Raised when a caller has exhausted its request quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: Optional[int] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        payload = super().to_response()
        payload["error"]["retry_after"] = self.retry_after
        return payload


class BlockedError(ShieldException):
    """Raised when the source address is on the blocked reputation list.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error_code = "ip_blocked"

    def __init__(
        self,
        ip_address: str = "unknown",
        message: str = "Your IP address has been temporarily blocked due to suspicious activity",
    ):
        self.ip_address = ip_address
        super().__init__(message)


class OriginInvalidError(ShieldException):
    """Raised when neither Origin nor Referer names a trusted origin."""
    status_code = 403
    error_code = "csrf_origin_invalid"

    def __init__(self, reason: str = "Request origin validation failed"):
        self.reason = reason
        super().__init__("Request origin validation failed")


class CSRFFailure(str, Enum):
    """Why a CSRF token was rejected."""
    MISSING_TOKEN = "missing_token"
    TOKEN_NOT_FOUND = "token_not_found"
    SESSION_MISMATCH = "session_mismatch"
    EXPIRED = "expired"
    IP_MISMATCH = "ip_mismatch"
    NO_SESSION = "no_session"


class CSRFTokenInvalidError(ShieldException):
    """Raised when a mutating request carries no valid CSRF token.

    Maps to HTTP 403 Forbidden. ``reason`` tells which check failed.
    """
    status_code = 403
    error_code = "csrf_token_invalid"

    def __init__(self, reason: CSRFFailure = CSRFFailure.TOKEN_NOT_FOUND):
        self.reason = reason
        if reason is CSRFFailure.NO_SESSION:
            self.error_code = "csrf_no_session"
            super().__init__("No valid session found")
        else:
            super().__init__("CSRF token validation failed")

    def to_response(self) -> dict[str, Any]:
        payload = super().to_response()
        payload["error"]["reason"] = self.reason.value
        return payload


class InjectionDetectedError(ShieldException):
    """Raised when a critical-severity injection pattern is found.

    Lower severities never raise; they are logged and sanitized instead.
    """
    status_code = 403
    error_code = "security_violation"

    def __init__(self, fields: Optional[list[str]] = None):
        self.fields = fields or []
        super().__init__("Request blocked due to security policy violation")


class PayloadTooLargeError(ShieldException):
    """Raised when a request body exceeds the configured size limit.

    Maps to HTTP 413 Payload Too Large.
    """
    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"Request body too large. Maximum allowed: {max_size} bytes")


class CacheUnavailableError(ShieldException):
    """Raised when the cache backend times out or errors.

    This signals infrastructure degradation rather than abuse, so callers
    log it separately and apply their own fail-open/fail-closed policy.
    """
    status_code = 503
    error_code = "cache_unavailable"

    def __init__(self, operation: str = "unknown", detail: str = ""):
        self.operation = operation
        self.detail = detail
        super().__init__("Security service temporarily unavailable")
