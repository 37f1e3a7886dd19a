"""CSRF data models."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from shield.app.exceptions import CSRFFailure, ShieldException

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


@dataclass
class CSRFConfig:
    """Token, cookie and origin policy for the CSRF manager."""
    token_bytes: int = 32
    token_ttl_seconds: int = 24 * 60 * 60
    header_name: str = "x-csrf-token"
    cookie_name: str = "csrf-token"
    same_site: str = "strict"
    secure: bool = False
    http_only: bool = False
    strict_ip: bool = False
    ignore_methods: tuple[str, ...] = SAFE_METHODS
    body_token_fields: tuple[str, ...] = ("csrfToken", "_token")
    trusted_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["ignore_methods"] = list(self.ignore_methods)
        data["body_token_fields"] = list(self.body_token_fields)
        return data


@dataclass
class CSRFToken:
    """Stored metadata for an issued token."""
    token: str
    session_id: str
    created_at: int
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CSRFToken":
        return cls(
            token=data["token"],
            session_id=data["session_id"],
            created_at=int(data["created_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )


@dataclass(frozen=True)
class CSRFValidation:
    valid: bool
    reason: Optional[CSRFFailure] = None


@dataclass(frozen=True)
class OriginCheck:
    valid: bool
    reason: Optional[str] = None


@dataclass
class CSRFDecision:
    """Outcome of ``CSRFManager.protect``; ``error`` is set on denial."""
    allowed: bool
    error: Optional[ShieldException] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None


@dataclass(frozen=True)
class IssuedToken:
    """A freshly issued token plus the ``Set-Cookie`` value carrying it."""
    token: str
    cookie: str
    session_id: str
    new_session: bool = False
