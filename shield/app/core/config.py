import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(raw: Any) -> list[str]:
    """Parse a list setting given as JSON or as a comma/space separated string."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate plain values so a misconfigured deployment
    # does not crash at startup.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    parts = [p.strip("'\"") for p in re.split(r"[,\s]+", raw) if p]

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if not part or part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


def _parse_origins(raw: Any) -> list[str]:
    origins: list[str] = []
    for item in _parse_list(raw):
        if "://" in item or item.startswith("*."):
            origins.append(item)
            continue
        # Browsers include the scheme in the Origin header, so a bare host
        # is trusted over both HTTP and HTTPS.
        origins.append(f"http://{item}")
        origins.append(f"https://{item}")
    return list(dict.fromkeys(origins))


ALGORITHM_NAMES = ("fixed_window", "sliding_window", "token_bucket", "distributed")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Cache settings
    cache_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    cache_timeout_ms: int = 50  # Upper bound for any single cache call

    # Failure policy when the cache is unavailable
    rate_limit_fail_closed: bool = True
    rate_limit_stats_max_entries: int = 10_000  # Per-identifier stats kept for the admin surface
    csrf_fail_closed: bool = True

    # Rate limit policies per route class
    auth_rate_limit_max_requests: int = 5
    auth_rate_limit_window_ms: int = 15 * 60 * 1000
    auth_rate_limit_algorithm: str = "sliding_window"

    api_rate_limit_max_requests: int = 100
    api_rate_limit_window_ms: int = 60 * 1000
    api_rate_limit_algorithm: str = "token_bucket"

    report_rate_limit_max_requests: int = 10
    report_rate_limit_window_ms: int = 60 * 60 * 1000
    report_rate_limit_algorithm: str = "fixed_window"

    default_rate_limit_max_requests: int = 300
    default_rate_limit_window_ms: int = 60 * 1000
    default_rate_limit_algorithm: str = "sliding_window"

    # Emergency mode limits (applied together when emergency mode is on)
    emergency_auth_max_requests: int = 2
    emergency_auth_window_ms: int = 5 * 60 * 1000
    emergency_api_max_requests: int = 20
    emergency_api_window_ms: int = 60 * 1000
    emergency_report_max_requests: int = 2
    emergency_report_window_ms: int = 60 * 60 * 1000
    emergency_default_max_requests: int = 60
    emergency_default_window_ms: int = 60 * 1000

    # Distributed (fair-share) rate limiting
    instance_id: str = ""  # Empty = derived from hostname and pid
    distributed_max_instances: int = 10

    # Authentication attempt limiter
    auth_max_attempts: int = 5
    auth_window_ms: int = 15 * 60 * 1000
    auth_cleanup_interval_seconds: float = 300.0
    emergency_auth_max_attempts: int = 2
    emergency_auth_window_ms: int = 5 * 60 * 1000

    # CSRF protection
    csrf_token_bytes: int = 32
    csrf_token_ttl_seconds: int = 24 * 60 * 60
    csrf_header_name: str = "x-csrf-token"
    csrf_cookie_name: str = "csrf-token"
    csrf_cookie_same_site: str = "strict"
    csrf_cookie_secure: bool = False
    csrf_cookie_http_only: bool = False  # Client JS must be able to read it
    csrf_strict_ip: bool = False
    csrf_secret: str = ""  # Cookie signing secret
    csrf_trusted_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000"]
    session_cookie_names: Annotated[list[str], NoDecode] = [
        "next-auth.session-token",
        "__Secure-next-auth.session-token",
        "session-id",
    ]

    # Injection detection
    injection_max_input_length: int = 10_000
    max_request_body_bytes: int = 1024 * 1024  # Larger bodies are rejected with 413

    # IP reputation
    reputation_suspicious_threshold: int = 2
    reputation_block_threshold: int = 5
    reputation_violation_window_seconds: int = 60 * 60
    reputation_suspicious_ttl_seconds: int = 30 * 60
    reputation_block_ttl_seconds: int = 60 * 60
    reputation_whitelist: Annotated[list[str], NoDecode] = []

    # Route classification by path prefix
    auth_path_prefixes: Annotated[list[str], NoDecode] = ["/api/auth", "/auth"]
    report_path_prefixes: Annotated[list[str], NoDecode] = ["/api/reports"]
    api_path_prefixes: Annotated[list[str], NoDecode] = ["/api"]
    csrf_exempt_path_prefixes: Annotated[list[str], NoDecode] = ["/csrf/token"]
    exempt_path_prefixes: Annotated[list[str], NoDecode] = ["/health", "/admin"]
    identity_header: str = "x-user-id"
    trust_forwarded_headers: bool = True

    # Admin surface
    admin_token: str = ""

    @field_validator("csrf_trusted_origins", mode="before")
    @classmethod
    def decode_trusted_origins(cls, v: Any) -> list[str]:
        return _parse_origins(v)

    @field_validator(
        "session_cookie_names",
        "reputation_whitelist",
        "auth_path_prefixes",
        "report_path_prefixes",
        "exempt_path_prefixes",
        "api_path_prefixes",
        "csrf_exempt_path_prefixes",
        mode="before",
    )
    @classmethod
    def decode_lists(cls, v: Any) -> list[str]:
        return _parse_list(v)

    @field_validator(
        "auth_rate_limit_max_requests",
        "api_rate_limit_max_requests",
        "report_rate_limit_max_requests",
        "default_rate_limit_max_requests",
        "emergency_auth_max_requests",
        "emergency_api_max_requests",
        "emergency_report_max_requests",
        "emergency_default_max_requests",
        "auth_max_attempts",
        "emergency_auth_max_attempts",
        "distributed_max_instances",
        "rate_limit_stats_max_entries",
    )
    @classmethod
    def validate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "auth_rate_limit_window_ms",
        "api_rate_limit_window_ms",
        "report_rate_limit_window_ms",
        "default_rate_limit_window_ms",
        "emergency_auth_window_ms",
        "emergency_api_window_ms",
        "emergency_report_window_ms",
        "emergency_default_window_ms",
        "auth_window_ms",
        "cache_timeout_ms",
        "max_request_body_bytes",
    )
    @classmethod
    def validate_window_positive(cls, v: int) -> int:
        """Validate window, timeout and size values are positive."""
        if v <= 0:
            raise ValueError("Window, timeout and size values must be positive")
        return v

    @field_validator(
        "auth_rate_limit_algorithm",
        "api_rate_limit_algorithm",
        "report_rate_limit_algorithm",
        "default_rate_limit_algorithm",
    )
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Validate algorithm names and accept dashed spellings."""
        normalized = v.strip().lower().replace("-", "_")
        if normalized not in ALGORITHM_NAMES:
            raise ValueError(f"Unknown rate limit algorithm: {v}")
        return normalized

    @field_validator("csrf_token_bytes")
    @classmethod
    def validate_token_entropy(cls, v: int) -> int:
        """CSRF tokens need at least 128 bits of entropy."""
        if v < 16:
            raise ValueError("csrf_token_bytes must be at least 16")
        return v

    @field_validator("cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in ("memory", "redis"):
            raise ValueError("cache_backend must be 'memory' or 'redis'")
        return normalized

    @field_validator("reputation_block_threshold")
    @classmethod
    def validate_block_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("reputation_block_threshold must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
