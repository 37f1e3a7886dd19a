"""Origin and Referer validation against a trusted-origin allowlist."""

from typing import Iterable, Optional
from urllib.parse import urlsplit

from shield.app.services.csrf.models import OriginCheck


def normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/").lower()


def origin_from_url(url: str) -> Optional[str]:
    """Return ``scheme://host[:port]`` for a URL, or None if it is malformed."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}".lower()


def _wildcard_match(origin: str, pattern: str) -> bool:
    # pattern is "*.host", "scheme://*.host" or either with ":port"
    scheme = None
    if "://" in pattern:
        scheme, _, pattern = pattern.partition("://")
    if not pattern.startswith("*."):
        return False
    port = None
    suffix, sep, maybe_port = pattern[2:].rpartition(":")
    if sep and maybe_port.isdigit():
        pattern, port = "*." + suffix, int(maybe_port)

    try:
        parts = urlsplit(origin)
        host = parts.hostname or ""
        origin_port = parts.port
    except ValueError:
        return False
    if scheme is not None and parts.scheme != scheme:
        return False
    if port is not None and origin_port != port:
        return False
    return host.endswith("." + pattern[2:])


def is_trusted_origin(origin: Optional[str], trusted_origins: Iterable[str]) -> bool:
    """Exact match, or a wildcard entry matching any subdomain.

    ``*.example.com`` accepts a subdomain of example.com over any scheme;
    ``https://*.example.com`` also requires the scheme, and a trailing
    ``:port`` requires that port. Wildcards compare the parsed hostname on
    a label boundary, so ``https://evilexample.com`` does not match
    ``*.example.com``.
    """
    if not origin:
        return False
    origin = normalize_origin(origin)

    for trusted in trusted_origins:
        trusted = normalize_origin(trusted)
        if trusted == origin:
            return True
        if "*." in trusted and _wildcard_match(origin, trusted):
            return True
    return False


def validate_origin(
    origin: Optional[str],
    referer: Optional[str],
    trusted_origins: Iterable[str],
) -> OriginCheck:
    """Check the Origin header, falling back to the Referer's origin."""
    trusted_origins = list(trusted_origins)

    if not origin and not referer:
        return OriginCheck(False, "Missing origin and referer headers")

    if origin:
        if not is_trusted_origin(origin, trusted_origins):
            return OriginCheck(False, f"Untrusted origin: {origin}")
        return OriginCheck(True)

    referer_origin = origin_from_url(referer)
    if referer_origin is None:
        return OriginCheck(False, "Invalid referer header")
    if not is_trusted_origin(referer_origin, trusted_origins):
        return OriginCheck(False, f"Untrusted referer: {referer_origin}")
    return OriginCheck(True)
