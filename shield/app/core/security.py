import base64
import hashlib
import secrets

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


def hash_identifier(raw: str, length: int = 32) -> str:
    """Hash an identifier (API key, IP address, email) for use in cache keys.

    Raw identifiers never appear in cache keys or logs. 32 hex chars keep
    128 bits for collision resistance.

    Args:
        raw: The identifier to hash
        length: Number of hex characters to keep

    Returns:
        Truncated SHA256 hex digest
    """
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:length]


def generate_token(nbytes: int = 32) -> str:
    """Generate a random hex token with ``nbytes`` bytes of entropy."""
    return secrets.token_hex(nbytes)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking timing information."""
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ============================================
# Cookie signing
# ============================================


def derive_signing_key(secret: str) -> bytes:
    """Derive a 32-byte HMAC key from the configured secret.

    An empty secret yields a random per-process key, which means signed
    cookies do not survive a restart. Set CSRF_SECRET in production.
    """
    if not secret:
        return secrets.token_bytes(32)

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"abuseshield-cookie-signing",
        iterations=100000,
    )
    return kdf.derive(secret.encode("utf-8"))


def _signature(key: bytes, value: str) -> bytes:
    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(value.encode("utf-8"))
    return mac.finalize()


def sign_value(key: bytes, value: str) -> str:
    """Return ``value.signature`` with a URL-safe base64 HMAC-SHA256 signature."""
    sig = base64.urlsafe_b64encode(_signature(key, value)).rstrip(b"=").decode()
    return f"{value}.{sig}"


def unsign_value(key: bytes, signed: str) -> str | None:
    """Verify a value produced by ``sign_value``.

    Returns:
        The original value, or None when the signature does not verify
    """
    value, sep, sig = signed.rpartition(".")
    if not sep or not value:
        return None
    try:
        raw_sig = base64.urlsafe_b64decode(sig + "=" * (-len(sig) % 4))
    except (ValueError, TypeError):
        return None

    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(value.encode("utf-8"))
    try:
        mac.verify(raw_sig)
    except InvalidSignature:
        return None
    return value
