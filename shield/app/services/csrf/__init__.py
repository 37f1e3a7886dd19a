"""CSRF token manager with origin validation."""

from shield.app.services.csrf.manager import CSRFManager
from shield.app.services.csrf.models import (
    CSRFConfig,
    CSRFDecision,
    CSRFToken,
    CSRFValidation,
    IssuedToken,
    OriginCheck,
)
from shield.app.services.csrf.origin import is_trusted_origin, validate_origin

__all__ = [
    "CSRFManager",
    "CSRFConfig",
    "CSRFDecision",
    "CSRFToken",
    "CSRFValidation",
    "IssuedToken",
    "OriginCheck",
    "is_trusted_origin",
    "validate_origin",
]
