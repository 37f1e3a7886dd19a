"""SQL injection detection (defense in depth, not a replacement for bound parameters)."""

from shield.app.services.injection.detector import InjectionDetector
from shield.app.services.injection.models import (
    FieldThreats,
    InjectionPattern,
    ObjectValidationResult,
    RequestValidationResult,
    Severity,
    ThreatMatch,
    ValidationResult,
)
from shield.app.services.injection.patterns import DEFAULT_PATTERNS

__all__ = [
    "InjectionDetector",
    "FieldThreats",
    "InjectionPattern",
    "ObjectValidationResult",
    "RequestValidationResult",
    "Severity",
    "ThreatMatch",
    "ValidationResult",
    "DEFAULT_PATTERNS",
]
