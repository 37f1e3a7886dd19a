"""Injection detector models."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class InjectionPattern:
    """A detection rule. Rules are evaluated in list order."""
    pattern_id: str
    regex: re.Pattern
    severity: Severity
    description: str


@dataclass(frozen=True)
class ThreatMatch:
    pattern_id: str
    severity: Severity
    description: str
    matched_text: str

    def to_dict(self) -> dict[str, str]:
        return {
            "pattern_id": self.pattern_id,
            "severity": self.severity.value,
            "description": self.description,
            "matched_text": self.matched_text,
        }


def has_critical(threats: list[ThreatMatch]) -> bool:
    return any(t.severity is Severity.CRITICAL for t in threats)


@dataclass
class ValidationResult:
    """Outcome for a single value.

    ``is_valid`` is False only when a critical pattern matched; lower
    severities are reported in ``threats`` and neutralized in
    ``sanitized_value``.
    """
    is_valid: bool
    threats: list[ThreatMatch] = field(default_factory=list)
    sanitized_value: Any = None


@dataclass
class FieldThreats:
    """Threats found at one field path such as ``user.tags[0]``."""
    field: str
    threats: list[ThreatMatch]
    source: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {"field": self.field, "threats": [t.to_dict() for t in self.threats]}
        if self.source:
            data["source"] = self.source
        return data


@dataclass
class ObjectValidationResult:
    is_valid: bool
    sanitized_object: Any
    threats: list[FieldThreats] = field(default_factory=list)


@dataclass
class RequestValidationResult:
    is_valid: bool
    sanitized_body: Any = None
    sanitized_query: Any = None
    threats: list[FieldThreats] = field(default_factory=list)

    @property
    def critical_fields(self) -> list[str]:
        return [
            f"{t.source}.{t.field}" if t.source else t.field
            for t in self.threats
            if has_critical(t.threats)
        ]
