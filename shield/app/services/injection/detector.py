"""SQL injection pattern detector and sanitizer.

This is a heuristic defense-in-depth layer. It is NOT a substitute for
parameterized queries in the data layer: anything that builds SQL must still
bind values as parameters.

Only critical-severity matches invalidate input. Lower severities are logged
and the value is returned sanitized, so legitimate text that happens to
contain words like "select" is not rejected.
"""

import re
from collections import Counter
from typing import Any, Optional, Union

from shield.app.core.logging import get_logger
from shield.app.core.utils import render_template
from shield.app.services.injection.models import (
    FieldThreats,
    InjectionPattern,
    ObjectValidationResult,
    RequestValidationResult,
    Severity,
    ThreatMatch,
    ValidationResult,
    has_critical,
)
from shield.app.services.injection.patterns import (
    COMMENT_RE,
    CONDITION_RE,
    DEFAULT_PATTERNS,
    KEYWORD_RE,
    strip_block_comments,
)
from shield.app.services.injection.values import (
    ArrayValue,
    JsonValue,
    ObjectValue,
    StringValue,
    ValueVisitor,
    child_path,
    from_python,
    index_path,
    to_python,
)

logger = get_logger(__name__)

CRITICAL_ALERT = "Critical SQL injection patterns detected in {{context}}: {{descriptions}}"
WARNING_ALERT = "Suspicious SQL patterns detected in {{context}}: {{descriptions}} ({{count}} threats)"

OVERSIZED_PATTERN_ID = "oversized_input"


class _SanitizingVisitor(ValueVisitor[JsonValue]):
    """Validates every string leaf and rebuilds a sanitized clone."""

    def __init__(self, detector: "InjectionDetector", context: str):
        self._detector = detector
        self._context = context
        self.threats: list[FieldThreats] = []
        self.is_valid = True

    def visit_string(self, value, path):
        context = f"{self._context}.{path}" if path else self._context
        result = self._detector.validate(value.value, context)
        if result.threats:
            self.threats.append(FieldThreats(field=path, threats=result.threats))
        if not result.is_valid:
            self.is_valid = False
        return StringValue(result.sanitized_value)

    def visit_number(self, value, path):
        return value

    def visit_bool(self, value, path):
        return value

    def visit_null(self, value, path):
        return value

    def visit_object(self, value, path):
        return ObjectValue({k: v.accept(self, child_path(path, k)) for k, v in value.items.items()})

    def visit_array(self, value, path):
        return ArrayValue([item.accept(self, index_path(path, i)) for i, item in enumerate(value.items)])


class InjectionDetector:
    """Rule-driven matcher and sanitizer for string payloads."""

    def __init__(
        self,
        patterns: Optional[list[InjectionPattern]] = None,
        max_input_length: int = 10000,
    ):
        self._patterns: list[InjectionPattern] = list(patterns if patterns is not None else DEFAULT_PATTERNS)
        self._max_input_length = max_input_length
        self._stats: Counter = Counter()

    # ============================================
    # Scanning
    # ============================================

    def scan(self, text: str) -> list[ThreatMatch]:
        """All rule matches in ``text``, in rule order."""
        threats = []
        for rule in self._patterns:
            match = rule.regex.search(text)
            if match:
                threats.append(
                    ThreatMatch(
                        pattern_id=rule.pattern_id,
                        severity=rule.severity,
                        description=rule.description,
                        matched_text=match.group(0),
                    )
                )
        return threats

    @staticmethod
    def neutralize(text: str) -> str:
        """Unconditionally apply every sanitizing transform."""
        text = COMMENT_RE.sub("", strip_block_comments(text))
        text = text.replace("'", "''")
        text = text.replace(";", "")
        text = KEYWORD_RE.sub(lambda m: f"[{m.group(0)}]", text)
        text = CONDITION_RE.sub(lambda m: f"[{m.group(0)}]", text)
        return text

    def sanitize(self, text: str) -> str:
        """Sanitize ``text`` if any rule matches it; benign text is returned as is.

        Examples:
            >>> InjectionDetector().sanitize("' OR '1'='1")
            "'' [OR] ''1''=''1"
        """
        if len(text) > self._max_input_length or self.scan(text):
            return self.neutralize(text)
        return text

    def validate(self, value: Any, context: str = "unknown") -> ValidationResult:
        """Classify a single value.

        Non-strings pass untouched. Oversized strings are scanned on a prefix
        and always sanitized.
        """
        if not isinstance(value, str):
            return ValidationResult(is_valid=True, threats=[], sanitized_value=value)

        self._stats["validations"] += 1
        oversized = len(value) > self._max_input_length
        threats = self.scan(value[: self._max_input_length] if oversized else value)
        if oversized:
            threats.append(
                ThreatMatch(
                    pattern_id=OVERSIZED_PATTERN_ID,
                    severity=Severity.MEDIUM,
                    description="Input exceeds maximum length; only a prefix was scanned",
                    matched_text=f"{len(value)} characters",
                )
            )

        if not threats:
            return ValidationResult(is_valid=True, threats=[], sanitized_value=value)

        is_valid = not has_critical(threats)
        self._record(threats, context, is_valid)
        return ValidationResult(
            is_valid=is_valid,
            threats=threats,
            sanitized_value=self.neutralize(value),
        )

    def _record(self, threats: list[ThreatMatch], context: str, is_valid: bool) -> None:
        for threat in threats:
            self._stats[f"severity:{threat.severity.value}"] += 1
        self._stats["threats_detected"] += len(threats)

        if not is_valid:
            self._stats["blocked"] += 1
            critical = [t for t in threats if t.severity is Severity.CRITICAL]
            logger.error(
                render_template(
                    CRITICAL_ALERT,
                    {"context": context, "descriptions": ", ".join(t.description for t in critical)},
                ),
                extra={"stage": "injection", "error_code": "security_violation"},
            )
        else:
            logger.warning(
                render_template(
                    WARNING_ALERT,
                    {
                        "context": context,
                        "descriptions": ", ".join(t.description for t in threats),
                        "count": len(threats),
                    },
                ),
                extra={"stage": "injection"},
            )

    # ============================================
    # Structured payloads
    # ============================================

    def validate_object(self, obj: Any, context: str = "object") -> ObjectValidationResult:
        """Validate every string in a nested payload.

        Field paths use ``a.b[0]`` notation. A critical match anywhere marks
        the whole object invalid.
        """
        value = from_python(obj)
        visitor = _SanitizingVisitor(self, context)
        sanitized = value.accept(visitor)
        return ObjectValidationResult(
            is_valid=visitor.is_valid,
            sanitized_object=to_python(sanitized),
            threats=visitor.threats,
        )

    def validate_request(self, body: Any = None, query: Any = None) -> RequestValidationResult:
        """Validate a request body and query separately."""
        result = RequestValidationResult(is_valid=True)

        for source, payload in (("body", body), ("query", query)):
            if payload is None:
                continue
            checked = self.validate_object(payload, source)
            if source == "body":
                result.sanitized_body = checked.sanitized_object
            else:
                result.sanitized_query = checked.sanitized_object
            for field_threats in checked.threats:
                field_threats.source = source
                result.threats.append(field_threats)
            if not checked.is_valid:
                result.is_valid = False

        return result

    # ============================================
    # Rule management
    # ============================================

    def add_pattern(
        self,
        pattern_id: str,
        regex: Union[str, re.Pattern],
        severity: Severity,
        description: str,
    ) -> None:
        compiled = regex if isinstance(regex, re.Pattern) else re.compile(regex, re.IGNORECASE)
        self._patterns.append(InjectionPattern(pattern_id, compiled, Severity(severity), description))
        logger.info(f"Added injection pattern: {pattern_id}")

    def remove_pattern(self, pattern_id: str) -> bool:
        """Remove the first rule whose id or description equals ``pattern_id``."""
        for index, rule in enumerate(self._patterns):
            if pattern_id in (rule.pattern_id, rule.description):
                del self._patterns[index]
                logger.info(f"Removed injection pattern: {rule.pattern_id}")
                return True
        return False

    @property
    def patterns(self) -> list[InjectionPattern]:
        return list(self._patterns)

    def get_stats(self) -> dict[str, Any]:
        return {
            "patterns_count": len(self._patterns),
            "validations": self._stats["validations"],
            "threats_detected": self._stats["threats_detected"],
            "blocked": self._stats["blocked"],
            "by_severity": {s.value: self._stats[f"severity:{s.value}"] for s in Severity},
            "patterns": [
                {"pattern_id": p.pattern_id, "severity": p.severity.value, "description": p.description}
                for p in self._patterns
            ],
        }
