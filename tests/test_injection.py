"""Tests for the SQL injection detector.

The detector is a heuristic defense-in-depth layer and is not a substitute
for parameterized queries; these tests only pin down its matching and
sanitizing behavior.
"""

import pytest
from unittest.mock import patch

from shield.app.services.injection import InjectionDetector, Severity
from shield.app.services.injection.patterns import DEFAULT_PATTERNS
from shield.app.services.injection.values import (
    ArrayValue,
    NumberValue,
    ObjectValue,
    StringValue,
    from_python,
    to_python,
)


@pytest.fixture
def detector():
    return InjectionDetector(max_input_length=200)


class TestScan:
    @pytest.mark.parametrize(
        ("text", "pattern_id", "severity"),
        [
            ("' OR '1'='1", "classic_condition", Severity.CRITICAL),
            ("' or 1=1", "classic_condition", Severity.CRITICAL),
            ("1 UNION SELECT password FROM users", "union_select", Severity.CRITICAL),
            ("1; DROP TABLE users", "stacked_query", Severity.CRITICAL),
            ("1 AND SLEEP(5)", "time_based_blind", Severity.CRITICAL),
            ("' INTO OUTFILE '/tmp/x", "file_access", Severity.CRITICAL),
            ("admin'--", "comment_sequence", Severity.HIGH),
            ("select * from information_schema.tables", "metadata_schema", Severity.HIGH),
            ("0x414243", "hex_encoding", Severity.MEDIUM),
            ("CHAR(65)", "char_function", Severity.MEDIUM),
            ("SUBSTRING(name, 1, 1)", "string_function", Severity.LOW),
        ],
    )
    def test_detects_pattern(self, detector, text, pattern_id, severity):
        threats = detector.scan(text)

        matched = {t.pattern_id: t.severity for t in threats}
        assert matched.get(pattern_id) is severity

    def test_benign_text(self, detector):
        assert detector.scan("Hello, I would like to order a blue shirt") == []

    def test_rule_order_is_preserved(self, detector):
        threats = detector.scan("1 UNION SELECT 1 --")
        ids = [t.pattern_id for t in threats]
        assert ids == sorted(ids, key=[p.pattern_id for p in DEFAULT_PATTERNS].index)


class TestSanitize:
    def test_benign_string_is_unchanged(self, detector):
        text = "O'Brien likes order by date"
        assert detector.sanitize("plain text, nothing to see") == "plain text, nothing to see"
        # Keyword-only text still matches a rule, so it is sanitized
        assert detector.sanitize(text) != text

    def test_classic_injection_is_neutralized(self, detector):
        sanitized = detector.sanitize("' OR '1'='1")

        assert sanitized == "'' [OR] ''1''=''1"
        assert "'" not in sanitized.replace("''", "")

    def test_comments_and_semicolons_removed(self, detector):
        sanitized = detector.sanitize("1; DROP TABLE users --")

        assert ";" not in sanitized
        assert "--" not in sanitized
        assert "[DROP]" in sanitized

    def test_block_comment_removed_with_contents(self, detector):
        sanitized = detector.neutralize("1 /* hidden */ UNION SELECT 2")

        assert "hidden" not in sanitized
        assert "/*" not in sanitized
        assert "[UNION] [SELECT]" in sanitized

    def test_unterminated_comment_markers_on_large_input(self, detector):
        text = "/* a " * 20_000 + "' OR '1'='1"

        sanitized = detector.neutralize(text)

        assert "/*" not in sanitized
        assert sanitized.endswith("'' [OR] ''1''=''1")

    def test_keyword_case_is_preserved(self, detector):
        assert "[select]" in detector.sanitize("1 union select 2")


class TestValidate:
    def test_non_string_passes(self, detector):
        result = detector.validate(42)
        assert result.is_valid is True
        assert result.sanitized_value == 42

    def test_benign_string(self, detector):
        result = detector.validate("hello")
        assert result.is_valid is True
        assert result.threats == []
        assert result.sanitized_value == "hello"

    def test_critical_match_is_invalid(self, detector):
        result = detector.validate("' OR '1'='1", "login.username")

        assert result.is_valid is False
        assert result.sanitized_value == "'' [OR] ''1''=''1"

    def test_lower_severity_is_sanitized_not_rejected(self, detector):
        result = detector.validate("admin'--")

        assert result.is_valid is True
        assert result.threats
        assert result.sanitized_value == "admin''"

    def test_oversized_input(self, detector):
        result = detector.validate("a" * 500)

        assert result.is_valid is True
        assert [t.pattern_id for t in result.threats] == ["oversized_input"]
        assert result.threats[0].severity is Severity.MEDIUM

    def test_critical_match_logs_error(self, detector):
        with patch("shield.app.services.injection.detector.logger") as mock_logger:
            detector.validate("1 UNION SELECT password", "body.q")

        mock_logger.error.assert_called_once()
        message = mock_logger.error.call_args.args[0]
        assert message.startswith("Critical SQL injection patterns detected in body.q")
        assert "UNION SELECT injection attempt" in message

    def test_lower_severity_logs_warning(self, detector):
        with patch("shield.app.services.injection.detector.logger") as mock_logger:
            detector.validate("CHAR(65)", "query.q")

        mock_logger.warning.assert_called_once()
        mock_logger.error.assert_not_called()


class TestValidateObject:
    def test_nested_paths(self, detector):
        payload = {
            "user": {"name": "alice", "bio": "admin'--"},
            "tags": ["ok", "' OR '1'='1"],
            "age": 30,
        }

        result = detector.validate_object(payload)

        assert result.is_valid is False
        assert {t.field for t in result.threats} == {"user.bio", "tags[1]"}
        assert result.sanitized_object["user"]["name"] == "alice"
        assert result.sanitized_object["tags"][1] == "'' [OR] ''1''=''1"
        assert result.sanitized_object["age"] == 30

    def test_only_low_severity_stays_valid(self, detector):
        result = detector.validate_object({"q": "CONCAT(a, b)"})

        assert result.is_valid is True
        assert result.threats[0].field == "q"

    def test_input_is_not_mutated(self, detector):
        payload = {"q": "admin'--"}
        detector.validate_object(payload)
        assert payload == {"q": "admin'--"}

    def test_scalar_root(self, detector):
        result = detector.validate_object("' OR '1'='1", "body")
        assert result.is_valid is False
        assert result.threats[0].field == ""


class TestValidateRequest:
    def test_body_and_query_sources(self, detector):
        result = detector.validate_request(
            body={"comment": "nice"},
            query={"id": "1 UNION SELECT secret"},
        )

        assert result.is_valid is False
        assert result.critical_fields == ["query.id"]
        assert result.sanitized_body == {"comment": "nice"}
        assert result.threats[0].to_dict()["source"] == "query"

    def test_empty_request(self, detector):
        result = detector.validate_request()
        assert result.is_valid is True
        assert result.threats == []


class TestPatternManagement:
    def test_add_and_remove(self, detector):
        detector.add_pattern("custom", r"\bxp_cmdshell\b", Severity.CRITICAL, "Command shell")

        assert detector.validate("EXEC xp_cmdshell 'dir'").is_valid is False
        assert detector.remove_pattern("Command shell") is True
        assert detector.remove_pattern("custom") is False

    def test_stats(self, detector):
        detector.validate("hello")
        detector.validate("' OR '1'='1")

        stats = detector.get_stats()

        assert stats["patterns_count"] == len(DEFAULT_PATTERNS)
        assert stats["validations"] == 2
        assert stats["blocked"] == 1
        assert stats["by_severity"]["critical"] >= 1


class TestValueVariant:
    def test_lifting(self):
        value = from_python({"a": [1, "x", None, True]})

        assert isinstance(value, ObjectValue)
        items = value.items["a"]
        assert isinstance(items, ArrayValue)
        assert items.items[0] == NumberValue(1)
        assert items.items[1] == StringValue("x")

    def test_lowering(self):
        data = {"a": [1, "x", None, True], "b": {"c": 2.5}}
        assert to_python(from_python(data)) == data

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            from_python({"a": object()})
