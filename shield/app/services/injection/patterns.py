"""Default SQL injection detection rules."""

import re

from shield.app.services.injection.models import InjectionPattern, Severity

_I = re.IGNORECASE


def _rule(pattern_id: str, regex: str, severity: Severity, description: str, flags: int = _I) -> InjectionPattern:
    return InjectionPattern(pattern_id, re.compile(regex, flags), severity, description)


DEFAULT_PATTERNS: list[InjectionPattern] = [
    _rule(
        "sql_keywords",
        r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE|UNION|HAVING|WHERE|ORDER\s+BY|GROUP\s+BY)\b",
        Severity.HIGH,
        "SQL keywords detected",
    ),
    _rule(
        "classic_condition",
        r"'\s*(OR|AND)\s*('[^']*'|\d+)\s*=\s*('[^']*|\d+)|'\s*(OR|AND)\s*'\s*=\s*'",
        Severity.CRITICAL,
        "Classic SQL injection pattern (OR/AND conditions)",
    ),
    _rule("comment_sequence", r"(--|#|/\*|\*/)", Severity.HIGH, "SQL comment characters detected", 0),
    _rule("union_select", r"\bUNION\s+(ALL\s+)?SELECT\b", Severity.CRITICAL, "UNION SELECT injection attempt"),
    _rule(
        "time_based_blind",
        r"\b(SLEEP|WAITFOR|DELAY|BENCHMARK)\s*\(",
        Severity.CRITICAL,
        "Time-based SQL injection functions",
    ),
    _rule(
        "conditional_blind",
        r"\b(IF|CASE|WHEN|THEN|ELSE|END)\b.*\b(SELECT|UPDATE|DELETE|INSERT)\b",
        Severity.HIGH,
        "Conditional SQL injection pattern",
    ),
    _rule(
        "error_based_function",
        r"\b(CAST|CONVERT|EXTRACTVALUE|UPDATEXML|EXP|FLOOR|RAND)\s*\(",
        Severity.MEDIUM,
        "Error-based SQL injection functions",
    ),
    _rule(
        "stacked_query",
        r";\s*(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER)\b",
        Severity.CRITICAL,
        "Stacked query injection attempt",
    ),
    _rule(
        "metadata_schema",
        r"\b(INFORMATION_SCHEMA|SYSOBJECTS|SYSCOLUMNS|SYSTABLES)\b",
        Severity.HIGH,
        "Database metadata access attempt",
    ),
    _rule(
        "database_info_function",
        r"\b(VERSION|USER|DATABASE|SCHEMA|CURRENT_USER|SYSTEM_USER)\s*\(",
        Severity.MEDIUM,
        "Database information functions",
    ),
    _rule("hex_encoding", r"0x[0-9a-fA-F]+", Severity.MEDIUM, "Hexadecimal encoding detected", 0),
    _rule(
        "char_function",
        r"\b(CHAR|ASCII|ORD|HEX|UNHEX)\s*\(",
        Severity.MEDIUM,
        "Character manipulation functions",
    ),
    _rule(
        "string_function",
        r"\b(SUBSTRING|SUBSTR|MID|LEFT|RIGHT|CONCAT)\s*\(",
        Severity.LOW,
        "String manipulation functions (potential data extraction)",
    ),
    _rule(
        "file_access",
        r"\b(LOAD_FILE|INTO\s+OUTFILE|INTO\s+DUMPFILE)\b",
        Severity.CRITICAL,
        "File system access attempt",
    ),
    _rule("xpath_function", r"\b(EXTRACTVALUE|UPDATEXML)\s*\(", Severity.HIGH, "XPath injection functions"),
]

# Keywords wrapped in brackets by the sanitizer
DANGEROUS_KEYWORDS = (
    "UNION", "SELECT", "INSERT", "UPDATE", "DELETE", "DROP", "CREATE", "ALTER",
    "EXEC", "EXECUTE", "SCRIPT", "JAVASCRIPT", "VBSCRIPT",
)

KEYWORD_RE = re.compile(r"\b(" + "|".join(DANGEROUS_KEYWORDS) + r")\b", _I)
CONDITION_RE = re.compile(r"\b(OR|AND)\b(?=\s*['\"\d])", _I)
# Comment markers left over once block comments are stripped
COMMENT_RE = re.compile(r"--|#|/\*|\*/")


def strip_block_comments(text: str) -> str:
    """Remove ``/* ... */`` blocks in a single left-to-right pass.

    An unterminated ``/*`` drops only the marker itself; the rest of the
    text is kept for the remaining transforms.
    """
    parts = []
    pos = 0
    while True:
        start = text.find("/*", pos)
        if start == -1:
            parts.append(text[pos:])
            break
        parts.append(text[pos:start])
        end = text.find("*/", start + 2)
        if end == -1:
            parts.append(text[start + 2:])
            break
        pos = end + 2
    return "".join(parts)
