"""Utility functions for the abuse-prevention pipeline."""

import re
from collections.abc import Mapping, Sequence
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
_MISSING = object()


def get_nested_value(data: Any, path: str, default: Any = None) -> Any:
    """Look up a dotted path such as ``memory.percentage`` or ``threats.0``.

    Mapping keys, object attributes and sequence indices are all followed.

    Examples:
        >>> get_nested_value({"a": {"b": 2}}, "a.b")
        2
        >>> get_nested_value({"a": [10, 20]}, "a.1")
        20
        >>> get_nested_value({"a": {}}, "a.b", "n/a")
        'n/a'
    """
    current = data
    for part in path.split("."):
        if current is None:
            return default
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                current = _MISSING
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return default
    return current


def render_template(template: str, data: Any) -> str:
    """Substitute ``{{dotted.path}}`` placeholders from ``data``.

    Placeholders whose path cannot be resolved are left as written, so a
    missing metric shows up visibly instead of as an empty string.

    Examples:
        >>> render_template("IP {{ip}} hit {{limits.auth}}", {"ip": "1.2.3.4", "limits": {"auth": 5}})
        'IP 1.2.3.4 hit 5'
        >>> render_template("{{unknown}} stays", {})
        '{{unknown}} stays'
    """

    def _replace(match: re.Match) -> str:
        value = get_nested_value(data, match.group(1), _MISSING)
        return match.group(0) if value is _MISSING or value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)
