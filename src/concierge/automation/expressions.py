"""Field lookups, condition evaluation and ``{{placeholder}}`` rendering.

Shared by rule triggers, the ``conditional`` action and workflow step
configs. Paths are dot-separated (``email.subject``, ``extract.date``);
list indices are plain digits (``attendees.0``).
"""

from __future__ import annotations

import re
from typing import Any

import structlog

logger = structlog.get_logger()

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_MISSING = object()


def resolve_field(data: Any, path: str) -> Any:
    """Return the value at *path* inside nested dicts/lists, or ``None``."""
    value = data
    for key in path.split("."):
        if isinstance(value, dict):
            value = value.get(key, _MISSING)
        elif isinstance(value, (list, tuple)) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return None
        if value is _MISSING:
            return None
    return value


def evaluate_condition(condition: dict[str, Any] | bool | str, data: dict[str, Any]) -> bool:
    """Evaluate one field condition against *data*.

    ``condition`` is ``{"field", "operator", "value"}``; bare booleans and the
    strings ``"true"``/``"false"`` are accepted as constants. Type mismatches
    evaluate to ``False`` rather than raising.
    """
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, str):
        return condition.strip().lower() == "true"

    field = condition.get("field", "")
    operator = condition.get("operator", "equals")
    expected = condition.get("value")
    actual = resolve_field(data, field)

    try:
        if operator == "equals":
            return actual == expected
        if operator == "not_equals":
            return actual != expected
        if operator == "contains":
            if isinstance(actual, str):
                return str(expected).lower() in actual.lower()
            if isinstance(actual, (list, tuple)):
                return expected in actual
            return False
        if operator == "matches":
            return actual is not None and re.search(str(expected), str(actual), re.IGNORECASE) is not None
        if operator == "greater_than":
            return actual is not None and actual > expected
        if operator == "less_than":
            return actual is not None and actual < expected
    except (TypeError, re.error) as e:
        logger.debug("condition_evaluation_error", field=field, operator=operator, error=str(e))
        return False

    logger.warning("condition_unknown_operator", operator=operator)
    return False


def evaluate_conditions(
    conditions: list[dict[str, Any]],
    data: dict[str, Any],
    match: str = "all",
) -> bool:
    """Combine field conditions with ``all``/``any`` semantics. Empty is true."""
    if not conditions:
        return True
    results = (evaluate_condition(c, data) for c in conditions)
    return any(results) if match == "any" else all(results)


def render_placeholders(value: Any, data: dict[str, Any]) -> Any:
    """Recursively substitute ``{{path}}`` in strings with values from *data*.

    A string that is exactly one placeholder keeps the referenced value's
    type; unresolved placeholders render as an empty string.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER_RE.fullmatch(value.strip())
        if whole:
            resolved = resolve_field(data, whole.group(1))
            return "" if resolved is None else resolved

        def _sub(match: re.Match[str]) -> str:
            resolved = resolve_field(data, match.group(1))
            return "" if resolved is None else str(resolved)

        return _PLACEHOLDER_RE.sub(_sub, value)
    if isinstance(value, dict):
        return {k: render_placeholders(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [render_placeholders(v, data) for v in value]
    return value


EMAIL_MATCH_FIELDS = ("from", "subject", "body")


def pattern_matches(pattern: str, text: str) -> bool:
    """Case-insensitive regex search, falling back to substring for invalid regex."""
    if not text:
        return False
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        return pattern.lower() in text.lower()


def email_matches(patterns: list[str] | tuple[str, ...], email: dict[str, Any]) -> str | None:
    """Return the first pattern that matches any of from/subject/body, or ``None``."""
    fields = [str(email.get(name) or "") for name in EMAIL_MATCH_FIELDS]
    for pattern in patterns:
        if any(pattern_matches(pattern, text) for text in fields):
            return pattern
    return None
