"""Condition evaluator -- matches a trigger's condition AST against event context.

Stored form is a flat mapping of ``field[_suffix] -> expected``:

    {"status": "completed"}            -> Eq("status", "completed")
    {"amount_gt": 5000}                -> Gt("amount", 5000)
    {"amount_lt": 100}                 -> Lt("amount", 100)
    {"projectType_contains": "web"}    -> Contains("projectType", "web")

Parsing happens once when a trigger is read; evaluation never looks at
suffixes again.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from core.models.events import EventType
from core.models.triggers import Condition, Contains, Eq, Gt, Lt

_SUFFIXES = (("_gt", Gt), ("_lt", Lt), ("_contains", Contains))
_MISSING = object()


class ConditionError(ValueError):
    """A stored condition mapping could not be parsed."""


def parse_conditions(raw: Mapping[str, Any] | None) -> list[Condition] | None:
    """Parse the stored mapping into condition nodes.

    `None` and `{}` both mean "always matches" and parse to `None`.
    """
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConditionError(f"Conditions must be a mapping, got {type(raw).__name__}")
    if not raw:
        return None

    nodes: list[Condition] = []
    for key, expected in raw.items():
        node_cls, field = Eq, key
        for suffix, cls in _SUFFIXES:
            if key.endswith(suffix) and len(key) > len(suffix):
                node_cls, field = cls, key[: -len(suffix)]
                break
        if node_cls in (Gt, Lt) and not _is_number(expected):
            raise ConditionError(f"Condition {key!r} needs a numeric value, got {expected!r}")
        try:
            nodes.append(node_cls(field=field, value=expected))
        except ValidationError as exc:
            raise ConditionError(f"Invalid condition {key!r}: {exc}") from exc
    return nodes


def to_storage(conditions: list[Condition] | None) -> dict[str, Any] | None:
    """Render condition nodes back to the stored mapping."""
    if not conditions:
        return None
    out: dict[str, Any] = {}
    for node in conditions:
        suffix = "" if isinstance(node, Eq) else f"_{node.op}"
        value = node.value
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        out[f"{node.field}{suffix}"] = value
    return out


def evaluate(
    conditions: list[Condition] | None,
    context: Mapping[str, Any],
    event_type: EventType | str | None = None,
) -> bool:
    """True when every condition holds for the context (logical AND)."""
    if not conditions:
        return True

    category = _category_of(event_type)
    for node in conditions:
        actual = _lookup(context, node.field, category)
        if actual is _MISSING or not _check(node, actual):
            return False
    return True


def matches(
    conditions: Mapping[str, Any] | list[Condition] | None,
    context_data: Mapping[str, Any],
    event_type: EventType | str | None = None,
) -> bool:
    """Convenience wrapper accepting either the stored mapping or parsed nodes."""
    if conditions is None or isinstance(conditions, list):
        return evaluate(conditions, context_data, event_type)
    return evaluate(parse_conditions(conditions), context_data, event_type)


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _check(node: Condition, actual: Any) -> bool:
    if isinstance(node, Eq):
        # bool is an int subclass; never let True == 1 match
        if isinstance(actual, bool) != isinstance(node.value, bool):
            return False
        return actual == node.value
    if isinstance(node, Gt):
        return _is_number(actual) and actual > node.value
    if isinstance(node, Lt):
        return _is_number(actual) and actual < node.value
    if isinstance(node, Contains):
        if actual is None:
            return False
        return node.value in str(actual)
    return False


def _lookup(context: Mapping[str, Any], field: str, category: str | None) -> Any:
    """Find a field in the category sub-object first, then the flat context."""
    if category:
        nested = context.get(category)
        if isinstance(nested, Mapping):
            found = _get_path(nested, field)
            if found is not _MISSING:
                return found
    return _get_path(context, field)


def _get_path(data: Mapping[str, Any], path: str) -> Any:
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _category_of(event_type: EventType | str | None) -> str | None:
    if event_type is None:
        return None
    value = event_type.value if isinstance(event_type, EventType) else str(event_type)
    return value.split(".", 1)[0]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
