"""Filter criteria: one variant per value shape.

A raw filter bag (JSON from the client) is parsed field by field into one of
these variants. Each variant validates its own payload when parsed, so the
compiler only ever sees well-formed values:

- absent or empty value -> parse returns None (no filter)
- malformed value (e.g. "abc" for a number) -> ClientInputError
- unknown modifier -> kept as-is, compiles to no predicate
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from peek.core.errors import ClientInputError
from peek.query.identity import CompositeKey, parse_composite_values


MODIFIERS = frozenset({
    "INCLUDES", "INCLUDES_ALL", "EXCLUDES",
    "EQUALS", "NOT_EQUALS",
    "GREATER_THAN", "LESS_THAN",
    "BETWEEN", "NOT_BETWEEN",
    "IS_NULL", "NOT_NULL",
})

NULL_MODIFIERS = frozenset({"IS_NULL", "NOT_NULL"})


def _as_payload(raw: Any) -> dict:
    """Accept {"value": ..., "modifier": ...} or a bare value."""
    if isinstance(raw, dict):
        return raw
    return {"value": raw}


def _read_modifier(payload: dict, default: str, field: str) -> str:
    modifier = payload.get("modifier")
    if modifier is None or modifier == "":
        return default
    if not isinstance(modifier, str):
        raise ClientInputError(f"Invalid modifier for '{field}': {modifier!r}")
    return modifier.upper()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def _to_number(value: Any, field: str) -> int | float:
    if isinstance(value, bool):
        raise ClientInputError(f"Filter '{field}' expects a number, got {value!r}")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            raise ClientInputError(f"Filter '{field}' expects a number, got {value!r}")
    raise ClientInputError(f"Filter '{field}' expects a number, got {value!r}")


def _to_date_string(value: Any, field: str) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise ClientInputError(f"Filter '{field}' expects a date, got {value!r}")
    text = value.strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text).isoformat()
        return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
    except ValueError:
        raise ClientInputError(f"Filter '{field}' expects an ISO date, got {value!r}")


@dataclass(frozen=True)
class NumberCriterion:
    modifier: str = "GREATER_THAN"
    value: int | float | None = None
    value2: int | float | None = None

    @classmethod
    def parse(cls, raw: Any, field: str, default_modifier: str = "GREATER_THAN"):
        payload = _as_payload(raw)
        modifier = _read_modifier(payload, default_modifier, field)
        if modifier in NULL_MODIFIERS:
            return cls(modifier)
        if _is_empty(payload.get("value")):
            return None
        value = _to_number(payload["value"], field)
        value2 = payload.get("value2")
        value2 = None if _is_empty(value2) else _to_number(value2, field)
        return cls(modifier, value, value2)


@dataclass(frozen=True)
class TextCriterion:
    modifier: str = "INCLUDES"
    value: str | None = None

    @classmethod
    def parse(cls, raw: Any, field: str, default_modifier: str = "INCLUDES"):
        payload = _as_payload(raw)
        modifier = _read_modifier(payload, default_modifier, field)
        if modifier in NULL_MODIFIERS:
            return cls(modifier)
        value = payload.get("value")
        if _is_empty(value):
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ClientInputError(f"Filter '{field}' expects text, got {value!r}")
        return cls(modifier, str(value))


@dataclass(frozen=True)
class DateCriterion:
    modifier: str = "GREATER_THAN"
    value: str | None = None
    value2: str | None = None

    @classmethod
    def parse(cls, raw: Any, field: str, default_modifier: str = "GREATER_THAN"):
        payload = _as_payload(raw)
        modifier = _read_modifier(payload, default_modifier, field)
        if modifier in NULL_MODIFIERS:
            return cls(modifier)
        if _is_empty(payload.get("value")):
            return None
        value = _to_date_string(payload["value"], field)
        value2 = payload.get("value2")
        value2 = None if _is_empty(value2) else _to_date_string(value2, field)
        return cls(modifier, value, value2)


@dataclass(frozen=True)
class BoolCriterion:
    value: bool

    @classmethod
    def parse(cls, raw: Any, field: str, default_modifier: str = "EQUALS"):
        value = raw.get("value") if isinstance(raw, dict) else raw
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            return cls(value)
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return cls(value.lower() == "true")
        raise ClientInputError(f"Filter '{field}' expects true or false, got {value!r}")


@dataclass(frozen=True)
class MultiIdCriterion:
    modifier: str = "INCLUDES"
    value: tuple[CompositeKey, ...] = ()
    depth: int | None = None

    @classmethod
    def parse(cls, raw: Any, field: str, default_modifier: str = "INCLUDES"):
        payload = _as_payload(raw)
        modifier = _read_modifier(payload, default_modifier, field)
        value = payload.get("value")
        if _is_empty(value):
            return None
        if isinstance(value, dict):
            raise ClientInputError(f"Filter '{field}' expects a list of ids")
        if not isinstance(value, (list, tuple)):
            value = [value]
        keys = parse_composite_values(value)

        depth = payload.get("depth")
        if depth is not None:
            if isinstance(depth, bool):
                raise ClientInputError(f"Invalid depth for '{field}': {depth!r}")
            try:
                depth = int(depth)
            except (TypeError, ValueError):
                raise ClientInputError(f"Invalid depth for '{field}': {depth!r}")
        return cls(modifier, keys, depth)


@dataclass(frozen=True)
class EnumCriterion:
    modifier: str = "INCLUDES"
    value: tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Any, field: str, default_modifier: str = "INCLUDES"):
        payload = _as_payload(raw)
        modifier = _read_modifier(payload, default_modifier, field)
        value = payload.get("value")
        if _is_empty(value):
            return None
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise ClientInputError(f"Filter '{field}' expects one or more names")
        items = tuple(v.strip().upper() for v in value if v.strip())
        if not items:
            return None
        return cls(modifier, items)


Criterion = NumberCriterion | TextCriterion | DateCriterion | BoolCriterion | MultiIdCriterion | EnumCriterion
