"""Predicate IR produced by the filter compiler.

Nodes are immutable and hold only bound literals and symbolic operands.
Nothing here knows about SQL; `peek.query.lowering` turns a tree into a
SQLAlchemy expression for one entity kind.
"""

from dataclasses import dataclass
from typing import Any, Iterator, Union

from peek.query.identity import CompositeKey


# ============ Operands ============

@dataclass(frozen=True)
class Column:
    """Column on the entity row. `default` wraps it in COALESCE."""
    name: str
    default: Any = None


@dataclass(frozen=True)
class OverlayColumn:
    """Column on the current user's overlay row (LEFT JOINed, may be NULL)."""
    name: str
    default: Any = None


@dataclass(frozen=True)
class EffectiveRating:
    """User rating, then upstream rating100, then 0."""


@dataclass(frozen=True)
class RelationCount:
    """Number of junction rows for a relation of the entity."""
    relation: str


@dataclass(frozen=True)
class Computed:
    """Named expression registered in the lowering table (e.g. clip duration)."""
    name: str


Operand = Union[Column, OverlayColumn, EffectiveRating, RelationCount, Computed]


# ============ Predicates ============

@dataclass(frozen=True)
class And:
    items: tuple


@dataclass(frozen=True)
class Or:
    items: tuple


@dataclass(frozen=True)
class Not:
    item: Any


@dataclass(frozen=True)
class Compare:
    """operand <op> value, op in = != > < >= <=. value may be another operand."""
    operand: Operand
    op: str
    value: Any


@dataclass(frozen=True)
class Between:
    operand: Operand
    low: Any
    high: Any


@dataclass(frozen=True)
class IsNull:
    """NULL test. blank_is_null also treats '' as null."""
    operand: Operand
    blank_is_null: bool = False


@dataclass(frozen=True)
class InSet:
    operand: Operand
    values: tuple


@dataclass(frozen=True)
class TextMatch:
    """Case-insensitive containment (or equality when exact) on one operand."""
    operand: Operand
    value: str
    exact: bool = False


@dataclass(frozen=True)
class DateCompare:
    """Date comparison. day_grain compares on date(col) instead of the raw value."""
    operand: Operand
    op: str
    value: str
    day_grain: bool = False


@dataclass(frozen=True)
class Related:
    """Membership through a relation.

    mode 'any': at least one related key matches
    mode 'all': every requested key is related
    mode 'none': no requested key is related
    """
    relation: str
    keys: tuple[CompositeKey, ...]
    mode: str = "any"
    include_inherited: bool = False


@dataclass(frozen=True)
class Exists:
    """Some related entity satisfies a named condition ('any' or 'favorite')."""
    relation: str
    condition: str = "any"


Predicate = Union[And, Or, Not, Compare, Between, IsNull, InSet, TextMatch, DateCompare, Related, Exists]

OPERAND_TYPES = (Column, OverlayColumn, EffectiveRating, RelationCount, Computed)


def conjoin(predicates) -> Predicate | None:
    """AND together the non-empty predicates (None when nothing is left)."""
    items = tuple(p for p in predicates if p is not None)
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return And(items)


def disjoin(predicates) -> Predicate | None:
    items = tuple(p for p in predicates if p is not None)
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return Or(items)


def _literals(node) -> Iterator[Any]:
    if isinstance(node, (And, Or)):
        for item in node.items:
            yield from _literals(item)
    elif isinstance(node, Not):
        yield from _literals(node.item)
    elif isinstance(node, Compare):
        if not isinstance(node.value, OPERAND_TYPES):
            yield node.value
    elif isinstance(node, Between):
        yield node.low
        yield node.high
    elif isinstance(node, InSet):
        yield from node.values
    elif isinstance(node, (TextMatch, DateCompare)):
        yield node.value
    elif isinstance(node, Related):
        for key in node.keys:
            yield key.id
            if key.instance_id:
                yield key.instance_id
        if node.mode == "all":
            yield len(node.keys)


def bound_parameters(predicate: Predicate | None) -> list:
    """Bound literal values of a predicate, in tree order."""
    if predicate is None:
        return []
    return list(_literals(predicate))


def uses_overlay(predicate: Predicate | None) -> bool:
    """True when the predicate reads the user overlay (rating, favorite, counters)."""
    if predicate is None:
        return False
    if isinstance(predicate, (And, Or)):
        return any(uses_overlay(item) for item in predicate.items)
    if isinstance(predicate, Not):
        return uses_overlay(predicate.item)
    if isinstance(predicate, Exists):
        return predicate.condition == "favorite"
    operand = getattr(predicate, "operand", None)
    if isinstance(operand, (OverlayColumn, EffectiveRating)):
        return True
    value = getattr(predicate, "value", None)
    return isinstance(value, (OverlayColumn, EffectiveRating))
