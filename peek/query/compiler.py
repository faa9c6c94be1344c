"""Filter clause compiler: raw filter bag -> criteria -> predicate IR.

Compilation is pure. Hierarchical fields (tags, studios) are expanded to
their descendants by `expand_criteria` before compiling, using whatever
children maps the caller holds (normally the current catalog snapshot).
"""

import logging
from datetime import date
from typing import Any, Callable

from peek.core.errors import ClientInputError
from peek.query.fields import FieldSpec, get_fields
from peek.query.filters import (
    BoolCriterion, DateCriterion, EnumCriterion, MultiIdCriterion,
    NumberCriterion, TextCriterion,
)
from peek.query.identity import CompositeKey
from peek.query.predicates import (
    And, Between, Column, Compare, DateCompare, Exists, InSet, IsNull, Not, Or,
    Related, TextMatch, conjoin, disjoin,
)

logger = logging.getLogger(__name__)

# Resolution names (Stash enum or "720p" style) to frame height
RESOLUTION_HEIGHTS = {
    "144p": 144, "240p": 240, "360p": 360, "480p": 480, "540p": 540,
    "720p": 720, "1080p": 1080, "1440p": 1440,
    "4k": 2160, "5k": 2880, "6k": 3240, "8k": 4320,
    "very_low": 144, "low": 240, "r360p": 360, "standard": 480, "web_hd": 540,
    "standard_hd": 720, "full_hd": 1080, "quad_hd": 1440, "vr_hd": 1920,
    "four_k": 2160, "five_k": 2880, "six_k": 3240, "eight_k": 4320,
}

_MULTI_MODES = {"INCLUDES": "any", "INCLUDES_ALL": "all", "EXCLUDES": "none"}


def parse_filters(kind: str, raw: dict | None) -> dict[str, Any]:
    """Parse a raw filter bag into criteria keyed by field name.

    Unknown field names are rejected. Fields whose value is absent or empty
    are dropped, so an empty filter is the same as no filter.
    """
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ClientInputError("Filters must be an object")

    fields = get_fields(kind)
    criteria = {}
    for name, payload in raw.items():
        field = fields.get(name)
        if field is None:
            raise ClientInputError(f"Unknown filter field '{name}' for {kind}")
        if payload is None:
            continue
        if field.default_modifier:
            criterion = field.criterion.parse(payload, name, field.default_modifier)
        else:
            criterion = field.criterion.parse(payload, name)
        if criterion is not None:
            criteria[name] = criterion
    return criteria


def expand_criteria(
    kind: str,
    criteria: dict[str, Any],
    expand: Callable[[str, tuple[CompositeKey, ...], int], tuple[CompositeKey, ...]],
) -> dict[str, Any]:
    """Replace hierarchical multi-id values by their descendant closure."""
    fields = get_fields(kind)
    expanded = {}
    for name, criterion in criteria.items():
        field = fields[name]
        if (
            isinstance(criterion, MultiIdCriterion)
            and field.hierarchy
            and criterion.depth
        ):
            keys = expand(field.hierarchy, criterion.value, criterion.depth)
            criterion = MultiIdCriterion(criterion.modifier, tuple(keys), None)
        expanded[name] = criterion
    return expanded


# ============ Per-variant compilers ============

def _compile_number(operand, c: NumberCriterion):
    m = c.modifier
    if m == "IS_NULL":
        return IsNull(operand)
    if m == "NOT_NULL":
        return Not(IsNull(operand))
    if m == "EQUALS":
        return Compare(operand, "=", c.value)
    if m == "NOT_EQUALS":
        return Compare(operand, "!=", c.value)
    if m == "GREATER_THAN":
        return Compare(operand, ">", c.value)
    if m == "LESS_THAN":
        return Compare(operand, "<", c.value)
    if m == "BETWEEN":
        if c.value2 is None:
            return Compare(operand, ">=", c.value)
        return Between(operand, c.value, c.value2)
    if m == "NOT_BETWEEN":
        if c.value2 is None:
            return Compare(operand, "<", c.value)
        return Or((Compare(operand, "<", c.value), Compare(operand, ">", c.value2)))
    return None


def _compile_text(operands, c: TextCriterion):
    m = c.modifier
    if m == "INCLUDES":
        return disjoin(TextMatch(o, c.value) for o in operands)
    if m == "EXCLUDES":
        return conjoin(Or((IsNull(o), Not(TextMatch(o, c.value)))) for o in operands)
    if m == "EQUALS":
        return disjoin(TextMatch(o, c.value, exact=True) for o in operands)
    if m == "NOT_EQUALS":
        return conjoin(Or((IsNull(o), Not(TextMatch(o, c.value, exact=True)))) for o in operands)
    if m == "IS_NULL":
        return conjoin(IsNull(o, blank_is_null=True) for o in operands)
    if m == "NOT_NULL":
        return disjoin(Not(IsNull(o, blank_is_null=True)) for o in operands)
    return None


def _compile_date(operand, c: DateCriterion):
    m = c.modifier
    if m == "IS_NULL":
        return IsNull(operand)
    if m == "NOT_NULL":
        return Not(IsNull(operand))
    if m == "EQUALS":
        return DateCompare(operand, "=", c.value, day_grain=True)
    if m == "NOT_EQUALS":
        return Or((IsNull(operand), DateCompare(operand, "!=", c.value, day_grain=True)))
    if m == "GREATER_THAN":
        return DateCompare(operand, ">", c.value)
    if m == "LESS_THAN":
        return DateCompare(operand, "<", c.value)
    if m == "BETWEEN":
        if c.value2 is None:
            return DateCompare(operand, ">=", c.value)
        return And((DateCompare(operand, ">=", c.value), DateCompare(operand, "<=", c.value2)))
    if m == "NOT_BETWEEN":
        if c.value2 is None:
            return Or((IsNull(operand), DateCompare(operand, "<", c.value)))
        return Or((
            IsNull(operand),
            DateCompare(operand, "<", c.value),
            DateCompare(operand, ">", c.value2),
        ))
    return None


def _compile_bool(field: FieldSpec, c: BoolCriterion):
    if field.handler == "related_favorite":
        exists = Exists(field.relation, "favorite")
        return exists if c.value else Not(exists)
    operand = field.operands[0]
    if c.value:
        return Compare(operand, "=", True)
    return Or((IsNull(operand), Compare(operand, "=", False)))


def _key_match(keys: tuple[CompositeKey, ...]):
    """Match the entity's own (id, instance_id) against a set of references."""
    bare = tuple(k.id for k in keys if k.is_bare)
    parts = []
    if bare:
        parts.append(InSet(Column("id"), bare))
    for key in keys:
        if not key.is_bare:
            parts.append(And((
                Compare(Column("id"), "=", key.id),
                Compare(Column("instance_id"), "=", key.instance_id),
            )))
    return disjoin(parts)


def _compile_multi(kind: str, field: FieldSpec, c: MultiIdCriterion):
    if not c.value:
        return None
    if field.handler == "ids":
        match = _key_match(c.value)
        if c.modifier in ("INCLUDES", "EQUALS"):
            return match
        if c.modifier in ("EXCLUDES", "NOT_EQUALS"):
            return Not(match)
        return None

    mode = _MULTI_MODES.get(c.modifier)
    if mode is None:
        logger.debug(f"Ignoring unknown modifier {c.modifier} on {kind}.{field.name}")
        return None
    include_inherited = kind == "scene" and field.relation == "tags"
    return Related(field.relation, c.value, mode, include_inherited)


def _compile_resolution(operand, c: EnumCriterion):
    height = RESOLUTION_HEIGHTS.get(c.value[0].lower())
    if not height:
        return None
    ops = {"EQUALS": "=", "NOT_EQUALS": "!=", "GREATER_THAN": ">", "LESS_THAN": "<"}
    return Compare(operand, ops.get(c.modifier, ">="), height)


def _compile_orientation(c: EnumCriterion):
    width, height = Column("width"), Column("height")
    conditions = []
    for orientation in c.value:
        if orientation == "LANDSCAPE":
            conditions.append(Compare(width, ">", height))
        elif orientation == "PORTRAIT":
            conditions.append(Compare(width, "<", height))
        elif orientation == "SQUARE":
            conditions.append(And((Compare(width, "=", height), Compare(width, ">", 0))))
    return disjoin(conditions)


def _compile_enum(operand, c: EnumCriterion):
    if c.modifier in ("INCLUDES", "EQUALS"):
        return InSet(operand, c.value)
    if c.modifier in ("EXCLUDES", "NOT_EQUALS"):
        return Or((IsNull(operand), Not(InSet(operand, c.value))))
    return None


def _years_before(today: date, years: int) -> str:
    try:
        return today.replace(year=today.year - years).isoformat()
    except ValueError:
        # Feb 29 on a non-leap target year
        return today.replace(year=today.year - years, day=28).isoformat()


def _compile_age(operand, c: NumberCriterion, today: date):
    """Age in whole years, compiled to birthdate comparisons."""
    m = c.modifier
    if m == "IS_NULL":
        return IsNull(operand)
    if m == "NOT_NULL":
        return Not(IsNull(operand))

    n = int(c.value)

    def at_least(age):
        return DateCompare(operand, "<=", _years_before(today, age))

    def below(age):
        return DateCompare(operand, ">", _years_before(today, age))

    if m == "EQUALS":
        return And((at_least(n), below(n + 1)))
    if m == "NOT_EQUALS":
        return Or((below(n), at_least(n + 1)))
    if m == "GREATER_THAN":
        return at_least(n + 1)
    if m == "LESS_THAN":
        return below(n)
    if m == "BETWEEN":
        if c.value2 is None:
            return at_least(n)
        return And((at_least(n), below(int(c.value2) + 1)))
    if m == "NOT_BETWEEN":
        if c.value2 is None:
            return below(n)
        return Or((below(n), at_least(int(c.value2) + 1)))
    return None


def compile_criterion(kind: str, field: FieldSpec, criterion, today: date | None = None):
    """Compile one criterion for one field. Returns None for "no predicate"."""
    if criterion is None:
        return None

    if isinstance(criterion, MultiIdCriterion):
        return _compile_multi(kind, field, criterion)
    if isinstance(criterion, BoolCriterion):
        return _compile_bool(field, criterion)
    if isinstance(criterion, TextCriterion):
        return _compile_text(field.operands, criterion)
    if isinstance(criterion, DateCriterion):
        return _compile_date(field.operands[0], criterion)
    if isinstance(criterion, EnumCriterion):
        if field.handler == "resolution":
            return _compile_resolution(field.operands[0], criterion)
        if field.handler == "orientation":
            return _compile_orientation(criterion)
        return _compile_enum(field.operands[0], criterion)
    if isinstance(criterion, NumberCriterion):
        if field.handler == "age":
            return _compile_age(field.operands[0], criterion, today or date.today())
        return _compile_number(field.operands[0], criterion)
    return None


def compile_filters(kind: str, criteria: dict[str, Any], today: date | None = None):
    """AND together the compiled predicates of every criterion."""
    fields = get_fields(kind)
    return conjoin(
        compile_criterion(kind, fields[name], criterion, today)
        for name, criterion in criteria.items()
    )
