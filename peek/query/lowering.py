"""Lower predicate IR into SQLAlchemy expressions for one entity kind."""

import operator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, and_, distinct, exists, false, func, literal, not_, or_, select, true
from sqlalchemy.orm import aliased

from peek.db.models import UserEntityData
from peek.query.fields import Relation, get_relation
from peek.query.identity import CompositeKey
from peek.query.predicates import (
    And, Between, Column, Compare, Computed, DateCompare, EffectiveRating, Exists,
    InSet, IsNull, Not, Or, OverlayColumn, Related, RelationCount, TextMatch,
    OPERAND_TYPES,
)
from peek.services.ratings import effective_rating_expr

_OPS = {
    "=": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}

COMPUTED = {
    "clip_duration": lambda m: func.coalesce(m.end_seconds, m.seconds) - m.seconds,
}


@dataclass
class LoweringContext:
    """Entity model plus the overlay alias it was joined with."""
    kind: str
    model: Any
    overlay: Any = None
    user_id: int | None = None


def _escape_like(value: str) -> str:
    """Escape SQL LIKE wildcard characters in user input."""
    return value.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")


# ============ Operands ============

def operand_expr(operand, ctx: LoweringContext):
    if isinstance(operand, Column):
        expr = getattr(ctx.model, operand.name)
    elif isinstance(operand, OverlayColumn):
        if ctx.overlay is None:
            return literal(operand.default)
        expr = getattr(ctx.overlay, operand.name)
    elif isinstance(operand, EffectiveRating):
        return effective_rating_expr(ctx.overlay, ctx.model)
    elif isinstance(operand, RelationCount):
        return relation_count(ctx, get_relation(ctx.kind, operand.relation))
    elif isinstance(operand, Computed):
        return COMPUTED[operand.name](ctx.model)
    else:
        raise TypeError(f"Unsupported operand: {operand!r}")

    if operand.default is not None:
        return func.coalesce(expr, operand.default)
    return expr


def _value(value, ctx: LoweringContext):
    if isinstance(value, OPERAND_TYPES):
        return operand_expr(value, ctx)
    return value


# ============ Relations ============

def _relation_source(relation: Relation, ctx: LoweringContext):
    """Correlated conditions walking the hops, plus the target key columns."""
    if relation.is_direct:
        return [], getattr(ctx.model, relation.column), ctx.model.instance_id

    first_hop = relation.hops[0]
    current = aliased(first_hop.model)
    conditions = [
        getattr(current, first_hop.owner_id) == ctx.model.id,
        getattr(current, first_hop.owner_instance) == ctx.model.instance_id,
    ]
    hop = first_hop
    for next_hop in relation.hops[1:]:
        nxt = aliased(next_hop.model)
        conditions.append(getattr(nxt, next_hop.owner_id) == getattr(current, hop.target_id))
        conditions.append(getattr(nxt, next_hop.owner_instance) == getattr(current, hop.target_instance))
        current, hop = nxt, next_hop
    return conditions, getattr(current, hop.target_id), getattr(current, hop.target_instance)


def _target_match(keys: tuple[CompositeKey, ...], target_id, target_instance):
    bare = [k.id for k in keys if k.is_bare]
    parts = []
    if bare:
        parts.append(target_id.in_(bare))
    for key in keys:
        if not key.is_bare:
            parts.append(and_(target_id == key.id, target_instance == key.instance_id))
    return or_(*parts)


def relation_count(ctx: LoweringContext, relation: Relation):
    conditions, target_id, _ = _relation_source(relation, ctx)
    return select(func.count(target_id)).where(*conditions).scalar_subquery()


def _related_exists(ctx: LoweringContext, relation: Relation, keys):
    conditions, target_id, target_instance = _relation_source(relation, ctx)
    match = _target_match(keys, target_id, target_instance)
    if relation.is_direct:
        return match
    return exists(select(target_id).where(*conditions, match))


def _lower_related(node: Related, ctx: LoweringContext):
    relation = get_relation(ctx.kind, node.relation)
    keys = node.keys
    inherited = get_relation(ctx.kind, "inherited_tags") if node.include_inherited else None

    if node.mode == "any":
        clause = _related_exists(ctx, relation, keys)
        if inherited is not None:
            clause = or_(clause, _related_exists(ctx, inherited, keys))
        return clause

    if node.mode == "none":
        if relation.is_direct:
            column = getattr(ctx.model, relation.column)
            return or_(column.is_(None), not_(_related_exists(ctx, relation, keys)))
        clause = not_(_related_exists(ctx, relation, keys))
        if inherited is not None:
            clause = and_(clause, not_(_related_exists(ctx, inherited, keys)))
        return clause

    if node.mode == "all":
        if relation.is_direct or inherited is not None:
            parts = []
            for key in keys:
                part = _related_exists(ctx, relation, (key,))
                if inherited is not None:
                    part = or_(part, _related_exists(ctx, inherited, (key,)))
                parts.append(part)
            return and_(*parts)

        conditions, target_id, target_instance = _relation_source(relation, ctx)
        if all(k.is_bare for k in keys):
            key_expr = target_id
        else:
            key_expr = target_id + literal(":") + target_instance
        matched = (
            select(func.count(distinct(key_expr)))
            .where(*conditions, _target_match(keys, target_id, target_instance))
            .scalar_subquery()
        )
        return matched == len(keys)

    raise ValueError(f"Unknown relation mode: {node.mode}")


def _lower_exists(node: Exists, ctx: LoweringContext):
    relation = get_relation(ctx.kind, node.relation)
    conditions, target_id, target_instance = _relation_source(relation, ctx)

    if node.condition == "any":
        if relation.is_direct:
            return target_id.isnot(None)
        return exists(select(target_id).where(*conditions))

    if node.condition == "favorite":
        if ctx.user_id is None:
            return false()
        overlay = aliased(UserEntityData)
        return exists(
            select(overlay.entity_id).where(
                *conditions,
                overlay.user_id == ctx.user_id,
                overlay.entity_type == relation.target_type,
                overlay.entity_id == target_id,
                overlay.instance_id == target_instance,
                overlay.favorite.is_(True),
            )
        )

    raise ValueError(f"Unknown exists condition: {node.condition}")


# ============ Dates ============

def _date_bind(expr, value: str):
    """Bind a validated ISO date for comparison against a column."""
    if isinstance(getattr(expr, "type", None), DateTime):
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return value


def _lower_date(node: DateCompare, ctx: LoweringContext):
    expr = operand_expr(node.operand, ctx)
    op = _OPS[node.op]
    if node.day_grain:
        return op(func.date(expr), func.date(literal(node.value[:10])))
    return op(expr, _date_bind(expr, node.value))


# ============ Entry point ============

def lower(node, ctx: LoweringContext):
    """Translate a predicate tree into a SQLAlchemy boolean expression."""
    if node is None:
        return true()
    if isinstance(node, And):
        return and_(*(lower(item, ctx) for item in node.items))
    if isinstance(node, Or):
        return or_(*(lower(item, ctx) for item in node.items))
    if isinstance(node, Not):
        return not_(lower(node.item, ctx))
    if isinstance(node, Compare):
        return _OPS[node.op](operand_expr(node.operand, ctx), _value(node.value, ctx))
    if isinstance(node, Between):
        return operand_expr(node.operand, ctx).between(node.low, node.high)
    if isinstance(node, IsNull):
        expr = operand_expr(node.operand, ctx)
        if node.blank_is_null:
            return or_(expr.is_(None), expr == "")
        return expr.is_(None)
    if isinstance(node, InSet):
        return operand_expr(node.operand, ctx).in_(list(node.values))
    if isinstance(node, TextMatch):
        expr = operand_expr(node.operand, ctx)
        if node.exact:
            return func.lower(expr) == node.value.lower()
        return expr.ilike(f"%{_escape_like(node.value)}%", escape="\\")
    if isinstance(node, DateCompare):
        return _lower_date(node, ctx)
    if isinstance(node, Related):
        return _lower_related(node, ctx)
    if isinstance(node, Exists):
        return _lower_exists(node, ctx)
    raise TypeError(f"Unsupported predicate: {node!r}")
