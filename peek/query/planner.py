"""Query planner/executor: one paginated query per entity kind.

Plan shape is fixed for every kind:

    SELECT entity, overlay
    FROM <kind table> entity
    LEFT JOIN user_entity_data overlay        (current user's rating/favorite/counters)
    LEFT JOIN user_excluded_entities excluded (only when exclusions apply)
    WHERE entity.deleted_at IS NULL
      AND <instance visibility>
      AND excluded.id IS NULL
      AND <compiled filters>
    ORDER BY <sort>, entity.id, entity.instance_id
    LIMIT per_page OFFSET (page - 1) * per_page

The count query repeats the WHERE clause. When no filter reads the overlay
and exclusions are off, it skips both joins.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from peek.config import get_settings
from peek.core.errors import ClientInputError
from peek.db.database import async_session_maker
from peek.db.models import UserEntityData, UserExcludedEntity
from peek.query.compiler import compile_filters, expand_criteria, parse_filters
from peek.query.fields import get_fields, get_model
from peek.query.hydrator import build_record, hydrate
from peek.query.identity import parse_composite_values
from peek.query.lowering import LoweringContext, lower
from peek.query.predicates import bound_parameters, uses_overlay
from peek.query.sorting import build_order_by, normalize_direction

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class QueryOptions:
    """Options for one execute() call.

    allowed_instance_ids: None means no instance restriction; [] means only
    legacy rows (instance_id NULL or "") are visible.
    """
    user_id: int | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    sort: str | None = None
    sort_direction: str | None = None
    page: int = 1
    per_page: int | None = None
    apply_exclusions: bool = True
    allowed_instance_ids: list[str] | None = None
    random_seed: int | None = None


@dataclass
class QueryResult:
    items: list
    total: int


def _overlay_join(model, overlay, kind: str, user_id: int | None):
    return and_(
        overlay.user_id == user_id,
        overlay.entity_type == kind,
        overlay.entity_id == model.id,
        overlay.instance_id == model.instance_id,
    )


def _exclusion_join(model, excluded, kind: str, user_id: int):
    """A global row ("" instance) or a row scoped to the entity's own instance."""
    return and_(
        excluded.user_id == user_id,
        excluded.entity_type == kind,
        excluded.entity_id == model.id,
        or_(excluded.instance_id == "", excluded.instance_id == model.instance_id),
    )


def instance_visibility(model, allowed_instance_ids: list[str] | None):
    """instance_id in the allowed set, or the legacy null/"" sentinel."""
    if allowed_instance_ids is None:
        return None
    return or_(
        model.instance_id.in_(list(allowed_instance_ids)),
        model.instance_id.is_(None),
        model.instance_id == "",
    )


def _page_bounds(options: QueryOptions) -> tuple[int, int]:
    if options.page is None or options.page < 1:
        raise ClientInputError(f"Invalid page: {options.page!r}")
    per_page = options.per_page or settings.default_per_page
    if per_page < 1:
        raise ClientInputError(f"Invalid per_page: {per_page!r}")
    per_page = min(per_page, settings.max_per_page)
    return per_page, (options.page - 1) * per_page


def _needs_expansion(kind: str, criteria: dict) -> bool:
    fields = get_fields(kind)
    return any(fields[name].hierarchy and getattr(c, "depth", None) for name, c in criteria.items())


def prepare_filters(kind: str, raw_filters: dict | None, snapshot=None):
    """Parse, expand hierarchies and compile a raw filter bag.

    Returns (criteria, predicate). The catalog snapshot is only consulted when
    a hierarchical filter asks for a depth.
    """
    criteria = parse_filters(kind, raw_filters)
    if _needs_expansion(kind, criteria):
        if snapshot is None:
            from peek.services.catalog_snapshot import get_mirror
            snapshot = get_mirror().require_snapshot()
        criteria = expand_criteria(kind, criteria, snapshot.expand)
    return criteria, compile_filters(kind, criteria)


async def execute(
    db: AsyncSession,
    kind: str,
    options: QueryOptions,
    *,
    session_maker: async_sessionmaker | None = None,
    snapshot=None,
) -> QueryResult:
    """Run one filtered, sorted, paginated query and hydrate the page."""
    start_time = time.time()
    model = get_model(kind)
    session_maker = session_maker or async_session_maker
    per_page, offset = _page_bounds(options)
    normalize_direction(options.sort_direction)

    criteria, predicate = prepare_filters(kind, options.filters, snapshot)
    user_id = options.user_id
    apply_exclusions = options.apply_exclusions and user_id is not None

    overlay = aliased(UserEntityData)
    excluded = aliased(UserExcludedEntity)
    ctx = LoweringContext(kind, model, overlay, user_id)

    base_conditions = [model.deleted_at.is_(None)]
    visibility = instance_visibility(model, options.allowed_instance_ids)
    if visibility is not None:
        base_conditions.append(visibility)

    # Data query
    query = select(model, overlay).outerjoin(overlay, _overlay_join(model, overlay, kind, user_id))
    if apply_exclusions:
        query = query.outerjoin(excluded, _exclusion_join(model, excluded, kind, user_id))
        query = query.where(excluded.id.is_(None))
    query = query.where(*base_conditions, lower(predicate, ctx))
    query = query.order_by(*build_order_by(ctx, options.sort, options.sort_direction, options.random_seed))
    query = query.offset(offset).limit(per_page)

    # Count query
    fast_path = not apply_exclusions and not uses_overlay(predicate)
    if fast_path:
        count_ctx = LoweringContext(kind, model, None, user_id)
        count_query = select(func.count()).select_from(model).where(*base_conditions, lower(predicate, count_ctx))
    else:
        count_overlay = aliased(UserEntityData)
        count_excluded = aliased(UserExcludedEntity)
        count_ctx = LoweringContext(kind, model, count_overlay, user_id)
        count_query = select(func.count()).select_from(model).outerjoin(
            count_overlay, _overlay_join(model, count_overlay, kind, user_id)
        )
        if apply_exclusions:
            count_query = count_query.outerjoin(
                count_excluded, _exclusion_join(model, count_excluded, kind, user_id)
            ).where(count_excluded.id.is_(None))
        count_query = count_query.where(*base_conditions, lower(predicate, count_ctx))

    # asyncpg doesn't support concurrent queries on one connection, so the
    # count runs on its own session.
    async def _run_count(q):
        async with session_maker() as s:
            r = await s.execute(q)
            return r.scalar_one_or_none() or 0

    result, total = await asyncio.gather(
        db.execute(query),
        _run_count(count_query),
    )
    rows = result.all()

    records = [build_record(kind, row[0], row[1]) for row in rows]
    items = await hydrate(kind, records, session_maker)

    elapsed_ms = (time.time() - start_time) * 1000
    logger.info(
        f"{kind} query: {len(criteria)} filters ({len(bound_parameters(predicate))} params), "
        f"sort={options.sort or 'created_at'}, page={options.page}, "
        f"{len(items)}/{total} rows, fast_count={fast_path}, {elapsed_ms:.0f}ms"
    )
    return QueryResult(items=items, total=total)


async def get_by_ids(
    db: AsyncSession,
    kind: str,
    ids: list,
    user_id: int | None = None,
    allowed_instance_ids: list[str] | None = None,
    *,
    session_maker: async_sessionmaker | None = None,
) -> list:
    """Explicit id lookup. Never filtered by exclusions.

    Accepts composite "id:instanceId" or bare ids and returns records in
    request order; a bare id returns every visible instance's copy.
    """
    if not ids:
        return []
    model = get_model(kind)
    keys = parse_composite_values(ids)
    overlay = aliased(UserEntityData)

    query = (
        select(model, overlay)
        .outerjoin(overlay, _overlay_join(model, overlay, kind, user_id))
        .where(
            model.deleted_at.is_(None),
            model.id.in_(list({k.id for k in keys})),
        )
        .order_by(model.id, model.instance_id)
    )
    visibility = instance_visibility(model, allowed_instance_ids)
    if visibility is not None:
        query = query.where(visibility)

    rows = (await db.execute(query)).all()
    by_key = {}
    by_id = {}
    for entity, overlay_row in rows:
        by_key[(entity.id, entity.instance_id or "")] = (entity, overlay_row)
        by_id.setdefault(entity.id, []).append((entity, overlay_row))

    ordered = []
    seen = set()
    for key in keys:
        if key.is_bare:
            matches = by_id.get(key.id, [])
        else:
            match = by_key.get((key.id, key.instance_id))
            matches = [match] if match else []
        for entity, overlay_row in matches:
            identity = (entity.id, entity.instance_id)
            if identity not in seen:
                seen.add(identity)
                ordered.append(build_record(kind, entity, overlay_row))

    return await hydrate(kind, ordered, session_maker)
