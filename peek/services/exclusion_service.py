"""Exclusion overlay lookups and hidden-entity management."""

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.core.errors import ClientInputError
from peek.db.models import ENTITY_TYPES, UserExcludedEntity, UserHiddenEntity
from peek.query.fields import ENTITY_MODELS
from peek.services.exclusion_compute import ExclusionSet, add_hidden_entity, recompute_for_user

logger = logging.getLogger(__name__)


class ExclusionCache:
    """user id -> entity type -> ExclusionSet. No TTL; cleared on every write.

    A load records the user's generation before reading and only stores its
    result if no clear happened in between, so a read that overlaps a write
    can never put stale sets back.
    """

    def __init__(self):
        self._by_user: dict[int, dict[str, ExclusionSet]] = {}
        self._generations: dict[int, int] = {}
        self._epoch = 0

    def get(self, user_id: int) -> dict[str, ExclusionSet] | None:
        return self._by_user.get(user_id)

    def generation(self, user_id: int) -> tuple[int, int]:
        return self._epoch, self._generations.get(user_id, 0)

    def put(self, user_id: int, sets: dict[str, ExclusionSet], generation: tuple[int, int]) -> bool:
        if generation != self.generation(user_id):
            return False
        self._by_user[user_id] = sets
        return True

    def clear(self, user_id: int) -> None:
        self._by_user.pop(user_id, None)
        self._generations[user_id] = self._generations.get(user_id, 0) + 1

    def clear_all(self) -> None:
        self._by_user.clear()
        self._epoch += 1


_cache = ExclusionCache()


def clear_cache(user_id: int) -> None:
    _cache.clear(user_id)


def clear_all_cache() -> None:
    _cache.clear_all()


def _check_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise ClientInputError(f"Unknown entity type: {entity_type}")


# ============ Lookups ============

async def _load_user_sets(db: AsyncSession, user_id: int) -> dict[str, ExclusionSet]:
    sets = _cache.get(user_id)
    if sets is not None:
        return sets

    generation = _cache.generation(user_id)
    result = await db.execute(
        select(UserExcludedEntity.entity_type, UserExcludedEntity.entity_id, UserExcludedEntity.instance_id)
        .where(UserExcludedEntity.user_id == user_id)
    )
    sets = {entity_type: ExclusionSet() for entity_type in ENTITY_TYPES}
    for entity_type, entity_id, instance_id in result.all():
        sets.setdefault(entity_type, ExclusionSet()).add(entity_id, instance_id)
    if not _cache.put(user_id, sets, generation):
        logger.debug(f"Exclusion cache for user {user_id} changed during load; not storing")
    return sets


async def get_exclusion_set(db: AsyncSession, user_id: int, entity_type: str) -> ExclusionSet:
    _check_type(entity_type)
    sets = await _load_user_sets(db, user_id)
    return sets[entity_type]


async def is_excluded(
    db: AsyncSession,
    user_id: int | None,
    entity_type: str,
    entity_id: str,
    instance_id: str | None = None,
) -> bool:
    if user_id is None:
        return False
    excluded = await get_exclusion_set(db, user_id, entity_type)
    return excluded.contains(entity_id, instance_id)


async def filter_excluded(db: AsyncSession, entities: list, user_id: int | None, entity_type: str) -> list:
    """Drop entities (anything with .id and .instance_id) the user may not see."""
    if user_id is None or not entities:
        return list(entities)
    excluded = await get_exclusion_set(db, user_id, entity_type)
    if not excluded:
        return list(entities)
    return [e for e in entities if not excluded.contains(e.id, getattr(e, "instance_id", None))]


# ============ Hidden entities ============

async def hide_entity(
    db: AsyncSession,
    user_id: int,
    entity_type: str,
    entity_id: str,
    instance_id: str = "",
) -> None:
    """Hide an entity and apply its direct and cascade exclusions right away."""
    _check_type(entity_type)
    instance_id = instance_id or ""

    result = await db.execute(
        select(UserHiddenEntity).where(
            UserHiddenEntity.user_id == user_id,
            UserHiddenEntity.entity_type == entity_type,
            UserHiddenEntity.entity_id == entity_id,
            UserHiddenEntity.instance_id == instance_id,
        )
    )
    hidden = result.scalar_one_or_none()
    if hidden:
        hidden.hidden_at = datetime.utcnow()
    else:
        db.add(UserHiddenEntity(
            user_id=user_id, entity_type=entity_type, entity_id=entity_id, instance_id=instance_id,
        ))

    await add_hidden_entity(db, user_id, entity_type, entity_id, instance_id)
    await db.commit()
    clear_cache(user_id)


async def hide_entities(db: AsyncSession, user_id: int, items: list[dict]) -> dict:
    """Bulk hide. Each item is {entity_type, entity_id, instance_id?}."""
    success = 0
    failed = 0
    for item in items:
        try:
            await hide_entity(
                db, user_id, item["entity_type"], item["entity_id"], item.get("instance_id") or "",
            )
            success += 1
        except ClientInputError:
            raise
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to hide {item.get('entity_type')} {item.get('entity_id')} for user {user_id}: {e}")
            failed += 1
    return {"success": success, "failed": failed}


async def unhide_entity(
    db: AsyncSession,
    user_id: int,
    entity_type: str,
    entity_id: str,
    instance_id: str = "",
    *,
    session_maker: async_sessionmaker | None = None,
) -> None:
    """Unhide, then wait for the full recompute so visibility is restored exactly."""
    _check_type(entity_type)
    await db.execute(
        delete(UserHiddenEntity).where(
            UserHiddenEntity.user_id == user_id,
            UserHiddenEntity.entity_type == entity_type,
            UserHiddenEntity.entity_id == entity_id,
            UserHiddenEntity.instance_id == (instance_id or ""),
        )
    )
    await db.commit()
    clear_cache(user_id)

    await recompute_for_user(user_id, session_maker)
    clear_cache(user_id)


async def unhide_all(
    db: AsyncSession,
    user_id: int,
    entity_type: str | None = None,
    *,
    session_maker: async_sessionmaker | None = None,
) -> int:
    """Unhide everything (optionally one type). Returns the number of rows removed."""
    query = delete(UserHiddenEntity).where(UserHiddenEntity.user_id == user_id)
    if entity_type:
        _check_type(entity_type)
        query = query.where(UserHiddenEntity.entity_type == entity_type)

    result = await db.execute(query)
    await db.commit()
    removed = result.rowcount or 0
    clear_cache(user_id)

    if removed > 0:
        await recompute_for_user(user_id, session_maker)
        clear_cache(user_id)
    return removed


def _display_name(entity) -> str | None:
    return getattr(entity, "name", None) or getattr(entity, "title", None)


async def get_hidden_entities(db: AsyncSession, user_id: int, entity_type: str | None = None) -> list[dict]:
    """Hidden rows, newest first, with entity names. Rows whose entity is gone are dropped."""
    query = select(UserHiddenEntity).where(UserHiddenEntity.user_id == user_id)
    if entity_type:
        _check_type(entity_type)
        query = query.where(UserHiddenEntity.entity_type == entity_type)
    result = await db.execute(query.order_by(UserHiddenEntity.hidden_at.desc(), UserHiddenEntity.id.desc()))
    hidden_rows = result.scalars().all()

    # One lookup per type
    wanted: dict[str, set[str]] = {}
    for hidden in hidden_rows:
        wanted.setdefault(hidden.entity_type, set()).add(hidden.entity_id)

    found: dict[str, dict[str, list]] = {}
    for kind, ids in wanted.items():
        model = ENTITY_MODELS.get(kind)
        if model is None:
            continue
        rows = await db.execute(select(model).where(model.id.in_(list(ids)), model.deleted_at.is_(None)))
        by_id: dict[str, list] = {}
        for entity in rows.scalars().all():
            by_id.setdefault(entity.id, []).append(entity)
        found[kind] = by_id

    items = []
    for hidden in hidden_rows:
        candidates = found.get(hidden.entity_type, {}).get(hidden.entity_id, [])
        if hidden.instance_id:
            candidates = [e for e in candidates if (e.instance_id or "") == hidden.instance_id]
        if not candidates:
            continue
        items.append({
            "id": hidden.id,
            "entity_type": hidden.entity_type,
            "entity_id": hidden.entity_id,
            "instance_id": hidden.instance_id or "",
            "name": _display_name(candidates[0]),
            "hidden_at": hidden.hidden_at,
        })
    return items
