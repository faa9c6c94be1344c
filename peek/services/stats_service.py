"""User library and engagement statistics."""

import logging
from collections import defaultdict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from peek.config import get_settings
from peek.core.cache import get_cache
from peek.db.models import ENTITY_TYPES, UserEntityData, UserEntityRanking, UserEntityStats
from peek.db.schemas import EngagementTotals, LibraryCounts, TopEntity, UserStatsResponse
from peek.query.fields import ENTITY_MODELS
from peek.services.exclusion_service import get_exclusion_set
from peek.services.proxy_urls import to_proxy_url

logger = logging.getLogger(__name__)
settings = get_settings()

SORT_COLUMNS = {
    "engagement": UserEntityRanking.percentile_rank,
    "play_count": UserEntityRanking.play_count,
    "o_count": UserEntityRanking.o_count,
    "play_duration": UserEntityRanking.play_duration,
}

# entity type -> LibraryCounts field
LIBRARY_FIELDS = {
    "scene": "scenes",
    "performer": "performers",
    "studio": "studios",
    "tag": "tags",
    "gallery": "galleries",
    "group": "groups",
    "image": "images",
    "clip": "clips",
}

IMAGE_COLUMNS = ("image_path", "path_screenshot", "cover_path", "front_image_path", "path_thumbnail")


def normalize_sort_by(sort_by: str | None) -> str:
    return sort_by if sort_by in SORT_COLUMNS else "engagement"


async def _library_counts(db: AsyncSession, user_id: int) -> LibraryCounts:
    """Visible counts from the last exclusion recompute, live counts otherwise."""
    result = await db.execute(
        select(UserEntityStats.entity_type, UserEntityStats.visible_count).where(
            UserEntityStats.user_id == user_id,
            UserEntityStats.instance_id == "",
        )
    )
    counts = {entity_type: count for entity_type, count in result.all()}

    for entity_type in ENTITY_TYPES:
        if entity_type not in counts:
            model = ENTITY_MODELS[entity_type]
            result = await db.execute(
                select(func.count()).select_from(model).where(model.deleted_at.is_(None))
            )
            counts[entity_type] = result.scalar_one_or_none() or 0

    return LibraryCounts(**{LIBRARY_FIELDS[t]: counts.get(t, 0) for t in ENTITY_TYPES})


async def _engagement_totals(db: AsyncSession, user_id: int) -> EngagementTotals:
    result = await db.execute(
        select(
            UserEntityData.entity_type, UserEntityData.entity_id, UserEntityData.instance_id,
            UserEntityData.play_count, UserEntityData.o_count, UserEntityData.play_duration,
            UserEntityData.view_count,
        ).where(
            UserEntityData.user_id == user_id,
            UserEntityData.entity_type.in_(["scene", "image"]),
        )
    )
    rows = result.all()
    excluded_scenes = await get_exclusion_set(db, user_id, "scene")
    excluded_images = await get_exclusion_set(db, user_id, "image")

    totals = EngagementTotals()
    for entity_type, entity_id, instance_id, plays, o_count, duration, views in rows:
        if entity_type == "scene":
            if excluded_scenes.contains(entity_id, instance_id):
                continue
            totals.total_watch_time += duration or 0
            totals.total_play_count += plays or 0
            totals.total_o_count += o_count or 0
            if (plays or 0) > 0:
                totals.unique_scenes_watched += 1
        else:
            if excluded_images.contains(entity_id, instance_id):
                continue
            totals.total_o_count += o_count or 0
            if (views or 0) > 0:
                totals.total_images_viewed += 1
    return totals


async def _names(db: AsyncSession, entity_type: str, keys: set) -> dict:
    """(id, instance) -> (name, proxied image url) for live entities."""
    if not keys:
        return {}
    model = ENTITY_MODELS[entity_type]
    result = await db.execute(
        select(model).where(model.id.in_(list({k[0] for k in keys})), model.deleted_at.is_(None))
    )
    found = {}
    for entity in result.scalars().all():
        key = (entity.id, entity.instance_id or "")
        if key not in keys:
            continue
        name = getattr(entity, "name", None) or getattr(entity, "title", None)
        image = next((getattr(entity, c) for c in IMAGE_COLUMNS if getattr(entity, c, None)), None)
        found[key] = (name, to_proxy_url(image, entity.instance_id))
    return found


async def _top_entities(db: AsyncSession, user_id: int, entity_type: str, sort_by: str, limit: int) -> list[TopEntity]:
    column = SORT_COLUMNS[sort_by]
    result = await db.execute(
        select(UserEntityRanking)
        .where(UserEntityRanking.user_id == user_id, UserEntityRanking.entity_type == entity_type)
        .order_by(column.desc(), UserEntityRanking.engagement_rate.desc(), UserEntityRanking.entity_id)
        .limit(limit)
    )
    rankings = result.scalars().all()
    names = await _names(db, entity_type, {(r.entity_id, r.instance_id or "") for r in rankings})

    top = []
    for r in rankings:
        key = (r.entity_id, r.instance_id or "")
        if key not in names:
            continue  # Deleted since the rankings were computed
        name, image_path = names[key]
        top.append(TopEntity(
            id=r.entity_id,
            instance_id=r.instance_id or "",
            name=name,
            image_path=image_path,
            play_count=r.play_count,
            o_count=r.o_count,
            play_duration=r.play_duration,
            engagement_rate=r.engagement_rate,
            percentile_rank=r.percentile_rank,
        ))
    return top


async def get_user_stats(
    db: AsyncSession,
    user_id: int,
    sort_by: str = "engagement",
    limit: int | None = None,
    cache_version: int | None = None,
) -> UserStatsResponse:
    """Library counts, engagement totals and top-N lists for one user."""
    sort_by = normalize_sort_by(sort_by)
    limit = limit or settings.user_stats_top_n

    cache = get_cache()
    cache_key = None
    if cache_version is not None:
        cache_key = cache.user_stats_key(user_id, cache_version, f"{sort_by}:{limit}")
        cached = await cache.get(cache_key)
        if cached is not None:
            return UserStatsResponse(**cached)

    top = defaultdict(list)
    for entity_type in ("scene", "performer", "studio", "tag"):
        top[entity_type] = await _top_entities(db, user_id, entity_type, sort_by, limit)

    play_leaders = await _top_entities(db, user_id, "scene", "play_count", 1)
    o_leaders = await _top_entities(db, user_id, "performer", "o_count", 1)

    stats = UserStatsResponse(
        library=await _library_counts(db, user_id),
        engagement=await _engagement_totals(db, user_id),
        top_scenes=top["scene"],
        top_performers=top["performer"],
        top_studios=top["studio"],
        top_tags=top["tag"],
        most_watched_scene=play_leaders[0] if play_leaders and play_leaders[0].play_count > 0 else None,
        most_o_performer=o_leaders[0] if o_leaders and o_leaders[0].o_count > 0 else None,
        sort_by=sort_by,
    )

    if cache_key is not None:
        await cache.set(cache_key, stats.model_dump(mode="json"))
    return stats


async def invalidate_user_stats(user_id: int) -> int:
    return await get_cache().flush_pattern(get_cache().user_stats_pattern(user_id))
