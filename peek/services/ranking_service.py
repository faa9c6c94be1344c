"""Per-user engagement rankings.

Scene engagement from the user overlay (plays, o count, watch time) is rolled
up onto performers, studios and tags. Each entity gets

    score = o_count * 5 + play_duration / avg_scene_duration + play_count
    rate  = score / max(library_presence, 1)

and a percentile among the user's engaged entities of the same type (100 is
the top entity, 0 the bottom, ties share a percentile).
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.db.database import async_session_maker
from peek.db.models import (
    Scene, ScenePerformer, SceneTag, User, UserEntityData, UserEntityRanking, UserExcludedEntity,
)
from peek.services.exclusion_compute import ExclusionSet

logger = logging.getLogger(__name__)

O_COUNT_WEIGHT = 5
DURATION_WEIGHT = 1
PLAY_COUNT_WEIGHT = 1
DEFAULT_SCENE_DURATION = 1200.0  # 20 minutes
TIE_EPSILON = 1e-4

RANKED_TYPES = ("scene", "performer", "studio", "tag")


@dataclass
class EntityStats:
    entity_id: str
    instance_id: str = ""
    play_count: int = 0
    o_count: int = 0
    play_duration: float = 0.0
    library_presence: int = 1


@dataclass
class ComputedRanking(EntityStats):
    engagement_score: float = 0.0
    engagement_rate: float = 0.0
    percentile_rank: int = 0


def compute_percentile_ranks(stats: list[EntityStats], avg_scene_duration: float) -> list[ComputedRanking]:
    """Score and rank entities, best first."""
    if not stats:
        return []
    avg_scene_duration = avg_scene_duration or DEFAULT_SCENE_DURATION

    plays = np.array([s.play_count for s in stats], dtype=float)
    o_counts = np.array([s.o_count for s in stats], dtype=float)
    durations = np.array([s.play_duration for s in stats], dtype=float)
    presence = np.array([s.library_presence for s in stats], dtype=float)

    scores = (
        o_counts * O_COUNT_WEIGHT
        + (durations / avg_scene_duration) * DURATION_WEIGHT
        + plays * PLAY_COUNT_WEIGHT
    )
    rates = scores / np.maximum(presence, 1)

    order = np.argsort(-rates, kind="stable")
    n = len(stats)
    positions = np.arange(n)
    # Half-up rounding
    percentiles = np.floor(100 * (n - positions - 1) / max(n - 1, 1) + 0.5).astype(int)

    ranked = []
    previous_rate = None
    previous_percentile = None
    for position, index in enumerate(order):
        source = stats[index]
        rate = float(rates[index])
        percentile = int(percentiles[position])
        if previous_rate is not None and abs(rate - previous_rate) < TIE_EPSILON:
            percentile = previous_percentile
        ranked.append(ComputedRanking(
            entity_id=source.entity_id,
            instance_id=source.instance_id or "",
            play_count=source.play_count,
            o_count=source.o_count,
            play_duration=source.play_duration,
            library_presence=source.library_presence,
            engagement_score=float(scores[index]),
            engagement_rate=rate,
            percentile_rank=percentile,
        ))
        previous_rate, previous_percentile = rate, percentile
    return ranked


async def _average_scene_duration(db: AsyncSession) -> float:
    result = await db.execute(
        select(func.avg(Scene.duration)).where(Scene.duration > 0, Scene.deleted_at.is_(None))
    )
    value = result.scalar_one_or_none()
    return float(value) if value else DEFAULT_SCENE_DURATION


async def _excluded_sets(db: AsyncSession, user_id: int) -> dict[str, ExclusionSet]:
    result = await db.execute(
        select(UserExcludedEntity.entity_type, UserExcludedEntity.entity_id, UserExcludedEntity.instance_id)
        .where(UserExcludedEntity.user_id == user_id, UserExcludedEntity.entity_type.in_(RANKED_TYPES))
    )
    sets = defaultdict(ExclusionSet)
    for entity_type, entity_id, instance_id in result.all():
        sets[entity_type].add(entity_id, instance_id)
    return sets


async def gather_entity_stats(db: AsyncSession, user_id: int) -> dict[str, list[EntityStats]]:
    """Raw engagement per ranked type, excluded entities skipped."""
    excluded = await _excluded_sets(db, user_id)

    result = await db.execute(
        select(
            UserEntityData.entity_id, UserEntityData.instance_id, UserEntityData.play_count,
            UserEntityData.o_count, UserEntityData.play_duration,
        ).where(
            UserEntityData.user_id == user_id,
            UserEntityData.entity_type == "scene",
        )
    )
    watched = {}
    for scene_id, instance_id, plays, o_count, duration in result.all():
        key = (scene_id, instance_id or "")
        if excluded["scene"].contains(*key):
            continue
        if (plays or 0) > 0 or (o_count or 0) > 0 or (duration or 0) > 0:
            watched[key] = (plays or 0, o_count or 0, duration or 0.0)

    stats: dict[str, list[EntityStats]] = {
        "scene": [EntityStats(sid, inst, p, o, d, 1) for (sid, inst), (p, o, d) in watched.items()]
    }
    if not watched:
        return {**stats, "performer": [], "studio": [], "tag": []}

    scene_ids = list({sid for sid, _ in watched})

    # scene -> owners, and each owner's scene count (library presence)
    rollups = {}
    presence = {}
    for entity_type, junction, owner_id, owner_inst in (
        ("performer", ScenePerformer, "performer_id", "performer_instance_id"),
        ("tag", SceneTag, "tag_id", "tag_instance_id"),
    ):
        result = await db.execute(
            select(junction.scene_id, junction.scene_instance_id, getattr(junction, owner_id), getattr(junction, owner_inst))
            .where(junction.scene_id.in_(scene_ids))
        )
        links = defaultdict(list)
        for sid, sinst, oid, oinst in result.all():
            if (sid, sinst or "") in watched:
                links[(sid, sinst or "")].append((oid, oinst or ""))
        rollups[entity_type] = links

        result = await db.execute(
            select(getattr(junction, owner_id), getattr(junction, owner_inst), func.count())
            .group_by(getattr(junction, owner_id), getattr(junction, owner_inst))
        )
        presence[entity_type] = {(oid, oinst or ""): count for oid, oinst, count in result.all()}

    result = await db.execute(
        select(Scene.id, Scene.instance_id, Scene.studio_id)
        .where(Scene.id.in_(scene_ids), Scene.studio_id.isnot(None))
    )
    studio_links = defaultdict(list)
    for sid, sinst, studio_id in result.all():
        if (sid, sinst or "") in watched:
            studio_links[(sid, sinst or "")].append((studio_id, sinst or ""))
    rollups["studio"] = studio_links

    result = await db.execute(
        select(Scene.studio_id, Scene.instance_id, func.count())
        .where(Scene.studio_id.isnot(None), Scene.deleted_at.is_(None))
        .group_by(Scene.studio_id, Scene.instance_id)
    )
    presence["studio"] = {(studio_id, inst or ""): count for studio_id, inst, count in result.all()}

    for entity_type in ("performer", "studio", "tag"):
        totals = defaultdict(lambda: [0, 0, 0.0])
        for scene_key, owners in rollups[entity_type].items():
            plays, o_count, duration = watched[scene_key]
            for owner in owners:
                if excluded[entity_type].contains(*owner):
                    continue
                total = totals[owner]
                total[0] += plays
                total[1] += o_count
                total[2] += duration
        stats[entity_type] = [
            EntityStats(oid, oinst, p, o, d, presence[entity_type].get((oid, oinst), 1))
            for (oid, oinst), (p, o, d) in totals.items()
            if p > 0 or o > 0
        ]
    return stats


async def recompute_rankings(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Rebuild the user's rankings. Returns the number of ranked entities per type."""
    start_time = time.time()
    avg_duration = await _average_scene_duration(db)
    stats = await gather_entity_stats(db, user_id)

    counts = {}
    for entity_type in RANKED_TYPES:
        rankings = compute_percentile_ranks(stats.get(entity_type, []), avg_duration)
        await db.execute(
            delete(UserEntityRanking).where(
                UserEntityRanking.user_id == user_id,
                UserEntityRanking.entity_type == entity_type,
            )
        )
        db.add_all(
            UserEntityRanking(
                user_id=user_id,
                entity_type=entity_type,
                entity_id=r.entity_id,
                instance_id=r.instance_id or "",
                play_count=r.play_count,
                o_count=r.o_count,
                play_duration=r.play_duration,
                engagement_score=r.engagement_score,
                library_presence=r.library_presence,
                engagement_rate=r.engagement_rate,
                percentile_rank=r.percentile_rank,
            )
            for r in rankings
        )
        await db.commit()
        counts[entity_type] = len(rankings)

    elapsed_ms = (time.time() - start_time) * 1000
    logger.info(f"Rankings for user {user_id}: {counts} in {elapsed_ms:.0f}ms")
    return counts


async def recompute_all_rankings(session_maker: async_sessionmaker | None = None) -> dict[str, int]:
    """Rebuild rankings for every user. A failing user is logged and skipped."""
    session_maker = session_maker or async_session_maker
    async with session_maker() as db:
        user_ids = [row[0] for row in (await db.execute(select(User.id).order_by(User.id))).all()]

    summary = {"success": 0, "failed": 0}
    for user_id in user_ids:
        try:
            async with session_maker() as db:
                await recompute_rankings(db, user_id)
            summary["success"] += 1
        except Exception as e:
            logger.error(f"Failed to recompute rankings for user {user_id}: {e}")
            summary["failed"] += 1
    return summary
