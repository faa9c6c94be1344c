"""Scene recommendations from explicit, derived and implicit preferences.

Pipeline:
1. Load the user's overlay rows, engagement rankings and scoring data
2. Drop excluded scenes and score the rest (lightweight variant)
3. Adjust for watch recency and upstream o count
4. Sort, split into 10 score tiers and shuffle inside each tier with a
   per-user seed so the list varies by user but is stable between requests
5. Cap, paginate and hydrate the page, dropping anything excluded since scoring
"""

import asyncio
import logging
import random
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.config import get_settings
from peek.db.database import async_session_maker
from peek.db.models import Scene, ScenePerformer, SceneTag, UserEntityData, UserEntityRanking
from peek.query.identity import composite_string
from peek.query.planner import get_by_ids, instance_visibility
from peek.services.exclusion_service import filter_excluded, get_exclusion_set
from peek.services.instance_service import get_user_allowed_instance_ids
from peek.services.ratings import scoring_rating
from peek.services.scoring import (
    EntityPreferences, SceneRating, SceneScoringData, UserCriteriaCounts,
    build_derived_weights, build_implicit_weights, count_user_criteria, has_any_criteria,
    score_scoring_data,
)

logger = logging.getLogger(__name__)
settings = get_settings()

TIER_COUNT = 10
NEVER_WATCHED_BONUS = 30
STALE_WATCH_BONUS = 20  # last watched more than 14 days ago
RECENT_WATCH_PENALTY = 10  # 1-14 days ago
JUST_WATCHED_PENALTY = 30  # less than a day ago
O_COUNT_BOOST = 0.03
O_COUNT_BOOST_CAP = 10


@dataclass
class ScoredScene:
    key: str
    score: float


@dataclass
class RecommendationPage:
    scenes: list
    total: int
    criteria: UserCriteriaCounts
    message: str | None = None


# ============ Loading ============

async def _load_overlay(session_maker: async_sessionmaker, user_id: int) -> list:
    async with session_maker() as s:
        result = await s.execute(
            select(UserEntityData).where(
                UserEntityData.user_id == user_id,
                UserEntityData.entity_type.in_(["scene", "performer", "studio", "tag"]),
            )
        )
        return list(result.scalars().all())


async def _load_rankings(session_maker: async_sessionmaker, user_id: int) -> list:
    async with session_maker() as s:
        result = await s.execute(
            select(UserEntityRanking).where(
                UserEntityRanking.user_id == user_id,
                UserEntityRanking.entity_type.in_(["performer", "studio", "tag"]),
            )
        )
        return list(result.scalars().all())


async def load_scoring_data(db: AsyncSession, allowed_instance_ids: list[str] | None) -> tuple[dict, dict, dict]:
    """Flat scoring data for every live scene.

    Returns (scene key -> SceneScoringData, scene key -> upstream o count,
    scene key -> upstream rating100).
    """
    query = select(Scene.id, Scene.instance_id, Scene.studio_id, Scene.o_counter, Scene.rating100).where(
        Scene.deleted_at.is_(None)
    )
    visibility = instance_visibility(Scene, allowed_instance_ids)
    if visibility is not None:
        query = query.where(visibility)
    scenes = (await db.execute(query)).all()

    data = {}
    o_counts = {}
    upstream_ratings = {}
    for scene_id, instance_id, studio_id, o_counter, rating100 in scenes:
        key = composite_string(scene_id, instance_id)
        data[key] = SceneScoringData(
            scene_key=key,
            studio_id=composite_string(studio_id, instance_id) if studio_id else None,
        )
        o_counts[key] = o_counter or 0
        upstream_ratings[key] = rating100

    for junction, attr, target_id, target_inst in (
        (ScenePerformer, "performer_ids", "performer_id", "performer_instance_id"),
        (SceneTag, "tag_ids", "tag_id", "tag_instance_id"),
    ):
        result = await db.execute(
            select(junction.scene_id, junction.scene_instance_id, getattr(junction, target_id), getattr(junction, target_inst))
        )
        for scene_id, scene_inst, tid, tinst in result.all():
            entry = data.get(composite_string(scene_id, scene_inst))
            if entry is not None:
                getattr(entry, attr).append(composite_string(tid, tinst))

    return data, o_counts, upstream_ratings


# ============ Scoring ============

def build_preferences(overlay_rows: list, rankings: list, scoring_data: dict, upstream_ratings: dict) -> tuple[EntityPreferences, UserCriteriaCounts]:
    by_type = defaultdict(list)
    for row in overlay_rows:
        by_type[row.entity_type].append(row)

    threshold = settings.highly_rated_threshold

    def keys(entity_type, predicate):
        return {composite_string(r.entity_id, r.instance_id) for r in by_type[entity_type] if predicate(r)}

    def is_favorite(r):
        return bool(r.favorite)

    def is_highly_rated(r):
        return r.rating is not None and r.rating >= threshold

    scene_ratings = [
        SceneRating(
            scene_key=composite_string(r.entity_id, r.instance_id),
            rating=scoring_rating(
                r.rating, upstream_ratings.get(composite_string(r.entity_id, r.instance_id)), bool(r.favorite)
            ),
            favorite=bool(r.favorite),
        )
        for r in by_type["scene"]
        if r.favorite or r.rating is not None
    ]
    derived_performers, derived_studios, derived_tags = build_derived_weights(scene_ratings, scoring_data.get)
    implicit = build_implicit_weights(rankings, settings.implicit_min_percentile)

    prefs = EntityPreferences(
        favorite_performers=keys("performer", is_favorite),
        highly_rated_performers=keys("performer", is_highly_rated),
        favorite_studios=keys("studio", is_favorite),
        highly_rated_studios=keys("studio", is_highly_rated),
        favorite_tags=keys("tag", is_favorite),
        highly_rated_tags=keys("tag", is_highly_rated),
        derived_performer_weights=derived_performers,
        derived_studio_weights=derived_studios,
        derived_tag_weights=derived_tags,
        implicit_performer_weights=implicit["performer"],
        implicit_studio_weights=implicit["studio"],
        implicit_tag_weights=implicit["tag"],
    )
    criteria = count_user_criteria(
        by_type["performer"], by_type["studio"], by_type["tag"], by_type["scene"],
        implicit_entities=sum(len(weights) for weights in implicit.values()),
        threshold=threshold,
    )
    return prefs, criteria


def watch_adjustment(play_count: int, last_played_at: datetime | None, now: datetime) -> float:
    if not play_count:
        return NEVER_WATCHED_BONUS
    if last_played_at is None:
        return 0
    days = (now - last_played_at).total_seconds() / 86400
    if days > 14:
        return STALE_WATCH_BONUS
    if days >= 1:
        return -RECENT_WATCH_PENALTY
    return -JUST_WATCHED_PENALTY


def diversify(scored: list[ScoredScene], seed: int) -> list[ScoredScene]:
    """Sort by score, bucket into tiers, and shuffle each tier with a seeded RNG."""
    if not scored:
        return []
    scored = sorted(scored, key=lambda s: (-s.score, s.key))
    max_score = scored[0].score
    score_range = max_score - scored[-1].score
    tiers = [[] for _ in range(TIER_COUNT)]
    for scene in scored:
        index = 0 if score_range == 0 else min(TIER_COUNT - 1, int((max_score - scene.score) / (score_range / TIER_COUNT)))
        tiers[index].append(scene)

    rng = random.Random(seed)
    ordered = []
    for tier in tiers:
        rng.shuffle(tier)
        ordered.extend(tier)
    return ordered


def rank_candidates(
    scoring_data: dict,
    prefs: EntityPreferences,
    watch: dict,
    o_counts: dict,
    excluded,
    now: datetime | None = None,
) -> list[ScoredScene]:
    now = now or datetime.utcnow()
    scored = []
    for key, data in scoring_data.items():
        scene_id, _, instance_id = key.partition(":")
        if excluded is not None and excluded.contains(scene_id, instance_id or None):
            continue
        base = score_scoring_data(data, prefs)
        if base == 0:
            continue
        play_count, last_played_at = watch.get(key, (0, None))
        adjusted = base + watch_adjustment(play_count, last_played_at, now)
        final = adjusted * (1.0 + min(o_counts.get(key, 0), O_COUNT_BOOST_CAP) * O_COUNT_BOOST)
        if final > 0:
            scored.append(ScoredScene(key, final))
    return scored


# ============ Entry point ============

async def get_recommended_scenes(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 24,
    *,
    session_maker: async_sessionmaker | None = None,
) -> RecommendationPage:
    start_time = time.time()
    session_maker = session_maker or async_session_maker

    overlay_rows, rankings = await asyncio.gather(
        _load_overlay(session_maker, user_id),
        _load_rankings(session_maker, user_id),
    )
    allowed = await get_user_allowed_instance_ids(db, user_id)
    scoring_data, o_counts, upstream_ratings = await load_scoring_data(db, allowed)

    prefs, criteria = build_preferences(overlay_rows, rankings, scoring_data, upstream_ratings)
    if not has_any_criteria(criteria):
        return RecommendationPage([], 0, criteria, "No recommendations yet")

    watch = {
        composite_string(r.entity_id, r.instance_id): (r.play_count or 0, r.last_played_at)
        for r in overlay_rows
        if r.entity_type == "scene"
    }
    excluded = await get_exclusion_set(db, user_id, "scene")
    candidates = diversify(
        rank_candidates(scoring_data, prefs, watch, o_counts, excluded),
        seed=user_id,
    )[:settings.recommendation_cap]

    if not candidates:
        return RecommendationPage([], 0, criteria, "No matching recommendations found")

    offset = (page - 1) * per_page
    page_keys = [c.key for c in candidates[offset:offset + per_page]]
    scenes = await get_by_ids(db, "scene", page_keys, user_id, allowed, session_maker=session_maker)
    # get_by_ids ignores exclusions; re-check the page against the current set
    scenes = await filter_excluded(db, scenes, user_id, "scene")

    elapsed_ms = (time.time() - start_time) * 1000
    logger.info(
        f"Recommendations for user {user_id}: {len(candidates)} candidates, "
        f"page {page} -> {len(scenes)} scenes in {elapsed_ms:.0f}ms"
    )
    return RecommendationPage(scenes, len(candidates), criteria)
