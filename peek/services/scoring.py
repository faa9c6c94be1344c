"""
Preference scoring for scene recommendations.

Preferences come from three sources, all keyed by composite "id:instanceId"
strings:

- Explicit: favorited and highly rated performers, studios and tags.
- Derived: weights accumulated from the user's rated/favorited scenes,
  propagated to each scene's performers, studio and tags.
- Implicit: engagement rankings at or above a minimum percentile.

Every category contributes coefficient * sqrt(signal), so stacking matches
has diminishing returns.
"""

import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

# Scene weight multiplier
SCENE_WEIGHT_BASE = 0.4
SCENE_WEIGHT_FAVORITE_BONUS = 0.15
SCENE_RATING_FLOOR = 40
SCENE_FAVORITED_IMPLICIT_RATING = 85

# Entity weights
PERFORMER_FAVORITE_WEIGHT = 5
PERFORMER_RATED_WEIGHT = 3
STUDIO_FAVORITE_WEIGHT = 3
STUDIO_RATED_WEIGHT = 2

# Tag weights by source
TAG_SCENE_FAVORITE_WEIGHT = 1.0
TAG_SCENE_RATED_WEIGHT = 0.5
TAG_PERFORMER_FAVORITE_WEIGHT = 0.3
TAG_PERFORMER_RATED_WEIGHT = 0.15
TAG_STUDIO_FAVORITE_WEIGHT = 0.5
TAG_STUDIO_RATED_WEIGHT = 0.25

# Implicit (engagement) coefficients
IMPLICIT_PERFORMER_WEIGHT = 2.0
IMPLICIT_STUDIO_WEIGHT = 1.5
IMPLICIT_TAG_WEIGHT = 0.5

HIGHLY_RATED_THRESHOLD = 80


@dataclass
class SceneRating:
    scene_key: str
    rating: int | None  # user rating, or upstream when the user has none
    favorite: bool


@dataclass
class SceneScoringData:
    """Flat identifiers of one scene, enough for lightweight scoring."""
    scene_key: str
    performer_ids: list[str] = field(default_factory=list)
    studio_id: str | None = None
    tag_ids: list[str] = field(default_factory=list)


@dataclass
class EntityPreferences:
    favorite_performers: set[str] = field(default_factory=set)
    highly_rated_performers: set[str] = field(default_factory=set)
    favorite_studios: set[str] = field(default_factory=set)
    highly_rated_studios: set[str] = field(default_factory=set)
    favorite_tags: set[str] = field(default_factory=set)
    highly_rated_tags: set[str] = field(default_factory=set)
    derived_performer_weights: dict[str, float] = field(default_factory=dict)
    derived_studio_weights: dict[str, float] = field(default_factory=dict)
    derived_tag_weights: dict[str, float] = field(default_factory=dict)
    implicit_performer_weights: dict[str, float] = field(default_factory=dict)
    implicit_studio_weights: dict[str, float] = field(default_factory=dict)
    implicit_tag_weights: dict[str, float] = field(default_factory=dict)


@dataclass
class UserCriteriaCounts:
    favorited_performers: int = 0
    highly_rated_performers: int = 0
    favorited_studios: int = 0
    highly_rated_studios: int = 0
    favorited_tags: int = 0
    highly_rated_tags: int = 0
    favorited_scenes: int = 0
    rated_scenes: int = 0
    implicit_entities: int = 0


def calculate_scene_weight_multiplier(rating: int | None, favorite: bool) -> float:
    """How strongly one rated/favorited scene propagates to its entities.

    A favorite with no rating counts as SCENE_FAVORITED_IMPLICIT_RATING. Scenes
    below SCENE_RATING_FLOOR contribute nothing.
    """
    if rating is None and favorite:
        rating = SCENE_FAVORITED_IMPLICIT_RATING
    if rating is None or rating < SCENE_RATING_FLOOR:
        return 0.0

    multiplier = (rating / 100) * SCENE_WEIGHT_BASE
    if favorite:
        multiplier += SCENE_WEIGHT_FAVORITE_BONUS
    return multiplier


def build_derived_weights(
    scene_ratings: Iterable[SceneRating],
    scoring_lookup: Callable[[str], SceneScoringData | None],
) -> tuple[dict[str, float], dict[str, float], dict[str, float]]:
    """(performer, studio, tag) weights accumulated from the user's rated scenes."""
    performers: dict[str, float] = {}
    studios: dict[str, float] = {}
    tags: dict[str, float] = {}

    for scene_rating in scene_ratings:
        multiplier = calculate_scene_weight_multiplier(scene_rating.rating, scene_rating.favorite)
        if multiplier == 0:
            continue
        data = scoring_lookup(scene_rating.scene_key)
        if data is None:
            continue

        for performer_id in data.performer_ids:
            performers[performer_id] = performers.get(performer_id, 0) + multiplier
        if data.studio_id:
            studios[data.studio_id] = studios.get(data.studio_id, 0) + multiplier
        for tag_id in data.tag_ids:
            tags[tag_id] = tags.get(tag_id, 0) + multiplier

    return performers, studios, tags


def build_implicit_weights(rankings: Iterable, min_percentile: int = 50) -> dict[str, dict[str, float]]:
    """entity type -> composite key -> engagement_rate * percentile / 100.

    `rankings` are UserEntityRanking-like rows; those below `min_percentile`
    are ignored.
    """
    weights: dict[str, dict[str, float]] = {"performer": {}, "studio": {}, "tag": {}}
    for ranking in rankings:
        if ranking.entity_type not in weights or ranking.percentile_rank < min_percentile:
            continue
        weight = (ranking.engagement_rate or 0) * (ranking.percentile_rank / 100)
        if weight > 0:
            key = f"{ranking.entity_id}:{ranking.instance_id}" if ranking.instance_id else ranking.entity_id
            weights[ranking.entity_type][key] = weight
    return weights


def _key(entity) -> str:
    instance_id = getattr(entity, "instance_id", "")
    return f"{entity.id}:{instance_id}" if instance_id else str(entity.id)


def _sqrt_term(coefficient: float, amount: float) -> float:
    return coefficient * math.sqrt(amount) if amount > 0 else 0.0


def _score_performers(performer_ids: Iterable[str], prefs: EntityPreferences) -> float:
    favorite = rated = 0
    derived = implicit = 0.0
    for performer_id in performer_ids:
        if performer_id in prefs.favorite_performers:
            favorite += 1
        elif performer_id in prefs.highly_rated_performers:
            rated += 1
        derived += prefs.derived_performer_weights.get(performer_id, 0)
        implicit += prefs.implicit_performer_weights.get(performer_id, 0)
    return (
        _sqrt_term(PERFORMER_FAVORITE_WEIGHT, favorite)
        + _sqrt_term(PERFORMER_RATED_WEIGHT, rated)
        + _sqrt_term(PERFORMER_FAVORITE_WEIGHT, derived)
        + _sqrt_term(IMPLICIT_PERFORMER_WEIGHT, implicit)
    )


def _score_studio(studio_id: str | None, prefs: EntityPreferences) -> float:
    if not studio_id:
        return 0.0
    score = 0.0
    if studio_id in prefs.favorite_studios:
        score += STUDIO_FAVORITE_WEIGHT
    elif studio_id in prefs.highly_rated_studios:
        score += STUDIO_RATED_WEIGHT
    score += _sqrt_term(STUDIO_FAVORITE_WEIGHT, prefs.derived_studio_weights.get(studio_id, 0))
    score += _sqrt_term(IMPLICIT_STUDIO_WEIGHT, prefs.implicit_studio_weights.get(studio_id, 0))
    return score


def _count_tags(tag_ids: Iterable[str], prefs: EntityPreferences) -> tuple[int, int]:
    favorite = rated = 0
    for tag_id in tag_ids:
        if tag_id in prefs.favorite_tags:
            favorite += 1
        elif tag_id in prefs.highly_rated_tags:
            rated += 1
    return favorite, rated


def _scene_tag_signals(tag_ids: Iterable[str], prefs: EntityPreferences) -> tuple[float, float]:
    derived = implicit = 0.0
    for tag_id in tag_ids:
        derived += prefs.derived_tag_weights.get(tag_id, 0)
        implicit += prefs.implicit_tag_weights.get(tag_id, 0)
    return _sqrt_term(TAG_SCENE_FAVORITE_WEIGHT, derived), _sqrt_term(IMPLICIT_TAG_WEIGHT, implicit)


def score_scene(
    scene,
    prefs: EntityPreferences,
    performer_tags: Mapping[str, Iterable[str]] | None = None,
    studio_tags: Mapping[str, Iterable[str]] | None = None,
) -> float:
    """Full scoring of a hydrated scene record.

    Tags are attributed to their most specific source only: a direct scene
    tag is never counted again through a performer or the studio, and a
    performer tag is never counted again through the studio.
    """
    performer_tags = performer_tags or {}
    studio_tags = studio_tags or {}

    performer_keys = [_key(p) for p in (scene.performers or [])]
    studio = getattr(scene, "studio", None)
    studio_key = _key(studio) if studio is not None else None

    score = _score_performers(performer_keys, prefs) + _score_studio(studio_key, prefs)

    scene_tag_ids = {_key(t) for t in (scene.tags or [])}
    via_performers = set()
    for performer_key in performer_keys:
        via_performers.update(performer_tags.get(performer_key, ()))
    via_performers -= scene_tag_ids
    via_studio = set(studio_tags.get(studio_key, ())) if studio_key else set()
    via_studio -= scene_tag_ids | via_performers

    fav, rated = _count_tags(scene_tag_ids, prefs)
    score += _sqrt_term(TAG_SCENE_FAVORITE_WEIGHT, fav) + _sqrt_term(TAG_SCENE_RATED_WEIGHT, rated)
    fav, rated = _count_tags(via_performers, prefs)
    score += _sqrt_term(TAG_PERFORMER_FAVORITE_WEIGHT, fav) + _sqrt_term(TAG_PERFORMER_RATED_WEIGHT, rated)
    fav, rated = _count_tags(via_studio, prefs)
    score += _sqrt_term(TAG_STUDIO_FAVORITE_WEIGHT, fav) + _sqrt_term(TAG_STUDIO_RATED_WEIGHT, rated)

    derived, implicit = _scene_tag_signals(scene_tag_ids, prefs)
    return score + derived + implicit


def score_scoring_data(data: SceneScoringData, prefs: EntityPreferences) -> float:
    """Lightweight scoring over flat id lists (all tags count as scene tags)."""
    score = _score_performers(data.performer_ids, prefs) + _score_studio(data.studio_id, prefs)

    tag_ids = set(data.tag_ids)
    fav, rated = _count_tags(tag_ids, prefs)
    score += _sqrt_term(TAG_SCENE_FAVORITE_WEIGHT, fav) + _sqrt_term(TAG_SCENE_RATED_WEIGHT, rated)
    derived, implicit = _scene_tag_signals(tag_ids, prefs)
    return score + derived + implicit


def count_user_criteria(
    performer_ratings: Iterable,
    studio_ratings: Iterable,
    tag_ratings: Iterable,
    scene_ratings: Iterable,
    implicit_entities: int = 0,
    threshold: int = HIGHLY_RATED_THRESHOLD,
) -> UserCriteriaCounts:
    """Criteria feedback. Each rating row has .favorite and .rating."""

    def favorited(rows):
        return sum(1 for r in rows if r.favorite)

    def rated(rows, floor):
        return sum(1 for r in rows if r.rating is not None and r.rating >= floor)

    performer_ratings, studio_ratings = list(performer_ratings), list(studio_ratings)
    tag_ratings, scene_ratings = list(tag_ratings), list(scene_ratings)
    return UserCriteriaCounts(
        favorited_performers=favorited(performer_ratings),
        highly_rated_performers=rated(performer_ratings, threshold),
        favorited_studios=favorited(studio_ratings),
        highly_rated_studios=rated(studio_ratings, threshold),
        favorited_tags=favorited(tag_ratings),
        highly_rated_tags=rated(tag_ratings, threshold),
        favorited_scenes=favorited(scene_ratings),
        rated_scenes=rated(scene_ratings, SCENE_RATING_FLOOR),
        implicit_entities=implicit_entities,
    )


def has_any_criteria(counts: UserCriteriaCounts) -> bool:
    return any(
        getattr(counts, name) > 0
        for name in UserCriteriaCounts.__dataclass_fields__
    )
