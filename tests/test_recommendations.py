from datetime import datetime, timedelta

import pytest

from conftest import NOW, add_overlay
from peek.db.models import UserExcludedEntity
from peek.services.exclusion_compute import ExclusionSet
from peek.services.recommendation_service import (
    ScoredScene, diversify, get_recommended_scenes, rank_candidates, watch_adjustment,
)
from peek.services.scoring import EntityPreferences, SceneScoringData


# ============ Watch recency ============

def test_watch_adjustment():
    assert watch_adjustment(0, None, NOW) == 30
    assert watch_adjustment(3, None, NOW) == 0
    assert watch_adjustment(1, NOW - timedelta(days=30), NOW) == 20
    assert watch_adjustment(1, NOW - timedelta(days=3), NOW) == -10
    assert watch_adjustment(1, NOW - timedelta(hours=2), NOW) == -30


# ============ Tiers ============

def test_diversify_is_deterministic_per_seed():
    scored = [ScoredScene(str(i), float(i)) for i in range(40)]
    assert diversify(scored, 7) == diversify(list(reversed(scored)), 7)


def test_diversify_keeps_tiers_in_order():
    scored = [ScoredScene(f"hi{i}", 100.0 - i * 0.1) for i in range(5)] + [
        ScoredScene(f"lo{i}", 1.0 + i * 0.1) for i in range(5)
    ]
    ordered = diversify(scored, 3)
    assert {s.key for s in ordered[:5]} == {f"hi{i}" for i in range(5)}
    assert {s.key for s in ordered[5:]} == {f"lo{i}" for i in range(5)}


def test_diversify_single_score():
    scored = [ScoredScene("a", 5.0), ScoredScene("b", 5.0)]
    assert sorted(s.key for s in diversify(scored, 1)) == ["a", "b"]
    assert diversify([], 1) == []


# ============ Candidate ranking ============

def test_rank_candidates():
    data = {
        "1:a": SceneScoringData("1:a", performer_ids=["p1:a"]),
        "2:a": SceneScoringData("2:a", performer_ids=["p1:a"]),
        "3:a": SceneScoringData("3:a"),
        "4:b": SceneScoringData("4:b", performer_ids=["p1:a"]),
    }
    prefs = EntityPreferences(favorite_performers={"p1:a"})
    excluded = ExclusionSet()
    excluded.add("4", "b")

    scored = rank_candidates(
        data, prefs,
        watch={"2:a": (1, NOW - timedelta(hours=1))},
        o_counts={"1:a": 20},
        excluded=excluded,
        now=NOW,
    )
    by_key = {s.key: s.score for s in scored}
    # 5 for the favorite, +30 never watched, capped o-count boost of 30%
    assert by_key["1:a"] == pytest.approx(35 * 1.3)
    # just watched: 5 - 30 is negative and dropped
    assert set(by_key) == {"1:a"}


# ============ End to end ============

async def test_no_signals_returns_message(seeded, session_maker):
    page = await get_recommended_scenes(seeded, 2, session_maker=session_maker)
    assert page.scenes == []
    assert page.total == 0
    assert page.message == "No recommendations yet"


async def test_favorite_performer_recommends_their_scene(seeded, session_maker):
    db = seeded
    await add_overlay(db, 1, "performer", "p1", favorite=True)

    page = await get_recommended_scenes(db, 1, session_maker=session_maker)
    assert page.criteria.favorited_performers == 1
    assert [(s.id, s.instance_id) for s in page.scenes] == [("1", "a")]
    assert page.scenes[0].performers[0].name == "Alice Anders"
    assert page.message is None


async def test_excluded_scenes_are_not_recommended(seeded, session_maker):
    db = seeded
    await add_overlay(db, 1, "performer", "p1", favorite=True)
    db.add(UserExcludedEntity(user_id=1, entity_type="scene", entity_id="1", instance_id="a", reason="hidden"))
    await db.commit()

    page = await get_recommended_scenes(db, 1, session_maker=session_maker)
    assert page.scenes == []
    assert page.message == "No matching recommendations found"


async def test_rated_scene_propagates_to_its_tags(seeded, session_maker):
    db = seeded
    # scene 2 carries t3, performer p2 and studio s1
    await add_overlay(db, 1, "scene", "2", rating=100, play_count=1, last_played_at=datetime(2020, 1, 1))

    page = await get_recommended_scenes(db, 1, page=1, per_page=10, session_maker=session_maker)
    assert page.criteria.rated_scenes == 1
    assert [s.id for s in page.scenes] == ["2"]
