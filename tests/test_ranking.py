import pytest
from sqlalchemy import select

from conftest import add_overlay
from peek.db.models import UserEntityRanking, UserExcludedEntity
from peek.services.ranking_service import (
    EntityStats, compute_percentile_ranks, gather_entity_stats, recompute_all_rankings, recompute_rankings,
)


# ============ Percentiles ============

def test_scores_and_ordering():
    stats = [
        EntityStats("plays", play_count=3),
        EntityStats("o", o_count=1),
        EntityStats("watched", play_duration=1200.0),
    ]
    ranked = compute_percentile_ranks(stats, 1200.0)
    assert [r.entity_id for r in ranked] == ["o", "plays", "watched"]
    assert [r.engagement_score for r in ranked] == [5.0, 3.0, 1.0]
    assert [r.percentile_rank for r in ranked] == [100, 50, 0]


def test_library_presence_normalizes_the_rate():
    stats = [
        EntityStats("busy", play_count=10, library_presence=10),
        EntityStats("niche", play_count=2, library_presence=1),
    ]
    ranked = compute_percentile_ranks(stats, 1200.0)
    assert ranked[0].entity_id == "niche"
    assert ranked[1].engagement_rate == pytest.approx(1.0)


def test_ties_share_a_percentile():
    stats = [EntityStats("a", play_count=2), EntityStats("b", play_count=2), EntityStats("c", play_count=1)]
    ranked = compute_percentile_ranks(stats, 1200.0)
    assert [r.percentile_rank for r in ranked] == [100, 100, 0]


def test_percentiles_round_half_up():
    stats = [EntityStats(str(i), play_count=100 - i) for i in range(9)]
    ranked = compute_percentile_ranks(stats, 1200.0)
    assert [r.percentile_rank for r in ranked] == [100, 88, 75, 63, 50, 38, 25, 13, 0]


def test_single_and_empty_inputs():
    assert compute_percentile_ranks([], 1200.0) == []
    assert compute_percentile_ranks([EntityStats("only", play_count=1)], 0)[0].percentile_rank == 0


# ============ Rollups ============

async def _watch(db):
    await add_overlay(db, 1, "scene", "1", play_count=2, o_count=1, play_duration=900.0)
    await add_overlay(db, 1, "scene", "2", play_count=1)
    await add_overlay(db, 1, "scene", "3", rating=90)


async def test_gather_rolls_scene_engagement_up(seeded):
    db = seeded
    await _watch(db)

    stats = await gather_entity_stats(db, 1)

    assert {(s.entity_id, s.instance_id) for s in stats["scene"]} == {("1", "a"), ("2", "a")}
    performers = {(s.entity_id, s.instance_id): s for s in stats["performer"]}
    assert performers[("p1", "a")].o_count == 1
    assert performers[("p1", "a")].play_count == 2
    assert performers[("p2", "a")].play_count == 1
    assert {(s.entity_id, s.instance_id) for s in stats["studio"]} == {("s2", "a"), ("s1", "a")}
    assert {(s.entity_id, s.instance_id) for s in stats["tag"]} == {("t2", "a"), ("t3", "a")}


async def test_gather_skips_excluded_entities(seeded):
    db = seeded
    await _watch(db)
    db.add(UserExcludedEntity(user_id=1, entity_type="performer", entity_id="p2", instance_id="a", reason="hidden"))
    await db.commit()

    stats = await gather_entity_stats(db, 1)
    assert [s.entity_id for s in stats["performer"]] == ["p1"]


async def test_user_without_engagement_has_no_rankings(seeded):
    stats = await gather_entity_stats(seeded, 2)
    assert stats == {"scene": [], "performer": [], "studio": [], "tag": []}


async def test_recompute_replaces_rows(seeded, session_maker):
    db = seeded
    await _watch(db)

    counts = await recompute_rankings(db, 1)
    assert counts == {"scene": 2, "performer": 2, "studio": 2, "tag": 2}

    rows = (await db.execute(
        select(UserEntityRanking).where(UserEntityRanking.user_id == 1, UserEntityRanking.entity_type == "scene")
        .order_by(UserEntityRanking.percentile_rank.desc())
    )).scalars().all()
    assert [(r.entity_id, r.percentile_rank) for r in rows] == [("1", 100), ("2", 0)]

    summary = await recompute_all_rankings(session_maker)
    assert summary == {"success": 2, "failed": 0}
