from conftest import add_overlay
from peek.services.exclusion_compute import recompute_for_user
from peek.services.ranking_service import recompute_rankings
from peek.services.stats_service import get_user_stats, normalize_sort_by


async def _engage(db):
    await add_overlay(db, 1, "scene", "1", play_count=2, o_count=1, play_duration=900.0)
    await add_overlay(db, 1, "scene", "2", play_count=1, play_duration=300.0)
    await add_overlay(db, 1, "image", "i1", view_count=3, o_count=1)
    await recompute_rankings(db, 1)


def test_unknown_sort_falls_back_to_engagement():
    assert normalize_sort_by("o_count") == "o_count"
    assert normalize_sort_by("nonsense") == "engagement"
    assert normalize_sort_by(None) == "engagement"


async def test_engagement_totals(seeded):
    db = seeded
    await _engage(db)

    stats = await get_user_stats(db, 1)
    assert stats.engagement.total_watch_time == 1200.0
    assert stats.engagement.total_play_count == 3
    assert stats.engagement.total_o_count == 2
    assert stats.engagement.unique_scenes_watched == 2
    assert stats.engagement.total_images_viewed == 1


async def test_top_lists(seeded):
    db = seeded
    await _engage(db)

    stats = await get_user_stats(db, 1)
    assert [(s.id, s.name) for s in stats.top_scenes] == [("1", "Sunny Day"), ("2", "Night Walk")]
    assert stats.top_scenes[0].percentile_rank == 100
    assert stats.top_studios[0].id == "s2"
    assert stats.most_watched_scene.id == "1"
    assert stats.most_o_performer.name == "Alice Anders"

    limited = await get_user_stats(db, 1, sort_by="play_count", limit=1)
    assert len(limited.top_scenes) == 1
    assert limited.sort_by == "play_count"


async def test_library_counts_follow_exclusions(seeded, session_maker):
    db = seeded
    live = await get_user_stats(db, 1)
    assert live.library.scenes == 4
    assert live.library.performers == 3

    await recompute_for_user(1, session_maker)
    visible = await get_user_stats(db, 1)
    assert visible.library.scenes == 4
    assert visible.library.performers == 2


async def test_user_without_history(seeded):
    stats = await get_user_stats(seeded, 2)
    assert stats.top_scenes == []
    assert stats.most_watched_scene is None
    assert stats.most_o_performer is None
    assert stats.engagement.total_play_count == 0
