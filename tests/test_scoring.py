import math
from types import SimpleNamespace

import pytest

from peek.services.ratings import effective_rating, scoring_rating
from peek.services.scoring import (
    EntityPreferences, SceneRating, SceneScoringData, build_derived_weights, build_implicit_weights,
    calculate_scene_weight_multiplier, count_user_criteria, has_any_criteria, score_scene,
    score_scoring_data,
)


def _entity(entity_id, instance_id="a"):
    return SimpleNamespace(id=entity_id, instance_id=instance_id)


def _scene(performers=(), studio=None, tags=()):
    return SimpleNamespace(
        performers=[_entity(p) for p in performers],
        studio=_entity(studio) if studio else None,
        tags=[_entity(t) for t in tags],
    )


# ============ Ratings ============

def test_effective_rating_falls_back_to_upstream_then_zero():
    assert effective_rating(60, 90) == 60
    assert effective_rating(None, 90) == 90
    assert effective_rating(None, None) == 0


def test_scoring_rating_treats_unrated_favorite_as_85():
    assert scoring_rating(None, None, True) == 85
    assert scoring_rating(None, 30, True) == 30
    assert scoring_rating(None, None, False) == 0


# ============ Scene weight multiplier ============

def test_scene_weight_multiplier():
    assert calculate_scene_weight_multiplier(100, False) == pytest.approx(0.4)
    assert calculate_scene_weight_multiplier(100, True) == pytest.approx(0.55)
    assert calculate_scene_weight_multiplier(None, True) == pytest.approx(0.85 * 0.4 + 0.15)
    assert calculate_scene_weight_multiplier(39, True) == 0
    assert calculate_scene_weight_multiplier(40, False) == pytest.approx(0.16)
    assert calculate_scene_weight_multiplier(None, False) == 0


def test_derived_weights_accumulate_over_scenes():
    lookup = {
        "1:a": SceneScoringData("1:a", ["p1:a"], "s1:a", ["t1:a", "t2:a"]),
        "2:a": SceneScoringData("2:a", ["p1:a", "p2:a"], None, ["t1:a"]),
    }
    performers, studios, tags = build_derived_weights(
        [SceneRating("1:a", 100, False), SceneRating("2:a", 50, False), SceneRating("3:a", 20, True)],
        lookup.get,
    )
    assert performers == pytest.approx({"p1:a": 0.6, "p2:a": 0.2})
    assert studios == pytest.approx({"s1:a": 0.4})
    assert tags == pytest.approx({"t1:a": 0.6, "t2:a": 0.4})


def test_implicit_weights_skip_low_percentiles():
    rankings = [
        SimpleNamespace(entity_type="performer", entity_id="p1", instance_id="a", percentile_rank=80, engagement_rate=2.0),
        SimpleNamespace(entity_type="performer", entity_id="p2", instance_id="a", percentile_rank=20, engagement_rate=5.0),
        SimpleNamespace(entity_type="tag", entity_id="t1", instance_id="", percentile_rank=100, engagement_rate=1.0),
        SimpleNamespace(entity_type="scene", entity_id="1", instance_id="a", percentile_rank=100, engagement_rate=1.0),
    ]
    weights = build_implicit_weights(rankings, min_percentile=50)
    assert weights["performer"] == pytest.approx({"p1:a": 1.6})
    assert weights["tag"] == {"t1": 1.0}
    assert weights["studio"] == {}


# ============ Scene scoring ============

def test_favorite_performers_have_diminishing_returns():
    prefs = EntityPreferences(favorite_performers={"p1:a", "p2:a"})
    one = score_scene(_scene(performers=["p1"]), prefs)
    two = score_scene(_scene(performers=["p1", "p2"]), prefs)
    assert one == pytest.approx(5)
    assert two == pytest.approx(5 * math.sqrt(2))


def test_favorite_beats_rated_for_the_same_entity():
    prefs = EntityPreferences(favorite_performers={"p1:a"}, highly_rated_performers={"p1:a"})
    assert score_scene(_scene(performers=["p1"]), prefs) == pytest.approx(5)


def test_studio_scores_are_flat():
    assert score_scene(_scene(studio="s1"), EntityPreferences(favorite_studios={"s1:a"})) == pytest.approx(3)
    assert score_scene(_scene(studio="s1"), EntityPreferences(highly_rated_studios={"s1:a"})) == pytest.approx(2)


def test_tags_count_once_at_their_most_specific_source():
    prefs = EntityPreferences(favorite_tags={"t1:a", "t2:a"})
    scene = _scene(performers=["p1"], studio="s1", tags=["t1"])
    score = score_scene(
        scene, prefs,
        performer_tags={"p1:a": ["t1:a", "t2:a"]},
        studio_tags={"s1:a": ["t1:a", "t2:a"]},
    )
    # t1 as a scene tag (1.0), t2 through the performer (0.3), nothing left for the studio
    assert score == pytest.approx(1.0 + 0.3)


def test_instance_scoped_keys_do_not_cross_instances():
    prefs = EntityPreferences(favorite_performers={"p1:b"})
    assert score_scene(_scene(performers=["p1"]), prefs) == 0


def test_lightweight_scoring_counts_every_tag_as_scene_tag():
    prefs = EntityPreferences(
        favorite_tags={"t1:a"},
        highly_rated_tags={"t2:a"},
        derived_tag_weights={"t1:a": 0.25},
    )
    data = SceneScoringData("1:a", tag_ids=["t1:a", "t2:a", "t1:a"])
    assert score_scoring_data(data, prefs) == pytest.approx(1.0 + 0.5 + 0.5)


# ============ Criteria ============

def test_count_user_criteria():
    performers = [SimpleNamespace(favorite=True, rating=None), SimpleNamespace(favorite=False, rating=90)]
    scenes = [SimpleNamespace(favorite=False, rating=45), SimpleNamespace(favorite=False, rating=10)]
    counts = count_user_criteria(performers, [], [], scenes)
    assert counts.favorited_performers == 1
    assert counts.highly_rated_performers == 1
    assert counts.rated_scenes == 1
    assert has_any_criteria(counts)
    assert not has_any_criteria(count_user_criteria([], [], [], []))
