import pytest

from conftest import add_overlay
from peek.core.errors import CatalogUnavailableError, ClientInputError
from peek.db.models import UserExcludedEntity
from peek.query.planner import QueryOptions, execute, get_by_ids
from peek.query.sorting import random_rank
from peek.services.catalog_snapshot import load_snapshot
from peek.services.exclusion_service import hide_entity, unhide_entity


def _keys(result):
    return [f"{item.id}:{item.instance_id}" for item in result.items]


async def _query(db, session_maker, kind="scene", snapshot=None, **options):
    return await execute(db, kind, QueryOptions(**options), session_maker=session_maker, snapshot=snapshot)


async def _exclude(db, user_id, entity_type, entity_id, instance_id="", reason="hidden"):
    db.add(UserExcludedEntity(
        user_id=user_id, entity_type=entity_type, entity_id=entity_id, instance_id=instance_id, reason=reason,
    ))
    await db.commit()


# ============ Basics ============

async def test_default_query_skips_deleted_and_sorts_newest_first(seeded, session_maker):
    result = await _query(seeded, session_maker)
    assert result.total == 4
    assert _keys(result) == ["1:b", "3:a", "2:a", "1:a"]


async def test_title_sort_and_pagination(seeded, session_maker):
    result = await _query(seeded, session_maker, sort="title", sort_direction="asc", per_page=2, page=2)
    assert result.total == 4
    assert _keys(result) == ["1:a", "1:b"]


async def test_unknown_sort_falls_back_to_created_at(seeded, session_maker):
    result = await _query(seeded, session_maker, sort="no_such_sort", sort_direction="ASC")
    assert _keys(result) == ["1:b", "3:a", "2:a", "1:a"]


async def test_random_sort_is_stable_for_a_seed(seeded, session_maker):
    first = await _query(seeded, session_maker, sort="random", random_seed=99)
    second = await _query(seeded, session_maker, sort="random", random_seed=99)
    assert _keys(first) == _keys(second)
    assert first.total == 4


async def test_random_pages_concatenate_to_the_full_order(seeded, session_maker):
    full = await _query(seeded, session_maker, sort="random", random_seed=99)
    expected = sorted(
        ["1:a", "1:b", "2:a", "3:a"],
        key=lambda key: (random_rank(key.split(":")[0], 99), key),
        reverse=True,
    )
    assert _keys(full) == expected

    paged = []
    for page in range(1, 5):
        result = await _query(seeded, session_maker, sort="random", random_seed=99, per_page=1, page=page)
        assert result.total == 4
        paged.extend(_keys(result))
    assert paged == _keys(full)
    assert len(set(paged)) == 4


async def test_random_order_depends_on_the_seed(seeded, session_maker):
    orders = set()
    for seed in range(1, 21):
        result = await _query(seeded, session_maker, sort="random", random_seed=seed)
        assert sorted(_keys(result)) == ["1:a", "1:b", "2:a", "3:a"]
        orders.add(tuple(_keys(result)))
    assert len(orders) > 1


async def test_random_sort_on_non_numeric_ids(seeded, session_maker):
    result = await _query(seeded, session_maker, kind="performer", sort="random", random_seed=7)
    assert result.total == 3
    assert _keys(result) == ["p2:a", "p1:b", "p1:a"]


@pytest.mark.parametrize("options", [{"page": 0}, {"per_page": -1}, {"sort_direction": "sideways"}])
async def test_invalid_options_are_rejected(seeded, session_maker, options):
    with pytest.raises(ClientInputError):
        await _query(seeded, session_maker, **options)


# ============ Instance visibility ============

async def test_instance_visibility(seeded, session_maker):
    assert (await _query(seeded, session_maker, allowed_instance_ids=["a"])).total == 3
    assert (await _query(seeded, session_maker, allowed_instance_ids=["b"])).total == 1
    assert (await _query(seeded, session_maker, allowed_instance_ids=[])).total == 0


# ============ Filters ============

async def test_text_filter(seeded, session_maker):
    result = await _query(seeded, session_maker, filters={"title": {"value": "SUN", "modifier": "INCLUDES"}})
    assert sorted(_keys(result)) == ["1:a", "1:b"]


async def test_like_wildcards_are_literal(seeded, session_maker):
    result = await _query(seeded, session_maker, filters={"title": {"value": "%"}})
    assert result.total == 0


async def test_composite_and_bare_performer_references(seeded, session_maker):
    scoped = await _query(seeded, session_maker, filters={"performers": {"value": ["p1:a"]}})
    assert _keys(scoped) == ["1:a"]
    wrong_instance = await _query(seeded, session_maker, filters={"performers": {"value": ["p1:b"]}})
    assert wrong_instance.total == 0
    excluded = await _query(
        seeded, session_maker, filters={"performers": {"value": ["p1"], "modifier": "EXCLUDES"}}
    )
    assert sorted(_keys(excluded)) == ["1:b", "2:a", "3:a"]


async def test_includes_all(seeded, session_maker):
    both = await _query(
        seeded, session_maker, filters={"performers": {"value": ["p1:a", "p2:a"], "modifier": "INCLUDES_ALL"}}
    )
    assert both.total == 0
    one = await _query(
        seeded, session_maker, filters={"performers": {"value": ["p2:a"], "modifier": "INCLUDES_ALL"}}
    )
    assert _keys(one) == ["2:a"]


async def test_tag_depth_needs_a_snapshot(seeded, session_maker):
    with pytest.raises(CatalogUnavailableError):
        await _query(seeded, session_maker, filters={"tags": {"value": ["t1:a"], "depth": -1}})


async def test_tag_hierarchy_expansion(seeded, session_maker):
    snapshot = await load_snapshot(session_maker, 1)

    direct = await _query(seeded, session_maker, filters={"tags": {"value": ["t1:a"]}})
    assert direct.total == 0

    scoped = await _query(seeded, session_maker, snapshot=snapshot, filters={"tags": {"value": ["t1:a"], "depth": -1}})
    assert _keys(scoped) == ["1:a"]

    bare = await _query(seeded, session_maker, snapshot=snapshot, filters={"tags": {"value": ["t1"], "depth": -1}})
    assert sorted(_keys(bare)) == ["1:a", "1:b"]


async def test_studio_hierarchy_expansion(seeded, session_maker):
    snapshot = await load_snapshot(session_maker, 1)
    result = await _query(
        seeded, session_maker, snapshot=snapshot, filters={"studios": {"value": ["s1:a"], "depth": 1}}
    )
    assert sorted(_keys(result)) == ["1:a", "2:a"]


async def test_resolution_orientation_and_date(seeded, session_maker):
    full_hd = await _query(seeded, session_maker, filters={"resolution": {"value": "FULL_HD"}})
    assert _keys(full_hd) == ["1:a"]
    portrait = await _query(seeded, session_maker, filters={"orientation": {"value": ["PORTRAIT"]}})
    assert _keys(portrait) == ["3:a"]
    recent = await _query(seeded, session_maker, filters={"date": {"value": "2023-01-01", "modifier": "GREATER_THAN"}})
    assert _keys(recent) == ["1:a"]
    created = await _query(
        seeded, session_maker, filters={"created_at": {"value": "2024-05-30", "modifier": "GREATER_THAN"}}
    )
    assert sorted(_keys(created)) == ["1:b", "2:a", "3:a"]


async def test_rating_filter_uses_the_user_rating_first(seeded, session_maker):
    await add_overlay(seeded, 2, "scene", "2", rating=90)
    await add_overlay(seeded, 2, "scene", "1", rating=10)

    filters = {"rating100": {"value": 70, "modifier": "GREATER_THAN"}}
    anonymous = await _query(seeded, session_maker, filters=filters)
    assert _keys(anonymous) == ["1:a"]
    bob = await _query(seeded, session_maker, filters=filters, user_id=2)
    assert _keys(bob) == ["2:a"]


async def test_favorite_performer_filter(seeded, session_maker):
    await add_overlay(seeded, 1, "performer", "p2", favorite=True)
    result = await _query(seeded, session_maker, filters={"performer_favorite": {"value": True}}, user_id=1)
    assert _keys(result) == ["2:a"]
    anonymous = await _query(seeded, session_maker, filters={"performer_favorite": {"value": True}})
    assert anonymous.total == 0


# ============ Exclusions ============

async def test_scoped_exclusion_hides_one_copy(seeded, session_maker):
    await _exclude(seeded, 1, "scene", "1", "a")
    result = await _query(seeded, session_maker, user_id=1)
    assert result.total == 3
    assert "1:a" not in _keys(result)
    assert "1:b" in _keys(result)


async def test_global_exclusion_hides_every_copy(seeded, session_maker):
    await _exclude(seeded, 1, "scene", "1", "", reason="restricted")
    result = await _query(seeded, session_maker, user_id=1)
    assert sorted(_keys(result)) == ["2:a", "3:a"]


async def test_exclusions_only_apply_to_their_user(seeded, session_maker):
    await _exclude(seeded, 1, "scene", "2", "a")
    assert (await _query(seeded, session_maker, user_id=2)).total == 4
    assert (await _query(seeded, session_maker, user_id=1, apply_exclusions=False)).total == 4


async def test_count_matches_filtered_exclusions(seeded, session_maker):
    await _exclude(seeded, 1, "scene", "1", "a")
    result = await _query(seeded, session_maker, user_id=1, filters={"title": {"value": "sunny"}})
    assert result.total == 1
    assert _keys(result) == ["1:b"]


async def test_hiding_a_performer_hides_their_scenes_until_unhidden(seeded, session_maker):
    db = seeded
    await hide_entity(db, 1, "performer", "p1", "a")

    result = await _query(db, session_maker, user_id=1)
    assert result.total == 3
    assert sorted(_keys(result)) == ["1:b", "2:a", "3:a"]
    assert (await _query(db, session_maker, user_id=1, apply_exclusions=False)).total == 4
    assert (await _query(db, session_maker, user_id=2)).total == 4

    await unhide_entity(db, 1, "performer", "p1", "a", session_maker=session_maker)
    result = await _query(db, session_maker, user_id=1)
    assert sorted(_keys(result)) == ["1:a", "1:b", "2:a", "3:a"]


# ============ Other kinds ============

async def test_performer_name_filter(seeded, session_maker):
    result = await _query(seeded, session_maker, kind="performer", filters={"name": {"value": "alice"}})
    assert sorted(_keys(result)) == ["p1:a", "p1:b"]


async def test_tag_children_filter(seeded, session_maker):
    result = await _query(seeded, session_maker, kind="tag", filters={"children": {"value": ["t2:a"]}})
    assert _keys(result) == ["t1:a"]


# ============ Lookups by id ============

async def test_get_by_ids(seeded, session_maker):
    bare = await get_by_ids(seeded, "scene", ["1"], session_maker=session_maker)
    assert sorted(f"{s.id}:{s.instance_id}" for s in bare) == ["1:a", "1:b"]

    ordered = await get_by_ids(seeded, "scene", ["2:a", "1:b"], session_maker=session_maker)
    assert [f"{s.id}:{s.instance_id}" for s in ordered] == ["2:a", "1:b"]

    assert await get_by_ids(seeded, "scene", ["4:a"], session_maker=session_maker) == []
    assert await get_by_ids(seeded, "scene", ["1"], allowed_instance_ids=["b"], session_maker=session_maker) != []


async def test_get_by_ids_ignores_exclusions(seeded, session_maker):
    await _exclude(seeded, 1, "scene", "1", "a")
    found = await get_by_ids(seeded, "scene", ["1:a"], user_id=1, session_maker=session_maker)
    assert len(found) == 1
