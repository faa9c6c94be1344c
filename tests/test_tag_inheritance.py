from sqlalchemy import select

from peek.db.models import PerformerTag, Scene, SceneInheritedTag, StudioTag, Tag
from peek.query.planner import QueryOptions, execute
from peek.services.tag_inheritance import compute_inherited_tags


async def _inherited(db):
    result = await db.execute(select(SceneInheritedTag))
    return {(r.scene_id, r.scene_instance_id, r.tag_id, r.tag_instance_id) for r in result.scalars().all()}


async def test_scene_inherits_performer_and_group_tags(seeded):
    db = seeded
    changed = await compute_inherited_tags(db)
    assert changed == 1
    assert await _inherited(db) == {("1", "a", "t3", "a")}

    scene = (await db.execute(select(Scene).where(Scene.id == "1", Scene.instance_id == "a"))).scalar_one()
    await db.refresh(scene)
    assert scene.inherited_tag_ids == ["t3"]


async def test_direct_tags_are_not_inherited(seeded):
    db = seeded
    db.add(PerformerTag(performer_id="p2", performer_instance_id="a", tag_id="t3", tag_instance_id="a"))
    await db.commit()

    await compute_inherited_tags(db)
    # scene 2 is tagged t3 directly
    assert ("2", "a", "t3", "a") not in await _inherited(db)


async def test_studio_tags_are_inherited_on_the_same_instance_only(seeded):
    db = seeded
    db.add_all([
        Tag(id="t9", instance_id="b", name="Other instance"),
        StudioTag(studio_id="s1", studio_instance_id="a", tag_id="t1", tag_instance_id="a"),
        StudioTag(studio_id="s1", studio_instance_id="a", tag_id="t9", tag_instance_id="b"),
    ])
    await db.commit()

    await compute_inherited_tags(db)
    inherited = await _inherited(db)
    assert ("2", "a", "t1", "a") in inherited
    assert not any(tag_id == "t9" for _, _, tag_id, _ in inherited)


async def test_recompute_is_stable(seeded):
    db = seeded
    await compute_inherited_tags(db)
    assert await compute_inherited_tags(db) == 0
    assert await _inherited(db) == {("1", "a", "t3", "a")}


async def test_tag_filter_matches_inherited_tags(seeded, session_maker):
    db = seeded
    await compute_inherited_tags(db)
    result = await execute(db, "scene", QueryOptions(filters={"tags": {"value": ["t3:a"]}}), session_maker=session_maker)
    assert sorted(item.id for item in result.items) == ["1", "2"]

    none = await execute(
        db, "scene",
        QueryOptions(filters={"tags": {"value": ["t3:a"], "modifier": "EXCLUDES"}}),
        session_maker=session_maker,
    )
    assert sorted(f"{i.id}:{i.instance_id}" for i in none.items) == ["1:b", "3:a"]
