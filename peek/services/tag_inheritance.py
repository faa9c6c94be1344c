"""Inherited scene tags.

A scene inherits the tags of its performers, its studio and its groups. Direct
scene tags are left out, and a tag is only inherited from the scene's own
instance. The result is denormalized into `scenes.inherited_tag_ids` and the
`scene_inherited_tags` junction after every sync so filters never compute it.
"""

import logging
import time
from collections import defaultdict

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from peek.db.models import (
    GroupTag, PerformerTag, Scene, SceneGroup, SceneInheritedTag, ScenePerformer,
    SceneTag, StudioTag,
)

logger = logging.getLogger(__name__)


async def _tags_by_owner(db: AsyncSession, junction, owner_id: str, owner_inst: str, owners: set) -> dict:
    """(owner id, instance) -> {(tag id, tag instance)} for the given owners."""
    if not owners:
        return {}
    result = await db.execute(
        select(
            getattr(junction, owner_id), getattr(junction, owner_inst),
            junction.tag_id, junction.tag_instance_id,
        ).where(getattr(junction, owner_id).in_(list({o[0] for o in owners})))
    )
    tags = defaultdict(set)
    for oid, oinst, tid, tinst in result.all():
        key = (oid, oinst or "")
        if key in owners:
            tags[key].add((tid, tinst or ""))
    return tags


async def _scene_links(db: AsyncSession, junction, target_id: str, target_inst: str, scene_keys: set) -> dict:
    """(scene id, instance) -> {(target id, instance)}."""
    result = await db.execute(
        select(
            junction.scene_id, junction.scene_instance_id,
            getattr(junction, target_id), getattr(junction, target_inst),
        ).where(junction.scene_id.in_(list({k[0] for k in scene_keys})))
    )
    links = defaultdict(set)
    for sid, sinst, tid, tinst in result.all():
        key = (sid, sinst or "")
        if key in scene_keys:
            links[key].add((tid, tinst or ""))
    return links


async def _compute_batch(db: AsyncSession, scenes: list) -> dict:
    """(scene id, instance) -> sorted inherited tag ids for one batch."""
    scene_keys = {(s.id, s.instance_id or "") for s in scenes}

    direct = await _scene_links(db, SceneTag, "tag_id", "tag_instance_id", scene_keys)
    performers = await _scene_links(db, ScenePerformer, "performer_id", "performer_instance_id", scene_keys)
    groups = await _scene_links(db, SceneGroup, "group_id", "group_instance_id", scene_keys)
    studios = {
        (s.id, s.instance_id or ""): (s.studio_id, s.instance_id or "")
        for s in scenes if s.studio_id
    }

    performer_tags = await _tags_by_owner(
        db, PerformerTag, "performer_id", "performer_instance_id",
        {p for linked in performers.values() for p in linked},
    )
    group_tags = await _tags_by_owner(
        db, GroupTag, "group_id", "group_instance_id",
        {g for linked in groups.values() for g in linked},
    )
    studio_tags = await _tags_by_owner(db, StudioTag, "studio_id", "studio_instance_id", set(studios.values()))

    inherited = {}
    for key in scene_keys:
        tags = set()
        for performer in performers.get(key, ()):
            tags |= performer_tags.get(performer, set())
        for group in groups.get(key, ()):
            tags |= group_tags.get(group, set())
        if key in studios:
            tags |= studio_tags.get(studios[key], set())

        tags -= direct.get(key, set())
        inherited[key] = sorted(tag_id for tag_id, tag_inst in tags if tag_inst == key[1])
    return inherited


async def compute_inherited_tags(db: AsyncSession, batch_size: int = 500) -> int:
    """Recompute inherited tags for every live scene. Returns the number of scenes changed."""
    start_time = time.time()

    result = await db.execute(
        select(Scene.id, Scene.instance_id, Scene.studio_id, Scene.inherited_tag_ids)
        .where(Scene.deleted_at.is_(None))
        .order_by(Scene.instance_id, Scene.id)
    )
    scenes = result.all()

    await db.execute(delete(SceneInheritedTag))

    changed = 0
    for start in range(0, len(scenes), batch_size):
        batch = scenes[start:start + batch_size]
        inherited = await _compute_batch(db, batch)

        updates = []
        links = []
        for scene in batch:
            key = (scene.id, scene.instance_id or "")
            tag_ids = inherited.get(key, [])
            links.extend(
                {"scene_id": key[0], "scene_instance_id": key[1], "tag_id": tag_id, "tag_instance_id": key[1]}
                for tag_id in tag_ids
            )
            if sorted(scene.inherited_tag_ids or []) != tag_ids:
                updates.append({"id": scene.id, "instance_id": scene.instance_id, "inherited_tag_ids": tag_ids})

        if updates:
            await db.execute(update(Scene), updates)
            changed += len(updates)
        if links:
            await db.execute(insert(SceneInheritedTag), links)

        if (start // batch_size) % 10 == 9:
            logger.info(f"Inherited tags: processed {start + len(batch)}/{len(scenes)} scenes")

    await db.commit()

    elapsed = time.time() - start_time
    logger.info(f"Inherited tags computed for {len(scenes)} scenes ({changed} changed) in {elapsed:.1f}s")
    return changed
