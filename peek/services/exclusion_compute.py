"""Precomputed per-user exclusions.

A user's `user_excluded_entities` rows are rebuilt from three sources:

1. Direct: admin content restrictions (EXCLUDE lists, or everything outside an
   INCLUDE list) and the user's hidden entities.
2. Cascade: content attached to a directly excluded entity
   (performer/studio/group/gallery -> scenes, tag -> scenes/performers/studios/groups,
   gallery -> images).
3. Empty: organizational entities left with no visible content.

Instance scoping: a row with instance_id "" excludes the id on every instance.
Restrictions are global, hidden rows keep their instance, and a scoped source
only cascades to targets on that same instance.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, TypedDict

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.db.database import async_session_maker
from peek.db.models import (
    ENTITY_TYPES, Gallery, Group, GroupTag, Image, ImageGallery, ImagePerformer,
    Performer, PerformerTag, Scene, SceneGallery, SceneGroup, SceneInheritedTag,
    ScenePerformer, SceneTag, Studio, StudioTag, Tag, TagParent, User,
    UserContentRestriction, UserEntityStats, UserExcludedEntity, UserHiddenEntity,
)
from peek.query.fields import ENTITY_MODELS

logger = logging.getLogger(__name__)

# Restrictions store plural entity types
RESTRICTION_TYPES = {
    "scenes": "scene",
    "performers": "performer",
    "studios": "studio",
    "tags": "tag",
    "groups": "group",
    "galleries": "gallery",
    "images": "image",
    "clips": "clip",
}

# (junction, source id, source instance, target id, target instance, target type)
CASCADES = {
    "performer": [
        (ScenePerformer, "performer_id", "performer_instance_id", "scene_id", "scene_instance_id", "scene"),
    ],
    "tag": [
        (SceneTag, "tag_id", "tag_instance_id", "scene_id", "scene_instance_id", "scene"),
        (SceneInheritedTag, "tag_id", "tag_instance_id", "scene_id", "scene_instance_id", "scene"),
        (PerformerTag, "tag_id", "tag_instance_id", "performer_id", "performer_instance_id", "performer"),
        (StudioTag, "tag_id", "tag_instance_id", "studio_id", "studio_instance_id", "studio"),
        (GroupTag, "tag_id", "tag_instance_id", "group_id", "group_instance_id", "group"),
    ],
    "group": [
        (SceneGroup, "group_id", "group_instance_id", "scene_id", "scene_instance_id", "scene"),
    ],
    "gallery": [
        (SceneGallery, "gallery_id", "gallery_instance_id", "scene_id", "scene_instance_id", "scene"),
        (ImageGallery, "gallery_id", "gallery_instance_id", "image_id", "image_instance_id", "image"),
    ],
}


class RecomputeAllResult(TypedDict):
    success: int
    failed: int
    errors: list[dict]


@dataclass(frozen=True)
class Exclusion:
    entity_type: str
    entity_id: str
    instance_id: str
    reason: str


@dataclass
class ExclusionSet:
    """Excluded ids of one entity type: global ids plus (id, instance) pairs."""
    global_ids: set[str] = field(default_factory=set)
    scoped: set[tuple[str, str]] = field(default_factory=set)

    def add(self, entity_id: str, instance_id: str | None) -> None:
        if instance_id:
            self.scoped.add((entity_id, instance_id))
        else:
            self.global_ids.add(entity_id)

    def contains(self, entity_id: str, instance_id: str | None = None) -> bool:
        if entity_id in self.global_ids:
            return True
        if instance_id:
            return (entity_id, instance_id) in self.scoped
        # A bare lookup matches a scoped row on any instance
        return any(eid == entity_id for eid, _ in self.scoped)

    def __len__(self) -> int:
        return len(self.global_ids) + len(self.scoped)


def index_exclusions(exclusions: Iterable[Exclusion]) -> dict[str, ExclusionSet]:
    sets: dict[str, ExclusionSet] = defaultdict(ExclusionSet)
    for excl in exclusions:
        sets[excl.entity_type].add(excl.entity_id, excl.instance_id)
    return sets


def dedupe(exclusions: Iterable[Exclusion]) -> list[Exclusion]:
    """One row per (type, id, instance). The first reason seen wins."""
    seen = set()
    unique = []
    for excl in exclusions:
        key = (excl.entity_type, excl.entity_id, excl.instance_id or "")
        if key not in seen:
            seen.add(key)
            unique.append(excl)
    return unique


# ============ Direct exclusions ============

async def _all_entity_ids(db: AsyncSession, entity_type: str) -> list[str]:
    model = ENTITY_MODELS[entity_type]
    result = await db.execute(select(model.id).where(model.deleted_at.is_(None)).distinct())
    return [row[0] for row in result.all()]


async def compute_direct_exclusions(db: AsyncSession, user_id: int) -> list[Exclusion]:
    exclusions = []

    result = await db.execute(
        select(UserContentRestriction).where(UserContentRestriction.user_id == user_id)
    )
    for restriction in result.scalars().all():
        entity_type = RESTRICTION_TYPES.get(restriction.entity_type, restriction.entity_type)
        if entity_type not in ENTITY_MODELS:
            logger.warning(f"Skipping restriction {restriction.id} with unknown type {restriction.entity_type}")
            continue
        listed = [str(entity_id) for entity_id in (restriction.entity_ids or [])]

        if restriction.mode == "EXCLUDE":
            exclusions.extend(Exclusion(entity_type, entity_id, "", "restricted") for entity_id in listed)
        elif restriction.mode == "INCLUDE":
            keep = set(listed)
            exclusions.extend(
                Exclusion(entity_type, entity_id, "", "restricted")
                for entity_id in await _all_entity_ids(db, entity_type)
                if entity_id not in keep
            )
        else:
            logger.warning(f"Skipping restriction {restriction.id} with unknown mode {restriction.mode}")

    result = await db.execute(select(UserHiddenEntity).where(UserHiddenEntity.user_id == user_id))
    for hidden in result.scalars().all():
        exclusions.append(Exclusion(hidden.entity_type, hidden.entity_id, hidden.instance_id or "", "hidden"))

    return exclusions


# ============ Cascades ============

async def _cascade_via(
    db: AsyncSession,
    junction,
    source_id: str,
    source_instance: str,
    target_id: str,
    target_instance: str,
    sources: ExclusionSet,
) -> list[tuple[str, str]]:
    """Targets reached from excluded sources, as (target id, instance or "")."""
    reached = []
    source_id_col = getattr(junction, source_id)

    if sources.global_ids:
        result = await db.execute(
            select(getattr(junction, target_id)).where(source_id_col.in_(list(sources.global_ids))).distinct()
        )
        reached.extend((row[0], "") for row in result.all())

    if sources.scoped:
        result = await db.execute(
            select(
                getattr(junction, source_id),
                getattr(junction, source_instance),
                getattr(junction, target_id),
                getattr(junction, target_instance),
            ).where(source_id_col.in_(list({eid for eid, _ in sources.scoped})))
        )
        for src_id, src_inst, tgt_id, tgt_inst in result.all():
            if (src_id, src_inst) in sources.scoped:
                reached.append((tgt_id, tgt_inst or ""))

    return reached


async def _studio_scenes(db: AsyncSession, sources: ExclusionSet) -> list[tuple[str, str]]:
    """Studio -> scenes goes through scenes.studio_id rather than a junction."""
    reached = []
    if sources.global_ids:
        result = await db.execute(
            select(Scene.id).where(Scene.studio_id.in_(list(sources.global_ids)), Scene.deleted_at.is_(None))
        )
        reached.extend((row[0], "") for row in result.all())
    if sources.scoped:
        result = await db.execute(
            select(Scene.id, Scene.instance_id, Scene.studio_id).where(
                Scene.studio_id.in_(list({eid for eid, _ in sources.scoped})),
                Scene.deleted_at.is_(None),
            )
        )
        for scene_id, instance_id, studio_id in result.all():
            if (studio_id, instance_id) in sources.scoped:
                reached.append((scene_id, instance_id or ""))
    return reached


async def compute_cascade_exclusions(db: AsyncSession, direct: list[Exclusion]) -> list[Exclusion]:
    sources = index_exclusions(direct)
    cascades = []

    for source_type, links in CASCADES.items():
        excluded = sources.get(source_type)
        if not excluded:
            continue
        for junction, source_id, source_instance, target_id, target_instance, target_type in links:
            for entity_id, instance_id in await _cascade_via(
                db, junction, source_id, source_instance, target_id, target_instance, excluded
            ):
                cascades.append(Exclusion(target_type, entity_id, instance_id, "cascade"))

    if sources.get("studio"):
        for entity_id, instance_id in await _studio_scenes(db, sources["studio"]):
            cascades.append(Exclusion("scene", entity_id, instance_id, "cascade"))

    return dedupe(cascades)


# ============ Empty exclusions ============

async def _live_keys(db: AsyncSession, model) -> list[tuple[str, str]]:
    result = await db.execute(select(model.id, model.instance_id).where(model.deleted_at.is_(None)))
    return [(row[0], row[1] or "") for row in result.all()]


async def _links(db: AsyncSession, junction, owner_id: str, owner_inst: str, target_id: str, target_inst: str):
    result = await db.execute(
        select(
            getattr(junction, owner_id), getattr(junction, owner_inst),
            getattr(junction, target_id), getattr(junction, target_inst),
        )
    )
    return [((a, ai or ""), (b, bi or "")) for a, ai, b, bi in result.all()]


def _visible(keys: list[tuple[str, str]], excluded: ExclusionSet | None) -> set[tuple[str, str]]:
    if not excluded:
        return set(keys)
    return {key for key in keys if not excluded.contains(*key)}


def _owners_with_visible(links, visible_targets: set) -> set:
    return {owner for owner, target in links if target in visible_targets}


async def compute_empty_exclusions(db: AsyncSession, prior: list[Exclusion]) -> list[Exclusion]:
    """Organizational entities with no visible content after direct + cascade.

    Checked against the in-memory prior set, since the table still holds the
    previous computation. An empty entity is excluded on its own instance only.
    """
    excluded = index_exclusions(prior)

    scenes = _visible(await _live_keys(db, Scene), excluded.get("scene"))
    images = _visible(await _live_keys(db, Image), excluded.get("image"))
    performers = _visible(await _live_keys(db, Performer), excluded.get("performer"))
    studios = _visible(await _live_keys(db, Studio), excluded.get("studio"))
    groups = _visible(await _live_keys(db, Group), excluded.get("group"))
    galleries = _visible(await _live_keys(db, Gallery), excluded.get("gallery"))
    tags = _visible(await _live_keys(db, Tag), excluded.get("tag"))

    empty = []

    # Galleries: no visible images
    image_galleries = await _links(db, ImageGallery, "gallery_id", "gallery_instance_id", "image_id", "image_instance_id")
    with_images = _owners_with_visible(image_galleries, images)
    empty.extend(Exclusion("gallery", gid, inst, "empty") for gid, inst in galleries - with_images)

    # Performers: no visible scenes and no visible images
    scene_performers = await _links(db, ScenePerformer, "performer_id", "performer_instance_id", "scene_id", "scene_instance_id")
    image_performers = await _links(db, ImagePerformer, "performer_id", "performer_instance_id", "image_id", "image_instance_id")
    active_performers = _owners_with_visible(scene_performers, scenes) | _owners_with_visible(image_performers, images)
    empty.extend(Exclusion("performer", pid, inst, "empty") for pid, inst in performers - active_performers)

    # Studios: no visible scenes and no visible images
    active_studios = set()
    for model, visible in ((Scene, scenes), (Image, images)):
        result = await db.execute(
            select(model.id, model.instance_id, model.studio_id).where(
                model.studio_id.isnot(None), model.deleted_at.is_(None)
            )
        )
        for entity_id, instance_id, studio_id in result.all():
            if (entity_id, instance_id or "") in visible:
                active_studios.add((studio_id, instance_id or ""))
    empty.extend(Exclusion("studio", sid, inst, "empty") for sid, inst in studios - active_studios)

    # Groups: no visible scenes
    scene_groups = await _links(db, SceneGroup, "group_id", "group_instance_id", "scene_id", "scene_instance_id")
    active_groups = _owners_with_visible(scene_groups, scenes)
    empty.extend(Exclusion("group", gid, inst, "empty") for gid, inst in groups - active_groups)

    # Tags: on no visible scene, performer, studio or group, and parent of no tag
    used_tags = set()
    for junction, owner, owner_inst, visible in (
        (SceneTag, "scene_id", "scene_instance_id", scenes),
        (PerformerTag, "performer_id", "performer_instance_id", performers),
        (StudioTag, "studio_id", "studio_instance_id", studios),
        (GroupTag, "group_id", "group_instance_id", groups),
    ):
        links = await _links(db, junction, "tag_id", "tag_instance_id", owner, owner_inst)
        used_tags |= _owners_with_visible(links, visible)

    result = await db.execute(select(TagParent.parent_id, TagParent.parent_instance_id))
    used_tags |= {(row[0], row[1] or "") for row in result.all()}
    empty.extend(Exclusion("tag", tid, inst, "empty") for tid, inst in tags - used_tags)

    return empty


# ============ Visible counts ============

async def _write_entity_stats(db: AsyncSession, user_id: int, exclusions: list[Exclusion]) -> None:
    """Replace the user's visible counts, per instance and overall ("")."""
    excluded = index_exclusions(exclusions)
    await db.execute(delete(UserEntityStats).where(UserEntityStats.user_id == user_id))

    now = datetime.utcnow()
    for entity_type in ENTITY_TYPES:
        keys = await _live_keys(db, ENTITY_MODELS[entity_type])
        per_instance = defaultdict(int)
        for key in _visible(keys, excluded.get(entity_type)):
            per_instance[key[1]] += 1

        db.add(UserEntityStats(
            user_id=user_id, entity_type=entity_type, instance_id="",
            visible_count=sum(per_instance.values()), updated_at=now,
        ))
        for instance_id, count in per_instance.items():
            if instance_id:
                db.add(UserEntityStats(
                    user_id=user_id, entity_type=entity_type, instance_id=instance_id,
                    visible_count=count, updated_at=now,
                ))


# ============ Recompute ============

async def _do_recompute(user_id: int, session_maker: async_sessionmaker) -> int:
    logger.info(f"Recomputing exclusions for user {user_id}")
    t0 = time.time()

    # Computation phase reads only; previous rows stay untouched if it fails
    async with session_maker() as db:
        direct = await compute_direct_exclusions(db, user_id)
        t1 = time.time()
        cascade = await compute_cascade_exclusions(db, direct)
        t2 = time.time()
        empty = await compute_empty_exclusions(db, direct + cascade)
        t3 = time.time()

    exclusions = dedupe(direct + cascade + empty)

    async with session_maker() as db:
        async with db.begin():
            await db.execute(delete(UserExcludedEntity).where(UserExcludedEntity.user_id == user_id))
            db.add_all(
                UserExcludedEntity(
                    user_id=user_id,
                    entity_type=excl.entity_type,
                    entity_id=excl.entity_id,
                    instance_id=excl.instance_id or "",
                    reason=excl.reason,
                )
                for excl in exclusions
            )
            await db.flush()
            await _write_entity_stats(db, user_id, exclusions)

    t4 = time.time()
    logger.info(
        f"User {user_id}: {len(exclusions)} exclusions "
        f"(direct {len(direct)}, cascade {len(cascade)}, empty {len(empty)}) - "
        f"direct {1000 * (t1 - t0):.0f}ms, cascade {1000 * (t2 - t1):.0f}ms, "
        f"empty {1000 * (t3 - t2):.0f}ms, write {1000 * (t4 - t3):.0f}ms"
    )
    return len(exclusions)


_pending: dict[int, asyncio.Task] = {}


async def recompute_for_user(user_id: int, session_maker: async_sessionmaker | None = None) -> int:
    """Rebuild one user's exclusions. Concurrent callers share one run.

    Returns the number of exclusion rows written.
    """
    pending = _pending.get(user_id)
    if pending is not None and not pending.done():
        logger.info(f"Recompute already pending for user {user_id}, waiting")
        return await asyncio.shield(pending)

    task = asyncio.ensure_future(_do_recompute(user_id, session_maker or async_session_maker))
    _pending[user_id] = task
    try:
        return await asyncio.shield(task)
    finally:
        if _pending.get(user_id) is task and task.done():
            del _pending[user_id]


async def recompute_all_users(session_maker: async_sessionmaker | None = None) -> RecomputeAllResult:
    """Recompute every user. A failing user is logged and skipped."""
    session_maker = session_maker or async_session_maker
    async with session_maker() as db:
        user_ids = [row[0] for row in (await db.execute(select(User.id).order_by(User.id))).all()]

    logger.info(f"Recomputing exclusions for {len(user_ids)} users")
    result: RecomputeAllResult = {"success": 0, "failed": 0, "errors": []}

    for user_id in user_ids:
        try:
            await recompute_for_user(user_id, session_maker)
            result["success"] += 1
        except Exception as e:
            logger.error(f"Failed to recompute exclusions for user {user_id}: {e}")
            result["failed"] += 1
            result["errors"].append({"user_id": user_id, "error": str(e)})

    logger.info(f"Exclusion recompute finished: {result['success']} ok, {result['failed']} failed")
    return result


# ============ Incremental hide ============

async def _upsert_exclusion(db: AsyncSession, user_id: int, excl: Exclusion, overwrite_reason: bool) -> None:
    result = await db.execute(
        select(UserExcludedEntity).where(
            UserExcludedEntity.user_id == user_id,
            UserExcludedEntity.entity_type == excl.entity_type,
            UserExcludedEntity.entity_id == excl.entity_id,
            UserExcludedEntity.instance_id == (excl.instance_id or ""),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        db.add(UserExcludedEntity(
            user_id=user_id,
            entity_type=excl.entity_type,
            entity_id=excl.entity_id,
            instance_id=excl.instance_id or "",
            reason=excl.reason,
        ))
    elif overwrite_reason:
        row.reason = excl.reason


async def add_hidden_entity(
    db: AsyncSession,
    user_id: int,
    entity_type: str,
    entity_id: str,
    instance_id: str = "",
) -> int:
    """Apply one hide immediately: the direct row plus its cascades.

    Empty exclusions are left for the next full recompute. Returns the number
    of cascaded rows.
    """
    hidden = Exclusion(entity_type, entity_id, instance_id or "", "hidden")
    cascades = await compute_cascade_exclusions(db, [hidden])

    await _upsert_exclusion(db, user_id, hidden, overwrite_reason=True)
    for excl in cascades:
        await _upsert_exclusion(db, user_id, excl, overwrite_reason=False)
    await db.flush()

    logger.info(
        f"User {user_id} hid {entity_type} {entity_id}"
        f"{':' + instance_id if instance_id else ''} ({len(cascades)} cascades)"
    )
    return len(cascades)
