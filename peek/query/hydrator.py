"""Row -> record conversion and relation hydration.

Hydration runs in two concurrent rounds:

1. junction rows for every relation of the page (one session per batch)
2. target entities, grouped by kind and chunked (one session per batch)

Targets are matched on the full (id, instance_id) key. A junction row whose
target is deleted or missing on that instance is dropped silently, since
upstream sync may remove an entity before its junction rows. Any failing batch
fails the whole hydration.
"""

import asyncio
import logging
from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from peek.db.database import async_session_maker
from peek.db import schemas
from peek.query.fields import ENTITY_MODELS, Relation, get_relation
from peek.services.proxy_urls import proxy_streams, to_proxy_url
from peek.services.ratings import effective_rating

logger = logging.getLogger(__name__)

BATCH_SIZE = 500

# (record attribute, relation name) loaded for each kind
HYDRATED_RELATIONS = {
    "scene": [
        ("performers", "performers"),
        ("tags", "tags"),
        ("inherited_tags", "inherited_tags"),
        ("studio", "studios"),
        ("groups", "groups"),
        ("galleries", "galleries"),
    ],
    "performer": [("tags", "tags")],
    "studio": [("parent", "parents"), ("tags", "tags")],
    "tag": [("parents", "parents"), ("children", "children")],
    "gallery": [
        ("performers", "performers"),
        ("tags", "tags"),
        ("studio", "studios"),
        ("scenes", "scenes"),
    ],
    "group": [("tags", "tags"), ("studio", "studios")],
    "image": [
        ("performers", "performers"),
        ("tags", "tags"),
        ("studio", "studios"),
        ("galleries", "galleries"),
    ],
    "clip": [("scene", "scene"), ("primary_tag", "primary_tag"), ("tags", "tags")],
}


# ============ Records ============

def _overlay_fields(entity, overlay) -> dict:
    user_rating = overlay.rating if overlay is not None else None
    fields = {
        "id": entity.id,
        "instance_id": entity.instance_id or "",
        "rating100": getattr(entity, "rating100", None),
        "rating": effective_rating(user_rating, getattr(entity, "rating100", None)),
        "user_rating": user_rating,
        "created_at": entity.stash_created_at,
        "updated_at": entity.stash_updated_at,
    }
    if overlay is not None:
        fields.update(
            favorite=bool(overlay.favorite),
            play_count=overlay.play_count or 0,
            o_counter=overlay.o_count or 0,
            play_duration=overlay.play_duration or 0,
            resume_time=overlay.resume_time or 0,
            last_played_at=overlay.last_played_at,
        )
    return fields


def _scene_record(s, base):
    inst = s.instance_id
    return schemas.SceneRecord(
        **base,
        title=s.title, code=s.code, details=s.details, director=s.director,
        date=s.date, organized=bool(s.organized), studio_id=s.studio_id,
        file_path=s.file_path, duration=s.duration, file_size=s.file_size,
        bit_rate=s.bit_rate, frame_rate=s.frame_rate, width=s.width, height=s.height,
        video_codec=s.video_codec, audio_codec=s.audio_codec,
        paths={
            "screenshot": to_proxy_url(s.path_screenshot, inst),
            "preview": to_proxy_url(s.path_preview, inst),
            "stream": to_proxy_url(s.path_stream, inst),
            "sprite": to_proxy_url(s.path_sprite, inst),
            "vtt": to_proxy_url(s.path_vtt, inst),
            "chapters_vtt": to_proxy_url(s.path_chapters_vtt, inst),
            "caption": to_proxy_url(s.path_caption, inst),
        },
        streams=proxy_streams(s.streams, inst),
        urls=s.urls or [],
    )


def _performer_record(p, base):
    return schemas.PerformerRecord(
        **base,
        name=p.name, disambiguation=p.disambiguation, aliases=p.aliases or [],
        gender=p.gender, birthdate=p.birthdate, country=p.country,
        ethnicity=p.ethnicity, eye_color=p.eye_color, height_cm=p.height_cm,
        measurements=p.measurements, career_length=p.career_length, details=p.details,
        scene_count=p.scene_count or 0, image_count=p.image_count or 0,
        gallery_count=p.gallery_count or 0, group_count=p.group_count or 0,
        image_path=to_proxy_url(p.image_path, p.instance_id),
        stash_ids=p.stash_ids or [],
    )


def _studio_record(s, base):
    return schemas.StudioRecord(
        **base,
        name=s.name, parent_id=s.parent_id, url=s.url, details=s.details,
        aliases=s.aliases or [], scene_count=s.scene_count or 0,
        image_count=s.image_count or 0, gallery_count=s.gallery_count or 0,
        image_path=to_proxy_url(s.image_path, s.instance_id),
        stash_ids=s.stash_ids or [],
    )


def _tag_record(t, base):
    return schemas.TagRecord(
        **base,
        name=t.name, description=t.description, aliases=t.aliases or [],
        scene_count=t.scene_count or 0, performer_count=t.performer_count or 0,
        image_count=t.image_count or 0, gallery_count=t.gallery_count or 0,
        image_path=to_proxy_url(t.image_path, t.instance_id),
        stash_ids=t.stash_ids or [],
    )


def _gallery_record(g, base):
    return schemas.GalleryRecord(
        **base,
        title=g.title, date=g.date, details=g.details, photographer=g.photographer,
        studio_id=g.studio_id, image_count=g.image_count or 0,
        cover_path=to_proxy_url(g.cover_path, g.instance_id),
    )


def _group_record(g, base):
    return schemas.GroupRecord(
        **base,
        name=g.name, aliases=g.aliases, date=g.date, duration=g.duration,
        director=g.director, synopsis=g.synopsis, studio_id=g.studio_id,
        scene_count=g.scene_count or 0,
        front_image_path=to_proxy_url(g.front_image_path, g.instance_id),
        back_image_path=to_proxy_url(g.back_image_path, g.instance_id),
    )


def _image_record(i, base):
    inst = i.instance_id
    return schemas.ImageRecord(
        **base,
        title=i.title, date=i.date, details=i.details, photographer=i.photographer,
        studio_id=i.studio_id, width=i.width, height=i.height,
        file_path=i.file_path, file_size=i.file_size,
        paths={
            "thumbnail": to_proxy_url(i.path_thumbnail, inst),
            "preview": to_proxy_url(i.path_preview, inst),
            "image": to_proxy_url(i.path_image, inst),
        },
    )


def _clip_record(c, base):
    inst = c.instance_id
    return schemas.ClipRecord(
        **base,
        scene_id=c.scene_id, title=c.title, seconds=c.seconds or 0,
        end_seconds=c.end_seconds, primary_tag_id=c.primary_tag_id,
        paths={
            "stream": to_proxy_url(c.path_stream, inst),
            "preview": to_proxy_url(c.path_preview, inst),
            "screenshot": to_proxy_url(c.path_screenshot, inst),
        },
    )


_BUILDERS = {
    "scene": _scene_record,
    "performer": _performer_record,
    "studio": _studio_record,
    "tag": _tag_record,
    "gallery": _gallery_record,
    "group": _group_record,
    "image": _image_record,
    "clip": _clip_record,
}


def build_record(kind: str, entity, overlay=None):
    """Convert an ORM row (plus optional overlay row) into the kind's record."""
    return _BUILDERS[kind](entity, _overlay_fields(entity, overlay))


def _reference(target_type: str, entity, extra=None) -> schemas.RelatedEntity:
    name = getattr(entity, "name", None) or getattr(entity, "title", None)
    image = (
        getattr(entity, "image_path", None)
        or getattr(entity, "path_screenshot", None)
        or getattr(entity, "cover_path", None)
        or getattr(entity, "front_image_path", None)
        or getattr(entity, "path_thumbnail", None)
    )
    fields = {
        "id": entity.id,
        "instance_id": entity.instance_id or "",
        "name": name,
        "image_path": to_proxy_url(image, entity.instance_id),
    }
    if target_type == "group":
        return schemas.RelatedGroup(**fields, scene_index=extra)
    return schemas.RelatedEntity(**fields)


# ============ Hydration ============

def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def _load_links(session_maker, relation: Relation, records) -> dict:
    """owner key -> [(target key, scene_index)] for one relation."""
    links = defaultdict(list)
    if relation.is_direct:
        for r in records:
            target_id = getattr(r, relation.column)
            if target_id:
                links[(r.id, r.instance_id)].append(((target_id, r.instance_id), None))
        return links

    hop = relation.hops[0]
    junction = hop.model
    owners = {(r.id, r.instance_id) for r in records}
    owner_id_col = getattr(junction, hop.owner_id)
    owner_inst_col = getattr(junction, hop.owner_instance)

    async with session_maker() as session:
        result = await session.execute(
            select(junction).where(
                owner_id_col.in_(list({o[0] for o in owners})),
                owner_inst_col.in_(list({o[1] for o in owners})),
            )
        )
        rows = result.scalars().all()

    for row in rows:
        owner = (getattr(row, hop.owner_id), getattr(row, hop.owner_instance))
        if owner not in owners:
            continue
        target = (getattr(row, hop.target_id), getattr(row, hop.target_instance))
        links[owner].append((target, getattr(row, "scene_index", None)))
    return links


async def _load_targets(session_maker, target_type: str, keys: list) -> dict:
    model = ENTITY_MODELS[target_type]
    wanted = set(keys)
    async with session_maker() as session:
        result = await session.execute(
            select(model).where(
                model.id.in_(list({k[0] for k in keys})),
                model.instance_id.in_(list({k[1] for k in keys})),
                model.deleted_at.is_(None),
            )
        )
        return {
            (e.id, e.instance_id): e
            for e in result.scalars().all()
            if (e.id, e.instance_id) in wanted
        }


async def hydrate(kind: str, records: list, session_maker: async_sessionmaker | None = None) -> list:
    """Return copies of the records with their relations attached."""
    plan = HYDRATED_RELATIONS.get(kind, [])
    if not records or not plan:
        return list(records)
    session_maker = session_maker or async_session_maker

    relations = [(attr, get_relation(kind, name)) for attr, name in plan]

    # Round 1: junction rows
    link_maps = await asyncio.gather(*(
        _load_links(session_maker, relation, batch)
        for _, relation in relations
        for batch in _chunks(records, BATCH_SIZE)
    ))
    merged = []
    per_relation = len(link_maps) // len(relations)
    for index, (attr, relation) in enumerate(relations):
        combined = defaultdict(list)
        for links in link_maps[index * per_relation:(index + 1) * per_relation]:
            for owner, targets in links.items():
                combined[owner].extend(targets)
        merged.append((attr, relation, combined))

    # Round 2: target entities, grouped by kind
    needed = defaultdict(set)
    for _, relation, links in merged:
        for targets in links.values():
            needed[relation.target_type].update(key for key, _ in targets)

    jobs = [
        (target_type, batch)
        for target_type, keys in needed.items()
        for batch in _chunks(sorted(keys), BATCH_SIZE)
    ]
    loaded = await asyncio.gather(*(
        _load_targets(session_maker, target_type, batch) for target_type, batch in jobs
    ))
    targets_by_type = defaultdict(dict)
    for (target_type, _), found in zip(jobs, loaded):
        targets_by_type[target_type].update(found)

    hydrated = []
    for record in records:
        owner = (record.id, record.instance_id)
        updates = {}
        for attr, relation, links in merged:
            found = targets_by_type[relation.target_type]
            refs = [
                _reference(relation.target_type, found[key], extra)
                for key, extra in links.get(owner, [])
                if key in found
            ]
            if relation.is_direct:
                updates[attr] = refs[0] if refs else None
            elif relation.target_type == "group":
                updates[attr] = sorted(refs, key=lambda g: (g.scene_index is None, g.scene_index or 0, g.id))
            else:
                updates[attr] = sorted(refs, key=lambda ref: ((ref.name or "").lower(), ref.id, ref.instance_id))
        hydrated.append(record.model_copy(update=updates))

    logger.debug(
        f"Hydrated {len(hydrated)} {kind} records: "
        f"{sum(len(ids) for ids in needed.values())} related entities in {len(jobs)} batches"
    )
    return hydrated
