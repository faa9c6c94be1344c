"""Cross-instance duplicate detection via shared external registry ids.

Performers, studios and tags carry `stash_ids`, a list of
{endpoint, stash_id} pairs pointing at an external registry. Entities on
different instances that share a pair are the same real-world entity. The
primary copy is the one on the instance with the lowest priority number.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peek.config import get_settings
from peek.core.cache import get_cache
from peek.core.errors import ClientInputError
from peek.db.models import Performer, Studio, Tag
from peek.query.identity import CompositeKey, composite_string
from peek.services.instance_service import get_instance_priorities

logger = logging.getLogger(__name__)
settings = get_settings()

DEDUP_MODELS = {
    "performer": Performer,
    "studio": Studio,
    "tag": Tag,
}


@dataclass(frozen=True)
class DuplicateGroup:
    shared_external_id: str  # "endpoint|stash_id"
    primary: object
    members: tuple


def parse_stash_ids(raw) -> list[tuple[str, str]]:
    """Valid (endpoint, stash_id) pairs. Anything malformed is skipped."""
    if not isinstance(raw, list):
        return []
    return [
        (item["endpoint"], item["stash_id"])
        for item in raw
        if isinstance(item, dict)
        and isinstance(item.get("endpoint"), str)
        and isinstance(item.get("stash_id"), str)
    ]


def entity_priority(entity, priorities: Mapping[str, int]) -> int:
    instance_id = getattr(entity, "instance_id", None)
    if not instance_id:
        return settings.dedup_default_priority
    return priorities.get(instance_id, settings.dedup_default_priority)


def group_duplicates(entities, priorities: Mapping[str, int]) -> list[DuplicateGroup]:
    """Group entities sharing an external id across more than one instance.

    Members are ordered primary first: lowest priority number, then instance
    id, then entity id.
    """
    by_external_id = defaultdict(list)
    for entity in entities:
        for endpoint, stash_id in parse_stash_ids(getattr(entity, "stash_ids", None)):
            by_external_id[f"{endpoint}|{stash_id}"].append(entity)

    groups = []
    for external_id, members in by_external_id.items():
        if len({(m.instance_id or "") for m in members}) <= 1:
            continue  # Same instance, not a duplicate
        ordered = sorted(
            members,
            key=lambda m: (entity_priority(m, priorities), m.instance_id or "", m.id),
        )
        groups.append(DuplicateGroup(external_id, ordered[0], tuple(ordered)))

    groups.sort(key=lambda g: g.shared_external_id)
    return groups


def _dedup_model(kind: str):
    model = DEDUP_MODELS.get(kind)
    if model is None:
        raise ClientInputError(f"Deduplication is not supported for {kind}")
    return model


async def find_duplicates(db: AsyncSession, kind: str) -> list[DuplicateGroup]:
    model = _dedup_model(kind)
    result = await db.execute(
        select(model).where(model.deleted_at.is_(None), model.stash_ids.isnot(None))
    )
    entities = result.scalars().all()
    priorities = await get_instance_priorities(db)
    return group_duplicates(entities, priorities)


def mapping_from_groups(groups: list[DuplicateGroup]) -> dict[str, str]:
    """Composite string of every non-primary member -> composite string of its primary.

    An entity in several groups keeps the mapping of the first group listed.
    """
    mapping = {}
    for group in groups:
        primary = composite_string(group.primary.id, group.primary.instance_id)
        for member in group.members:
            key = composite_string(member.id, member.instance_id)
            if key != primary:
                mapping.setdefault(key, primary)
    # Chains (a -> b where b itself maps elsewhere) collapse to their end
    for key in list(mapping):
        seen = {key}
        target = mapping[key]
        while target in mapping and target not in seen:
            seen.add(target)
            target = mapping[target]
        mapping[key] = target
    return mapping


async def build_canonical_mapping(db: AsyncSession, kind: str, cache_version: int | None = None) -> dict[str, str]:
    """Canonical mapping for one kind, cached per catalog version."""
    cache = get_cache()
    cache_key = None
    if cache_version is not None:
        cache_key = cache.canonical_mapping_key(kind, cache_version)
        cached = await cache.get(cache_key)
        if cached is not None:
            return cached

    mapping = mapping_from_groups(await find_duplicates(db, kind))

    if cache_key is not None:
        await cache.set(cache_key, mapping)
    return mapping


def resolve_to_canonical(key: CompositeKey | str, mapping: Mapping[str, str]) -> str:
    """Composite string of the primary copy. Idempotent."""
    if isinstance(key, CompositeKey):
        key = composite_string(key.id, key.instance_id)
    return mapping.get(key, key)


async def get_stats(db: AsyncSession) -> dict[str, dict]:
    stats = {}
    for kind in DEDUP_MODELS:
        groups = await find_duplicates(db, kind)
        stats[kind] = {
            "groups": len(groups),
            "duplicate_entities": sum(len(g.members) - 1 for g in groups),
        }
    return stats
