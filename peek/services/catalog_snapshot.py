"""Versioned catalog snapshot with atomic swap-on-refresh.

The mirror tables are rewritten by the sync collaborator; this module owns the
in-memory view derived from them (enabled instances, priorities, tag and
studio hierarchies, entity counts). A refresh builds a complete new
`CatalogSnapshot` off to the side and only then swaps the reference, so a
reader sees either the old snapshot or the new one, never a partial one.

Only one refresh runs at a time. A second request while one is running is a
no-op that returns False. A failed refresh keeps the previous snapshot.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Mapping

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from peek.config import get_settings
from peek.core.errors import CatalogUnavailableError
from peek.db.models import Studio, SystemMetadata, TagParent
from peek.query.fields import ENTITY_MODELS
from peek.query.identity import CompositeKey
from peek.services.hierarchy import build_children_map, expand_keys
from peek.services.instance_service import get_enabled_instances, get_instance_priorities

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class CatalogSnapshot:
    version: int
    refreshed_at: datetime
    instances: tuple[str, ...] = ()
    priorities: Mapping[str, int] = field(default_factory=dict)
    tag_children: Mapping = field(default_factory=dict)
    tag_children_bare: Mapping = field(default_factory=dict)
    studio_children: Mapping = field(default_factory=dict)
    studio_children_bare: Mapping = field(default_factory=dict)
    entity_counts: Mapping[str, int] = field(default_factory=dict)

    def expand(self, hierarchy: str, keys, depth: int | None, node_limit: int | None = None) -> tuple[CompositeKey, ...]:
        """Descendant closure of tag or studio references."""
        if hierarchy == "tag":
            children, bare = self.tag_children, self.tag_children_bare
        elif hierarchy == "studio":
            children, bare = self.studio_children, self.studio_children_bare
        else:
            raise ValueError(f"Unknown hierarchy: {hierarchy}")
        if node_limit is None:
            node_limit = settings.hierarchy_node_limit
        return expand_keys(keys, depth, children, bare, node_limit)


class CatalogMirror:
    """Owns the current snapshot, the refresh flag and the cache version."""

    def __init__(self):
        self._current: CatalogSnapshot | None = None
        self._refreshing = False
        self.cache_version = 0

    @property
    def current(self) -> CatalogSnapshot | None:
        return self._current

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    def require_snapshot(self) -> CatalogSnapshot:
        snapshot = self._current
        if snapshot is None:
            if self._refreshing:
                raise CatalogUnavailableError("Catalog refresh in progress")
            raise CatalogUnavailableError("Catalog has not been loaded")
        return snapshot

    async def refresh(
        self,
        loader: Callable[[int], Awaitable[CatalogSnapshot]],
        on_swap: Callable[[CatalogSnapshot], Awaitable[None]] | None = None,
    ) -> bool:
        """Build a snapshot with `loader` and swap it in.

        Returns False without doing anything when a refresh is already running.
        """
        if self._refreshing:
            logger.info("Catalog refresh already in progress - skipping")
            return False

        self._refreshing = True
        try:
            snapshot = await loader(self.cache_version + 1)
            self._current = snapshot
            self.cache_version = snapshot.version
            logger.info(f"Catalog snapshot v{snapshot.version} is live")

            if on_swap is not None:
                try:
                    await on_swap(snapshot)
                except Exception as e:
                    logger.error(f"Post-refresh step failed for v{snapshot.version}: {e}")
            return True
        except Exception as e:
            logger.error(f"Catalog refresh failed, keeping v{self.cache_version}: {e}")
            raise
        finally:
            self._refreshing = False


async def load_snapshot(session_maker: async_sessionmaker, version: int) -> CatalogSnapshot:
    """Read the mirror tables into a new snapshot."""
    async with session_maker() as db:
        instances = [instance.id for instance in await get_enabled_instances(db)]
        priorities = await get_instance_priorities(db)

        tag_links = (await db.execute(
            select(TagParent.tag_id, TagParent.tag_instance_id, TagParent.parent_id, TagParent.parent_instance_id)
        )).all()
        studio_links = (await db.execute(
            select(Studio.id, Studio.instance_id, Studio.parent_id)
            .where(Studio.parent_id.isnot(None), Studio.deleted_at.is_(None))
        )).all()

        counts = {}
        for kind, model in ENTITY_MODELS.items():
            result = await db.execute(
                select(func.count()).select_from(model).where(model.deleted_at.is_(None))
            )
            counts[kind] = result.scalar_one_or_none() or 0

    return CatalogSnapshot(
        version=version,
        refreshed_at=datetime.utcnow(),
        instances=tuple(instances),
        priorities=priorities,
        tag_children=build_children_map(
            ((row.tag_id, row.tag_instance_id), (row.parent_id, row.parent_instance_id))
            for row in tag_links
        ),
        tag_children_bare=build_children_map((row.tag_id, row.parent_id) for row in tag_links),
        studio_children=build_children_map(
            ((row.id, row.instance_id), (row.parent_id, row.instance_id)) for row in studio_links
        ),
        studio_children_bare=build_children_map((row.id, row.parent_id) for row in studio_links),
        entity_counts=counts,
    )


async def _store_metadata(session_maker: async_sessionmaker, values: dict[str, str]) -> None:
    async with session_maker() as session:
        for key, value in values.items():
            result = await session.execute(select(SystemMetadata).where(SystemMetadata.key == key))
            metadata = result.scalar_one_or_none()
            if metadata:
                metadata.value = value
            else:
                session.add(SystemMetadata(key=key, value=value))
        await session.commit()


async def refresh_catalog(mirror: "CatalogMirror", session_maker: async_sessionmaker) -> bool:
    """Full refresh job.

    1. Recompute inherited tags from the freshly synced junctions
    2. Build and swap the snapshot (bumps cache_version)
    3. Recompute every user's exclusions and clear the exclusion cache
    4. Recompute every user's engagement rankings
    5. Record last_refresh
    """
    from peek.services.exclusion_compute import recompute_all_users
    from peek.services.exclusion_service import clear_all_cache
    from peek.services.ranking_service import recompute_all_rankings
    from peek.services.tag_inheritance import compute_inherited_tags

    start_time = time.time()

    async def loader(version: int) -> CatalogSnapshot:
        logger.info(f"Refreshing catalog snapshot (v{version})")
        async with session_maker() as db:
            await compute_inherited_tags(db, settings.tag_inheritance_batch_size)
        return await load_snapshot(session_maker, version)

    async def on_swap(snapshot: CatalogSnapshot) -> None:
        clear_all_cache()
        summary = await recompute_all_users(session_maker)
        clear_all_cache()
        rankings = await recompute_all_rankings(session_maker)
        await _store_metadata(session_maker, {
            "last_refresh": snapshot.refreshed_at.isoformat(),
            "cache_version": str(snapshot.version),
        })
        elapsed = time.time() - start_time
        logger.info(
            f"Catalog refresh v{snapshot.version} complete in {elapsed:.1f}s - "
            f"exclusions recomputed for {summary['success']} users ({summary['failed']} failed), rankings for {rankings['success']} users"
        )

    return await mirror.refresh(loader, on_swap)


# Application-wide mirror
_mirror: CatalogMirror | None = None


def get_mirror() -> CatalogMirror:
    """Get the singleton catalog mirror."""
    global _mirror
    if _mirror is None:
        _mirror = CatalogMirror()
    return _mirror
