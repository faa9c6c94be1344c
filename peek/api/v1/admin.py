"""Admin API endpoints for catalog refresh, exclusion recompute and deduplication."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.core.auth import require_admin
from peek.core.tasks import TaskManager
from peek.db.database import get_db, get_session_maker
from peek.db.schemas import (
    DuplicateGroupResponse, DuplicateMember, DuplicateStatsEntry, RecomputeResponse, RefreshResponse,
)
from peek.services.catalog_snapshot import CatalogMirror, get_mirror, refresh_catalog
from peek.services.deduplication_service import entity_priority, find_duplicates, get_stats
from peek.services.exclusion_compute import recompute_all_users
from peek.services.exclusion_service import clear_all_cache
from peek.services.instance_service import get_instance_priorities

router = APIRouter(dependencies=[Depends(require_admin)])


# ==================== Catalog ====================

@router.post("/refresh", response_model=RefreshResponse)
async def trigger_refresh(
    mirror: CatalogMirror = Depends(get_mirror),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """
    Start a catalog refresh in the background.

    Returns started=false when a refresh is already running.
    """
    if mirror.is_refreshing:
        return RefreshResponse(started=False, cache_version=mirror.cache_version)

    TaskManager.get_instance().create_task(
        refresh_catalog(mirror, session_maker), name="catalog_refresh_manual",
    )
    return RefreshResponse(started=True, cache_version=mirror.cache_version)


@router.post("/exclusions/recompute", response_model=RecomputeResponse)
async def recompute_exclusions(session_maker: async_sessionmaker = Depends(get_session_maker)):
    """Recompute every user's exclusions now. Failing users are reported, not fatal."""
    result = await recompute_all_users(session_maker)
    clear_all_cache()
    return RecomputeResponse(**result)


# ==================== Deduplication ====================

@router.get("/duplicates/stats", response_model=dict[str, DuplicateStatsEntry])
async def duplicate_stats(db: AsyncSession = Depends(get_db)):
    stats = await get_stats(db)
    return {kind: DuplicateStatsEntry(**entry) for kind, entry in stats.items()}


@router.get("/duplicates/{kind}", response_model=list[DuplicateGroupResponse])
async def list_duplicates(kind: str, db: AsyncSession = Depends(get_db)):
    """Groups of entities sharing an external (endpoint, stash_id) pair, primary first."""
    groups = await find_duplicates(db, kind)
    priorities = await get_instance_priorities(db)

    def member(entity) -> DuplicateMember:
        return DuplicateMember(
            id=entity.id,
            instance_id=entity.instance_id or "",
            name=getattr(entity, "name", None),
            priority=entity_priority(entity, priorities),
        )

    return [
        DuplicateGroupResponse(
            shared_external_id=group.shared_external_id,
            primary=member(group.primary),
            members=[member(m) for m in group.members],
        )
        for group in groups
    ]
