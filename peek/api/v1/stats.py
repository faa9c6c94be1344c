"""User statistics endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from peek.core.auth import get_current_user_id
from peek.db.database import get_db
from peek.db.schemas import UserStatsResponse
from peek.services.catalog_snapshot import CatalogMirror, get_mirror
from peek.services.stats_service import get_user_stats

router = APIRouter()


@router.get("/me", response_model=UserStatsResponse)
async def my_stats(
    sort_by: str = Query(
        default="engagement",
        description="Top list order: engagement, play_count, o_count or play_duration",
    ),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    mirror: CatalogMirror = Depends(get_mirror),
):
    """Library counts, engagement totals and top entities for the current user."""
    return await get_user_stats(db, user_id, sort_by, limit, cache_version=mirror.cache_version)
