"""Hidden entity endpoints.

Hiding applies the direct and cascade exclusions immediately. Unhiding waits
for a full exclusion recompute so visibility is restored exactly.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.core.auth import get_current_user_id
from peek.db.database import get_db, get_session_maker
from peek.db.schemas import HiddenEntityResponse, HiddenListResponse, HideRequest, UnhideAllResponse
from peek.services.exclusion_service import (
    get_hidden_entities, hide_entities, hide_entity, unhide_all, unhide_entity,
)
from peek.services.stats_service import invalidate_user_stats

router = APIRouter()


@router.get("", response_model=HiddenListResponse)
async def list_hidden(
    entity_type: Optional[str] = Query(default=None, description="Only this entity type"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """List the user's hidden entities, newest first."""
    items = await get_hidden_entities(db, user_id, entity_type)
    return HiddenListResponse(
        items=[HiddenEntityResponse(**item) for item in items],
        total=len(items),
    )


@router.post("")
async def hide(
    body: HideRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    await hide_entity(db, user_id, body.entity_type, body.entity_id, body.instance_id)
    await invalidate_user_stats(user_id)
    return {"success": True}


@router.post("/bulk")
async def hide_bulk(
    body: list[HideRequest],
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Hide several entities. Per-item failures are counted, not raised."""
    result = await hide_entities(db, user_id, [item.model_dump() for item in body])
    await invalidate_user_stats(user_id)
    return result


@router.delete("/all", response_model=UnhideAllResponse)
async def unhide_everything(
    entity_type: Optional[str] = Query(default=None, description="Only this entity type"),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    removed = await unhide_all(db, user_id, entity_type, session_maker=session_maker)
    await invalidate_user_stats(user_id)
    return UnhideAllResponse(removed=removed)


@router.delete("")
async def unhide(
    entity_type: str = Query(...),
    entity_id: str = Query(...),
    instance_id: str = Query(default=""),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    await unhide_entity(db, user_id, entity_type, entity_id, instance_id, session_maker=session_maker)
    await invalidate_user_stats(user_id)
    return {"success": True}
