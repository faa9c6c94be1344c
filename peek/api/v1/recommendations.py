"""Scene recommendation endpoints."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from slowapi import Limiter
from slowapi.util import get_remote_address

from peek.core.auth import get_current_user_id
from peek.db.database import get_db, get_session_maker
from peek.db.schemas import CriteriaCounts, RecommendationsResponse
from peek.services.recommendation_service import get_recommended_scenes

# Rate limiter for the expensive scoring pass
limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


@router.get("/scenes", response_model=RecommendationsResponse)
@limiter.limit("10/minute")
async def recommended_scenes(
    request: Request,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=24, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """
    Personalized scene recommendations.

    Scores every visible scene against the user's favorites, ratings and
    engagement, then returns one page of the tier-shuffled list. Users with no
    usable signals get an empty list with a message.
    """
    result = await get_recommended_scenes(db, user_id, page, per_page, session_maker=session_maker)
    return RecommendationsResponse(
        scenes=[scene.model_dump(mode="json") for scene in result.scenes],
        total=result.total,
        page=page,
        per_page=per_page,
        criteria=CriteriaCounts(**asdict(result.criteria)),
        message=result.message,
    )
