"""Library query endpoints: filtered listing and explicit id lookup for every entity kind."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek.config import get_settings
from peek.core.auth import get_optional_user_id
from peek.db.database import get_db, get_session_maker
from peek.db.schemas import IdsRequest, IdsResponse, LibraryQueryRequest, LibraryQueryResponse
from peek.query.fields import get_model
from peek.query.planner import QueryOptions, execute, get_by_ids
from peek.services.catalog_snapshot import CatalogMirror, get_mirror
from peek.services.instance_service import get_user_allowed_instance_ids

router = APIRouter()
settings = get_settings()


async def _allowed_instances(db: AsyncSession, user_id: int | None) -> list[str] | None:
    # Anonymous requests see every instance
    if user_id is None:
        return None
    return await get_user_allowed_instance_ids(db, user_id)


@router.post("/{kind}/query", response_model=LibraryQueryResponse)
async def query_library(
    kind: str,
    body: LibraryQueryRequest,
    user_id: int | None = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    mirror: CatalogMirror = Depends(get_mirror),
):
    """
    Filter, sort and paginate one entity kind.

    Filters use the shared criterion shape ({value, modifier, depth?, excludes?}).
    Exclusions apply to logged-in users unless `apply_exclusions` is false.
    """
    get_model(kind)
    options = QueryOptions(
        user_id=user_id,
        filters=body.filters,
        sort=body.sort,
        sort_direction=body.sort_direction,
        page=body.page,
        per_page=body.per_page,
        apply_exclusions=body.apply_exclusions,
        allowed_instance_ids=await _allowed_instances(db, user_id),
        random_seed=body.random_seed,
    )
    result = await execute(db, kind, options, session_maker=session_maker, snapshot=mirror.current)

    per_page = min(body.per_page or settings.default_per_page, settings.max_per_page)

    return LibraryQueryResponse(
        items=[item.model_dump(mode="json") for item in result.items],
        total=result.total,
        page=body.page,
        per_page=per_page,
        has_more=body.page * per_page < result.total,
    )


@router.post("/{kind}/ids", response_model=IdsResponse)
async def get_library_ids(
    kind: str,
    body: IdsRequest,
    user_id: int | None = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Look up entities by composite ("id:instanceId") or bare id. Exclusions never apply."""
    get_model(kind)
    items = await get_by_ids(
        db, kind, body.ids, user_id, await _allowed_instances(db, user_id), session_maker=session_maker,
    )
    return IdsResponse(items=[item.model_dump(mode="json") for item in items])
