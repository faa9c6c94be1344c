"""API v1 router - aggregates all endpoint routers."""

from fastapi import APIRouter

from peek.api.v1 import library, hidden, stats, recommendations, admin

api_router = APIRouter()

api_router.include_router(library.router, prefix="/library", tags=["library"])
api_router.include_router(hidden.router, prefix="/hidden", tags=["hidden"])
api_router.include_router(stats.router, prefix="/stats", tags=["stats"])
api_router.include_router(recommendations.router, prefix="/recommendations", tags=["recommendations"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
