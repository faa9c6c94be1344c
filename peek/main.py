"""Peek Catalog API - FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from datetime import timezone

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from peek.config import get_settings
from peek.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peek.api.v1.router import api_router
from peek.core.cache import get_cache
from peek.core.errors import CatalogUnavailableError, ClientInputError
from peek.core.tasks import TaskManager
from peek.db.database import init_db, get_db, async_session_maker
from peek.db.models import SystemMetadata
from peek.middleware import CorrelationIDMiddleware
from peek.services.catalog_snapshot import get_mirror, refresh_catalog

logger = logging.getLogger(__name__)

# Rate limiter - 100 requests per minute per IP for general endpoints
# Recommendations have a stricter limit applied via decorator
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

scheduler = AsyncIOScheduler(
    timezone=timezone.utc,
    job_defaults={
        # Run a missed refresh when the host comes back instead of skipping it
        "misfire_grace_time": 60 * 60,  # 1 hour
        "coalesce": True,
        "max_instances": 1,
    },
)
task_manager = TaskManager.get_instance()


async def run_scheduled_refresh():
    """Scheduled catalog refresh. Errors are logged; the old snapshot keeps serving."""
    try:
        started = await refresh_catalog(get_mirror(), async_session_maker)
        if not started:
            logger.info("Scheduled refresh skipped - a refresh is already running")
    except Exception as e:
        logger.error(f"Scheduled catalog refresh failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    await init_db()

    if settings.refresh_on_startup:
        task_manager.create_task(run_scheduled_refresh(), name="catalog_refresh_startup")

    scheduler.add_job(
        run_scheduled_refresh,
        CronTrigger(hour=settings.refresh_cron_hour, minute=settings.refresh_cron_minute),
        id="catalog_refresh",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started - catalog refresh at "
        f"{settings.refresh_cron_hour:02d}:{settings.refresh_cron_minute:02d} UTC"
    )

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await task_manager.cancel_all(timeout=10.0)
    scheduler.shutdown()
    await get_cache().close()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Personalized filtering, exclusions and recommendations over a mirrored Stash catalog",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ClientInputError)
async def client_input_error_handler(request: Request, exc: ClientInputError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(CatalogUnavailableError)
async def catalog_unavailable_handler(request: Request, exc: CatalogUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": str(exc.retry_after)},
    )


# CORS middleware - restricted methods and headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", settings.user_id_header],
    expose_headers=["X-Correlation-ID"],
)

# Correlation ID middleware for request tracing
app.add_middleware(CorrelationIDMiddleware)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check with catalog state."""
    mirror = get_mirror()
    snapshot = mirror.current

    last_refresh = None
    try:
        result = await db.execute(select(SystemMetadata).where(SystemMetadata.key == "last_refresh"))
        metadata = result.scalar_one_or_none()
        last_refresh = metadata.value if metadata else None
    except Exception as e:
        logger.error(f"Health check DB error: {e}")
        return {
            "status": "error",
            "service": settings.app_name,
            "cacheVersion": mirror.cache_version,
            "isRefreshing": mirror.is_refreshing,
            "error": "Database health check failed",
        }

    job = scheduler.get_job("catalog_refresh")
    return {
        "status": "healthy" if snapshot is not None else "starting",
        "service": settings.app_name,
        "cacheVersion": mirror.cache_version,
        "isRefreshing": mirror.is_refreshing,
        "lastRefresh": last_refresh,
        "entityCounts": dict(snapshot.entity_counts) if snapshot else {},
        "nextRefresh": job.next_run_time.isoformat() if job and job.next_run_time else None,
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
