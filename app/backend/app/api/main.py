"""
Main FastAPI application for the race rewards backend.
Configures the API server with routes, middleware, and documentation.
"""

import asyncio

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

import structlog

from app.core import database
from app.core.config import settings
from app.core.database import DatabaseManager, init_database, close_database
from app.core.logging import setup_logging
from app.api.middleware import add_middleware
from app.api.schemas.common import HealthCheckResponse, APIResponse
from app.api.routes import races, claims
from app.scheduler.race_scheduler import RaceScheduler
from app.services.ledger.client import close_ledger_client
from app.services.payouts.executor_client import close_payout_executor_client


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting race rewards API server")

    owns_database = database.async_engine is None
    if owns_database:
        await init_database()

    scheduler = None
    scheduler_task = None
    try:
        if settings.is_production and settings.scheduler_enabled:
            scheduler = RaceScheduler()
            await scheduler.initialize()
            scheduler_task = asyncio.create_task(scheduler.start())
            logger.info("Background services started")
    except Exception as e:
        logger.error("Failed to start background services", error=str(e))

    app.state.race_scheduler = scheduler

    yield

    # Shutdown
    logger.info("Shutting down race rewards API server")

    try:
        if scheduler is not None:
            await scheduler.stop()
        if scheduler_task is not None:
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
            logger.info("Background services stopped")

        await close_ledger_client()
        await close_payout_executor_client()
        if owns_database:
            await close_database()
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()

    app_config = {
        "title": "Race Rewards API",
        "description": """
        Backend API for token holder reward races.

        ## Features

        * **Snapshot Engine** - Entry and end snapshots of the top token holders per round
        * **Reward Tiers** - Rank-tiered distribution of each round's budget
        * **Claims** - Reward claim requests forwarded to the payout executor

        ## Admin Access

        Operator endpoints require the admin API key:
        ```
        X-Admin-Key: <admin-api-key>
        ```

        ## Error Handling

        Errors return `{"detail": {"error": CODE, "message": ...}}`.
        """,
        "version": settings.app_version,
        "lifespan": lifespan,
    }

    if settings.is_production:
        app_config["openapi_url"] = None

    app = FastAPI(**app_config)

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and database connectivity"
    )
    async def health_check():
        database_ok = await DatabaseManager.health_check()
        scheduler = getattr(app.state, "race_scheduler", None)
        health = HealthCheckResponse(
            status="healthy" if database_ok else "unhealthy",
            version=settings.app_version,
            services={
                "database": "healthy" if database_ok else "unhealthy",
                "scheduler": "running" if scheduler is not None else "disabled",
            }
        )
        if database_ok:
            return health

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=health.model_dump(mode="json")
        )

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        return APIResponse(message=f"Race Rewards API v{settings.app_version}")

    app.include_router(
        races.router,
        prefix=f"{settings.api_v1_prefix}/races",
        tags=["Races"]
    )

    app.include_router(
        claims.router,
        prefix=f"{settings.api_v1_prefix}/claims",
        tags=["Claims"]
    )

    logger.info("FastAPI application created successfully")
    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
