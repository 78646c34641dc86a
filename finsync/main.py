"""FinSync Backend API - Main entry point."""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from finsync.config import get_settings
from finsync.cron import schedule_job_cleanup
from finsync.database import Database, get_supabase_client
from finsync.logging_config import get_logger, setup_logging
from finsync.routers import sync_router
from finsync.schemas.sync import SyncScheduleOptions
from finsync.services.goal_progress_service import AccountBalanceGoalCalculator
from finsync.services.plaid_service import PlaidProvider
from finsync.services.sync_engine import DataSyncEngine


settings = get_settings()
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.app_name} API...")

    store = Database(get_supabase_client())
    engine = DataSyncEngine(
        provider=PlaidProvider(store, page_size=settings.plaid_page_size),
        store=store,
        goal_calculator=AccountBalanceGoalCalculator(store),
        options=SyncScheduleOptions.from_settings(settings),
        conflict_strategy=settings.conflict_strategy,
    )
    app.state.sync_engine = engine

    if settings.enable_background_sync:
        engine.start_background_sync()

    if settings.enable_cron_jobs:
        cleanup = schedule_job_cleanup(engine, settings.job_cleanup_interval_seconds)
        await cleanup()
        logger.info("Cron jobs scheduled")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name} API...")
    await engine.shutdown()


app = FastAPI(
    title=settings.app_name,
    description="Background data sync for Plaid-linked accounts",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    if settings.debug:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal server error",
                "detail": str(exc),
            },
        )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal server error",
        },
    )


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    engine: DataSyncEngine | None = getattr(request.app.state, "sync_engine", None)
    metrics = engine.get_sync_metrics() if engine else None
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": "1.0.0",
        "active_jobs": metrics.active_jobs if metrics else 0,
        "queued_jobs": metrics.queued_jobs if metrics else 0,
    }


# Include routers with API prefix
api_prefix = settings.api_v1_prefix

app.include_router(sync_router, prefix=api_prefix)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs" if settings.debug else "Disabled in production",
        "api": settings.api_v1_prefix,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "finsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
