"""
M365 Sync Worker
================
Version: 1.0.0

FastAPI application entry point.

Architecture:
- sync_worker/core/: Configuration, dependencies, retry helpers
- sync_worker/middleware/: Error handling, request logging
- sync_worker/models/: Pydantic schemas
- sync_worker/services/: Sync pipeline, side pipelines, daily brief
- sync_worker/api/v1/routes/: API endpoints

The web process also hosts the in-process schedulers (fleet sync every
SYNC_INTERVAL_MINUTES, hourly brief check). Run a single replica unless
SYNC_LOCK_BACKEND=redis.
"""
import sys
import logging
import traceback
from contextlib import asynccontextmanager
from fastapi import FastAPI

# Startup error handling
try:
    # Import core components
    from sync_worker.core.config import settings
    from sync_worker.core.dependencies import (
        initialize_clients, shutdown_clients,
        get_http_client, get_supabase, get_sync_guard
    )

    # Import middleware
    from sync_worker.middleware.error_handler import ErrorHandlerMiddleware
    from sync_worker.middleware.logging import RequestLoggingMiddleware

    # Import routes
    from sync_worker.api.v1.routes.health import router as health_router
    from sync_worker.api.v1.routes.sync import router as sync_router
    from sync_worker.api.v1.routes.brief import router as brief_router

    from sync_worker.services.sync.scheduler import BriefScheduler, SyncScheduler

except Exception as e:
    print(f"🚨 FATAL STARTUP ERROR: {e}", file=sys.stderr)
    print(f"Traceback:\n{traceback.format_exc()}", file=sys.stderr)
    sys.exit(1)

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.environment == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# ============================================================================
# SENTRY ERROR TRACKING
# ============================================================================

if settings.sentry_dsn:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,  # 10% of requests for performance monitoring
            profiles_sample_rate=0.1,
            integrations=[
                FastApiIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
            ]
        )
        logger.info("✅ Sentry error tracking initialized")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry: {e}")
else:
    logger.info("ℹ️  Sentry not configured (SENTRY_DSN not set)")

# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    # Startup
    logger.info("=" * 80)
    logger.info("Starting M365 Sync Worker")
    logger.info("=" * 80)
    logger.info(f"Version: 1.0.0")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Port: {settings.port}")
    logger.info(f"Debug: {settings.debug}")

    await initialize_clients()

    # The manual trigger needs the sync scheduler even when the timer is off
    sync_scheduler = SyncScheduler(get_http_client(), get_supabase(), get_sync_guard())
    app.state.sync_scheduler = sync_scheduler
    if settings.enable_scheduler:
        sync_scheduler.start()
        logger.info(f"⏰ Sync scheduler started (every {settings.sync_interval_minutes} min)")
    else:
        logger.info("ℹ️  Sync scheduler disabled (ENABLE_SCHEDULER=false)")

    if settings.enable_brief_scheduler:
        brief_scheduler = BriefScheduler(get_http_client(), get_supabase())
        app.state.brief_scheduler = brief_scheduler
        brief_scheduler.start()
        logger.info("⏰ Daily brief scheduler started (checking hourly)")

    logger.info("=" * 80)
    logger.info("✅ M365 Sync Worker started successfully")
    logger.info("=" * 80)

    yield

    # Shutdown
    logger.info("Shutting down M365 Sync Worker...")
    await sync_scheduler.stop()
    brief_scheduler = getattr(app.state, "brief_scheduler", None)
    if brief_scheduler is not None:
        await brief_scheduler.stop()
    await shutdown_clients()
    logger.info("✅ Shutdown complete")


# ============================================================================
# APP INITIALIZATION
# ============================================================================

app = FastAPI(
    title="M365 Sync Worker",
    description="Incremental Microsoft Graph mail/calendar sync",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,  # Disable docs in production
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# ============================================================================
# MIDDLEWARE (order matters!)
# ============================================================================

# Global error handler
app.add_middleware(ErrorHandlerMiddleware)

# Request logging (outermost, so error responses are logged and tagged too)
app.add_middleware(RequestLoggingMiddleware)

# ============================================================================
# ROUTES
# ============================================================================

app.include_router(health_router)
app.include_router(sync_router)
app.include_router(brief_router)

logger.info("✅ All routes registered")

# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
