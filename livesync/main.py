"""FastAPI application: live sync workers plus a read-only match API."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from livesync.config import get_settings
from livesync.database import AsyncSessionLocal, close_db, init_db
from livesync.routes.core import router as core_router
from livesync.routes.matches import router as matches_router
from livesync.scheduler import start_scheduler, stop_scheduler
from livesync.security import limiter
from livesync.services import build_services
from livesync.telemetry.sentry import init_sentry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Only activates if SENTRY_DSN is set in environment
init_sentry()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting livesync...")
    await init_db()

    services = build_services(settings, session_factory=AsyncSessionLocal)
    app.state.services = services
    await services.bus.start()

    if settings.SCHEDULER_ENABLED:
        start_scheduler(services, settings)
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    logger.info("Shutting down...")
    stop_scheduler()
    await services.bus.stop()
    await services.provider.close()
    await close_db()


app = FastAPI(
    title="livesync",
    description="TheSports live match ingestion and state reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Include routers
app.include_router(core_router)
app.include_router(matches_router)
