"""Core routes: health and Prometheus metrics."""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from livesync.config import get_settings
from livesync.jobs.tracking import get_last_success_at
from livesync.telemetry import get_metrics_text

logger = logging.getLogger(__name__)

router = APIRouter(tags=["core"])


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    event_bus_pending: int
    event_bus_dropped: int = 0
    last_success: dict[str, Optional[str]] = {}


TRACKED_JOBS = ("window_sync", "window_sync_catchup", "window_sync_intraday", "finalizer_sweep")


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    from livesync.scheduler import scheduler

    services = getattr(request.app.state, "services", None)
    last_success = {}
    if services is not None:
        try:
            async with services.store.session_factory() as session:
                for job_name in TRACKED_JOBS:
                    finished_at = await get_last_success_at(session, job_name)
                    last_success[job_name] = finished_at.isoformat() if finished_at else None
        except Exception as e:
            logger.warning(f"Health: job history unavailable: {e}")

    return HealthResponse(
        status="ok",
        scheduler_running=scheduler.running,
        event_bus_pending=services.bus.pending_count if services else 0,
        event_bus_dropped=services.bus.dropped if services else 0,
        last_success=last_success,
    )


@router.get("/metrics")
async def prometheus_metrics(
    authorization: str = Header(None, alias="Authorization"),
):
    """
    Prometheus metrics endpoint.

    Exposes reconciler outcomes, provider requests/latency and job runs.
    Requires Bearer token authentication when METRICS_BEARER_TOKEN is set.
    """
    expected_token = get_settings().METRICS_BEARER_TOKEN
    if expected_token:
        if not authorization:
            return PlainTextResponse(
                content="# Unauthorized: Missing Authorization header\n",
                status_code=401,
                media_type="text/plain",
            )
        parts = authorization.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer" or parts[1] != expected_token:
            return PlainTextResponse(
                content="# Unauthorized: Invalid token\n",
                status_code=401,
                media_type="text/plain",
            )

    content, content_type = get_metrics_text()
    return PlainTextResponse(content=content, media_type=content_type)
