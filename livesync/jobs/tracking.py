"""Job run tracking.

Persists job executions so the last successful run is known even after a
restart wipes the Prometheus counters.

Usage:
    from livesync.jobs.tracking import record_job_run

    start = datetime.now(timezone.utc)
    await record_job_run(session, "window_sync", "ok", start, metrics={"synced": 412})
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from livesync.models import JobRun

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


async def record_job_run(
    session: AsyncSession,
    job_name: str,
    status: str,
    started_at: datetime,
    error: Optional[str] = None,
    metrics: Optional[dict] = None,
) -> None:
    """
    Record a job execution in the database.

    Args:
        session: Database session.
        job_name: Job identifier (poller, window_sync, finalizer_sweep, etc.).
        status: Execution status (ok, error, skipped, db_unavailable).
        started_at: When the job started.
        error: Error message if failed.
        metrics: Optional job-specific metrics dict.
    """
    started_at = _naive_utc(started_at)
    finished_at = datetime.utcnow()
    duration_ms = int((finished_at - started_at).total_seconds() * 1000)

    session.add(JobRun(
        job_name=job_name,
        status=status,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=duration_ms,
        error_message=error,
        metrics=metrics,
    ))
    await session.commit()

    logger.debug(f"[JOB_TRACKING] Recorded {job_name} run: {status} in {duration_ms}ms")


async def get_last_success_at(session: AsyncSession, job_name: str) -> Optional[datetime]:
    """Last successful finish time for a job, or None if it never succeeded."""
    result = await session.execute(
        select(JobRun.finished_at)
        .where(JobRun.job_name == job_name, JobRun.status == "ok")
        .order_by(JobRun.finished_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def cleanup_old_runs(session: AsyncSession, days: int = 7) -> int:
    """Delete job runs older than ``days``. Returns rows deleted."""
    cutoff = datetime.utcnow() - timedelta(days=days)
    result = await session.execute(delete(JobRun).where(JobRun.started_at < cutoff))
    await session.commit()
    deleted = result.rowcount or 0
    if deleted:
        logger.info(f"[JOB_TRACKING] Cleaned up {deleted} job runs older than {days} days")
    return deleted
