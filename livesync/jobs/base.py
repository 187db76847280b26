"""Periodic worker base: one run at a time per worker instance, tracked and timed."""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.database import AsyncSessionLocal
from livesync.jobs.tracking import record_job_run
from livesync.telemetry import record_job_metric
from livesync.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """
    Base for scheduled workers.

    tick() is what the scheduler calls. If the previous cycle of this same
    instance is still running the tick is skipped; different workers never
    block each other.
    """

    job_name = "worker"
    log_tag = "WORKER"

    def __init__(self, session_factory: Optional[sessionmaker] = None, track_runs: bool = True):
        self.session_factory = session_factory or AsyncSessionLocal
        self.track_runs = track_runs
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self, **kwargs) -> dict:
        raise NotImplementedError

    async def tick(self, job_name: Optional[str] = None, **kwargs) -> dict:
        job_name = job_name or self.job_name
        if self._running:
            logger.info(f"[{self.log_tag}] Previous cycle still running, skipping {job_name} tick")
            record_job_metric(job_name, "skipped", 0)
            return {"status": "skipped"}

        self._running = True
        start_time = time.time()
        started_at = datetime.now(timezone.utc)
        error = None
        try:
            result = await self.run_once(**kwargs)
        except Exception as e:
            logger.error(f"[{self.log_tag}] {job_name} failed: {e}", exc_info=True)
            capture_exception(e, job_id=job_name)
            error = str(e)
            result = {"status": "error", "error": error}
        finally:
            self._running = False

        status = result.get("status", "ok")
        duration_ms = (time.time() - start_time) * 1000
        record_job_metric(job_name, status, duration_ms)
        if self.track_runs:
            await self._persist_run(job_name, status, started_at, error or result.get("error"), result)
        return result

    async def _persist_run(self, job_name, status, started_at, error, result) -> None:
        metrics = {k: v for k, v in result.items() if isinstance(v, (int, float, str, bool))}
        try:
            async with self.session_factory() as session:
                await record_job_run(session, job_name, status, started_at, error=error, metrics=metrics)
        except Exception as e:
            logger.warning(f"[{self.log_tag}] Could not persist {job_name} run: {e}")
