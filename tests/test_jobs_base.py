"""
Tests for the periodic worker base and job run tracking.

Verifies:
- A tick while the same worker is still running is skipped
- Exceptions inside a cycle become an error result, not a crash
- Runs are persisted and the last success is queryable after a restart
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from livesync.jobs.base import PeriodicWorker
from livesync.jobs.tracking import cleanup_old_runs, get_last_success_at, record_job_run
from livesync.models import JobRun


class SampleWorker(PeriodicWorker):
    job_name = "sample"
    log_tag = "SAMPLE"

    def __init__(self, session_factory, track_runs=True, fail=False):
        super().__init__(session_factory, track_runs=track_runs)
        self.fail = fail
        self.release = asyncio.Event()
        self.release.set()
        self.cycles = 0

    async def run_once(self, **kwargs) -> dict:
        self.cycles += 1
        await self.release.wait()
        if self.fail:
            raise RuntimeError("provider exploded")
        return {"status": "ok", "processed": 3, **kwargs}


class TestTick:

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, session_factory):
        worker = SampleWorker(session_factory, track_runs=False)
        worker.release.clear()

        first = asyncio.create_task(worker.tick())
        await asyncio.sleep(0)
        assert worker.is_running

        assert await worker.tick() == {"status": "skipped"}

        worker.release.set()
        result = await first
        assert result["status"] == "ok"
        assert worker.cycles == 1
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_error_result(self, session_factory):
        worker = SampleWorker(session_factory, track_runs=False, fail=True)
        result = await worker.tick()
        assert result["status"] == "error"
        assert "provider exploded" in result["error"]
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_kwargs_forwarded(self, session_factory):
        worker = SampleWorker(session_factory, track_runs=False)
        result = await worker.tick(job_name="sample_catchup", reason="catchup")
        assert result["reason"] == "catchup"

    @pytest.mark.asyncio
    async def test_run_persisted(self, session_factory):
        worker = SampleWorker(session_factory)
        await worker.tick(job_name="sample_catchup")

        async with session_factory() as session:
            runs = (await session.execute(select(JobRun))).scalars().all()
            last_ok = await get_last_success_at(session, "sample_catchup")

        assert len(runs) == 1
        assert runs[0].job_name == "sample_catchup"
        assert runs[0].metrics["processed"] == 3
        assert last_ok is not None


class TestTracking:

    @pytest.mark.asyncio
    async def test_last_success_ignores_errors(self, session_factory):
        now = datetime.utcnow()
        async with session_factory() as session:
            await record_job_run(session, "window_sync", "ok", now - timedelta(minutes=30))
            await record_job_run(session, "window_sync", "error", now, error="boom")
            last_ok = await get_last_success_at(session, "window_sync")
            never = await get_last_success_at(session, "finalizer_sweep")

        assert last_ok is not None
        assert never is None

    @pytest.mark.asyncio
    async def test_cleanup_old_runs(self, session_factory):
        now = datetime.utcnow()
        async with session_factory() as session:
            await record_job_run(session, "poller", "ok", now - timedelta(days=10))
            await record_job_run(session, "poller", "ok", now)
            deleted = await cleanup_old_runs(session, days=7)
            remaining = (await session.execute(select(JobRun))).scalars().all()

        assert deleted == 1
        assert len(remaining) == 1
