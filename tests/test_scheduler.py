"""Tests for scheduler job registration."""

import asyncio

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

import livesync.scheduler as scheduler_module
from livesync.config import get_settings
from livesync.etl.base import DailyBulletin
from livesync.services import build_services

EXPECTED_JOBS = {
    "poller",
    "window_sync",
    "window_sync_catchup",
    "window_sync_intraday",
    "finalizer_sweep",
    "stale_watchdog",
    "status_check",
    "half_stats",
    "job_runs_cleanup",
}


@pytest_asyncio.fixture
async def fresh_scheduler(monkeypatch):
    monkeypatch.setattr(scheduler_module, "scheduler", AsyncIOScheduler())
    monkeypatch.setattr(scheduler_module, "_scheduler_started", False)
    monkeypatch.delenv("UVICORN_RELOADED", raising=False)
    yield scheduler_module.scheduler
    scheduler_module.stop_scheduler()


@pytest.mark.asyncio
async def test_registers_all_jobs(fresh_scheduler, session_factory, provider):
    services = build_services(session_factory=session_factory, provider=provider)

    scheduler_module.start_scheduler(services, get_settings())

    assert fresh_scheduler.running
    assert {job.id for job in fresh_scheduler.get_jobs()} == EXPECTED_JOBS
    catchup = fresh_scheduler.get_job("window_sync_catchup")
    assert catchup.kwargs["days_back"] == 0
    assert catchup.kwargs["days_ahead"] == 0
    assert fresh_scheduler.get_job("poller").max_instances == 1


@pytest.mark.asyncio
async def test_window_sync_schedules_use_separate_workers(fresh_scheduler, session_factory, provider):
    services = build_services(session_factory=session_factory, provider=provider)

    scheduler_module.start_scheduler(services)

    workers = {
        job_id: fresh_scheduler.get_job(job_id).func.__self__
        for job_id in ("window_sync", "window_sync_catchup", "window_sync_intraday")
    }
    assert workers["window_sync"] is services.window_sync
    assert workers["window_sync_catchup"] is services.window_sync_catchup
    assert workers["window_sync_intraday"] is services.window_sync_intraday
    assert len({id(worker) for worker in workers.values()}) == 3
    assert {worker.job_name for worker in workers.values()} == set(workers)


@pytest.mark.asyncio
async def test_daily_sync_not_skipped_while_catchup_runs(session_factory, provider):
    services = build_services(session_factory=session_factory, provider=provider)
    release = asyncio.Event()
    requested = []

    async def slow_first_bulletin(day):
        requested.append(day)
        if len(requested) == 1:
            await release.wait()
        return DailyBulletin(day.strftime("%Y%m%d"))

    provider.fetch_daily_bulletin.side_effect = slow_first_bulletin

    catchup = asyncio.create_task(
        services.window_sync_catchup.tick(days_back=0, days_ahead=0, reason="catchup")
    )
    while not requested:
        await asyncio.sleep(0)
    assert services.window_sync_catchup.is_running

    daily = await services.window_sync.tick(reason="daily")

    assert daily["status"] == "ok"
    assert len(daily["days"]) == 3
    release.set()
    assert (await catchup)["status"] == "ok"
    assert provider.fetch_daily_bulletin.await_count == 4


@pytest.mark.asyncio
async def test_second_start_is_ignored(fresh_scheduler, session_factory, provider):
    services = build_services(session_factory=session_factory, provider=provider)

    scheduler_module.start_scheduler(services)
    scheduler_module.start_scheduler(services)

    assert len(fresh_scheduler.get_jobs()) == len(EXPECTED_JOBS)


@pytest.mark.asyncio
async def test_skipped_in_reload_subprocess(fresh_scheduler, monkeypatch, session_factory, provider):
    monkeypatch.setenv("UVICORN_RELOADED", "1")
    services = build_services(session_factory=session_factory, provider=provider)

    scheduler_module.start_scheduler(services)

    assert not fresh_scheduler.running
