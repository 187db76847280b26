"""
Background job scheduling.

All jobs run on one AsyncIOScheduler inside the API process. Each worker
guards its own re-entrancy (see PeriodicWorker.tick); max_instances=1 and
coalesce keep APScheduler from queueing a backlog behind a slow cycle.
"""

import logging
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from livesync.config import Settings, get_settings
from livesync.database import AsyncSessionLocal
from livesync.jobs.tracking import cleanup_old_runs
from livesync.jobs.window_sync import provider_timezone
from livesync.services import Services

logger = logging.getLogger(__name__)

# Flag to prevent multiple scheduler instances (e.g., with --reload)
_scheduler_started = False
scheduler = AsyncIOScheduler()


async def cleanup_job_runs(days: int = 7) -> int:
    """Daily housekeeping for the job_runs table."""
    try:
        async with AsyncSessionLocal() as session:
            return await cleanup_old_runs(session, days=days)
    except Exception as e:
        logger.warning(f"Job run cleanup failed: {e}")
        return 0


def start_scheduler(services: Services, settings: Settings = None):
    """
    Register and start all jobs.

    Uses a module-level flag to prevent duplicate scheduler instances
    when running with --reload or multiple workers.
    """
    global _scheduler_started

    if _scheduler_started:
        logger.warning("Scheduler already started, skipping duplicate initialization")
        return

    if os.environ.get("UVICORN_RELOADED"):
        logger.info("Skipping scheduler in reload subprocess")
        return

    settings = settings or get_settings()
    provider_tz = provider_timezone(settings.WINDOW_SYNC_TZ_OFFSET_HOURS)

    # Change-detection poller: seconds-level cadence
    scheduler.add_job(
        services.poller.tick,
        trigger=IntervalTrigger(seconds=settings.POLLER_INTERVAL_SECONDS),
        id="poller",
        name=f"Change-detection poller (every {settings.POLLER_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Each window-sync schedule has its own worker so one cannot skip another
    # Full window (yesterday/today/tomorrow) just after provider-local midnight
    scheduler.add_job(
        services.window_sync.tick,
        trigger=CronTrigger(hour=0, minute=5, timezone=provider_tz),
        id="window_sync",
        name="Window sync (provider-local 00:05)",
        kwargs={"reason": "daily"},
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=3600,
    )

    # Today only, to pick up late additions and reschedules
    scheduler.add_job(
        services.window_sync_catchup.tick,
        trigger=IntervalTrigger(minutes=settings.WINDOW_SYNC_CATCHUP_MINUTES),
        id="window_sync_catchup",
        name=f"Window sync catch-up (every {settings.WINDOW_SYNC_CATCHUP_MINUTES} min)",
        kwargs={"days_back": 0, "days_ahead": 0, "reason": "catchup"},
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        services.window_sync_intraday.tick,
        trigger=CronTrigger(hour=settings.WINDOW_SYNC_INTRADAY_HOURS, minute=5, timezone=provider_tz),
        id="window_sync_intraday",
        name=f"Window sync intraday ({settings.WINDOW_SYNC_INTRADAY_HOURS})",
        kwargs={"reason": "intraday"},
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=1800,
    )

    # Safety net for MATCH_ENDED events that were lost or failed
    scheduler.add_job(
        services.finalizer.tick,
        trigger=IntervalTrigger(minutes=settings.FINALIZER_SWEEP_MINUTES),
        id="finalizer_sweep",
        name=f"Post-match finalizer sweep (every {settings.FINALIZER_SWEEP_MINUTES} min)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Live matches the change feed stopped reporting
    scheduler.add_job(
        services.stale_watchdog.tick,
        trigger=IntervalTrigger(seconds=settings.STALE_CHECK_INTERVAL_SECONDS),
        id="stale_watchdog",
        name=f"Stale match watchdog (every {settings.STALE_CHECK_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Stored statuses that contradict the clock
    scheduler.add_job(
        services.status_check.tick,
        trigger=IntervalTrigger(seconds=settings.STATUS_CHECK_INTERVAL_SECONDS),
        id="status_check",
        name=f"Proactive status check (every {settings.STATUS_CHECK_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        services.half_stats.tick,
        trigger=IntervalTrigger(seconds=settings.HALF_STATS_INTERVAL_SECONDS),
        id="half_stats",
        name=f"Half statistics snapshots (every {settings.HALF_STATS_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        cleanup_job_runs,
        trigger=CronTrigger(hour=3, minute=0),
        id="job_runs_cleanup",
        name="Job run history cleanup (daily 03:00 UTC)",
        replace_existing=True,
    )

    scheduler.start()
    _scheduler_started = True
    logger.info(
        "Scheduler started:\n"
        f"  - Change-detection poller: Every {settings.POLLER_INTERVAL_SECONDS}s\n"
        f"  - Window sync: 00:05 UTC{settings.WINDOW_SYNC_TZ_OFFSET_HOURS:+d} (yesterday/today/tomorrow)\n"
        f"  - Window sync catch-up: Every {settings.WINDOW_SYNC_CATCHUP_MINUTES} min (today)\n"
        f"  - Window sync intraday: {settings.WINDOW_SYNC_INTRADAY_HOURS} at :05\n"
        f"  - Finalizer sweep: Every {settings.FINALIZER_SWEEP_MINUTES} min "
        f"(lookback {settings.FINALIZER_LOOKBACK_HOURS}h)\n"
        f"  - Stale match watchdog: Every {settings.STALE_CHECK_INTERVAL_SECONDS}s\n"
        f"  - Proactive status check: Every {settings.STATUS_CHECK_INTERVAL_SECONDS}s\n"
        f"  - Half statistics snapshots: Every {settings.HALF_STATS_INTERVAL_SECONDS}s\n"
        f"  - Job run cleanup: 03:00 UTC"
    )


def stop_scheduler():
    """Stop the background scheduler."""
    global _scheduler_started
    if scheduler.running:
        scheduler.shutdown()
        _scheduler_started = False
        logger.info("Scheduler stopped")
