"""Wiring of the provider, stores, reconciler and workers into one graph."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.config import Settings, get_settings
from livesync.database import AsyncSessionLocal
from livesync.etl.base import ProviderGateway
from livesync.etl.rate_limit import TokenBucket
from livesync.etl.reference import ReferenceDataStore
from livesync.etl.thesports import TheSportsProvider
from livesync.events import MATCH_ENDED, EventBus, make_match_ended_handler, match_ended_emitter
from livesync.jobs.finalizer import PostMatchFinalizer
from livesync.jobs.half_stats import HalfStatsSnapshotWorker
from livesync.jobs.poller import ChangeDetectionPoller
from livesync.jobs.refresh import MatchRefresher
from livesync.jobs.stale_watchdog import StaleMatchWatchdog
from livesync.jobs.status_check import ProactiveStatusCheck
from livesync.jobs.window_sync import WindowSyncWorker
from livesync.matches.live_cache import LiveStatsCacheStore
from livesync.matches.read_model import MatchQueryService
from livesync.matches.reconciler import Reconciler
from livesync.matches.store import MatchStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    provider: ProviderGateway
    store: MatchStore
    live_cache: LiveStatsCacheStore
    reference_store: ReferenceDataStore
    bus: EventBus
    reconciler: Reconciler
    refresher: MatchRefresher
    finalizer: PostMatchFinalizer
    poller: ChangeDetectionPoller
    # One instance per schedule: each has its own re-entrancy guard
    window_sync: WindowSyncWorker
    window_sync_catchup: WindowSyncWorker
    window_sync_intraday: WindowSyncWorker
    stale_watchdog: StaleMatchWatchdog
    status_check: ProactiveStatusCheck
    half_stats: HalfStatsSnapshotWorker
    queries: MatchQueryService


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    provider: Optional[ProviderGateway] = None,
    bus: Optional[EventBus] = None,
) -> Services:
    """
    Build every component against one session factory and one provider.

    All workers share the provider instance, and with it the token bucket,
    so the request quota is global rather than per worker.
    """
    settings = settings or get_settings()
    session_factory = session_factory or AsyncSessionLocal
    provider = provider or TheSportsProvider(
        rate_limiter=TokenBucket(settings.THESPORTS_REQUESTS_PER_MINUTE)
    )
    bus = bus or EventBus()

    store = MatchStore(
        session_factory,
        max_retries=settings.STORE_MAX_RETRIES,
        retry_delay=settings.STORE_RETRY_DELAY_SECONDS,
        event_time_ordering=settings.RECONCILER_EVENT_TIME_ORDERING,
    )
    live_cache = LiveStatsCacheStore(session_factory)
    reference_store = ReferenceDataStore(session_factory)
    reconciler = Reconciler(store, on_match_ended=match_ended_emitter(bus))

    finalizer = PostMatchFinalizer(provider, store, live_cache, session_factory=session_factory)
    refresher = MatchRefresher(
        provider, reconciler, live_cache=live_cache, finalizer=finalizer,
        extras_interval=settings.LIVE_EXTRAS_REFRESH_SECONDS,
    )
    poller = ChangeDetectionPoller(
        provider, reconciler, store, session_factory=session_factory, refresher=refresher
    )
    window_syncs = {
        job_name: WindowSyncWorker(
            provider, reconciler, store, reference_store, session_factory=session_factory, job_name=job_name
        )
        for job_name in ("window_sync", "window_sync_catchup", "window_sync_intraday")
    }
    stale_watchdog = StaleMatchWatchdog(store, reconciler, refresher, session_factory=session_factory)
    status_check = ProactiveStatusCheck(provider, store, reconciler, refresher, session_factory=session_factory)
    half_stats = HalfStatsSnapshotWorker(store, reconciler, session_factory=session_factory)
    queries = MatchQueryService(
        store, live_cache=live_cache, provider=provider, session_factory=session_factory,
        deadline=settings.READ_DEADLINE_SECONDS,
    )

    bus.subscribe(MATCH_ENDED, make_match_ended_handler(finalizer))
    logger.info(
        f"Services ready (event_time_ordering={settings.RECONCILER_EVENT_TIME_ORDERING}, "
        f"rpm={settings.THESPORTS_REQUESTS_PER_MINUTE})"
    )
    return Services(
        provider=provider,
        store=store,
        live_cache=live_cache,
        reference_store=reference_store,
        bus=bus,
        reconciler=reconciler,
        refresher=refresher,
        finalizer=finalizer,
        poller=poller,
        window_sync=window_syncs["window_sync"],
        window_sync_catchup=window_syncs["window_sync_catchup"],
        window_sync_intraday=window_syncs["window_sync_intraday"],
        stale_watchdog=stale_watchdog,
        status_check=status_check,
        half_stats=half_stats,
        queries=queries,
    )
