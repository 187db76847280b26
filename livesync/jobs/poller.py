"""
Change-detection poller.

Each cycle asks the provider which matches changed since its last refresh
window, resolves every id to a full record and reconciles it:

    IDLE -> POLLING -> RESOLVING -> RECONCILING -> IDLE

Unknown ids are ingested on the fly. One failing match never aborts the
cycle; a database outage does.
"""

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.database import is_transient_db_error
from livesync.errors import PayloadError, ProviderError
from livesync.etl.base import ChangedMatch, ProviderGateway
from livesync.etl.payloads import map_match_record
from livesync.jobs.base import PeriodicWorker
from livesync.jobs.refresh import MatchRefresher
from livesync.matches.live_cache import LiveStatsCacheStore
from livesync.matches.reconciler import Reconciler
from livesync.matches.status import UpdateSource
from livesync.matches.store import MatchStore, ResultStatus

logger = logging.getLogger(__name__)


class PollerState:
    IDLE = "idle"
    POLLING = "polling"
    RESOLVING = "resolving"
    RECONCILING = "reconciling"


class ChangeDetectionPoller(PeriodicWorker):
    job_name = "poller"
    log_tag = "POLLER"

    def __init__(
        self,
        provider: ProviderGateway,
        reconciler: Reconciler,
        store: MatchStore,
        live_cache: Optional[LiveStatsCacheStore] = None,
        finalizer=None,
        session_factory: Optional[sessionmaker] = None,
        refresher: Optional[MatchRefresher] = None,
        track_runs: bool = False,
    ):
        super().__init__(session_factory or store.session_factory, track_runs=track_runs)
        self.provider = provider
        self.reconciler = reconciler
        self.store = store
        self.refresher = refresher or MatchRefresher(provider, reconciler, live_cache=live_cache, finalizer=finalizer)
        self.state = PollerState.IDLE

    async def run_once(self, now: Optional[int] = None) -> dict:
        metrics = {"changed": 0, "reconciled": 0, "ingested": 0, "skipped": 0, "rejected": 0, "errors": 0}
        try:
            self.state = PollerState.POLLING
            try:
                changed = await self.provider.fetch_changed_matches()
            except ProviderError as e:
                logger.warning(f"[POLLER] Change feed unavailable: {e}")
                return {**metrics, "status": "provider_error", "error": str(e)}

            metrics["changed"] = len(changed)
            if not changed:
                return {**metrics, "status": "ok"}

            for entry in changed:
                try:
                    await self.process_match(entry, metrics, now=now)
                except Exception as e:
                    if is_transient_db_error(e):
                        logger.error(f"[POLLER] Database unavailable, aborting cycle: {e}")
                        return {**metrics, "status": "db_unavailable", "error": str(e)}
                    metrics["errors"] += 1
                    logger.warning(f"[POLLER] Match {entry.match_id} failed: {e}")

            logger.info(
                f"[POLLER] Cycle complete: changed={metrics['changed']}, reconciled={metrics['reconciled']}, "
                f"ingested={metrics['ingested']}, rejected={metrics['rejected']}, errors={metrics['errors']}"
            )
            return {**metrics, "status": "ok"}
        finally:
            self.state = PollerState.IDLE

    async def process_match(self, entry: ChangedMatch, metrics: dict, now: Optional[int] = None) -> None:
        match_id = entry.match_id
        self.state = PollerState.RESOLVING

        current = await self.store.get(match_id)
        if current is None:
            current = await self.ingest_unknown(match_id, entry, now=now)
            if current is None:
                metrics["skipped"] += 1
                return
            metrics["ingested"] += 1

        record = await self.refresher.fetch_record(match_id)
        if record is None:
            logger.debug(f"[POLLER] No detail for {match_id}, skipping")
            metrics["skipped"] += 1
            return

        self.state = PollerState.RECONCILING
        result = await self.refresher.apply_record(
            match_id, record, current, update_time=entry.update_time, source=UpdateSource.POLLER, now=now
        )
        if result.status in (ResultStatus.ERROR, ResultStatus.NOT_FOUND):
            metrics["errors"] += 1
            return
        if result.status == ResultStatus.REJECTED_IMMUTABLE:
            metrics["rejected"] += 1
        metrics["reconciled"] += 1

    async def ingest_unknown(self, match_id: str, entry: ChangedMatch, now: Optional[int] = None):
        """Create a match seen only in the change feed. Returns the stored row, or None."""
        record = await self.provider.fetch_match_detail(match_id)
        if record is None:
            logger.warning(f"[POLLER] Unknown match {match_id} has no provider detail, skipping")
            return None
        try:
            fields = map_match_record(record)
        except PayloadError as e:
            logger.warning(f"[POLLER] Unknown match {match_id} not ingestible: {e}")
            return None
        fields["external_id"] = match_id
        created, result = await self.reconciler.ingest(
            fields, source=UpdateSource.POLLER, observed_at=entry.update_time, now=now
        )
        if created:
            logger.info(f"[POLLER] Ingested unknown match {match_id} on the fly ({result.status})")
        return await self.store.get(match_id)
