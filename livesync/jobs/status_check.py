"""
Proactive status check over today's matches.

The change feed only reports what the provider thinks changed. This scan
looks for stored statuses that contradict the clock and asks the provider
directly:

- NOT_STARTED although match_time has passed (should be live by now)
- FINISHED although kickoff was less than STATUS_CHECK_SUSPICIOUS_END_MINUTES ago

Detail endpoints are tried first, the day's bulletin second. A FINISHED
match is never reopened; a provider that disagrees is only reported.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.config import get_settings
from livesync.errors import PayloadError, ProviderError
from livesync.etl.base import ProviderGateway
from livesync.etl.payloads import first_present, map_match_record
from livesync.jobs.base import PeriodicWorker
from livesync.jobs.refresh import MatchRefresher
from livesync.jobs.window_sync import day_bounds, provider_timezone, window_dates
from livesync.matches.reconciler import Reconciler
from livesync.matches.status import MatchStatus, UpdateSource
from livesync.matches.store import MatchStore, ResultStatus
from livesync.telemetry import record_status_check

logger = logging.getLogger(__name__)


class ProactiveStatusCheck(PeriodicWorker):
    job_name = "status_check"
    log_tag = "STATUS_CHECK"

    def __init__(
        self,
        provider: ProviderGateway,
        store: MatchStore,
        reconciler: Reconciler,
        refresher: MatchRefresher,
        session_factory: Optional[sessionmaker] = None,
        offset_hours: Optional[int] = None,
        suspicious_end_minutes: Optional[int] = None,
        limit: Optional[int] = None,
        match_delay: Optional[float] = None,
        track_runs: bool = False,
    ):
        super().__init__(session_factory or store.session_factory, track_runs=track_runs)
        settings = get_settings()
        self.provider = provider
        self.store = store
        self.reconciler = reconciler
        self.refresher = refresher
        self.offset_hours = offset_hours if offset_hours is not None else settings.WINDOW_SYNC_TZ_OFFSET_HOURS
        self.suspicious_end_minutes = (
            suspicious_end_minutes if suspicious_end_minutes is not None
            else settings.STATUS_CHECK_SUSPICIOUS_END_MINUTES
        )
        self.limit = limit if limit is not None else settings.STATUS_CHECK_BATCH_LIMIT
        self.match_delay = match_delay if match_delay is not None else settings.STATUS_CHECK_MATCH_DELAY_SECONDS

    async def run_once(self, now: Optional[int] = None) -> dict:
        now = int(time.time()) if now is None else int(now)
        today = window_dates(datetime.fromtimestamp(now, tz=timezone.utc), self.offset_hours, 0, 0)[0]
        start_ts, end_ts = day_bounds(today, self.offset_hours)
        candidates = await self.store.list_status_check_candidates(
            start_ts, end_ts, now, now - self.suspicious_end_minutes * 60, self.limit
        )
        metrics = {"checked": 0, "changed": 0, "confirmed": 0, "disputed": 0, "no_data": 0, "error": 0}
        if not candidates:
            logger.debug("[STATUS_CHECK] Nothing to check")
            return {**metrics, "status": "ok"}

        not_started = sum(1 for m in candidates if m.status_id == MatchStatus.NOT_STARTED)
        logger.info(
            f"[STATUS_CHECK] {len(candidates)} matches to verify: {not_started} NOT_STARTED past kickoff, "
            f"{len(candidates) - not_started} FINISHED suspiciously early"
        )

        bulletins: dict = {}
        for index, match in enumerate(candidates):
            if index and self.match_delay:
                await asyncio.sleep(self.match_delay)
            metrics["checked"] += 1
            try:
                outcome = await self.check_match(match, now, bulletins)
            except Exception as e:
                logger.warning(f"[STATUS_CHECK] Match {match.external_id} failed: {e}")
                outcome = "error"
            metrics[outcome] += 1
            record_status_check(outcome)

        logger.info(
            f"[STATUS_CHECK] Complete: checked={metrics['checked']}, changed={metrics['changed']}, "
            f"disputed={metrics['disputed']}, no_data={metrics['no_data']}, errors={metrics['error']}"
        )
        return {**metrics, "status": "ok"}

    async def check_match(self, match, now: int, bulletins: dict) -> str:
        """Verify one match. Returns changed, confirmed, disputed, no_data or error."""
        result = await self.refresher.refresh(match.external_id, match, source=UpdateSource.POLLER, now=now)
        if result is None:
            result = await self._from_bulletin(match, now, bulletins)
        if result is None:
            logger.info(f"[STATUS_CHECK] No provider data for {match.external_id} (stored status {match.status_id})")
            return "no_data"

        if result.status in (ResultStatus.ERROR, ResultStatus.NOT_FOUND):
            return "error"
        if result.status == ResultStatus.REJECTED_IMMUTABLE:
            logger.warning(
                f"[STATUS_CHECK] Provider disputes FINISHED for {match.external_id}; kept FINISHED"
            )
            return "disputed"
        if result.current_status != result.previous_status:
            logger.info(
                f"[STATUS_CHECK] Match {match.external_id}: {result.previous_status} -> {result.current_status}"
            )
            return "changed"
        return "confirmed"

    async def _from_bulletin(self, match, now: int, bulletins: dict):
        day = datetime.fromtimestamp(match.match_time, tz=provider_timezone(self.offset_hours)).date()
        if day not in bulletins:
            try:
                bulletins[day] = await self.provider.fetch_daily_bulletin(day)
            except ProviderError as e:
                logger.warning(f"[STATUS_CHECK] Bulletin {day} unavailable: {e}")
                bulletins[day] = None
        bulletin = bulletins[day]
        if bulletin is None:
            return None

        record = next(
            (r for r in bulletin.matches if str(first_present(r, "id", "match_id")) == match.external_id),
            None,
        )
        if record is None:
            return None
        try:
            fields = map_match_record(record)
        except PayloadError as e:
            logger.warning(f"[STATUS_CHECK] Bulletin record for {match.external_id} unusable: {e}")
            return None
        return await self.reconciler.reconcile_fields(
            match.external_id, fields, source=UpdateSource.BACKFILL, observed_at=now, now=now
        )
