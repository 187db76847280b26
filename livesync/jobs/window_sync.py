"""
Daily / window bulletin sync.

Loads the full match list for yesterday, today and tomorrow in the
provider's timezone (a fixed UTC offset, never the host's local time) and
pushes every match through the reconciler in fixed-size batches. Gives
baseline coverage independent of the change feed, which only reports deltas.
"""

import asyncio
import logging
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.config import get_settings
from livesync.db_utils import upsert
from livesync.errors import PayloadError, ProviderError
from livesync.etl.base import DailyBulletin, ProviderGateway
from livesync.etl.payloads import first_present, map_match_record, normalize_timestamp
from livesync.etl.reference import ReferenceDataStore
from livesync.jobs.base import PeriodicWorker
from livesync.matches.reconciler import Reconciler
from livesync.matches.status import UpdateSource
from livesync.matches.store import MatchStore, ResultStatus, is_non_empty
from livesync.models import Standing, SyncState

logger = logging.getLogger(__name__)


def provider_timezone(offset_hours: int) -> timezone:
    return timezone(timedelta(hours=offset_hours))


def window_dates(now: datetime, offset_hours: int, days_back: int = 1, days_ahead: int = 1) -> list[date]:
    """Provider-local dates from today-days_back to today+days_ahead, oldest first."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(provider_timezone(offset_hours)).date()
    return [today + timedelta(days=delta) for delta in range(-days_back, days_ahead + 1)]


def day_bounds(day: date, offset_hours: int) -> tuple[int, int]:
    """Epoch seconds [start, end) of a provider-local day."""
    start = datetime(day.year, day.month, day.day, tzinfo=provider_timezone(offset_hours))
    start_ts = int(start.timestamp())
    return start_ts, start_ts + 86400


def classify_rejection(message: str) -> str:
    """Bucket a failure message into a rejection reason."""
    text = (message or "").lower()
    if text.startswith("rejected"):
        return "validation_rejection"
    if "not null" in text or "not-null" in text or "null value" in text:
        return "null_constraint_violation"
    if "foreign key" in text:
        return "foreign_key_violation"
    if "duplicate key" in text or "unique constraint" in text:
        return "duplicate_key"
    return "unknown_error"


class WindowSyncWorker(PeriodicWorker):
    job_name = "window_sync"
    log_tag = "WINDOW_SYNC"

    def __init__(
        self,
        provider: ProviderGateway,
        reconciler: Reconciler,
        store: MatchStore,
        reference_store: ReferenceDataStore,
        session_factory: Optional[sessionmaker] = None,
        offset_hours: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        job_name: Optional[str] = None,
        track_runs: bool = True,
    ):
        super().__init__(session_factory or store.session_factory, track_runs=track_runs)
        settings = get_settings()
        if job_name:
            self.job_name = job_name
        self.provider = provider
        self.reconciler = reconciler
        self.store = store
        self.reference_store = reference_store
        self.offset_hours = offset_hours if offset_hours is not None else settings.WINDOW_SYNC_TZ_OFFSET_HOURS
        self.max_attempts = max_attempts if max_attempts is not None else settings.WINDOW_SYNC_MAX_ATTEMPTS
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.WINDOW_SYNC_RETRY_BACKOFF_SECONDS
        self.batch_size = batch_size if batch_size is not None else settings.WINDOW_SYNC_BATCH_SIZE
        self.batch_delay = batch_delay if batch_delay is not None else settings.WINDOW_SYNC_BATCH_DELAY_SECONDS

    async def run_once(
        self,
        days_back: int = 1,
        days_ahead: int = 1,
        reason: str = "daily",
        now: Optional[datetime] = None,
    ) -> dict:
        return await self.sync_window(days_back=days_back, days_ahead=days_ahead, reason=reason, now=now)

    async def sync_window(
        self,
        days_back: int = 1,
        days_ahead: int = 1,
        reason: str = "daily",
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or datetime.now(timezone.utc)
        days = window_dates(now, self.offset_hours, days_back, days_ahead)
        logger.info(f"[WINDOW_SYNC] Starting {reason} sync for {[d.isoformat() for d in days]}")

        summary = {"days": [], "total_matches": 0, "synced": 0, "errors": 0}
        for day in days:
            day_result = await self.sync_day(day, reason=reason)
            summary["days"].append(day_result)
            summary["total_matches"] += day_result["total_matches"]
            summary["synced"] += day_result["synced"]
            summary["errors"] += day_result["errors"]

        all_fetched = all(d["ok"] for d in summary["days"])
        logger.info(
            f"[WINDOW_SYNC] Complete: days={len(days)}, total={summary['total_matches']}, "
            f"synced={summary['synced']}, errors={summary['errors']}"
        )
        return {**summary, "status": "ok" if all_fetched else "partial"}

    async def fetch_bulletin(self, day: date) -> Optional[DailyBulletin]:
        """Fetch with bounded retry; the provider can lag briefly after midnight."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.provider.fetch_daily_bulletin(day)
            except ProviderError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"[WINDOW_SYNC] Bulletin {day} failed after {attempt} attempts: {e}")
                    return None
                wait = self.retry_backoff * attempt
                logger.warning(
                    f"[WINDOW_SYNC] Bulletin {day} attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {wait}s..."
                )
                await asyncio.sleep(wait)
        return None

    async def sync_day(self, day: date, reason: str = "daily") -> dict:
        date_str = day.strftime("%Y%m%d")
        result = {"date": date_str, "ok": False, "total_matches": 0, "synced": 0, "errors": 0}
        reasons: Counter = Counter()

        bulletin = await self.fetch_bulletin(day)
        if bulletin is None:
            await self.save_sync_state(day, f"{reason}:provider_error", result, reasons)
            return result

        result["ok"] = True
        result["total_matches"] = len(bulletin.matches)
        if not bulletin.matches:
            logger.info(f"[WINDOW_SYNC] Provider reports zero matches for {date_str}")
            await self.save_sync_state(day, f"{reason}:no_matches", result, reasons)
            return result

        try:
            await self.reference_store.upsert_from_bulletin(bulletin.teams, bulletin.competitions)
        except Exception as e:
            logger.warning(f"[WINDOW_SYNC] Reference data upsert failed for {date_str}: {e}")

        for start in range(0, len(bulletin.matches), self.batch_size):
            if start and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
            batch = bulletin.matches[start:start + self.batch_size]
            synced, errors = await self.process_batch(batch, reasons)
            result["synced"] += synced
            result["errors"] += errors
            if errors:
                logger.warning(
                    f"[WINDOW_SYNC] {date_str} batch {start // self.batch_size + 1}: "
                    f"{errors}/{len(batch)} failed, reasons={dict(reasons)}"
                )

        try:
            result["prefetched"] = await self.prefetch_upcoming(day)
        except Exception as e:
            logger.warning(f"[WINDOW_SYNC] Pre-fetch failed for {date_str}: {e}")

        await self.save_sync_state(day, reason, result, reasons)
        logger.info(
            f"[WINDOW_SYNC] {date_str}: total={result['total_matches']}, "
            f"synced={result['synced']}, errors={result['errors']}"
        )
        return result

    async def process_batch(self, batch: list, reasons: Counter) -> tuple[int, int]:
        """Reconcile one batch; each record fails on its own. Returns (synced, errors)."""
        synced = 0
        errors = 0
        for record in batch:
            try:
                fields = map_match_record(record)
                observed_at = normalize_timestamp(first_present(record, "updated_at", "update_time"))
                _, outcome = await self.reconciler.ingest(
                    fields, source=UpdateSource.BACKFILL, observed_at=observed_at
                )
            except PayloadError as e:
                errors += 1
                reasons[e.reason] += 1
                logger.debug(f"[WINDOW_SYNC] {e}")
                continue
            except Exception as e:
                errors += 1
                reasons[classify_rejection(str(e))] += 1
                logger.warning(f"[WINDOW_SYNC] Match {first_present(record, 'id')} failed: {e}")
                continue

            if outcome.status in (ResultStatus.ERROR, ResultStatus.NOT_FOUND):
                errors += 1
                reasons[classify_rejection(outcome.reason)] += 1
            else:
                synced += 1
        return synced, errors

    async def prefetch_upcoming(self, day: date) -> int:
        """H2H, lineups and standings for the day's NOT_STARTED matches. Best-effort per item."""
        start_ts, end_ts = day_bounds(day, self.offset_hours)
        upcoming = await self.store.list_not_started_between(start_ts, end_ts)
        done = 0
        seasons = set()
        for match in upcoming:
            fields = {}
            for name, fetch in (("h2h_data", self.provider.fetch_h2h), ("lineup_data", self.provider.fetch_lineup)):
                try:
                    value = await fetch(match.external_id)
                except Exception as e:
                    logger.warning(f"[WINDOW_SYNC] {name} pre-fetch failed for {match.external_id}: {e}")
                    continue
                if is_non_empty(value):
                    fields[name] = value
            if fields:
                outcome = await self.reconciler.reconcile_fields(
                    match.external_id, fields, source=UpdateSource.BACKFILL
                )
                if outcome.status == ResultStatus.SUCCESS:
                    done += 1
            if match.season_id:
                seasons.add(match.season_id)

        for season_id in sorted(seasons):
            try:
                table = await self.provider.fetch_standings(season_id)
            except Exception as e:
                logger.warning(f"[WINDOW_SYNC] Standings pre-fetch failed for season {season_id}: {e}")
                continue
            if not is_non_empty(table):
                continue
            async with self.session_factory() as session:
                await upsert(
                    session,
                    Standing,
                    {
                        "season_id": season_id,
                        "standings": table if isinstance(table, list) else [table],
                        "source": "provider",
                        "computed_at": datetime.utcnow(),
                    },
                    conflict_columns=["season_id"],
                )
                await session.commit()
        return done

    async def save_sync_state(self, day: date, reason: str, result: dict, reasons: Counter) -> None:
        """Diagnostic summary; failures here are logged and ignored."""
        total = result["total_matches"]
        values = {
            "date_str": day.strftime("%Y%m%d"),
            "date_display": day.strftime("%d.%m.%Y"),
            "reason": reason[:50],
            "ok": result["ok"],
            "total_matches": total,
            "synced": result["synced"],
            "errors": result["errors"],
            "success_rate": round(result["synced"] / total * 100, 1) if total else 0.0,
            "rejected_reasons": dict(reasons),
            "updated_at": datetime.utcnow(),
        }
        try:
            async with self.session_factory() as session:
                await upsert(session, SyncState, values, conflict_columns=["date_str"])
                await session.commit()
        except Exception as e:
            logger.warning(f"[WINDOW_SYNC] Could not save sync state for {values['date_str']}: {e}")
