"""
Half-time and full-time statistics snapshots.

The provider only ever serves cumulative statistics. To show the halves
separately the first-half numbers have to be frozen while the match sits at
HALF_TIME; after the final whistle the second half is derived as full time
minus first half. data_completeness records which snapshots were taken.
"""

import logging
import time
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.config import get_settings
from livesync.errors import LiveSyncError
from livesync.etl.payloads import first_present, to_int
from livesync.jobs.base import PeriodicWorker
from livesync.matches.reconciler import Reconciler
from livesync.matches.status import MatchStatus, UpdateSource
from livesync.matches.store import MatchStore, ResultStatus, is_non_empty

logger = logging.getLogger(__name__)

FIRST_HALF_LAST_MINUTE = 45


def incident_minute(incident) -> int:
    return to_int(first_present(incident, "time", "minute")) or 0


def split_incidents(incidents) -> tuple[list, list]:
    """(first half, second half) by incident minute; stoppage time in the first half stays there."""
    first, second = [], []
    for incident in incidents or []:
        if not isinstance(incident, dict):
            continue
        if incident_minute(incident) <= FIRST_HALF_LAST_MINUTE:
            first.append(incident)
        else:
            second.append(incident)
    return first, second


def second_half_stats(full_stats, first_half_stats) -> list:
    """
    Per-type difference of full-time and first-half statistics, floored at 0.

    Without a first-half snapshot the full-time statistics are returned as is.
    """
    if not isinstance(full_stats, list) or not full_stats:
        return []
    if not isinstance(first_half_stats, list) or not first_half_stats:
        return list(full_stats)

    first_by_type = {
        stat.get("type"): stat for stat in first_half_stats if isinstance(stat, dict)
    }
    rows = []
    for stat in full_stats:
        if not isinstance(stat, dict):
            continue
        first = first_by_type.get(stat.get("type"), {})
        rows.append({
            "type": stat.get("type"),
            "home": max(0, (to_int(stat.get("home")) or 0) - (to_int(first.get("home")) or 0)),
            "away": max(0, (to_int(stat.get("away")) or 0) - (to_int(first.get("away")) or 0)),
        })
    return rows


def _completeness(match) -> dict:
    current = match.data_completeness if isinstance(match.data_completeness, dict) else {}
    return {"first_half": False, "second_half": False, "full_time": False, **current}


class HalfStatsSnapshotWorker(PeriodicWorker):
    job_name = "half_stats"
    log_tag = "HALF_STATS"

    def __init__(
        self,
        store: MatchStore,
        reconciler: Reconciler,
        session_factory: Optional[sessionmaker] = None,
        lookback_hours: Optional[int] = None,
        track_runs: bool = False,
    ):
        super().__init__(session_factory or store.session_factory, track_runs=track_runs)
        self.store = store
        self.reconciler = reconciler
        self.lookback_hours = (
            lookback_hours if lookback_hours is not None else get_settings().HALF_STATS_LOOKBACK_HOURS
        )

    async def run_once(self, now: Optional[int] = None) -> dict:
        now = int(time.time()) if now is None else int(now)
        metrics = {"first_half": 0, "full_time": 0, "waiting": 0, "errors": 0}

        at_half_time = await self.store.list_by_status([MatchStatus.HALF_TIME])
        finished = await self.store.list_by_status(
            [MatchStatus.FINISHED], since_ts=now - self.lookback_hours * 3600
        )
        pending = [(m, "first_half") for m in at_half_time] + [(m, "full_time") for m in finished]
        for match, key in pending:
            if _completeness(match)[key]:
                continue
            save = self.save_first_half if key == "first_half" else self.save_full_time
            try:
                outcome = await save(match)
            except Exception as e:
                logger.warning(f"[HALF_STATS] {key} snapshot failed for {match.external_id}: {e}")
                metrics["errors"] += 1
                continue
            metrics[key if outcome == "saved" else "waiting"] += 1

        if metrics["first_half"] or metrics["full_time"]:
            logger.info(
                f"[HALF_STATS] Snapshots: first_half={metrics['first_half']}, full_time={metrics['full_time']}, "
                f"waiting={metrics['waiting']}"
            )
        return {**metrics, "status": "ok"}

    async def save_first_half(self, match) -> str:
        """Freeze the statistics and incidents seen at half time. Returns saved, waiting or skipped."""
        completeness = _completeness(match)
        if completeness["first_half"]:
            return "skipped"
        if not is_non_empty(match.statistics):
            # Retried on the next scan while the match is still at half time
            return "waiting"

        first_incidents, _ = split_incidents(match.incidents)
        fields = {
            "incidents_first_half": first_incidents,
            "data_completeness": {**completeness, "first_half": True},
        }
        if not is_non_empty(match.first_half_stats):
            fields["first_half_stats"] = match.statistics
        return await self._write(match.external_id, fields, "first half")

    async def save_full_time(self, match) -> str:
        """Derive second-half statistics and incidents once full-time data is in."""
        completeness = _completeness(match)
        if completeness["full_time"]:
            return "skipped"
        if not is_non_empty(match.statistics):
            # The finalizer has not filled full-time statistics yet
            return "waiting"

        _, second_incidents = split_incidents(match.incidents)
        fields = {
            "statistics_second_half": second_half_stats(match.statistics, match.first_half_stats),
            "incidents_second_half": second_incidents,
            "data_completeness": {**completeness, "second_half": True, "full_time": True},
        }
        return await self._write(match.external_id, fields, "full time")

    async def _write(self, external_id: str, fields: dict, label: str) -> str:
        result = await self.reconciler.reconcile_fields(external_id, fields, source=UpdateSource.BACKFILL)
        if result.status in (ResultStatus.ERROR, ResultStatus.NOT_FOUND):
            raise LiveSyncError(f"{label} snapshot for {external_id}: {result.reason or result.status}")
        logger.info(f"[HALF_STATS] {label} snapshot saved for {external_id}")
        return "saved"
