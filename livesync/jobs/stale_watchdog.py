"""
Stuck-match watchdog.

A live match that stops receiving updates usually means the change feed
dropped it, not that play stopped. Each scan escalates per match:

    detected -> re-fetch via the detail endpoints (once per cooldown)
             -> force FINISHED if the provider has nothing and the match
                has been silent past the force-end threshold
             -> otherwise logged as unresolved

Staleness is judged from the newest audited observation (status, minute
or score); the watchdog never touches the minute or the kickoff columns.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.config import get_settings
from livesync.errors import ProviderRateLimited
from livesync.jobs.base import PeriodicWorker
from livesync.jobs.refresh import MatchRefresher
from livesync.matches.reconciler import Reconciler
from livesync.matches.status import MatchStatus, UpdateSource
from livesync.matches.store import MatchStore, ResultStatus, last_seen_ts
from livesync.telemetry import record_stale_match

logger = logging.getLogger(__name__)

RUNNING_STATUSES = (
    MatchStatus.FIRST_HALF,
    MatchStatus.HALF_TIME,
    MatchStatus.SECOND_HALF,
    MatchStatus.OVERTIME,
    MatchStatus.OVERTIME_LEGACY,
    MatchStatus.PENALTY_SHOOTOUT,
)


@dataclass
class StaleMatch:
    external_id: str
    status_id: int
    last_seen: Optional[int]
    age: int
    threshold: int
    reason: str


class StaleMatchWatchdog(PeriodicWorker):
    job_name = "stale_watchdog"
    log_tag = "WATCHDOG"

    def __init__(
        self,
        store: MatchStore,
        reconciler: Reconciler,
        refresher: MatchRefresher,
        session_factory: Optional[sessionmaker] = None,
        live_threshold: Optional[int] = None,
        half_time_threshold: Optional[int] = None,
        cooldown: Optional[int] = None,
        force_end_after: Optional[int] = None,
        limit: Optional[int] = None,
        track_runs: bool = False,
    ):
        super().__init__(session_factory or store.session_factory, track_runs=track_runs)
        settings = get_settings()
        self.store = store
        self.reconciler = reconciler
        self.refresher = refresher
        self.live_threshold = live_threshold if live_threshold is not None else settings.STALE_LIVE_SECONDS
        self.half_time_threshold = (
            half_time_threshold if half_time_threshold is not None else settings.STALE_HALF_TIME_SECONDS
        )
        self.cooldown = cooldown if cooldown is not None else settings.STALE_RECONCILE_COOLDOWN_SECONDS
        self.force_end_after = force_end_after if force_end_after is not None else settings.STALE_FORCE_END_SECONDS
        self.limit = limit if limit is not None else settings.STALE_BATCH_LIMIT
        self._last_attempt: dict[str, int] = {}

    def threshold_for(self, status_id) -> int:
        if status_id == MatchStatus.HALF_TIME:
            return self.half_time_threshold
        return self.live_threshold

    async def detect(self, now: int) -> list[StaleMatch]:
        """Running matches (kicked off, or due within the hour) whose last observation is too old."""
        candidates = await self.store.list_by_status(RUNNING_STATUSES, until_ts=now + 3600)
        stale = []
        for match in candidates:
            threshold = self.threshold_for(match.status_id)
            seen = last_seen_ts(match)
            if seen is None:
                stale.append(StaleMatch(
                    match.external_id, match.status_id, None, max(0, now - match.match_time), threshold, "no_updates"
                ))
            elif seen <= now - threshold:
                stale.append(StaleMatch(
                    match.external_id, match.status_id, seen, now - seen, threshold, "updates_stale"
                ))
            if len(stale) >= self.limit:
                break
        return stale

    async def run_once(self, now: Optional[int] = None) -> dict:
        now = int(time.time()) if now is None else int(now)
        stale = await self.detect(now)
        metrics = {"detected": len(stale), "reconciled": 0, "cooldown": 0, "force_ended": 0, "unresolved": 0, "skipped": 0}
        if not stale:
            return {**metrics, "status": "ok"}

        for item in stale:
            record_stale_match("detected")
            logger.warning(
                f"[WATCHDOG] Match {item.external_id} stale: status={item.status_id}, "
                f"reason={item.reason}, age={item.age}s (threshold {item.threshold}s)"
            )
            action = await self.handle(item, now)
            metrics[action] += 1
            record_stale_match(action)

        self._prune_attempts(now)
        logger.info(
            f"[WATCHDOG] Scan complete: detected={metrics['detected']}, reconciled={metrics['reconciled']}, "
            f"force_ended={metrics['force_ended']}, unresolved={metrics['unresolved']}, cooldown={metrics['cooldown']}"
        )
        return {**metrics, "status": "ok"}

    async def handle(self, item: StaleMatch, now: int) -> str:
        last = self._last_attempt.get(item.external_id)
        if last is not None and now - last < self.cooldown:
            return "cooldown"
        self._last_attempt[item.external_id] = now

        current = await self.store.get(item.external_id)
        try:
            result = await self.refresher.refresh(item.external_id, current, source=UpdateSource.POLLER, now=now)
        except ProviderRateLimited as e:
            logger.warning(f"[WATCHDOG] Re-fetch of {item.external_id} deferred: {e}")
            return "skipped"
        except Exception as e:
            logger.error(f"[WATCHDOG] Re-fetch of {item.external_id} failed: {e}")
            return "unresolved"

        if result is not None and result.status not in (ResultStatus.ERROR, ResultStatus.NOT_FOUND):
            if await self._recovered(item, now):
                logger.info(
                    f"[WATCHDOG] Match {item.external_id} re-fetched ({result.status}, now {result.current_status})"
                )
                return "reconciled"

        if item.age >= self.force_end_after:
            ended = await self.reconciler.reconcile_fields(
                item.external_id,
                {"status_id": int(MatchStatus.FINISHED)},
                source=UpdateSource.WATCHDOG,
                observed_at=now,
                now=now,
            )
            if ended.ended:
                logger.warning(
                    f"[WATCHDOG] Force-ended {item.external_id}: silent for {item.age}s and the provider has no data"
                )
                return "force_ended"

        logger.error(f"[WATCHDOG] Match {item.external_id} still stale after re-fetch ({item.reason}, {item.age}s)")
        return "unresolved"

    async def _recovered(self, item: StaleMatch, now: int) -> bool:
        """The re-fetch moved the match on: it left the running statuses or has a fresh observation."""
        match = await self.store.get(item.external_id)
        if match is None:
            return False
        if match.status_id not in RUNNING_STATUSES:
            return True
        seen = last_seen_ts(match)
        return seen is not None and seen > now - item.threshold

    def _prune_attempts(self, now: int) -> None:
        cutoff = now - 3600
        for match_id in [m for m, ts in self._last_attempt.items() if ts < cutoff]:
            del self._last_attempt[match_id]
