"""
Post-match finalizer.

Once a match is FINISHED the live endpoints stop serving its data, so this
is the last chance to persist statistics, incidents, trend and player stats.
Each field is filled only if still empty, from the live stats cache first
and the provider as a last resort. Every field is attempted independently.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.config import get_settings
from livesync.db_utils import upsert
from livesync.etl.base import ProviderGateway
from livesync.jobs.base import PeriodicWorker
from livesync.matches.live_cache import LiveStatsCacheStore
from livesync.matches.status import MatchStatus
from livesync.matches.store import DERIVED_FIELDS, MatchStore, has_derived_data
from livesync.models import Standing
from livesync.telemetry import record_finalizer_field

logger = logging.getLogger(__name__)


def compute_standings(matches: list) -> list:
    """
    Points table (3/1/0) from finished matches.

    Ordered by points, goal difference, goals scored, then team id.
    Matches without a display score are ignored.
    """
    table = {}

    def _row(team_id):
        return table.setdefault(team_id, {
            "team_id": team_id,
            "played": 0,
            "won": 0,
            "drawn": 0,
            "lost": 0,
            "goals_for": 0,
            "goals_against": 0,
        })

    for match in matches:
        home_goals = match.home_score_display
        away_goals = match.away_score_display
        if not match.home_team_id or not match.away_team_id:
            continue
        if home_goals is None or away_goals is None:
            continue
        home = _row(match.home_team_id)
        away = _row(match.away_team_id)
        for row, scored, conceded in ((home, home_goals, away_goals), (away, away_goals, home_goals)):
            row["played"] += 1
            row["goals_for"] += scored
            row["goals_against"] += conceded
            if scored > conceded:
                row["won"] += 1
            elif scored == conceded:
                row["drawn"] += 1
            else:
                row["lost"] += 1

    rows = []
    for row in table.values():
        row["goal_diff"] = row["goals_for"] - row["goals_against"]
        row["points"] = row["won"] * 3 + row["drawn"]
        rows.append(row)
    rows.sort(key=lambda r: (-r["points"], -r["goal_diff"], -r["goals_for"], str(r["team_id"])))
    for position, row in enumerate(rows, start=1):
        row["position"] = position
    return rows


class PostMatchFinalizer(PeriodicWorker):
    """Fill-if-missing persistence of derived post-match data, per match or as a sweep."""

    job_name = "finalizer_sweep"
    log_tag = "FINALIZER"

    def __init__(
        self,
        provider: ProviderGateway,
        store: MatchStore,
        live_cache: LiveStatsCacheStore,
        session_factory: Optional[sessionmaker] = None,
        lookback_hours: Optional[int] = None,
        batch_limit: Optional[int] = None,
        match_delay: Optional[float] = None,
        track_runs: bool = True,
    ):
        super().__init__(session_factory or store.session_factory, track_runs=track_runs)
        settings = get_settings()
        self.provider = provider
        self.store = store
        self.live_cache = live_cache
        self.lookback_hours = lookback_hours if lookback_hours is not None else settings.FINALIZER_LOOKBACK_HOURS
        self.batch_limit = batch_limit if batch_limit is not None else settings.FINALIZER_BATCH_LIMIT
        self.match_delay = match_delay if match_delay is not None else settings.FINALIZER_MATCH_DELAY_SECONDS
        self._fetchers = {
            "statistics": provider.fetch_match_statistics,
            "incidents": provider.fetch_match_incidents,
            "trend_data": provider.fetch_match_trend,
            "player_stats": provider.fetch_player_stats,
        }

    async def on_match_ended(self, external_id: str) -> dict:
        """Post-match trigger. Safe to call repeatedly; a fully processed match is a no-op."""
        return await self.finalize_match(external_id)

    async def finalize_match(self, external_id: str, fields=DERIVED_FIELDS, with_standings: bool = True) -> dict:
        match = await self.store.get(external_id)
        if match is None:
            logger.warning(f"[FINALIZER] Match {external_id} not found")
            return {"status": "not_found"}
        if match.status_id != MatchStatus.FINISHED:
            logger.info(f"[FINALIZER] Match {external_id} not finished (status={match.status_id}), skipping")
            return {"status": "not_finished"}

        missing = [name for name in fields if not has_derived_data(name, getattr(match, name))]
        if not missing:
            logger.debug(f"[FINALIZER] Match {external_id} already processed")
            return {"status": "already_processed"}

        cache = None
        try:
            cache = await self.live_cache.get(external_id)
        except Exception as e:
            logger.warning(f"[FINALIZER] Live cache read failed for {external_id}: {e}")

        outcome = {}
        for name in fields:
            if name not in missing:
                outcome[name] = "existing"
                continue
            try:
                outcome[name] = await self._fill_field(external_id, name, cache)
            except Exception as e:
                logger.warning(f"[FINALIZER] {name} failed for {external_id}: {e}")
                outcome[name] = "error"
            record_finalizer_field(name, outcome[name])

        if with_standings and match.season_id:
            try:
                await self.recompute_standings(match.season_id)
            except Exception as e:
                logger.warning(f"[FINALIZER] Standings recompute failed for season {match.season_id}: {e}")

        logger.info(f"[FINALIZER] Match {external_id} processed: {outcome}")
        return {"status": "processed", "fields": outcome}

    async def _fill_field(self, external_id: str, name: str, cache) -> str:
        cached = getattr(cache, name, None) if cache is not None else None
        if has_derived_data(name, cached):
            written = await self.store.fill_if_missing(external_id, name, cached)
            return "live_cache" if written else "existing"

        value = await self._fetchers[name](external_id)
        if has_derived_data(name, value):
            written = await self.store.fill_if_missing(external_id, name, value)
            return "provider" if written else "existing"

        logger.info(f"[FINALIZER] {name} unavailable for {external_id} (cache and provider empty)")
        return "unavailable"

    async def persist_final_stats(self, external_id: str) -> dict:
        """Best-effort statistics + trend capture right after the final whistle."""
        try:
            return await self.finalize_match(
                external_id, fields=("statistics", "trend_data"), with_standings=False
            )
        except Exception as e:
            logger.warning(f"[FINALIZER] Immediate stats capture failed for {external_id}: {e}")
            return {"status": "error", "error": str(e)}

    async def recompute_standings(self, season_id: str) -> list:
        matches = await self.store.list_finished_in_season(season_id)
        rows = compute_standings(matches)
        async with self.session_factory() as session:
            await upsert(
                session,
                Standing,
                {
                    "season_id": season_id,
                    "standings": rows,
                    "source": "computed",
                    "computed_at": datetime.utcnow(),
                },
                conflict_columns=["season_id"],
            )
            await session.commit()
        logger.info(f"[FINALIZER] Standings recomputed for season {season_id}: {len(rows)} teams")
        return rows

    async def run_once(self, now: Optional[int] = None) -> dict:
        return await self.process_ended_matches(now=now)

    async def process_ended_matches(self, now: Optional[int] = None) -> dict:
        """Catch-up sweep over recently finished matches still missing derived data."""
        now = int(time.time()) if now is None else int(now)
        since = now - self.lookback_hours * 3600
        candidates = await self.store.list_finished_missing_derived(since, self.batch_limit)
        metrics = {"candidates": len(candidates), "processed": 0, "errors": 0}
        if not candidates:
            logger.info(f"[FINALIZER] Sweep: nothing pending (lookback={self.lookback_hours}h)")
            return {**metrics, "status": "ok"}

        for index, match in enumerate(candidates):
            if index and self.match_delay:
                await asyncio.sleep(self.match_delay)
            try:
                await self.finalize_match(match.external_id)
                metrics["processed"] += 1
            except Exception as e:
                metrics["errors"] += 1
                logger.warning(f"[FINALIZER] Sweep failed for {match.external_id}: {e}")

        logger.info(
            f"[FINALIZER] Sweep complete: candidates={metrics['candidates']}, "
            f"processed={metrics['processed']}, errors={metrics['errors']}"
        )
        return {**metrics, "status": "ok"}
