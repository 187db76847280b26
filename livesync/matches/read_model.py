"""
Read-side match views for API consumers.

Presentation-only derivations (minute label, score fallbacks) live here;
nothing in this module writes. Detail views gather their sections
concurrently under one deadline and return whatever finished in time.
"""

import asyncio
import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from livesync.config import get_settings
from livesync.etl.base import ProviderGateway
from livesync.matches.live_cache import LiveStatsCacheStore
from livesync.matches.minute import compute_minute
from livesync.matches.status import LIVE_STATUSES, MatchStatus
from livesync.matches.store import MatchStore, is_non_empty
from livesync.models import Competition, Match, Standing, Team

logger = logging.getLogger(__name__)

# Statuses where a missing score means 0-0 rather than "unknown"
_SCORED_STATUSES = LIVE_STATUSES | {MatchStatus.FINISHED}


def _score(match: Match, side: str) -> Optional[int]:
    display = getattr(match, f"{side}_score_display")
    if display is not None:
        return display
    scores = getattr(match, f"{side}_scores")
    if isinstance(scores, list) and scores and scores[0] is not None:
        try:
            return int(scores[0])
        except (TypeError, ValueError):
            pass
    if MatchStatus.coerce(match.status_id) in _SCORED_STATUSES:
        return 0
    return None


def build_match_view(match: Match, now: Optional[int] = None) -> dict:
    """Consolidated view of one stored match."""
    clock = compute_minute(
        match.status_id,
        match.first_half_kickoff_ts,
        match.second_half_kickoff_ts,
        match.overtime_kickoff_ts,
        now=now,
        raw_minute=match.minute,
    )
    return {
        "external_id": match.external_id,
        "status_id": match.status_id,
        "match_time": match.match_time,
        "minute": clock.minute,
        "minute_label": clock.label,
        "home_score": _score(match, "home"),
        "away_score": _score(match, "away"),
        "home_team": {"id": match.home_team_id},
        "away_team": {"id": match.away_team_id},
        "competition": {"id": match.competition_id},
        "statistics": match.statistics,
        "incidents": match.incidents,
        "trend_data": match.trend_data,
        "halves": {
            "first_half": {"statistics": match.first_half_stats, "incidents": match.incidents_first_half},
            "second_half": {"statistics": match.statistics_second_half, "incidents": match.incidents_second_half},
            "data_completeness": match.data_completeness,
        },
        "sources": {
            "status_id": match.status_id_source,
            "minute": match.minute_source,
            "home_score": match.home_score_display_source,
            "away_score": match.away_score_display_source,
            "last_update": match.last_update_source,
        },
    }


def _reference(row) -> Optional[dict]:
    if row is None:
        return None
    return {"id": row.external_id, "name": row.name, "short_name": row.short_name, "logo_url": row.logo_url}


class MatchQueryService:
    def __init__(
        self,
        store: MatchStore,
        live_cache: Optional[LiveStatsCacheStore] = None,
        provider: Optional[ProviderGateway] = None,
        session_factory: Optional[sessionmaker] = None,
        deadline: Optional[float] = None,
    ):
        self.store = store
        self.live_cache = live_cache
        self.provider = provider
        self.session_factory = session_factory or store.session_factory
        self.deadline = deadline if deadline is not None else get_settings().READ_DEADLINE_SECONDS

    async def get_match_view(self, external_id: str, now: Optional[int] = None) -> Optional[dict]:
        match = await self.store.get(external_id)
        if match is None:
            return None
        return build_match_view(match, now=now)

    async def get_match_detail(
        self,
        external_id: str,
        deadline: Optional[float] = None,
        now: Optional[int] = None,
    ) -> Optional[dict]:
        """
        Match view plus reference, live and pre-match sections.

        Sections still running at the deadline are cancelled and listed
        under ``missing``; a missing section means unknown, not empty.
        """
        match = await self.store.get(external_id)
        if match is None:
            return None
        view = build_match_view(match, now=now)

        tasks = {
            "references": asyncio.create_task(self._references(match)),
            "live": asyncio.create_task(self._live_data(match)),
            "lineup": asyncio.create_task(self._lineup(match)),
            "h2h": asyncio.create_task(self._h2h(match)),
            "standings": asyncio.create_task(self._standings(match)),
        }
        started = time.monotonic()
        done, pending = await asyncio.wait(
            tasks.values(), timeout=deadline if deadline is not None else self.deadline
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        missing = []
        for name, task in tasks.items():
            if task not in done:
                missing.append(name)
                continue
            error = task.exception()
            if error is not None:
                logger.warning(f"Detail section {name} failed for {external_id}: {error}")
                missing.append(name)
                continue
            self._merge(view, name, task.result())

        if missing:
            logger.info(
                f"Detail for {external_id} partial after {time.monotonic() - started:.2f}s, missing={missing}"
            )
        view["missing"] = missing
        return view

    @staticmethod
    def _merge(view: dict, name: str, value) -> None:
        if name == "references":
            for key in ("home_team", "away_team", "competition"):
                if value.get(key) is not None:
                    view[key] = value[key]
        elif name == "live":
            for key in ("statistics", "incidents"):
                if value.get(key) is not None:
                    view[key] = value[key]
        elif name == "lineup":
            view["lineup"] = value
        elif name == "h2h":
            view["h2h"] = value
        elif name == "standings":
            view["standings"] = value

    async def _references(self, match: Match) -> dict:
        team_ids = [tid for tid in (match.home_team_id, match.away_team_id) if tid]
        async with self.session_factory() as session:
            teams = {}
            if team_ids:
                result = await session.execute(select(Team).where(Team.external_id.in_(team_ids)))
                teams = {team.external_id: team for team in result.scalars()}
            competition = None
            if match.competition_id:
                result = await session.execute(
                    select(Competition).where(Competition.external_id == match.competition_id)
                )
                competition = result.scalar_one_or_none()
        return {
            "home_team": _reference(teams.get(match.home_team_id)),
            "away_team": _reference(teams.get(match.away_team_id)),
            "competition": _reference(competition),
        }

    async def _live_data(self, match: Match) -> dict:
        data = {"statistics": match.statistics, "incidents": match.incidents}
        if all(is_non_empty(value) for value in data.values()) or self.live_cache is None:
            return data
        cached = await self.live_cache.get(match.external_id)
        if cached is not None:
            for key in data:
                if not is_non_empty(data[key]) and is_non_empty(getattr(cached, key)):
                    data[key] = getattr(cached, key)
        return data

    async def _lineup(self, match: Match):
        if is_non_empty(match.lineup_data) or self.provider is None:
            return match.lineup_data
        return await self.provider.fetch_lineup(match.external_id)

    async def _h2h(self, match: Match):
        if is_non_empty(match.h2h_data) or self.provider is None:
            return match.h2h_data
        return await self.provider.fetch_h2h(match.external_id)

    async def _standings(self, match: Match):
        if not match.season_id:
            return None
        async with self.session_factory() as session:
            result = await session.execute(
                select(Standing.standings).where(Standing.season_id == match.season_id)
            )
            return result.scalar_one_or_none()
