"""
Single-match refresh from the provider's detail endpoints.

Shared by the change-detection poller and the safety-net workers: resolve
the freshest record for one match, reconcile it, and keep the live stats
cache warm while the match is in play.
"""

import logging
import time
from typing import Optional

from livesync.config import get_settings
from livesync.etl.base import ProviderGateway
from livesync.etl.payloads import extract_live_fields, kickoff_fields
from livesync.matches.live_cache import LiveStatsCacheStore
from livesync.matches.reconciler import Reconciler
from livesync.matches.status import LIVE_STATUSES, MatchStatus, UpdateSource
from livesync.matches.store import ApplyResult, ResultStatus, has_derived_data, is_non_empty

logger = logging.getLogger(__name__)


class MatchRefresher:
    """
    Fetch + reconcile for one match id.

    Trend and player stats are not part of the live detail payload; they are
    fetched on their own, at most once per ``extras_interval`` seconds per
    match, and only while the match is in play.
    """

    def __init__(
        self,
        provider: ProviderGateway,
        reconciler: Reconciler,
        live_cache: Optional[LiveStatsCacheStore] = None,
        finalizer=None,
        extras_interval: Optional[int] = None,
    ):
        self.provider = provider
        self.reconciler = reconciler
        self.live_cache = live_cache
        self.finalizer = finalizer
        self.extras_interval = (
            extras_interval if extras_interval is not None else get_settings().LIVE_EXTRAS_REFRESH_SECONDS
        )
        self._extras_fetched_at: dict[str, int] = {}

    async def fetch_record(self, match_id: str) -> Optional[dict]:
        record = await self.provider.fetch_live_detail(match_id)
        if record is None:
            # Live feed drops matches right after they end
            record = await self.provider.fetch_match_detail(match_id)
        return record

    async def refresh(
        self,
        match_id: str,
        current=None,
        update_time: Optional[int] = None,
        source: str = UpdateSource.POLLER,
        now: Optional[int] = None,
    ) -> Optional[ApplyResult]:
        """Fetch and apply. Returns None when the provider has no record for the match."""
        record = await self.fetch_record(match_id)
        if record is None:
            return None
        return await self.apply_record(match_id, record, current, update_time=update_time, source=source, now=now)

    async def apply_record(
        self,
        match_id: str,
        record: dict,
        current=None,
        update_time: Optional[int] = None,
        source: str = UpdateSource.POLLER,
        now: Optional[int] = None,
    ) -> ApplyResult:
        now_ts = int(time.time()) if now is None else int(now)
        fields = extract_live_fields(record)
        provider_kickoff = fields.pop("_kickoff_ts", None)
        record_update_time = fields.pop("_update_time", None)
        observed_at = update_time or record_update_time or now_ts

        fields.update(kickoff_fields(fields.get("status_id"), provider_kickoff, current))
        for name in ("statistics", "incidents"):
            if name in fields and not is_non_empty(fields[name]):
                del fields[name]

        if self.live_cache is not None and ("statistics" in fields or "incidents" in fields):
            try:
                await self.live_cache.save(
                    match_id, statistics=fields.get("statistics"), incidents=fields.get("incidents")
                )
            except Exception as e:
                logger.warning(f"[REFRESH] Live cache write failed for {match_id}: {e}")

        result = await self.reconciler.reconcile_fields(
            match_id, fields, source=source, observed_at=observed_at, now=now
        )
        if result.status in (ResultStatus.ERROR, ResultStatus.NOT_FOUND):
            return result

        if result.current_status in LIVE_STATUSES:
            await self.refresh_live_extras(match_id, now_ts)
        else:
            self._extras_fetched_at.pop(match_id, None)

        if result.current_status == MatchStatus.FINISHED and self.finalizer is not None:
            await self.finalizer.persist_final_stats(match_id)
        return result

    async def refresh_live_extras(self, match_id: str, now_ts: int) -> bool:
        """Cache trend and player stats for a live match. Returns True when something was cached."""
        if self.live_cache is None:
            return False
        last = self._extras_fetched_at.get(match_id)
        if last is not None and now_ts - last < self.extras_interval:
            return False
        self._extras_fetched_at[match_id] = now_ts

        extras = {}
        for name, fetch in (
            ("trend_data", self.provider.fetch_match_trend),
            ("player_stats", self.provider.fetch_player_stats),
        ):
            try:
                value = await fetch(match_id)
            except Exception as e:
                logger.warning(f"[REFRESH] Live {name} fetch failed for {match_id}: {e}")
                continue
            if has_derived_data(name, value):
                extras[name] = value
        if not extras:
            return False

        try:
            return await self.live_cache.save(match_id, **extras)
        except Exception as e:
            logger.warning(f"[REFRESH] Live cache write failed for {match_id}: {e}")
            return False
