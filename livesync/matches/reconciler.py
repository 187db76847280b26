"""
Update reconciler: the single apply path every worker goes through.

Turns mapped provider fields into UpdateIntents, hands them to the store's
guarded write, records the outcome, and announces matches that just finished.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Optional

from livesync.errors import PayloadError
from livesync.matches.status import UpdateSource
from livesync.matches.store import ApplyResult, MatchStore, ResultStatus, UpdateIntent
from livesync.telemetry import record_reconcile_result

logger = logging.getLogger(__name__)

# Fields that identify/schedule a match rather than describe its state
IDENTITY_FIELDS = ("external_id", "match_time")

MatchEndedCallback = Callable[[str, str], Awaitable[Any]]


def intents_from_fields(
    fields: dict,
    source: str,
    observed_at: Optional[int] = None,
    priority: Optional[int] = None,
) -> list:
    """Build an ordered intent batch from a mapped field dict (identity fields excluded)."""
    return [
        UpdateIntent(field=name, value=value, source=source, observed_at=observed_at, priority=priority)
        for name, value in fields.items()
        if name not in IDENTITY_FIELDS
    ]


class Reconciler:
    """Applies intent batches and fires the match-ended trigger on a fresh FINISHED transition."""

    def __init__(self, store: MatchStore, on_match_ended: Optional[MatchEndedCallback] = None):
        self.store = store
        self.on_match_ended = on_match_ended

    async def reconcile(self, external_id: str, intents: list, now: Optional[int] = None) -> ApplyResult:
        result = await self.store.apply_updates(external_id, intents, now=now)
        source = intents[0].source if intents else "unknown"
        record_reconcile_result(result.status, source)

        if result.status == ResultStatus.REJECTED_IMMUTABLE:
            attempted = next((i.value for i in reversed(intents) if i.field == "status_id"), None)
            logger.warning(
                f"[RECONCILER] rejected_immutable: match {external_id} is FINISHED, "
                f"refused status={attempted} from {source}; applied={result.applied}"
            )
        elif result.status == ResultStatus.ERROR:
            logger.error(f"[RECONCILER] Match {external_id} batch failed: {result.reason}")
        elif result.status == ResultStatus.NOT_FOUND:
            logger.warning(f"[RECONCILER] Match {external_id} not found, batch skipped")
        elif result.applied:
            logger.debug(f"[RECONCILER] Match {external_id} updated {result.applied} ({source})")

        if result.ended:
            logger.info(f"[RECONCILER] Match {external_id} reached FINISHED ({source})")
            if self.on_match_ended is not None:
                try:
                    await self.on_match_ended(external_id, source)
                except Exception as e:
                    logger.error(f"[RECONCILER] match-ended trigger failed for {external_id}: {e}")
        return result

    async def reconcile_fields(
        self,
        external_id: str,
        fields: dict,
        source: str = UpdateSource.POLLER,
        observed_at: Optional[int] = None,
        now: Optional[int] = None,
    ) -> ApplyResult:
        return await self.reconcile(
            external_id, intents_from_fields(fields, source, observed_at), now=now
        )

    async def ingest(
        self,
        fields: dict,
        source: str,
        observed_at: Optional[int] = None,
        now: Optional[int] = None,
    ) -> tuple:
        """
        Create-if-absent then reconcile a fully mapped match.

        Returns (created, ApplyResult). Raises PayloadError when the mapping
        lacks external_id or match_time.
        """
        external_id = fields.get("external_id")
        match_time = fields.get("match_time")
        if not external_id:
            raise PayloadError("REJECTED: missing external_id")
        if not match_time:
            raise PayloadError(f"REJECTED: match {external_id} missing match_time")

        created = await self.store.create_if_absent(external_id, match_time, source)
        observed_at = observed_at if observed_at is not None else int(time.time())
        result = await self.reconcile(
            external_id, intents_from_fields(fields, source, observed_at), now=now
        )
        return created, result
