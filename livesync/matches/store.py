"""
Match record store: the only code that writes the matches table.

Writes are single-row units of work. The terminal status guard is enforced
inside the UPDATE itself (``WHERE status_id != FINISHED``) so a concurrent
writer that finished the match first always wins, even if the row read at
the start of the transaction was stale.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import sessionmaker

from livesync.database import AsyncSessionLocal, run_with_retry
from livesync.db_utils import insert_if_absent
from livesync.matches.status import (
    IMPLAUSIBLE_BEFORE_KICKOFF,
    MatchStatus,
    UpdateSource,
    get_source_priority,
)
from livesync.models import Match

logger = logging.getLogger(__name__)

# Fields with paired <field>_source / <field>_timestamp audit columns
AUDITED_FIELDS = ("status_id", "minute", "home_score_display", "away_score_display")

# Written once, never overwritten or cleared afterwards
SET_ONCE_FIELDS = (
    "match_time",
    "first_half_kickoff_ts",
    "second_half_kickoff_ts",
    "overtime_kickoff_ts",
)

# Derived post-match data owned by the finalizer
DERIVED_FIELDS = ("statistics", "incidents", "trend_data", "player_stats")

_PROTECTED_FIELDS = frozenset(
    {"id", "external_id", "created_at", "updated_at", "last_update_source"}
    | {f"{name}_source" for name in AUDITED_FIELDS}
    | {f"{name}_timestamp" for name in AUDITED_FIELDS}
)

WRITABLE_FIELDS = frozenset(
    name for name in Match.__table__.columns.keys() if name not in _PROTECTED_FIELDS
)


class ResultStatus:
    SUCCESS = "success"
    REJECTED_IMMUTABLE = "rejected_immutable"
    REJECTED_STALE = "rejected_stale"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class UpdateIntent:
    """One proposed field change for a match."""

    field: str
    value: Any
    source: str = UpdateSource.POLLER
    observed_at: Optional[int] = None
    priority: Optional[int] = None


@dataclass
class ApplyResult:
    status: str
    applied: list = field(default_factory=list)
    rejected: list = field(default_factory=list)
    reason: Optional[str] = None
    previous_status: Optional[int] = None
    current_status: Optional[int] = None
    downgraded: bool = False
    ended: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (ResultStatus.SUCCESS, ResultStatus.REJECTED_IMMUTABLE)


def is_non_empty(value) -> bool:
    """Derived JSON counts as present only when it is a non-empty list or dict."""
    return isinstance(value, (list, dict)) and len(value) > 0


def has_derived_data(field_name: str, value) -> bool:
    """Trend dicts count only when a first_half, second_half or overtime series has points."""
    if field_name == "trend_data" and isinstance(value, dict):
        return any(
            isinstance(value.get(key), list) and len(value[key]) > 0
            for key in ("first_half", "second_half", "overtime")
        )
    return is_non_empty(value)


class MatchStore:
    """Guarded reads and writes against the matches table."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        event_time_ordering: bool = False,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.event_time_ordering = event_time_ordering

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, external_id: str) -> Optional[Match]:
        async with self.session_factory() as session:
            result = await session.execute(select(Match).where(Match.external_id == external_id))
            return result.scalar_one_or_none()

    async def get_status(self, external_id: str) -> Optional[int]:
        """Current status_id, or None when the match is unknown."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match.status_id).where(Match.external_id == external_id)
            )
            return result.scalar_one_or_none()

    async def exists(self, external_id: str) -> bool:
        return await self.get_status(external_id) is not None

    # ── Writes ───────────────────────────────────────────────────────────────

    async def create_if_absent(self, external_id: str, match_time: int, source: str) -> bool:
        """
        Create a bare NOT_STARTED record keyed by external_id.

        Idempotent: re-submitting the same id never produces a second row.
        Volatile fields are filled afterwards through apply_updates.
        """
        now = datetime.utcnow()

        async def _insert() -> bool:
            async with self.session_factory() as session:
                created = await insert_if_absent(
                    session,
                    Match,
                    {
                        "external_id": external_id,
                        "match_time": int(match_time),
                        "status_id": int(MatchStatus.NOT_STARTED),
                        "last_update_source": source,
                        "created_at": now,
                        "updated_at": now,
                    },
                    conflict_columns=["external_id"],
                )
                await session.commit()
                return created

        created = await run_with_retry(
            _insert, self.max_retries, self.retry_delay, label=f"create {external_id}"
        )
        if created:
            logger.info(f"[STORE] Created match {external_id} (source={source})")
        return created

    async def apply_updates(
        self,
        external_id: str,
        intents: list,
        now: Optional[int] = None,
    ) -> ApplyResult:
        """
        Apply a batch of UpdateIntents to one match.

        Fields are applied in the order given (last intent per field wins).
        A non-FINISHED status on a FINISHED match is rejected while the other
        fields still apply. Transient store failures are retried; anything else
        comes back as an ``error`` result with the reason.
        """
        if not intents:
            return ApplyResult(ResultStatus.SUCCESS)

        now = int(time.time()) if now is None else int(now)

        async def _work() -> ApplyResult:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Match).where(Match.external_id == external_id).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return ApplyResult(ResultStatus.NOT_FOUND, reason="match not found")

                outcome, values, status_write = self._plan(row, intents, now)

                if values:
                    values["updated_at"] = datetime.utcnow()
                    await session.execute(
                        update(Match).where(Match.external_id == external_id).values(**values)
                    )

                if status_write is not None:
                    # Compare-and-set: never overwrite a FINISHED row
                    cas = await session.execute(
                        update(Match)
                        .where(Match.external_id == external_id)
                        .where(Match.status_id != int(MatchStatus.FINISHED))
                        .values(**status_write, updated_at=datetime.utcnow())
                    )
                    new_status = status_write["status_id"]
                    if cas.rowcount == 1:
                        outcome.applied.append("status_id")
                        outcome.current_status = new_status
                        outcome.ended = (
                            new_status == MatchStatus.FINISHED
                            and outcome.previous_status != MatchStatus.FINISHED
                        )
                    else:
                        # Lost the race to a writer that already finished the match
                        outcome.current_status = int(MatchStatus.FINISHED)
                        if new_status != MatchStatus.FINISHED:
                            outcome.rejected.append("status_id")
                            outcome.status = ResultStatus.REJECTED_IMMUTABLE

                await session.commit()
                return outcome

        try:
            outcome = await run_with_retry(
                _work, self.max_retries, self.retry_delay, label=f"apply {external_id}"
            )
        except Exception as e:
            logger.error(f"[STORE] Update for match {external_id} dropped: {e}")
            return ApplyResult(ResultStatus.ERROR, reason=str(e))

        if (
            outcome.status == ResultStatus.SUCCESS
            and not outcome.applied
            and outcome.rejected
            and all(name.startswith("stale:") for name in outcome.rejected)
        ):
            outcome.status = ResultStatus.REJECTED_STALE
        return outcome

    def _plan(self, row: Match, intents: list, now: int):
        """Decide which intents become writes. Returns (result, column values, status write)."""
        outcome = ApplyResult(
            ResultStatus.SUCCESS,
            previous_status=row.status_id,
            current_status=row.status_id,
        )
        values: dict = {}
        status_write: Optional[dict] = None

        for intent in intents:
            name = intent.field
            if name not in WRITABLE_FIELDS:
                logger.warning(f"[STORE] Ignoring unknown field {name!r} for match {row.external_id}")
                outcome.rejected.append(name)
                continue

            value = intent.value
            observed_at = int(intent.observed_at) if intent.observed_at is not None else now

            if name == "status_id":
                value = int(MatchStatus.coerce(value))
                if row.match_time and row.match_time > now and value in IMPLAUSIBLE_BEFORE_KICKOFF:
                    logger.info(
                        f"[STORE] Match {row.external_id} kicks off in the future "
                        f"(match_time={row.match_time}), status {value} applied as NOT_STARTED"
                    )
                    value = int(MatchStatus.NOT_STARTED)
                    outcome.downgraded = True
                if row.status_id == MatchStatus.FINISHED:
                    if value != MatchStatus.FINISHED:
                        outcome.rejected.append("status_id")
                        outcome.status = ResultStatus.REJECTED_IMMUTABLE
                    continue

            if name in SET_ONCE_FIELDS:
                if value is None or getattr(row, name) is not None or name in values:
                    continue

            if name in AUDITED_FIELDS and self.event_time_ordering:
                if not self._is_fresher(row, intent, observed_at):
                    outcome.rejected.append(f"stale:{name}")
                    continue

            if name == "status_id":
                status_write = {
                    "status_id": value,
                    "status_id_source": intent.source,
                    "status_id_timestamp": observed_at,
                    "last_update_source": intent.source,
                }
                continue

            values[name] = value
            if name in AUDITED_FIELDS:
                values[f"{name}_source"] = intent.source
                values[f"{name}_timestamp"] = observed_at
            values["last_update_source"] = intent.source

        outcome.applied.extend(k for k in values if k in WRITABLE_FIELDS)
        return outcome, values, status_write

    @staticmethod
    def _is_fresher(row: Match, intent: UpdateIntent, observed_at: int) -> bool:
        """Higher source priority wins; equal priority needs observed_at >= stored timestamp."""
        stored_source = getattr(row, f"{intent.field}_source")
        stored_ts = getattr(row, f"{intent.field}_timestamp")
        incoming_priority = intent.priority if intent.priority is not None else get_source_priority(intent.source)
        stored_priority = get_source_priority(stored_source)
        if incoming_priority != stored_priority:
            return incoming_priority > stored_priority
        return stored_ts is None or observed_at >= stored_ts

    async def fill_if_missing(self, external_id: str, field_name: str, value) -> bool:
        """
        Write derived post-match data only when the stored value is empty.

        Returns True when the value was written.
        """
        if field_name not in DERIVED_FIELDS and field_name not in ("lineup_data", "h2h_data"):
            raise ValueError(f"{field_name} is not a derived field")
        if not has_derived_data(field_name, value):
            return False

        async def _write() -> bool:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Match).where(Match.external_id == external_id).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None or has_derived_data(field_name, getattr(row, field_name)):
                    return False
                await session.execute(
                    update(Match)
                    .where(Match.external_id == external_id)
                    .values(**{field_name: value, "updated_at": datetime.utcnow()})
                )
                await session.commit()
                return True

        return await run_with_retry(
            _write, self.max_retries, self.retry_delay, label=f"fill {field_name} {external_id}"
        )

    async def list_finished_missing_derived(self, since_ts: int, limit: int) -> list:
        """FINISHED matches kicked off after since_ts still missing any derived field, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(Match.status_id == int(MatchStatus.FINISHED))
                .where(Match.match_time >= since_ts)
                .order_by(Match.match_time.desc())
            )
            pending = []
            for match in result.scalars():
                if not all(has_derived_data(name, getattr(match, name)) for name in DERIVED_FIELDS):
                    pending.append(match)
                    if len(pending) >= limit:
                        break
            return pending

    async def list_not_started_between(self, start_ts: int, end_ts: int) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(Match.status_id == int(MatchStatus.NOT_STARTED))
                .where(Match.match_time >= start_ts)
                .where(Match.match_time < end_ts)
                .order_by(Match.match_time)
            )
            return list(result.scalars())

    async def list_finished_in_season(self, season_id: str) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(Match.season_id == season_id)
                .where(Match.status_id == int(MatchStatus.FINISHED))
            )
            return list(result.scalars())

    async def list_by_status(
        self,
        statuses,
        since_ts: Optional[int] = None,
        until_ts: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list:
        """Matches in the given statuses with since_ts <= match_time <= until_ts, least recently written first."""
        query = select(Match).where(Match.status_id.in_([int(s) for s in statuses]))
        if since_ts is not None:
            query = query.where(Match.match_time >= since_ts)
        if until_ts is not None:
            query = query.where(Match.match_time <= until_ts)
        query = query.order_by(Match.updated_at, Match.id)
        if limit is not None:
            query = query.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def list_status_check_candidates(
        self,
        start_ts: int,
        end_ts: int,
        now: int,
        suspicious_end_since: int,
        limit: int,
    ) -> list:
        """
        Today's matches whose stored status contradicts the clock.

        NOT_STARTED although match_time has passed, or FINISHED although the
        match kicked off after suspicious_end_since.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(Match.match_time >= start_ts)
                .where(Match.match_time < end_ts)
                .where(
                    or_(
                        and_(Match.status_id == int(MatchStatus.NOT_STARTED), Match.match_time <= now),
                        and_(Match.status_id == int(MatchStatus.FINISHED), Match.match_time >= suspicious_end_since),
                    )
                )
                .order_by(Match.match_time)
                .limit(limit)
            )
            return list(result.scalars())


def last_seen_ts(match: Match) -> Optional[int]:
    """Most recent observed_at across the audited fields, or None if nothing was ever applied."""
    stamps = [getattr(match, f"{name}_timestamp") for name in AUDITED_FIELDS]
    stamps = [int(ts) for ts in stamps if ts is not None]
    return max(stamps) if stamps else None
