"""
Live match clock derived from status and phase kickoff timestamps.

The provider's raw minute is unreliable (often missing or frozen), so the
clock is recomputed from the epoch second each phase began:

    FIRST_HALF              floor((now - first_half_kickoff_ts) / 60) + 1
    SECOND_HALF / OVERTIME  floor((now - second_half_kickoff_ts) / 60) + 46

Every status maps to a non-empty label; non-running statuses have no minute.
"""

import time
from dataclasses import dataclass
from typing import Optional

from livesync.matches.status import MatchStatus

# Second half kicks off roughly one hour after the first when the provider omits it
SECOND_HALF_ESTIMATE_OFFSET = 3600

STATUS_LABELS = {
    MatchStatus.ABNORMAL: "N/A",
    MatchStatus.NOT_STARTED: "NS",
    MatchStatus.HALF_TIME: "HT",
    MatchStatus.PENALTY_SHOOTOUT: "PEN",
    MatchStatus.FINISHED: "FT",
    MatchStatus.POSTPONED: "PST",
    MatchStatus.INTERRUPTED: "INT",
    MatchStatus.CUT_IN_HALF: "ABD",
    MatchStatus.CANCELLED: "CANC",
    MatchStatus.TBD: "TBD",
}

# Running phases whose kickoff is unknown and no raw minute exists
RUNNING_FALLBACK_LABELS = {
    MatchStatus.FIRST_HALF: "1H",
    MatchStatus.SECOND_HALF: "2H",
    MatchStatus.OVERTIME: "ET",
    MatchStatus.OVERTIME_LEGACY: "ET",
}


@dataclass(frozen=True)
class MinuteResult:
    minute: Optional[int]
    label: str


def _as_ts(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        ts = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return ts if ts > 0 else None


def _elapsed_minutes(now: int, kickoff_ts: int) -> int:
    return (now - kickoff_ts) // 60


def _running_label(minute: int, regulation_end: int) -> str:
    if minute > regulation_end:
        return f"{regulation_end}+"
    return str(minute)


def compute_minute(
    status_id,
    first_half_kickoff_ts=None,
    second_half_kickoff_ts=None,
    overtime_kickoff_ts=None,
    now: Optional[int] = None,
    raw_minute=None,
) -> MinuteResult:
    """
    Derive the match clock.

    Args:
        status_id: Provider status (int or MatchStatus; unknown values are ABNORMAL).
        first_half_kickoff_ts: Epoch seconds the first half began.
        second_half_kickoff_ts: Epoch seconds the second half began.
        overtime_kickoff_ts: Epoch seconds extra time began.
        now: Current epoch seconds (defaults to wall clock).
        raw_minute: Provider minute, used only when no kickoff timestamp is known.

    Returns:
        MinuteResult with an integer minute for running phases (None otherwise)
        and a label that is never empty.
    """
    status = MatchStatus.coerce(status_id)
    now = int(time.time()) if now is None else int(now)
    first_half = _as_ts(first_half_kickoff_ts)
    second_half = _as_ts(second_half_kickoff_ts)
    overtime = _as_ts(overtime_kickoff_ts)

    if status == MatchStatus.FIRST_HALF and first_half is not None:
        minute = max(1, _elapsed_minutes(now, first_half) + 1)
        return MinuteResult(minute, _running_label(minute, 45))

    if status == MatchStatus.HALF_TIME:
        return MinuteResult(45, STATUS_LABELS[status])

    if status in (MatchStatus.SECOND_HALF, MatchStatus.OVERTIME, MatchStatus.OVERTIME_LEGACY):
        if second_half is None and first_half is not None and overtime is None:
            second_half = first_half + SECOND_HALF_ESTIMATE_OFFSET
        if second_half is not None:
            minute = max(46, _elapsed_minutes(now, second_half) + 45 + 1)
            regulation_end = 90 if status == MatchStatus.SECOND_HALF else 120
            return MinuteResult(minute, _running_label(minute, regulation_end))
        if status != MatchStatus.SECOND_HALF and overtime is not None:
            minute = max(91, _elapsed_minutes(now, overtime) + 90 + 1)
            return MinuteResult(minute, _running_label(minute, 120))

    if status in RUNNING_FALLBACK_LABELS:
        raw = _as_ts(raw_minute)
        if raw is not None:
            return MinuteResult(raw, str(raw))
        return MinuteResult(None, RUNNING_FALLBACK_LABELS[status])

    return MinuteResult(None, STATUS_LABELS.get(status, STATUS_LABELS[MatchStatus.ABNORMAL]))


def minute_label(status_id, first_half_kickoff_ts=None, second_half_kickoff_ts=None,
                 overtime_kickoff_ts=None, now=None, raw_minute=None) -> str:
    """Label-only convenience wrapper around compute_minute."""
    return compute_minute(
        status_id,
        first_half_kickoff_ts,
        second_half_kickoff_ts,
        overtime_kickoff_ts,
        now=now,
        raw_minute=raw_minute,
    ).label
