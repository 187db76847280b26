"""Match state: status codes, clock derivation, guarded store and reconciler."""

from livesync.matches.minute import MinuteResult, compute_minute, minute_label
from livesync.matches.status import MatchStatus, UpdateSource
from livesync.matches.store import ApplyResult, MatchStore, ResultStatus, UpdateIntent

__all__ = [
    "ApplyResult",
    "MatchStatus",
    "MatchStore",
    "MinuteResult",
    "ResultStatus",
    "UpdateIntent",
    "UpdateSource",
    "compute_minute",
    "minute_label",
]
