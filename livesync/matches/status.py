"""TheSports football match status codes and update source identifiers."""

from enum import IntEnum


class MatchStatus(IntEnum):
    """Provider status_id values (TheSports football)."""

    ABNORMAL = 0
    NOT_STARTED = 1
    FIRST_HALF = 2
    HALF_TIME = 3
    SECOND_HALF = 4
    OVERTIME = 5
    OVERTIME_LEGACY = 6  # Deprecated by the provider, treated as OVERTIME
    PENALTY_SHOOTOUT = 7
    FINISHED = 8
    POSTPONED = 9
    INTERRUPTED = 10
    CUT_IN_HALF = 11
    CANCELLED = 12
    TBD = 13

    @classmethod
    def coerce(cls, value) -> "MatchStatus":
        """Map any raw status value onto the enum; unknown values become ABNORMAL."""
        try:
            return cls(int(value))
        except (TypeError, ValueError, OverflowError):
            return cls.ABNORMAL


LIVE_STATUSES = frozenset({
    MatchStatus.FIRST_HALF,
    MatchStatus.HALF_TIME,
    MatchStatus.SECOND_HALF,
    MatchStatus.OVERTIME,
    MatchStatus.OVERTIME_LEGACY,
    MatchStatus.PENALTY_SHOOTOUT,
})

# Statuses a match cannot plausibly hold before its scheduled kickoff
IMPLAUSIBLE_BEFORE_KICKOFF = frozenset({
    MatchStatus.FINISHED,
    MatchStatus.CANCELLED,
    MatchStatus.INTERRUPTED,
})


class UpdateSource:
    """Origin of an update intent; stored in <field>_source columns."""

    POLLER = "poller"
    PUSH = "push"
    BACKFILL = "backfill"
    MANUAL = "manual"
    # Inferred by the stuck-match watchdog, not reported by the provider
    WATCHDOG = "watchdog"

    ALL = (POLLER, PUSH, BACKFILL, MANUAL, WATCHDOG)


SOURCE_PRIORITY = {
    UpdateSource.MANUAL: 3,
    UpdateSource.PUSH: 2,
    UpdateSource.POLLER: 2,
    UpdateSource.BACKFILL: 1,
    UpdateSource.WATCHDOG: 1,
}


def get_source_priority(source) -> int:
    """Priority used by event-time ordering; unknown or empty sources rank lowest."""
    return SOURCE_PRIORITY.get(source, 0)
