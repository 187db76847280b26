"""
TheSports payload normalisation.

Provider responses vary by endpoint, plan and API version. Every shape
variant is resolved here into one canonical form so that worker code never
branches on payload shape.
"""

import logging
from typing import Any, Iterable, Optional

from livesync.errors import PayloadError
from livesync.etl.base import ChangedMatch
from livesync.matches.status import MatchStatus

logger = logging.getLogger(__name__)

# 2000-01-01 in milliseconds; anything at or above it is a millisecond timestamp
_MS_THRESHOLD = 946684800000

_ID_KEYS = ("match_id", "id")
_UPDATE_TIME_KEYS = ("update_time", "updateTime", "ut", "ts", "timestamp")
_LEGACY_LIST_KEYS = ("changed_matches", "changed_match_ids", "matches")
_CONTAINER_KEYS = ("results", "result", "data")

# Per-side score array: [regular, halftime, red, yellow, corners, overtime, penalties]
SCORE_REGULAR = 0
SCORE_RED = 2
SCORE_YELLOW = 3
SCORE_CORNERS = 4
SCORE_OVERTIME = 5
SCORE_PENALTIES = 6


_MISSING = object()


def _resolve(source: Any, path) -> Any:
    if isinstance(path, str):
        path = path.split(".")
    current = source
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, (list, tuple)) or not -len(current) <= key < len(current):
                return _MISSING
            current = current[key]
        else:
            if not isinstance(current, dict) or key not in current:
                return _MISSING
            current = current[key]
    return current


def first_present(source: Any, *paths, default=None) -> Any:
    """
    Return the first non-empty value among ordered accessor paths.

    A path is a dotted string ("score.home") or a tuple mixing dict keys and
    list indices (("score", 2, 0)). None and "" count as absent.

    >>> first_present({"b": {"c": 2}}, "a", "b.c")
    2
    """
    for path in paths:
        value = _resolve(source, path)
        if value is not _MISSING and value is not None and value != "":
            return value
    return default


def to_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def normalize_timestamp(value) -> Optional[int]:
    """Epoch seconds from a seconds-or-milliseconds value."""
    ts = to_int(value)
    if ts is None or ts <= 0:
        return None
    if ts >= _MS_THRESHOLD:
        ts //= 1000
    return ts


def _changed_entry(item) -> Optional[ChangedMatch]:
    if isinstance(item, (str, int)) and not isinstance(item, bool):
        match_id = str(item).strip()
        return ChangedMatch(match_id) if match_id else None
    if isinstance(item, dict):
        match_id = first_present(item, *_ID_KEYS)
        if match_id is None:
            return None
        update_time = normalize_timestamp(first_present(item, *_UPDATE_TIME_KEYS))
        return ChangedMatch(str(match_id), update_time)
    return None


def _iter_changed_items(payload) -> Iterable:
    if isinstance(payload, list):
        yield from payload
        return
    if not isinstance(payload, dict):
        return

    for key in _LEGACY_LIST_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            yield from value

    results = payload.get("results")
    if isinstance(results, list):
        yield from results
    elif isinstance(results, dict):
        # Keyed by update category ("1", "2", ...), each a list of entries
        for key in sorted(results, key=str):
            value = results[key]
            if isinstance(value, list):
                yield from value
            elif isinstance(value, dict):
                yield value


def normalize_changed_matches(payload) -> list[ChangedMatch]:
    """
    Canonicalise every known change-feed shape.

    Output is deduplicated by match id; the first occurrence wins.
    """
    seen = set()
    changed = []
    for item in _iter_changed_items(payload):
        entry = _changed_entry(item)
        if entry is None:
            logger.debug(f"[PROVIDER] Skipping unrecognised change-feed entry: {item!r}")
            continue
        if entry.match_id in seen:
            continue
        seen.add(entry.match_id)
        changed.append(entry)
    return changed


def _record_id(record: dict) -> Optional[str]:
    value = first_present(record, "id", "match_id", "external_id", ("score", 0))
    return str(value) if value is not None else None


def find_match_record(payload, match_id: str) -> Optional[dict]:
    """
    Locate one match's record in a detail response.

    A list container is searched by id; it never defaults to its first
    element, since live endpoints return every live match when the
    requested one has dropped out.
    """
    container = payload
    if isinstance(payload, dict):
        for key in _CONTAINER_KEYS:
            if key in payload and payload[key] is not None:
                container = payload[key]
                break

    if isinstance(container, list):
        for item in container:
            if isinstance(item, dict) and _record_id(item) == str(match_id):
                return item
        return None

    if isinstance(container, dict):
        record_id = _record_id(container)
        if record_id is None or record_id == str(match_id):
            return container
    return None


def _score_array(record: dict, side: str) -> Optional[list]:
    index = 2 if side == "home" else 3
    value = first_present(record, ("score", index), f"{side}_scores")
    return value if isinstance(value, list) else None


def _score_part(scores: Optional[list], index: int) -> Optional[int]:
    if not scores or index >= len(scores):
        return None
    return to_int(scores[index])


def display_score(scores: Optional[list]) -> Optional[int]:
    """Authoritative score: overtime total when extra time was played, else regular."""
    overtime = _score_part(scores, SCORE_OVERTIME)
    if overtime:
        return overtime
    return _score_part(scores, SCORE_REGULAR)


def _score_fields(record: dict) -> dict:
    fields = {}
    for side in ("home", "away"):
        scores = _score_array(record, side)
        display = display_score(scores)
        if display is None:
            display = to_int(first_present(
                record,
                f"{side}_score",
                f"{side}_score_display",
                f"score.{side}",
                f"match.{side}_score",
            ))
        if scores is not None:
            fields[f"{side}_scores"] = list(scores)
            for name, index in (
                ("score_overtime", SCORE_OVERTIME),
                ("score_penalties", SCORE_PENALTIES),
                ("red_cards", SCORE_RED),
                ("yellow_cards", SCORE_YELLOW),
                ("corners", SCORE_CORNERS),
            ):
                part = _score_part(scores, index)
                if part is not None:
                    fields[f"{side}_{name}"] = part
        if display is not None:
            fields[f"{side}_score_display"] = display
    return fields


def extract_live_fields(record: dict) -> dict:
    """
    Map a detail_live record onto match columns plus transport metadata.

    Keys prefixed with an underscore (``_kickoff_ts``, ``_update_time``) are
    inputs for kickoff derivation and ordering, not columns.
    """
    fields = {}
    status = to_int(first_present(record, ("score", 1), "status_id", "status", "match.status_id"))
    if status is not None:
        fields["status_id"] = status

    fields.update(_score_fields(record))

    minute = to_int(first_present(record, "minute", "match_minute"))
    if minute is not None:
        fields["minute"] = minute

    incidents = first_present(record, "incidents", "events", "match_incidents")
    if isinstance(incidents, list):
        fields["incidents"] = incidents
    statistics = first_present(record, "stats", "statistics", "technical_statistics")
    if isinstance(statistics, list):
        fields["statistics"] = statistics

    fields["_kickoff_ts"] = normalize_timestamp(first_present(record, ("score", 4), "live_kickoff_time"))
    fields["_update_time"] = normalize_timestamp(first_present(record, "update_time", "updateTime", "updated_at"))
    return fields


def map_match_record(record: dict) -> dict:
    """
    Map a diary / recent-list record onto match columns.

    Raises:
        PayloadError: missing id or match_time.
    """
    if not isinstance(record, dict):
        raise PayloadError(f"REJECTED: match record is {type(record).__name__}, not an object")
    external_id = first_present(record, "id", "match_id")
    if external_id is None:
        raise PayloadError("REJECTED: match record without id")
    match_time = normalize_timestamp(first_present(record, "match_time", "matchTime"))
    if match_time is None:
        raise PayloadError(f"REJECTED: match {external_id} without match_time")

    fields = {
        "external_id": str(external_id),
        "match_time": match_time,
    }
    for column, paths in (
        ("competition_id", ("competition_id",)),
        ("season_id", ("season_id",)),
        ("stage_id", ("round.stage_id", "stage_id")),
        ("venue_id", ("venue_id",)),
        ("referee_id", ("referee_id",)),
        ("home_team_id", ("home_team_id",)),
        ("away_team_id", ("away_team_id",)),
    ):
        value = first_present(record, *paths)
        if value is not None:
            fields[column] = str(value)

    status = to_int(first_present(record, "status_id", "status"))
    if status is not None:
        fields["status_id"] = status
    fields.update(_score_fields(record))
    return fields


def kickoff_fields(status_id, provider_kickoff_ts, current) -> dict:
    """
    Phase kickoff timestamps to propose for a status observation.

    Only the provider's live kickoff time is ever proposed. The phases are
    set-once in the store, so an estimate written here would shadow the real
    value for the rest of the match; estimates are left to compute_minute.
    ``current`` is the stored match (or None).
    """
    if not provider_kickoff_ts:
        return {}
    status = MatchStatus.coerce(status_id)
    fields = {}

    if status == MatchStatus.FIRST_HALF and getattr(current, "first_half_kickoff_ts", None) is None:
        fields["first_half_kickoff_ts"] = int(provider_kickoff_ts)
    elif status == MatchStatus.SECOND_HALF and getattr(current, "second_half_kickoff_ts", None) is None:
        fields["second_half_kickoff_ts"] = int(provider_kickoff_ts)
    elif (
        status in (MatchStatus.OVERTIME, MatchStatus.OVERTIME_LEGACY)
        and getattr(current, "overtime_kickoff_ts", None) is None
    ):
        fields["overtime_kickoff_ts"] = int(provider_kickoff_ts)

    return fields


def extract_reference_rows(items, fields: tuple) -> list:
    """
    Flatten a results_extra section (list, or dict keyed by id) into upsert rows.

    Rows without an id are dropped.
    """
    if isinstance(items, dict):
        entries = []
        for key, value in items.items():
            if isinstance(value, dict):
                entries.append({"id": key, **value})
    elif isinstance(items, list):
        entries = [item for item in items if isinstance(item, dict)]
    else:
        return []

    rows = []
    for entry in entries:
        external_id = first_present(entry, "id")
        if external_id is None:
            continue
        row = {"external_id": str(external_id)}
        for column, key in fields:
            value = entry.get(key)
            if value is not None and value != "":
                row[column] = str(value)
        rows.append(row)
    return rows

