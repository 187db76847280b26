"""
Tests for the match store and update reconciler.

Verifies:
- FINISHED is terminal: no later batch moves status_id away from 8
- Terminal statuses for future kickoffs are applied as NOT_STARTED
- The match-ended trigger fires at most once per match
- Audit columns record source and observation time
- Set-once kickoff fields are never overwritten
- Event-time ordering (opt-in) rejects stale lower-priority writes
- Non-transient store failures surface as ``error`` results
"""

import random
from unittest.mock import AsyncMock, patch

import pytest

from livesync.errors import PayloadError
from livesync.matches.reconciler import Reconciler, intents_from_fields
from livesync.matches.status import MatchStatus, UpdateSource
from livesync.matches.store import MatchStore, ResultStatus, UpdateIntent

NOW = 1_760_000_000


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_if_absent_is_idempotent(self, store, count_matches):
        assert await store.create_if_absent("m1", NOW, UpdateSource.BACKFILL) is True
        assert await store.create_if_absent("m1", NOW, UpdateSource.POLLER) is False
        assert await count_matches("m1") == 1

        match = await store.get("m1")
        assert match.status_id == MatchStatus.NOT_STARTED
        assert match.last_update_source == UpdateSource.BACKFILL

    @pytest.mark.asyncio
    async def test_ingest_requires_identity(self, reconciler):
        with pytest.raises(PayloadError):
            await reconciler.ingest({"external_id": "m1"}, source=UpdateSource.BACKFILL)
        with pytest.raises(PayloadError):
            await reconciler.ingest({"match_time": NOW}, source=UpdateSource.BACKFILL)

    @pytest.mark.asyncio
    async def test_ingest_twice_keeps_one_row(self, reconciler, count_matches):
        fields = {"external_id": "m1", "match_time": NOW - 3600, "status_id": 2, "home_team_id": "t1"}
        created, result = await reconciler.ingest(fields, source=UpdateSource.BACKFILL, now=NOW)
        assert created is True
        assert result.status == ResultStatus.SUCCESS

        created, _ = await reconciler.ingest(fields, source=UpdateSource.POLLER, now=NOW)
        assert created is False
        assert await count_matches("m1") == 1


class TestApplyUpdates:

    @pytest.mark.asyncio
    async def test_audit_columns(self, store, add_match):
        await add_match("m1")
        result = await store.apply_updates(
            "m1",
            [
                UpdateIntent("status_id", 2, UpdateSource.POLLER, observed_at=NOW - 5),
                UpdateIntent("home_score_display", 1, UpdateSource.POLLER, observed_at=NOW - 5),
                UpdateIntent("home_team_id", "t1", UpdateSource.POLLER),
            ],
            now=NOW,
        )
        assert result.status == ResultStatus.SUCCESS
        assert set(result.applied) == {"status_id", "home_score_display", "home_team_id"}

        match = await store.get("m1")
        assert match.status_id == 2
        assert match.status_id_source == UpdateSource.POLLER
        assert match.status_id_timestamp == NOW - 5
        assert match.home_score_display_source == UpdateSource.POLLER
        assert match.home_score_display_timestamp == NOW - 5
        assert match.last_update_source == UpdateSource.POLLER

    @pytest.mark.asyncio
    async def test_observed_at_defaults_to_now(self, store, add_match):
        await add_match("m1")
        await store.apply_updates("m1", [UpdateIntent("minute", 12)], now=NOW)
        match = await store.get("m1")
        assert match.minute == 12
        assert match.minute_timestamp == NOW

    @pytest.mark.asyncio
    async def test_last_intent_per_field_wins(self, store, add_match):
        await add_match("m1")
        await store.apply_updates(
            "m1", [UpdateIntent("minute", 10), UpdateIntent("minute", 11)], now=NOW
        )
        assert (await store.get("m1")).minute == 11

    @pytest.mark.asyncio
    async def test_unknown_match(self, store):
        result = await store.apply_updates("nope", [UpdateIntent("status_id", 2)], now=NOW)
        assert result.status == ResultStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_field_rejected_others_applied(self, store, add_match):
        await add_match("m1")
        result = await store.apply_updates(
            "m1",
            [UpdateIntent("not_a_column", 1), UpdateIntent("id", 99), UpdateIntent("minute", 5)],
            now=NOW,
        )
        assert result.status == ResultStatus.SUCCESS
        assert result.rejected == ["not_a_column", "id"]
        assert (await store.get("m1")).minute == 5

    @pytest.mark.asyncio
    async def test_set_once_fields(self, store, add_match):
        await add_match("m1", first_half_kickoff_ts=NOW - 600)
        await store.apply_updates(
            "m1",
            [
                UpdateIntent("first_half_kickoff_ts", NOW - 100),
                UpdateIntent("second_half_kickoff_ts", None),
                UpdateIntent("match_time", NOW + 99999),
            ],
            now=NOW,
        )
        match = await store.get("m1")
        assert match.first_half_kickoff_ts == NOW - 600
        assert match.second_half_kickoff_ts is None
        assert match.match_time == NOW - 7200

    @pytest.mark.asyncio
    async def test_unknown_status_code_stored_as_abnormal(self, store, add_match):
        await add_match("m1")
        await store.apply_updates("m1", [UpdateIntent("status_id", 77)], now=NOW)
        assert (await store.get("m1")).status_id == MatchStatus.ABNORMAL


class TestTerminalStatus:

    @pytest.mark.asyncio
    async def test_finished_rejects_status_but_applies_other_fields(self, reconciler, store, add_match):
        await add_match("m1", status_id=8, home_score_display=2)
        result = await reconciler.reconcile_fields(
            "m1", {"status_id": 4, "home_score_display": 3}, source=UpdateSource.BACKFILL, now=NOW
        )
        assert result.status == ResultStatus.REJECTED_IMMUTABLE
        assert result.rejected == ["status_id"]
        assert result.applied == ["home_score_display"]

        match = await store.get("m1")
        assert match.status_id == MatchStatus.FINISHED
        assert match.home_score_display == 3

    @pytest.mark.asyncio
    async def test_finished_to_finished_is_quiet(self, reconciler, on_match_ended, add_match):
        await add_match("m1", status_id=8)
        result = await reconciler.reconcile_fields("m1", {"status_id": 8}, now=NOW)
        assert result.status == ResultStatus.SUCCESS
        assert result.ended is False
        on_match_ended.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_match_ended_fires_once(self, reconciler, on_match_ended, add_match):
        await add_match("m1", status_id=4)

        first = await reconciler.reconcile_fields("m1", {"status_id": 8}, now=NOW)
        second = await reconciler.reconcile_fields("m1", {"status_id": 8}, now=NOW)
        third = await reconciler.reconcile_fields("m1", {"status_id": 2}, now=NOW)

        assert first.ended is True
        assert first.previous_status == 4
        assert first.current_status == 8
        assert second.ended is False
        assert third.status == ResultStatus.REJECTED_IMMUTABLE
        on_match_ended.assert_awaited_once_with("m1", UpdateSource.POLLER)

    @pytest.mark.asyncio
    async def test_random_sequences_never_leave_finished(self, session_factory, add_match):
        rng = random.Random(20)
        sources = list(UpdateSource.ALL)
        for n in range(20):
            external_id = f"rand{n}"
            await add_match(external_id, status_id=1)
            ended = AsyncMock()
            reconciler = Reconciler(MatchStore(session_factory, max_retries=1, retry_delay=0), on_match_ended=ended)

            seen_finished = False
            for _ in range(30):
                status = rng.choice([1, 2, 3, 4, 5, 7, 8, 8, 9, 12, 0])
                result = await reconciler.reconcile_fields(
                    external_id, {"status_id": status, "minute": rng.randint(1, 95)},
                    source=rng.choice(sources), now=NOW,
                )
                if status == MatchStatus.FINISHED:
                    seen_finished = True
                current = await reconciler.store.get_status(external_id)
                if seen_finished:
                    assert current == MatchStatus.FINISHED
                assert result.status in (ResultStatus.SUCCESS, ResultStatus.REJECTED_IMMUTABLE)

            assert ended.await_count == (1 if seen_finished else 0)

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_fail_reconcile(self, store, add_match):
        await add_match("m1", status_id=4)
        reconciler = Reconciler(store, on_match_ended=AsyncMock(side_effect=RuntimeError("bus down")))
        result = await reconciler.reconcile_fields("m1", {"status_id": 8}, now=NOW)
        assert result.ended is True
        assert await store.get_status("m1") == 8


class TestFutureMatchGuard:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [8, 10, 12])
    async def test_terminal_status_before_kickoff_downgraded(self, reconciler, on_match_ended, store, add_match, status):
        await add_match("m1", match_time=NOW + 3600, status_id=1)
        result = await reconciler.reconcile_fields("m1", {"status_id": status}, now=NOW)
        assert result.status == ResultStatus.SUCCESS
        assert result.downgraded is True
        assert result.ended is False
        assert await store.get_status("m1") == MatchStatus.NOT_STARTED
        on_match_ended.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_live_status_before_kickoff_applied(self, reconciler, store, add_match):
        await add_match("m1", match_time=NOW + 120, status_id=1)
        result = await reconciler.reconcile_fields("m1", {"status_id": 2}, now=NOW)
        assert result.downgraded is False
        assert await store.get_status("m1") == MatchStatus.FIRST_HALF

    @pytest.mark.asyncio
    async def test_past_kickoff_finishes_normally(self, reconciler, store, add_match):
        await add_match("m1", match_time=NOW - 7200, status_id=4)
        result = await reconciler.reconcile_fields("m1", {"status_id": 8}, now=NOW)
        assert result.ended is True
        assert await store.get_status("m1") == MatchStatus.FINISHED


class TestEventTimeOrdering:

    @pytest.fixture
    def ordered_store(self, session_factory):
        return MatchStore(session_factory, max_retries=1, retry_delay=0, event_time_ordering=True)

    @pytest.mark.asyncio
    async def test_backfill_loses_to_poller(self, ordered_store, add_match):
        await add_match("m1")
        await ordered_store.apply_updates(
            "m1", [UpdateIntent("status_id", 4, UpdateSource.POLLER, observed_at=NOW - 100)], now=NOW
        )
        result = await ordered_store.apply_updates(
            "m1", [UpdateIntent("status_id", 1, UpdateSource.BACKFILL, observed_at=NOW)], now=NOW
        )
        assert result.status == ResultStatus.REJECTED_STALE
        assert await ordered_store.get_status("m1") == 4

    @pytest.mark.asyncio
    async def test_older_observation_same_priority_rejected(self, ordered_store, add_match):
        await add_match("m1")
        await ordered_store.apply_updates(
            "m1", [UpdateIntent("minute", 30, UpdateSource.POLLER, observed_at=NOW)], now=NOW
        )
        result = await ordered_store.apply_updates(
            "m1", [UpdateIntent("minute", 28, UpdateSource.PUSH, observed_at=NOW - 60)], now=NOW
        )
        assert result.status == ResultStatus.REJECTED_STALE
        assert (await ordered_store.get("m1")).minute == 30

    @pytest.mark.asyncio
    async def test_manual_overrides(self, ordered_store, add_match):
        await add_match("m1")
        await ordered_store.apply_updates(
            "m1", [UpdateIntent("status_id", 4, UpdateSource.POLLER, observed_at=NOW)], now=NOW
        )
        result = await ordered_store.apply_updates(
            "m1", [UpdateIntent("status_id", 3, UpdateSource.MANUAL, observed_at=NOW - 600)], now=NOW
        )
        assert result.status == ResultStatus.SUCCESS
        assert await ordered_store.get_status("m1") == 3

    @pytest.mark.asyncio
    async def test_arrival_order_when_disabled(self, store, add_match):
        await add_match("m1")
        await store.apply_updates(
            "m1", [UpdateIntent("status_id", 4, UpdateSource.POLLER, observed_at=NOW)], now=NOW
        )
        await store.apply_updates(
            "m1", [UpdateIntent("status_id", 1, UpdateSource.BACKFILL, observed_at=NOW - 600)], now=NOW
        )
        assert await store.get_status("m1") == 1


class TestErrors:

    @pytest.mark.asyncio
    async def test_non_transient_failure_is_error_result(self, reconciler, on_match_ended, store, add_match):
        await add_match("m1", status_id=4)
        with patch.object(store, "_plan", side_effect=ValueError("bad column type")):
            result = await reconciler.reconcile_fields("m1", {"status_id": 8}, now=NOW)
        assert result.status == ResultStatus.ERROR
        assert "bad column type" in result.reason
        on_match_ended.assert_not_awaited()
        assert await store.get_status("m1") == 4

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        result = await store.apply_updates("m1", [], now=NOW)
        assert result.status == ResultStatus.SUCCESS


class TestIntentsFromFields:

    def test_identity_fields_excluded(self):
        intents = intents_from_fields(
            {"external_id": "m1", "match_time": NOW, "status_id": 2, "minute": 3},
            UpdateSource.BACKFILL,
            observed_at=NOW,
        )
        assert [i.field for i in intents] == ["status_id", "minute"]
        assert all(i.source == UpdateSource.BACKFILL and i.observed_at == NOW for i in intents)
