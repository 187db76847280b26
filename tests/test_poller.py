"""
Tests for the change-detection poller.

Verifies:
- Unknown ids from the change feed are ingested on the fly, once
- Generic detail endpoint is used when the live feed drops a match
- One failing match does not abort the cycle
- A database outage aborts the cycle
- A second tick while a cycle is running is skipped
- Empty live stats never erase stored data
- Trend and player stats are cached while live, throttled per match
- A match already FINISHED still gets its final stats persisted
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from livesync.errors import ProviderError
from livesync.etl.base import ChangedMatch
from livesync.jobs.finalizer import PostMatchFinalizer
from livesync.jobs.poller import ChangeDetectionPoller, PollerState
from livesync.matches.status import MatchStatus, UpdateSource

NOW = 1_760_000_000


def live_record(match_id, status, home, away, kickoff=None, **extra):
    home_scores = [home, 0, 0, 0, 0, 0, 0]
    away_scores = [away, 0, 0, 0, 0, 0, 0]
    return {"id": match_id, "score": [match_id, status, home_scores, away_scores, kickoff or 0, ""], **extra}


@pytest.fixture
def finalizer():
    return AsyncMock()


@pytest.fixture
def poller(provider, reconciler, store, live_cache, finalizer):
    return ChangeDetectionPoller(provider, reconciler, store, live_cache=live_cache, finalizer=finalizer)


class TestCycle:

    @pytest.mark.asyncio
    async def test_empty_feed(self, poller, provider):
        result = await poller.run_once(now=NOW)
        assert result["status"] == "ok"
        assert result["changed"] == 0
        provider.fetch_live_detail.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_known_match_reconciled(self, poller, provider, store, add_match):
        await add_match("m1", match_time=NOW - 1800, status_id=1)
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1", NOW - 3)]
        provider.fetch_live_detail.return_value = live_record("m1", 2, 1, 0, kickoff=NOW - 1700, minute=29)

        result = await poller.run_once(now=NOW)

        assert result["status"] == "ok"
        assert result["reconciled"] == 1
        match = await store.get("m1")
        assert match.status_id == MatchStatus.FIRST_HALF
        assert match.home_score_display == 1
        assert match.away_score_display == 0
        assert match.minute == 29
        assert match.first_half_kickoff_ts == NOW - 1700
        assert match.status_id_source == UpdateSource.POLLER
        assert match.status_id_timestamp == NOW - 3
        assert poller.state == PollerState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_match_ingested_once(self, poller, provider, store, count_matches):
        provider.fetch_changed_matches.return_value = [ChangedMatch("new1", NOW - 5)]
        provider.fetch_match_detail.return_value = {
            "id": "new1",
            "match_time": NOW - 1800,
            "status_id": 2,
            "home_team_id": "t1",
            "away_team_id": "t2",
        }
        provider.fetch_live_detail.return_value = live_record("new1", 2, 0, 0, kickoff=NOW - 1700)

        first = await poller.run_once(now=NOW)
        second = await poller.run_once(now=NOW + 20)

        assert first["ingested"] == 1
        assert second["ingested"] == 0
        assert await count_matches("new1") == 1
        match = await store.get("new1")
        assert match.home_team_id == "t1"
        assert match.status_id == MatchStatus.FIRST_HALF

    @pytest.mark.asyncio
    async def test_unknown_match_without_detail_skipped(self, poller, provider, count_matches):
        provider.fetch_changed_matches.return_value = [ChangedMatch("ghost")]
        result = await poller.run_once(now=NOW)
        assert result["skipped"] == 1
        assert await count_matches() == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_match_detail(self, poller, provider, store, finalizer, on_match_ended, add_match):
        await add_match("m1", match_time=NOW - 7200, status_id=4)
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1")]
        provider.fetch_live_detail.return_value = None
        provider.fetch_match_detail.return_value = {
            "id": "m1",
            "status_id": 8,
            "home_scores": [2, 1, 0, 0, 0, 0, 0],
            "away_scores": [1, 0, 0, 0, 0, 0, 0],
        }

        result = await poller.run_once(now=NOW)

        assert result["reconciled"] == 1
        provider.fetch_match_detail.assert_awaited_once_with("m1")
        match = await store.get("m1")
        assert match.status_id == MatchStatus.FINISHED
        assert (match.home_score_display, match.away_score_display) == (2, 1)
        on_match_ended.assert_awaited_once_with("m1", UpdateSource.POLLER)
        finalizer.persist_final_stats.assert_awaited_once_with("m1")

    @pytest.mark.asyncio
    async def test_per_match_error_does_not_abort(self, poller, provider, store, add_match):
        await add_match("bad", status_id=2)
        await add_match("good", status_id=2)
        provider.fetch_changed_matches.return_value = [ChangedMatch("bad"), ChangedMatch("good")]

        async def live_detail(match_id):
            if match_id == "bad":
                raise RuntimeError("malformed response")
            return live_record("good", 4, 1, 1)

        provider.fetch_live_detail.side_effect = live_detail

        result = await poller.run_once(now=NOW)

        assert result["status"] == "ok"
        assert result["errors"] == 1
        assert result["reconciled"] == 1
        assert await store.get_status("good") == MatchStatus.SECOND_HALF

    @pytest.mark.asyncio
    async def test_database_outage_aborts_cycle(self, poller, provider, store):
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1"), ChangedMatch("m2")]
        store.get = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("connection refused")))

        result = await poller.run_once(now=NOW)

        assert result["status"] == "db_unavailable"
        assert store.get.await_count == 1
        provider.fetch_live_detail.assert_not_awaited()
        assert poller.state == PollerState.IDLE

    @pytest.mark.asyncio
    async def test_change_feed_failure(self, poller, provider):
        provider.fetch_changed_matches.side_effect = ProviderError("data/update: HTTP 503")
        result = await poller.run_once(now=NOW)
        assert result["status"] == "provider_error"


class TestLiveData:

    @pytest.mark.asyncio
    async def test_empty_stats_do_not_erase(self, poller, provider, store, add_match):
        stored = [{"type": 25, "home": 60, "away": 40}]
        await add_match("m1", status_id=4, statistics=stored)
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1")]
        provider.fetch_live_detail.return_value = live_record("m1", 4, 0, 0, stats=[], incidents=[])

        await poller.run_once(now=NOW)

        assert (await store.get("m1")).statistics == stored

    @pytest.mark.asyncio
    async def test_live_stats_cached(self, poller, provider, live_cache, add_match):
        await add_match("m1", status_id=2)
        stats = [{"type": 25, "home": 52, "away": 48}]
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1")]
        provider.fetch_live_detail.return_value = live_record("m1", 2, 0, 0, stats=stats)

        await poller.run_once(now=NOW)

        cached = await live_cache.get("m1")
        assert cached.statistics == stats
        assert cached.incidents is None

    @pytest.mark.asyncio
    async def test_live_trend_and_players_cached(self, poller, provider, live_cache, add_match):
        await add_match("m1", status_id=4)
        trend = {"first_half": [1, -2, 3], "second_half": [2]}
        players = [{"player_id": "p1", "rating": "7.1"}]
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1", NOW - 2)]
        provider.fetch_live_detail.return_value = live_record("m1", 4, 1, 0)
        provider.fetch_match_trend.return_value = trend
        provider.fetch_player_stats.return_value = players

        await poller.run_once(now=NOW)

        cached = await live_cache.get("m1")
        assert cached.trend_data == trend
        assert cached.player_stats == players

    @pytest.mark.asyncio
    async def test_live_extras_throttled_per_match(self, poller, provider, add_match):
        await add_match("m1", status_id=2)
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1")]
        provider.fetch_live_detail.return_value = live_record("m1", 2, 0, 0)

        await poller.run_once(now=NOW)
        await poller.run_once(now=NOW + 20)
        assert provider.fetch_match_trend.await_count == 1

        await poller.run_once(now=NOW + 200)
        assert provider.fetch_match_trend.await_count == 2
        assert provider.fetch_player_stats.await_count == 2

    @pytest.mark.asyncio
    async def test_cached_trend_survives_final_whistle(self, provider, reconciler, store, live_cache, add_match):
        finalizer = PostMatchFinalizer(provider, store, live_cache, track_runs=False)
        poller = ChangeDetectionPoller(provider, reconciler, store, live_cache=live_cache, finalizer=finalizer)
        await add_match("m1", status_id=4)
        trend = {"first_half": [1, -2, 3], "second_half": [2, 4]}
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1", NOW - 2)]
        provider.fetch_live_detail.return_value = live_record("m1", 4, 1, 0)
        provider.fetch_match_trend.return_value = trend
        await poller.run_once(now=NOW)

        # The trend endpoint lets go of the match once it ends
        provider.fetch_match_trend.return_value = None
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1", NOW + 58)]
        provider.fetch_live_detail.return_value = live_record("m1", 8, 1, 0)
        await poller.run_once(now=NOW + 60)

        match = await store.get("m1")
        assert match.status_id == MatchStatus.FINISHED
        assert match.trend_data == trend
        provider.fetch_match_trend.assert_awaited_once_with("m1")

    @pytest.mark.asyncio
    async def test_already_finished_match_persists_final_stats(
        self, poller, provider, store, finalizer, on_match_ended, add_match
    ):
        await add_match("m1", status_id=8, home_score_display=2, away_score_display=1)
        provider.fetch_changed_matches.return_value = [ChangedMatch("m1", NOW - 5)]
        provider.fetch_live_detail.return_value = live_record("m1", 8, 2, 1)

        result = await poller.run_once(now=NOW)

        assert result["reconciled"] == 1
        on_match_ended.assert_not_awaited()
        finalizer.persist_final_stats.assert_awaited_once_with("m1")
        provider.fetch_match_trend.assert_not_awaited()


class TestReentrancy:

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, poller, provider):
        release = asyncio.Event()

        async def slow_feed():
            await release.wait()
            return []

        provider.fetch_changed_matches.side_effect = slow_feed

        first = asyncio.create_task(poller.tick())
        for _ in range(50):
            if poller.is_running:
                break
            await asyncio.sleep(0)
        assert poller.is_running

        skipped = await poller.tick()
        assert skipped == {"status": "skipped"}

        release.set()
        result = await first
        assert result["status"] == "ok"
        assert provider.fetch_changed_matches.await_count == 1
        assert not poller.is_running
