"""
Tests for database helpers.

Verifies:
- URL conversion to async drivers
- Transient vs permanent error classification
- run_with_retry retries only transient failures
- Dialect-native upsert / insert-if-absent on SQLite
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from livesync.database import get_database_url, is_transient_db_error, run_with_retry
from livesync.db_utils import bulk_upsert, insert_if_absent, upsert
from livesync.models import Team


def _operational(message="server closed the connection unexpectedly"):
    return OperationalError("UPDATE matches ...", {}, Exception(message))


class TestDatabaseUrl:

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("sqlite:///./livesync.db", "sqlite+aiosqlite:///./livesync.db"),
            ("postgres://u:p@db/live", "postgresql+asyncpg://u:p@db/live"),
            ("postgresql://u:p@db/live", "postgresql+asyncpg://u:p@db/live"),
            ("postgresql+asyncpg://u:p@db/live", "postgresql+asyncpg://u:p@db/live"),
        ],
    )
    def test_async_driver(self, url, expected):
        assert get_database_url(url) == expected


class TestTransientErrors:

    def test_operational_is_transient(self):
        assert is_transient_db_error(_operational())

    def test_integrity_is_permanent(self):
        error = IntegrityError("INSERT ...", {}, Exception("duplicate key value violates unique constraint"))
        assert not is_transient_db_error(error)

    def test_dbapi_deadlock_is_transient(self):
        error = DBAPIError("UPDATE ...", {}, Exception("deadlock detected"))
        assert is_transient_db_error(error)

    def test_dbapi_other_is_permanent(self):
        error = DBAPIError("UPDATE ...", {}, Exception("column \"foo\" does not exist"))
        assert not is_transient_db_error(error)

    def test_plain_errors(self):
        assert is_transient_db_error(ConnectionResetError())
        assert not is_transient_db_error(ValueError("bad"))


class TestRunWithRetry:

    @pytest.mark.asyncio
    async def test_transient_then_ok(self):
        write = AsyncMock(side_effect=[_operational(), "done"])
        assert await run_with_retry(write, max_retries=3, base_wait=0) == "done"
        assert write.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self):
        write = AsyncMock(side_effect=IntegrityError("INSERT ...", {}, Exception("unique")))
        with pytest.raises(IntegrityError):
            await run_with_retry(write, max_retries=3, base_wait=0)
        assert write.await_count == 1

    @pytest.mark.asyncio
    async def test_exhausted(self):
        write = AsyncMock(side_effect=_operational())
        with pytest.raises(OperationalError):
            await run_with_retry(write, max_retries=2, base_wait=0)
        assert write.await_count == 2


class TestUpsert:

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self, session_factory):
        async with session_factory() as session:
            await upsert(session, Team, {"external_id": "t1", "name": "Gala"}, conflict_columns=["external_id"])
            await upsert(session, Team, {"external_id": "t1", "name": "Galatasaray"}, conflict_columns=["external_id"])
            await session.commit()
            teams = (await session.execute(select(Team))).scalars().all()

        assert len(teams) == 1
        assert teams[0].name == "Galatasaray"

    @pytest.mark.asyncio
    async def test_insert_if_absent(self, session_factory):
        async with session_factory() as session:
            first = await insert_if_absent(session, Team, {"external_id": "t1", "name": "A"}, ["external_id"])
            second = await insert_if_absent(session, Team, {"external_id": "t1", "name": "B"}, ["external_id"])
            await session.commit()
            team = (await session.execute(select(Team))).scalar_one()

        assert first is True
        assert second is False
        assert team.name == "A"

    @pytest.mark.asyncio
    async def test_bulk_upsert_counts(self, session_factory):
        rows = [{"external_id": "t1", "name": "A"}, {"external_id": "t2", "name": "B"}]
        async with session_factory() as session:
            count = await bulk_upsert(session, Team, rows, conflict_columns=["external_id"])
            await session.commit()
        assert count == 2

    @pytest.mark.asyncio
    async def test_bulk_upsert_mixed_columns_and_repeats(self, session_factory):
        rows = [
            {"external_id": "t1", "name": "Gala"},
            {"external_id": "t2"},
            {"external_id": "t1", "name": "Galatasaray", "short_name": "GS"},
        ]
        async with session_factory() as session:
            count = await bulk_upsert(session, Team, rows, conflict_columns=["external_id"])
            await session.commit()
            teams = {t.external_id: t for t in (await session.execute(select(Team))).scalars()}

        assert count == 2
        assert teams["t1"].name == "Galatasaray"
        assert teams["t1"].short_name == "GS"
        assert teams["t2"].name is None
