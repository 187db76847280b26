"""Shared fixtures: in-memory SQLite schema, match store and a mocked provider."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlmodel import SQLModel

import livesync.models  # noqa: F401
from livesync.database import build_engine, build_session_factory
from livesync.etl.base import ProviderGateway
from livesync.matches.live_cache import LiveStatsCacheStore
from livesync.matches.reconciler import Reconciler
from livesync.matches.store import MatchStore
from livesync.models import Match

# Fixed "now" used across tests (2025-10-09 08:53:20 UTC)
NOW = 1_760_000_000


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return MatchStore(session_factory, max_retries=2, retry_delay=0)


@pytest.fixture
def live_cache(session_factory):
    return LiveStatsCacheStore(session_factory)


@pytest.fixture
def on_match_ended():
    return AsyncMock()


@pytest.fixture
def reconciler(store, on_match_ended):
    return Reconciler(store, on_match_ended=on_match_ended)


def make_provider() -> AsyncMock:
    """Provider double whose fetches return nothing unless a test says otherwise."""
    provider = AsyncMock(spec=ProviderGateway)
    provider.fetch_changed_matches.return_value = []
    for name in (
        "fetch_live_detail",
        "fetch_match_detail",
        "fetch_match_statistics",
        "fetch_match_incidents",
        "fetch_match_trend",
        "fetch_player_stats",
        "fetch_lineup",
        "fetch_h2h",
        "fetch_standings",
    ):
        getattr(provider, name).return_value = None
    return provider


@pytest.fixture
def provider():
    return make_provider()


@pytest.fixture
def add_match(session_factory):
    """Insert a match row directly, bypassing the reconciler."""

    async def _add(external_id: str, match_time: int = NOW - 7200, **fields) -> None:
        async with session_factory() as session:
            session.add(Match(external_id=external_id, match_time=match_time, **fields))
            await session.commit()

    return _add


@pytest.fixture
def count_matches(session_factory):
    async def _count(external_id: str = None) -> int:
        query = select(func.count()).select_from(Match)
        if external_id is not None:
            query = query.where(Match.external_id == external_id)
        async with session_factory() as session:
            return (await session.execute(query)).scalar_one()

    return _count
