"""
Tests for the HTTP surface.

Runs the ASGI app in-process; the lifespan is not started, so services are
wired onto app.state by the fixture against the test database.
"""

import httpx
import pytest
import pytest_asyncio

from livesync.config import get_settings
from livesync.main import app
from livesync.services import build_services


@pytest_asyncio.fixture
async def client(session_factory, provider):
    app.state.services = build_services(session_factory=session_factory, provider=provider)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    del app.state.services


class TestMatchRoutes:

    @pytest.mark.asyncio
    async def test_match_view(self, client, add_match):
        await add_match("m1", status_id=8, home_score_display=2, away_score_display=1)

        response = await client.get("/matches/m1")

        assert response.status_code == 200
        body = response.json()
        assert body["minute_label"] == "FT"
        assert body["home_score"] == 2
        assert body["away_score"] == 1

    @pytest.mark.asyncio
    async def test_unknown_match(self, client):
        response = await client.get("/matches/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_match_detail(self, client, add_match):
        await add_match("m1", status_id=8, statistics=[{"type": 25}], incidents=[{"type": 1}])

        response = await client.get("/matches/m1/detail")

        assert response.status_code == 200
        assert response.json()["missing"] == []


class TestCoreRoutes:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["event_bus_pending"] == 0
        assert body["last_success"]["window_sync"] is None

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "livesync_" in response.text

    @pytest.mark.asyncio
    async def test_metrics_token(self, client, monkeypatch):
        monkeypatch.setattr(get_settings(), "METRICS_BEARER_TOKEN", "s3cret")

        assert (await client.get("/metrics")).status_code == 401
        assert (await client.get("/metrics", headers={"Authorization": "Bearer nope"})).status_code == 401
        ok = await client.get("/metrics", headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200
