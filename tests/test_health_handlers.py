"""
Tests for the health, info and internal readiness endpoints.
"""

import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from finance.tradedash.api.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
)


class TestPublicEndpoints:
    async def test_index_redirects_to_app(self, client):
        resp = await client.get("/", allow_redirects=False)

        assert resp.status == 302
        assert resp.headers["Location"] == "/app"

    async def test_health(self, client, settings):
        resp = await client.get("/api/health")

        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "healthy"
        assert body["service"] == settings.service_name
        assert body["version"] == settings.service_version
        assert body["timestamp"]

    async def test_info(self, client, settings):
        body = await (await client.get("/api/info")).json()

        assert body["name"] == settings.service_name
        assert body["environment"] == "development"

    async def test_database_round_trip(self, client):
        body = await (await client.get("/api/test/database")).json()

        assert body["database_connected"] is True


class TestDatabaseUnavailable:
    @pytest_asyncio.fixture
    async def broken_database_client(self, app, tmp_path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path}/missing/dir/tradedash.db"
        )
        app[DatabaseSessionMakerAppKey] = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        async with TestClient(TestServer(app)) as client:
            yield client
        await engine.dispose()

    async def test_reports_disconnected(self, broken_database_client):
        resp = await broken_database_client.get("/api/test/database")

        assert resp.status == 200
        assert (await resp.json())["database_connected"] is False


class TestInternalEndpoints:
    async def test_alive(self, client):
        resp = await client.get("/internal/alive")

        assert resp.status == 200

    async def test_ready_follows_health_gauge(self, client, app):
        assert (await client.get("/internal/ready")).status == 200

        await app[HealthGaugeAppKey].womp(101)
        assert (await client.get("/internal/ready")).status == 503

        await app[HealthGaugeAppKey].tick()
        assert (await client.get("/internal/ready")).status == 200
