"""
Shared test configuration and fixtures.

Most tests run against an in-memory SQLite database (aiosqlite) and fakeredis, so they need no services. The
`pg_engine`/`pg_session` fixtures target a real PostgreSQL server and skip when none is reachable.
"""

import os
import uuid
from datetime import datetime, timezone
from unittest.mock import Mock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from finance.tradedash.api import model  # noqa: F401
from finance.tradedash.api.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
)
from finance.tradedash.api.app.metrics import NoOpMetricsClient
from finance.tradedash.api.app.server import build_app
from finance.tradedash.api.model.base import Base
from finance.tradedash.api.model.providers import ensure_providers


# PostgreSQL test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError):
        return False
    finally:
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def pg_database():
    """Create and drop a uniquely named PostgreSQL database for one test."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"tradedash_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )
    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def pg_engine(pg_database):
    engine = create_async_engine(pg_database, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def pg_session(pg_engine):
    async_session = async_sessionmaker(
        pg_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def engine():
    """In-memory SQLite engine with the full schema and the provider rows."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        async with session.begin():
            await ensure_providers(session, datetime.now(timezone.utc))

    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def settings_overrides():
    """Override in a test module to change individual settings."""
    return {}


@pytest.fixture
def settings(settings_overrides):
    values = dict(
        worker_id="test-worker",
        environment="development",
        debug=False,
        jwt_secret="test-jwt-secret-for-the-tradedash-suite",
        google_client_id="test-client-id.apps.googleusercontent.com",
        google_client_secret="test-client-secret",
        google_redirect_uri="http://localhost:8787/api/auth/oauth/callback",
        frontend_base_url="http://localhost:3000",
        database_url="sqlite+aiosqlite:///:memory:",
        metrics_backend="none",
        sentry_dsn=None,
    )
    values.update(settings_overrides)
    return Settings(**values)


@pytest.fixture
def http_session():
    """Stand-in for the shared aiohttp ClientSession. Tests set `.post`/`.get` to fake Google."""
    return Mock()


@pytest.fixture
def app(settings, engine, session_maker, fake_redis_client, http_session):
    app = build_app(settings)
    app[DatabaseAppKey] = engine
    app[DatabaseSessionMakerAppKey] = session_maker
    app[RedisClientAppKey] = fake_redis_client
    app[MetricsClientAppKey] = NoOpMetricsClient()
    app[SessionAppKey] = http_session
    return app


@pytest_asyncio.fixture
async def client(app):
    async with TestClient(TestServer(app)) as client:
        yield client
