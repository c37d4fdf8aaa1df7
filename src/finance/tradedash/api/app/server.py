import asyncio
import contextlib
import logging
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from finance.tradedash.api.app.config import (
    CleanupTaskAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    TokenRefreshTaskAppKey,
    TradingServiceAppKey,
)
from finance.tradedash.api.app.errors import utc_now
from finance.tradedash.api.app.handlers.auth import (
    handle_login,
    handle_me,
    handle_register,
)
from finance.tradedash.api.app.handlers.health import (
    handle_health,
    handle_index,
    handle_info,
    handle_test_database,
)
from finance.tradedash.api.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from finance.tradedash.api.app.handlers import market_data, trading
from finance.tradedash.api.app.handlers.oauth import (
    handle_list_sessions,
    handle_logout,
    handle_oauth_callback,
    handle_oauth_exchange,
    handle_oauth_login,
    handle_oauth_token,
    handle_session_user,
)
from finance.tradedash.api.app.metrics import create_metrics_client
from finance.tradedash.api.app.middleware import MIDDLEWARES
from finance.tradedash.api.app.tasks import (
    cleanup_task,
    tick_health_task,
    token_refresh_task,
)
from finance.tradedash.api.model.health import HealthGauge
from finance.tradedash.api.model.providers import ensure_providers
from finance.tradedash.api.trading.service import TradingService

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(settings.database_url)
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    async with database_session() as session:
        async with session.begin():
            added = await ensure_providers(session, utc_now())
    if added:
        logger.info("Added %d missing provider rows", added)

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    redis_pool = redis.ConnectionPool.from_url(
        settings.redis_dsn, decode_responses=True
    )
    app[RedisPoolAppKey] = redis_pool
    app[RedisClientAppKey] = redis.Redis(connection_pool=redis_pool)

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
        prefix=settings.statsd_prefix,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[TokenRefreshTaskAppKey] = asyncio.create_task(token_refresh_task(app))
    app[CleanupTaskAppKey] = asyncio.create_task(cleanup_task(app))

    yield

    logger.info("Shutting down background tasks")

    for task_key in (TickHealthTaskAppKey, TokenRefreshTaskAppKey, CleanupTaskAppKey):
        app[task_key].cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app[task_key]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[MetricsClientAppKey].close()


def build_app(settings: Settings) -> web.Application:
    """
    Create the application with its routes, middleware and in-process services.

    Connections to the database, redis and the metrics backend are added by `start_web_server`; tests put their
    own into the app before starting it.
    """
    app = web.Application(middlewares=MIDDLEWARES)

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    app[TradingServiceAppKey] = TradingService(settings.exchange_credentials())

    app.add_routes(
        [
            web.get("/", handle_index),
            web.get("/api/health", handle_health),
            web.get("/api/info", handle_info),
            web.get("/api/test/database", handle_test_database),
        ]
    )

    app.add_routes(
        [
            web.post("/api/auth/register", handle_register),
            web.post("/api/auth/login", handle_login),
            web.get("/api/auth/me", handle_me),
            web.get("/api/auth/oauth/login", handle_oauth_login),
            web.get("/api/auth/oauth/callback", handle_oauth_callback),
            web.post("/api/auth/oauth/token", handle_oauth_token),
            web.post("/api/auth/oauth/exchange", handle_oauth_exchange),
            web.get("/api/auth/user", handle_session_user),
            web.post("/api/auth/logout", handle_logout),
            web.get("/api/auth/sessions", handle_list_sessions),
        ]
    )

    app.add_routes(
        [
            web.post("/api/market-data/subscribe", market_data.handle_subscribe),
            web.post("/api/market-data/instruments", market_data.handle_instruments),
            web.post("/api/market-data/trades", market_data.handle_trades),
            web.get("/api/market-data/status", market_data.handle_status),
        ]
    )

    app.add_routes(
        [
            web.post("/api/trading/quote", trading.handle_quote),
            web.post("/api/trading/orderbook", trading.handle_order_book),
            web.post("/api/trading/order", trading.handle_place_order),
            web.post("/api/trading/balances", trading.handle_balances),
            web.post("/api/trading/instruments", trading.handle_instruments),
            web.post("/api/trading/status", trading.handle_trading_status),
            web.get("/api/trading/health", trading.handle_trading_health),
            web.get("/api/trading/config", trading.handle_trading_config),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            release=settings.service_version,
            integrations=[AioHttpIntegration()],
        )

    app = build_app(settings)
    app.cleanup_ctx.append(background_tasks)
    return app
