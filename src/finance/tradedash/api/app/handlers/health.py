"""
Service health and information endpoints used by the dashboard and by load balancers.

- GET / - Redirect to the dashboard app
- GET /api/health - Liveness summary
- GET /api/info - Service name, version and environment
- GET /api/test/database - Database round trip
"""

import logging

from aiohttp import web
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from finance.tradedash.api.app.config import DatabaseSessionMakerAppKey, SettingsAppKey
from finance.tradedash.api.app.errors import utc_now

logger = logging.getLogger(__name__)


async def handle_index(request: web.Request):
    raise web.HTTPFound("/app")


async def handle_health(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(
        {
            "status": "healthy",
            "service": settings.service_name,
            "timestamp": utc_now().isoformat(),
            "version": settings.service_version,
        }
    )


async def handle_info(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(
        {
            "name": settings.service_name,
            "version": settings.service_version,
            "environment": settings.environment,
            "timestamp": utc_now().isoformat(),
        }
    )


async def handle_test_database(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]

    database_connected = False
    try:
        async with database_session_maker() as database_session:
            result = await database_session.execute(text("SELECT 1"))
            database_connected = result.scalar() == 1
    except (SQLAlchemyError, OSError):
        logger.exception("Database connectivity check failed")

    return web.json_response(
        {
            "database_connected": database_connected,
            "timestamp": utc_now().isoformat(),
        }
    )
