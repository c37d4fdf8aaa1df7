"""
Request middleware.

`MIDDLEWARES` is listed outermost first:

- cors_middleware answers preflight requests and adds CORS headers to everything else
- security_headers_middleware hardens /api/auth/ responses
- metrics_middleware times and counts requests
- error_middleware turns exceptions into the JSON error envelope
- sentry_middleware reports unexpected exceptions
- rate_limit_middleware throttles POSTs to /api/auth/
"""

import logging
from time import time

from aiohttp import web
from redis.exceptions import RedisError
import sentry_sdk

from finance.tradedash.api.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SettingsAppKey,
)
from finance.tradedash.api.app.cors import get_cors_headers
from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.app.handlers.helpers import client_ip

logger = logging.getLogger(__name__)

AUTH_PATH_PREFIX = "/api/auth/"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
}

RATE_LIMIT_WINDOW = 60


@web.middleware
async def cors_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    cors_headers = get_cors_headers(
        request.headers.get("Origin"), request.path, settings
    )

    if request.method == "OPTIONS":
        return web.Response(status=204, headers=cors_headers)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(cors_headers)
        raise
    response.headers.update(cors_headers)
    return response


@web.middleware
async def security_headers_middleware(request: web.Request, handler):
    if not request.path.startswith(AUTH_PATH_PREFIX):
        return await handler(request)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(SECURITY_HEADERS)
        raise
    response.headers.update(SECURITY_HEADERS)
    return response


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise
    finally:
        metrics_client.timer(
            "server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except AppError as e:
        if e.status >= 500:
            logger.error("%s %s failed: %r", request.method, request.path, e)
        return e.to_response()
    except web.HTTPNotFound:
        return AppError.not_found("Endpoint not found").to_response()
    except web.HTTPMethodNotAllowed as e:
        response = AppError.method_not_allowed(request.method).to_response()
        response.headers["Allow"] = ",".join(sorted(e.allowed_methods))
        return response
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return AppError(f"HTTP_{e.status}", e.status, e.reason).to_response()
    except Exception as e:
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        await request.app[HealthGaugeAppKey].womp()

        settings = request.app[SettingsAppKey]
        details = {"type": type(e).__name__, "message": str(e)} if settings.debug else None
        return AppError.internal(details=details).to_response()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except (AppError, web.HTTPException):
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def rate_limit_middleware(request: web.Request, handler):
    if request.method != "POST" or not request.path.startswith(AUTH_PATH_PREFIX):
        return await handler(request)

    settings = request.app[SettingsAppKey]
    if settings.auth_rate_limit_per_minute <= 0:
        return await handler(request)

    window = int(time()) // RATE_LIMIT_WINDOW
    key = f"ratelimit:auth:{client_ip(request) or 'unknown'}:{window}"

    redis_client = request.app[RedisClientAppKey]
    try:
        count = await redis_client.incr(key)
        if count == 1:
            await redis_client.expire(key, RATE_LIMIT_WINDOW)
    except RedisError:
        logger.warning("Rate limiter unavailable, allowing request", exc_info=True)
        return await handler(request)

    if count > settings.auth_rate_limit_per_minute:
        request.app[MetricsClientAppKey].increment(
            "server.request.rate_limited", 1, tag_dict={"path": request.path}
        )
        raise AppError.rate_limited()

    return await handler(request)


MIDDLEWARES = [
    cors_middleware,
    security_headers_middleware,
    metrics_middleware,
    error_middleware,
    sentry_middleware,
    rate_limit_middleware,
]
