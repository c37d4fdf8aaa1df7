import json
import logging

from aiohttp import web
from pydantic import ValidationError

from finance.tradedash.api.app.config import RedisClientAppKey
from finance.tradedash.api.app.errors import AppError, utc_now
from finance.tradedash.api.app.handlers.helpers import parse_json_body
from finance.tradedash.api.market.service import (
    InstrumentsFilter,
    SubscribeRequest,
    TradesRequest,
    active_subscription_count,
    get_instruments,
    get_recent_trades,
    subscribe,
)
from finance.tradedash.api.trading.client import Exchange

logger = logging.getLogger(__name__)


async def handle_subscribe(request: web.Request):
    redis_client = request.app[RedisClientAppKey]
    body = await parse_json_body(request, SubscribeRequest)

    subscription = await subscribe(redis_client, body, utc_now())
    return web.json_response(
        {
            "success": True,
            "message": f"Subscribed to {subscription.base}/{subscription.quote} on {subscription.exchange}",
            "subscription_id": subscription.id,
        }
    )


async def handle_instruments(request: web.Request):
    # An unreadable body lists every instrument.
    instruments_filter = InstrumentsFilter()
    try:
        payload = await request.json()
        if isinstance(payload, dict):
            instruments_filter = InstrumentsFilter.model_validate(payload)
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
        logger.debug("Ignoring unreadable instruments filter")

    instruments = get_instruments(instruments_filter.exchange)
    return web.json_response(
        {
            "instruments": [
                dict(instrument.model_dump(), id=instrument.id)
                for instrument in instruments
            ]
        }
    )


async def handle_trades(request: web.Request):
    body = await parse_json_body(request, TradesRequest)
    if Exchange.parse(body.exchange) is None:
        raise AppError.validation(f"Unsupported exchange: {body.exchange}")

    return web.json_response({"trades": get_recent_trades(body)})


async def handle_status(request: web.Request):
    redis_client = request.app[RedisClientAppKey]
    active_subscriptions = await active_subscription_count(redis_client)
    return web.json_response(
        {
            "status": "ready" if active_subscriptions > 0 else "initializing",
            "active_subscriptions": active_subscriptions,
            "service": "market_data",
            "timestamp": utc_now().isoformat(),
        }
    )
