"""
Trading handlers.

Every POST endpoint takes a JSON body, validates it with the matching request model from
`finance.tradedash.api.trading.schemas` and answers with the service's response model. Decimals and datetimes
are written as strings.
"""

from aiohttp import web
from pydantic import BaseModel

from finance.tradedash.api.app.config import SettingsAppKey, TradingServiceAppKey
from finance.tradedash.api.app.handlers.helpers import parse_json_body
from finance.tradedash.api.trading.schemas import (
    BalancesRequest,
    InstrumentsRequest,
    OrderBookRequest,
    PlaceOrderRequest,
    QuoteRequest,
    TradingStatusRequest,
)
from finance.tradedash.api.trading.service import TRADING_CONFIG


def model_response(model: BaseModel) -> web.Response:
    return web.json_response(model.model_dump(mode="json"))


async def handle_quote(request: web.Request):
    body = await parse_json_body(request, QuoteRequest)
    return model_response(await request.app[TradingServiceAppKey].get_quote(body))


async def handle_order_book(request: web.Request):
    body = await parse_json_body(request, OrderBookRequest)
    return model_response(await request.app[TradingServiceAppKey].get_order_book(body))


async def handle_place_order(request: web.Request):
    body = await parse_json_body(request, PlaceOrderRequest)
    return model_response(await request.app[TradingServiceAppKey].place_order(body))


async def handle_balances(request: web.Request):
    body = await parse_json_body(request, BalancesRequest)
    return model_response(await request.app[TradingServiceAppKey].get_balances(body))


async def handle_instruments(request: web.Request):
    body = await parse_json_body(request, InstrumentsRequest)
    return model_response(request.app[TradingServiceAppKey].get_instruments(body))


async def handle_trading_status(request: web.Request):
    body = await parse_json_body(request, TradingStatusRequest)
    return model_response(request.app[TradingServiceAppKey].get_trading_status(body))


async def handle_trading_health(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(
        request.app[TradingServiceAppKey].health(settings.service_version)
    )


async def handle_trading_config(request: web.Request):
    return web.json_response(TRADING_CONFIG)
