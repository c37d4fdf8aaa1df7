"""
Market data service.

Keeps the catalogue of streamable instruments and the dashboard's market data subscriptions. Subscriptions are
stored in a redis hash so every worker sees the same set. There is no live feed behind them yet, so trade
queries come back empty.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from redis import asyncio as redis
from ulid import ULID

from finance.tradedash.api.trading.client import Exchange

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_KEY = "market_data:subscriptions"


class DataType(str, Enum):
    TRADES = "Trades"
    ORDER_BOOK = "OrderBook"
    CANDLES = "Candles"


class MarketInstrument(BaseModel):
    symbol: str
    base: str
    quote: str
    exchange: str
    kind: str = "spot"

    @property
    def id(self) -> str:
        return f"{self.exchange}:{self.base.lower()}:{self.quote.lower()}"

    @classmethod
    def spot(cls, exchange: str, base: str, quote: str) -> "MarketInstrument":
        return cls(
            symbol=f"{base.upper()}/{quote.upper()}",
            base=base.upper(),
            quote=quote.upper(),
            exchange=exchange,
        )


INSTRUMENTS: List[MarketInstrument] = [
    MarketInstrument.spot("binance", "BTC", "USDT"),
    MarketInstrument.spot("binance", "ETH", "USDT"),
    MarketInstrument.spot("coinbase", "BTC", "USD"),
]


class SubscribeRequest(BaseModel):
    exchange: str
    base: str = Field(min_length=1, max_length=16)
    quote: str = Field(min_length=1, max_length=16)
    data_types: List[DataType] = Field(min_length=1)

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, v: str) -> str:
        exchange = Exchange.parse(v)
        if exchange is None:
            raise ValueError(f"Unsupported exchange: {v}")
        return exchange.value


class Subscription(BaseModel):
    id: str
    exchange: str
    base: str
    quote: str
    data_types: List[DataType]
    active: bool = True
    created_at: datetime


class TradesRequest(BaseModel):
    exchange: str
    base: str
    quote: str
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class InstrumentsFilter(BaseModel):
    exchange: Optional[str] = None


def get_instruments(exchange: Optional[str] = None) -> List[MarketInstrument]:
    if not exchange:
        return list(INSTRUMENTS)
    exchange = exchange.strip().lower()
    return [instrument for instrument in INSTRUMENTS if instrument.exchange == exchange]


def subscription_field(exchange: str, base: str, quote: str) -> str:
    return f"{exchange}:{base.upper()}:{quote.upper()}"


async def subscribe(
    redis_client: redis.Redis, request: SubscribeRequest, now: datetime
) -> Subscription:
    """
    Subscribe to an instrument. There is one subscription per exchange and pair: subscribing again adds any new
    data types to it and keeps its id.
    """
    field = subscription_field(request.exchange, request.base, request.quote)
    existing = await redis_client.hget(SUBSCRIPTIONS_KEY, field)
    if existing is not None:
        subscription = Subscription.model_validate_json(existing)
        added = [dt for dt in request.data_types if dt not in subscription.data_types]
        subscription = subscription.model_copy(
            update={"data_types": subscription.data_types + added, "active": True}
        )
    else:
        subscription = Subscription(
            id=str(ULID()),
            exchange=request.exchange,
            base=request.base.upper(),
            quote=request.quote.upper(),
            data_types=request.data_types,
            created_at=now,
        )
    await redis_client.hset(SUBSCRIPTIONS_KEY, field, subscription.model_dump_json())
    logger.info(
        "Subscribed to %s %s/%s (%s)",
        subscription.exchange,
        subscription.base,
        subscription.quote,
        ",".join(data_type.value for data_type in subscription.data_types),
    )
    return subscription


async def list_subscriptions(redis_client: redis.Redis) -> List[Subscription]:
    raw = await redis_client.hvals(SUBSCRIPTIONS_KEY)
    return [Subscription.model_validate_json(value) for value in raw]


async def active_subscription_count(redis_client: redis.Redis) -> int:
    return sum(
        1 for subscription in await list_subscriptions(redis_client) if subscription.active
    )


def get_recent_trades(request: TradesRequest) -> List[dict]:
    # No trade feed is wired in; the dashboard renders an empty tape.
    return []
