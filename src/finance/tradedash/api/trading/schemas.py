"""Request and response bodies for the /api/trading endpoints. Decimals are serialized as strings."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class QuoteRequest(BaseModel):
    exchange: str
    symbol: str


class QuoteResponse(BaseModel):
    symbol: str
    exchange: str
    bid_price: Decimal
    ask_price: Decimal
    bid_quantity: Decimal = Decimal("0")
    ask_quantity: Decimal = Decimal("0")
    spread: Decimal
    spread_percentage: Decimal
    timestamp: datetime


class OrderBookRequest(BaseModel):
    exchange: str
    symbol: str
    depth: Optional[int] = Field(default=None, ge=1, le=5000)


class OrderBookLevelDto(BaseModel):
    price: Decimal
    quantity: Decimal


class OrderBookResponse(BaseModel):
    symbol: str
    exchange: str
    bids: List[OrderBookLevelDto]
    asks: List[OrderBookLevelDto]
    timestamp: datetime


class PlaceOrderRequest(BaseModel):
    exchange: str
    symbol: str
    side: str
    order_type: str
    quantity: Decimal
    price: Optional[Decimal] = None
    time_in_force: Optional[str] = None


class PlaceOrderResponse(BaseModel):
    order_id: str
    exchange_order_id: str
    symbol: str
    side: str
    order_type: str
    status: str
    quantity: Decimal
    price: Optional[Decimal] = None
    time_in_force: str
    filled_quantity: Decimal
    created_at: datetime


class BalancesRequest(BaseModel):
    exchange: str


class BalanceDto(BaseModel):
    asset: str
    free: Decimal
    locked: Decimal
    total: Decimal
    usd_value: Decimal


class BalancesResponse(BaseModel):
    exchange: str
    balances: List[BalanceDto]
    total_value_usd: Decimal
    timestamp: datetime


class InstrumentsRequest(BaseModel):
    exchange: str
    instrument_type: Optional[str] = None
    status: Optional[str] = None


class InstrumentDto(BaseModel):
    symbol: str
    base_asset: str
    quote_asset: str
    exchange: str
    instrument_type: str
    status: str
    min_quantity: Decimal
    max_quantity: Decimal
    quantity_precision: int
    price_precision: int


class InstrumentsResponse(BaseModel):
    exchange: str
    instruments: List[InstrumentDto]


class TradingStatusRequest(BaseModel):
    exchange: str


class RateLimitDto(BaseModel):
    limit_type: str
    interval: str
    limit: int


class TradingStatusResponse(BaseModel):
    exchange: str
    status: str
    connected: bool
    api_key_valid: bool
    permissions: List[str]
    rate_limits: List[RateLimitDto]
    server_time: datetime
