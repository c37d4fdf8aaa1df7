"""
Trading service.

Validates dashboard trading requests, routes them to the right `ExchangeClient` and converts the results into
response bodies. Validation failures and missing credentials are client errors (400); failures talking to the
exchange surface as 502.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.trading.client import (
    CredentialsRequired,
    Exchange,
    ExchangeClient,
    ExchangeError,
    ExchangeTransport,
    Instrument,
    OrderRequest,
    OrderType,
    SandboxTransport,
    Side,
    TimeInForce,
)
from finance.tradedash.api.trading.schemas import (
    BalanceDto,
    BalancesRequest,
    BalancesResponse,
    InstrumentDto,
    InstrumentsRequest,
    InstrumentsResponse,
    OrderBookLevelDto,
    OrderBookRequest,
    OrderBookResponse,
    PlaceOrderRequest,
    PlaceOrderResponse,
    QuoteRequest,
    QuoteResponse,
    TradingStatusRequest,
    TradingStatusResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_ORDER_BOOK_DEPTH = 20

# Tried in order, so USDT must precede USD.
QUOTE_ASSETS = ("USDT", "USDC", "BTC", "ETH", "BNB", "USD", "EUR")

POPULAR_INSTRUMENTS: Dict[str, List[Tuple[str, str, str]]] = {
    "binance": [
        (f"{base}USDT", base, "USDT")
        for base in ("BTC", "ETH", "BNB", "ADA", "DOT", "LINK", "LTC", "BCH", "XLM", "EOS")
    ],
    "coinbase": [
        (f"{base}-USD", base, "USD")
        for base in ("BTC", "ETH", "LTC", "BCH", "ADA", "DOT", "LINK", "XLM", "EOS", "ATOM")
    ],
}

DEFAULT_INSTRUMENTS: List[Tuple[str, str, str]] = [
    (f"{base}USDT", base, "USDT") for base in ("BTC", "ETH", "ADA", "DOT", "LINK")
]

TRADING_CONFIG = {
    "supported_exchanges": [
        {
            "name": "binance",
            "display_name": "Binance",
            "supported_features": ["spot", "futures", "margin"],
            "rate_limits": {"requests_per_second": 10, "orders_per_second": 5},
        },
        {
            "name": "coinbase",
            "display_name": "Coinbase Pro",
            "supported_features": ["spot"],
            "rate_limits": {"requests_per_second": 10, "orders_per_second": 5},
        },
        {
            "name": "kraken",
            "display_name": "Kraken",
            "supported_features": ["spot", "futures"],
            "rate_limits": {"requests_per_second": 1, "orders_per_second": 1},
        },
    ],
    "order_types": [order_type.value for order_type in OrderType],
    "time_in_force": [tif.value for tif in TimeInForce],
    "default_precision": {"price": 8, "quantity": 8},
}


def parse_symbol(symbol: str) -> Instrument:
    """
    Split a pair symbol such as "BTCUSDT", "btc/usdt" or "BTC-USD" into base and quote assets.

    Raises:
        AppError: If no known quote asset suffix leaves a non-empty base.
    """
    normalized = symbol.replace("/", "").replace("-", "").replace("_", "").strip().upper()
    for quote in QUOTE_ASSETS:
        if normalized.endswith(quote):
            base = normalized[: -len(quote)]
            if base:
                return Instrument(base=base, quote=quote)
    raise AppError.validation(f"Unable to parse symbol: {symbol}")


def _parse_enum(enum_cls, value: str, what: str):
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        raise AppError.validation(f"Invalid {what}: {value}")


class TradingService:
    def __init__(
        self,
        credentials: Optional[Dict[str, Tuple[str, str]]] = None,
        transport: Optional[ExchangeTransport] = None,
    ) -> None:
        credentials = credentials or {}
        transport = transport or SandboxTransport()
        self.clients: Dict[Exchange, ExchangeClient] = {}
        for exchange in Exchange:
            api_key, api_secret = credentials.get(exchange.value, (None, None))
            self.clients[exchange] = ExchangeClient(
                exchange=exchange,
                transport=transport,
                api_key=api_key,
                api_secret=api_secret,
            )
        logger.info(
            "Initialized %d trading clients (%d with credentials)",
            len(self.clients),
            sum(1 for client in self.clients.values() if client.has_credentials),
        )

    def get_client(self, exchange: str) -> ExchangeClient:
        parsed = Exchange.parse(exchange)
        if parsed is None:
            raise AppError.validation(f"Unsupported exchange: {exchange}")
        return self.clients[parsed]

    async def get_quote(self, request: QuoteRequest) -> QuoteResponse:
        client = self.get_client(request.exchange)
        instrument = parse_symbol(request.symbol)
        try:
            quote = await client.get_quote(instrument)
        except ExchangeError as e:
            raise AppError.external_service(f"Failed to get quote: {e}")

        spread = quote.ask - quote.bid
        spread_percentage = (
            (spread / quote.bid) * Decimal(100) if quote.bid > 0 else Decimal(0)
        )
        return QuoteResponse(
            symbol=instrument.pair,
            exchange=client.exchange.value,
            bid_price=quote.bid,
            ask_price=quote.ask,
            spread=spread,
            spread_percentage=spread_percentage,
            timestamp=quote.timestamp,
        )

    async def get_order_book(self, request: OrderBookRequest) -> OrderBookResponse:
        client = self.get_client(request.exchange)
        instrument = parse_symbol(request.symbol)
        depth = request.depth or DEFAULT_ORDER_BOOK_DEPTH
        try:
            order_book = await client.get_order_book(instrument, depth)
        except ExchangeError as e:
            raise AppError.external_service(f"Failed to get order book: {e}")

        return OrderBookResponse(
            symbol=instrument.pair,
            exchange=client.exchange.value,
            bids=[
                OrderBookLevelDto(price=level.price, quantity=level.quantity)
                for level in order_book.bids
            ],
            asks=[
                OrderBookLevelDto(price=level.price, quantity=level.quantity)
                for level in order_book.asks
            ],
            timestamp=order_book.timestamp,
        )

    def build_order(self, request: PlaceOrderRequest) -> OrderRequest:
        instrument = parse_symbol(request.symbol)
        side = _parse_enum(Side, request.side, "order side")
        order_type = _parse_enum(OrderType, request.order_type, "order type")
        time_in_force = (
            _parse_enum(TimeInForce, request.time_in_force, "time in force")
            if request.time_in_force
            else TimeInForce.GTC
        )

        if request.quantity <= 0:
            raise AppError.validation("Quantity must be greater than zero")
        if request.price is not None and request.price <= 0:
            raise AppError.validation("Price must be greater than zero")
        if order_type is OrderType.LIMIT and request.price is None:
            raise AppError.validation("Limit orders require a price")

        return OrderRequest(
            instrument=instrument,
            side=side,
            order_type=order_type,
            quantity=request.quantity,
            price=request.price,
            time_in_force=time_in_force,
        )

    async def place_order(self, request: PlaceOrderRequest) -> PlaceOrderResponse:
        client = self.get_client(request.exchange)
        order = self.build_order(request)

        logger.info(
            "Placing %s %s order for %s %s on %s",
            order.side.value,
            order.order_type.value,
            order.quantity,
            order.instrument.pair,
            client.exchange.value,
        )

        try:
            exchange_order_id = await client.place_order(order)
        except CredentialsRequired as e:
            raise AppError.bad_request(str(e))
        except ExchangeError as e:
            raise AppError.external_service(f"Failed to place order: {e}")

        return PlaceOrderResponse(
            order_id=str(uuid.uuid4()),
            exchange_order_id=exchange_order_id,
            symbol=order.instrument.pair,
            side=order.side.value,
            order_type=order.order_type.value,
            status="NEW",
            quantity=order.quantity,
            price=order.price,
            time_in_force=order.time_in_force.value,
            filled_quantity=Decimal(0),
            created_at=datetime.now(timezone.utc),
        )

    async def get_balances(self, request: BalancesRequest) -> BalancesResponse:
        client = self.get_client(request.exchange)
        try:
            balances = await client.get_balances()
        except CredentialsRequired as e:
            raise AppError.bad_request(str(e))
        except ExchangeError as e:
            raise AppError.external_service(f"Failed to get balances: {e}")

        # TODO: price balances against the quote endpoint once a live transport exists.
        dtos = [
            BalanceDto(
                asset=balance.asset,
                free=balance.free,
                locked=balance.locked,
                total=balance.total,
                usd_value=Decimal(0),
            )
            for balance in balances
        ]
        return BalancesResponse(
            exchange=client.exchange.value,
            balances=dtos,
            total_value_usd=sum((dto.usd_value for dto in dtos), Decimal(0)),
            timestamp=datetime.now(timezone.utc),
        )

    def get_instruments(self, request: InstrumentsRequest) -> InstrumentsResponse:
        exchange = request.exchange.strip().lower()
        rows = POPULAR_INSTRUMENTS.get(exchange, DEFAULT_INSTRUMENTS)
        instruments = [
            InstrumentDto(
                symbol=symbol,
                base_asset=base,
                quote_asset=quote,
                exchange=exchange,
                instrument_type="SPOT",
                status="ACTIVE",
                min_quantity=Decimal("0.00000001"),
                max_quantity=Decimal("1000000"),
                quantity_precision=8,
                price_precision=8,
            )
            for symbol, base, quote in rows
        ]

        if request.instrument_type:
            wanted = request.instrument_type.strip().upper()
            instruments = [i for i in instruments if i.instrument_type == wanted]
        if request.status:
            wanted = request.status.strip().upper()
            instruments = [i for i in instruments if i.status == wanted]

        return InstrumentsResponse(exchange=exchange, instruments=instruments)

    def get_trading_status(self, request: TradingStatusRequest) -> TradingStatusResponse:
        client = self.get_client(request.exchange)
        api_key_valid = client.has_credentials
        connected = True
        return TradingStatusResponse(
            exchange=client.exchange.value,
            status="ACTIVE" if connected and api_key_valid else "INACTIVE",
            connected=connected,
            api_key_valid=api_key_valid,
            permissions=["SPOT", "MARGIN"],
            rate_limits=[],
            server_time=datetime.now(timezone.utc),
        )

    def health(self, version: str) -> Dict[str, object]:
        return {
            "status": "healthy",
            "service": "trading",
            "supported_exchanges": [exchange.value for exchange in Exchange],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": version,
        }
