"""
Exchange REST client.

`ExchangeClient` knows how each supported exchange names its symbols and endpoints and how to read the
responses back into `Quote`, `OrderBook` and `Balance` values. The HTTP round trip is delegated to a
transport. The only transport shipped is `SandboxTransport`, which answers from canned payloads shaped like
Binance responses so the dashboard can run without exchange accounts.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class Exchange(str, Enum):
    BINANCE = "binance"
    COINBASE = "coinbase"
    KRAKEN = "kraken"
    OKX = "okx"
    BYBIT = "bybit"

    @classmethod
    def parse(cls, value: str) -> Optional["Exchange"]:
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


BASE_URLS: Dict[Exchange, str] = {
    Exchange.BINANCE: "https://api.binance.com",
    Exchange.COINBASE: "https://api.exchange.coinbase.com",
    Exchange.KRAKEN: "https://api.kraken.com",
    Exchange.OKX: "https://www.okx.com",
    Exchange.BYBIT: "https://api.bybit.com",
}


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


@dataclass(frozen=True)
class Instrument:
    base: str
    quote: str

    @property
    def pair(self) -> str:
        return f"{self.base}{self.quote}"


@dataclass
class Quote:
    instrument: Instrument
    bid: Decimal
    ask: Decimal
    timestamp: datetime


@dataclass
class OrderBookLevel:
    price: Decimal
    quantity: Decimal


@dataclass
class OrderBook:
    instrument: Instrument
    bids: List[OrderBookLevel]
    asks: List[OrderBookLevel]
    timestamp: datetime


@dataclass
class Balance:
    asset: str
    free: Decimal
    locked: Decimal

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class OrderRequest:
    instrument: Instrument
    side: Side
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    time_in_force: TimeInForce = TimeInForce.GTC


class ExchangeError(Exception):
    """Raised when an exchange call fails or returns something unreadable."""


class CredentialsRequired(ExchangeError):
    def __init__(self, exchange: Exchange) -> None:
        super().__init__(f"API credentials required for {exchange.value}")
        self.exchange = exchange


class ExchangeTransport(ABC):
    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
    ) -> Dict[str, Any]:
        """Perform a request against an exchange endpoint and return the decoded JSON body."""


class SandboxTransport(ExchangeTransport):
    """Answers exchange requests with fixed payloads chosen by endpoint path."""

    async def request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
    ) -> Dict[str, Any]:
        path = urlparse(url).path.lower()
        now = datetime.now(timezone.utc)
        logger.debug("sandbox %s %s", method, url)

        if "ticker" in path or "quote" in path:
            return {
                "symbol": "BTCUSDT",
                "bidPrice": "45000.50",
                "askPrice": "45001.25",
                "timestamp": int(now.timestamp() * 1000),
            }
        if "depth" in path or "book" in path:
            return {
                "bids": [
                    ["45000.50", "1.25"],
                    ["45000.00", "2.50"],
                    ["44999.75", "0.75"],
                ],
                "asks": [
                    ["45001.25", "1.10"],
                    ["45001.75", "2.25"],
                    ["45002.00", "0.85"],
                ],
                "timestamp": int(now.timestamp() * 1000),
            }
        if "account" in path or "balance" in path:
            return {
                "balances": [
                    {"asset": "BTC", "free": "0.12345678", "locked": "0.00000000"},
                    {"asset": "USDT", "free": "1000.50", "locked": "250.25"},
                ]
            }
        if "order" in path:
            return {
                "orderId": f"order_{int(now.timestamp())}",
                "status": "NEW",
                "symbol": (payload or {}).get("symbol", "BTCUSDT"),
                "side": (payload or {}).get("side", "BUY"),
                "type": (payload or {}).get("type", "LIMIT"),
            }
        raise ExchangeError(f"Unknown endpoint: {url}")


def _decimal(value: Any, what: str) -> Decimal:
    if value is None:
        raise ExchangeError(f"Missing {what} in response")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ExchangeError(f"Invalid {what} format: {value!r}") from e


@dataclass
class ExchangeClient:
    exchange: Exchange
    transport: ExchangeTransport
    api_key: Optional[str] = None
    api_secret: Optional[str] = field(default=None, repr=False)

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.exchange]

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key) and bool(self.api_secret)

    def format_symbol(self, instrument: Instrument) -> str:
        if self.exchange is Exchange.COINBASE:
            return f"{instrument.base}-{instrument.quote}"
        return instrument.pair

    def quote_endpoint(self, instrument: Instrument) -> str:
        symbol = self.format_symbol(instrument)
        if self.exchange is Exchange.COINBASE:
            return f"{self.base_url}/products/{symbol}/ticker"
        if self.exchange is Exchange.KRAKEN:
            return f"{self.base_url}/0/public/Ticker?pair={symbol}"
        return f"{self.base_url}/api/v3/ticker/bookTicker?symbol={symbol}"

    def order_book_endpoint(self, instrument: Instrument, depth: int) -> str:
        symbol = self.format_symbol(instrument)
        if self.exchange is Exchange.COINBASE:
            return f"{self.base_url}/products/{symbol}/book?level=2"
        if self.exchange is Exchange.KRAKEN:
            return f"{self.base_url}/0/public/Depth?pair={symbol}&count={depth}"
        return f"{self.base_url}/api/v3/depth?symbol={symbol}&limit={depth}"

    def balance_endpoint(self) -> str:
        if self.exchange is Exchange.COINBASE:
            return f"{self.base_url}/accounts"
        if self.exchange is Exchange.KRAKEN:
            return f"{self.base_url}/0/private/Balance"
        return f"{self.base_url}/api/v3/account"

    def order_endpoint(self) -> str:
        if self.exchange is Exchange.COINBASE:
            return f"{self.base_url}/orders"
        if self.exchange is Exchange.KRAKEN:
            return f"{self.base_url}/0/private/AddOrder"
        return f"{self.base_url}/api/v3/order"

    def build_order_payload(self, order: OrderRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "symbol": self.format_symbol(order.instrument),
            "side": order.side.value,
            "type": order.order_type.value,
            "quantity": str(order.quantity),
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
        }
        if order.price is not None:
            payload["price"] = str(order.price)
            payload["timeInForce"] = order.time_in_force.value
        return payload

    def _require_credentials(self) -> None:
        if not self.has_credentials:
            raise CredentialsRequired(self.exchange)

    async def get_quote(self, instrument: Instrument) -> Quote:
        body = await self.transport.request("GET", self.quote_endpoint(instrument))
        return self.parse_quote(instrument, body)

    async def get_order_book(self, instrument: Instrument, depth: int) -> OrderBook:
        body = await self.transport.request(
            "GET", self.order_book_endpoint(instrument, depth)
        )
        order_book = self.parse_order_book(instrument, body)
        order_book.bids = order_book.bids[:depth]
        order_book.asks = order_book.asks[:depth]
        return order_book

    async def get_balances(self) -> List[Balance]:
        self._require_credentials()
        body = await self.transport.request(
            "GET", self.balance_endpoint(), authenticated=True
        )
        return self.parse_balances(body)

    async def place_order(self, order: OrderRequest) -> str:
        self._require_credentials()
        body = await self.transport.request(
            "POST",
            self.order_endpoint(),
            payload=self.build_order_payload(order),
            authenticated=True,
        )
        return self.parse_order_id(body)

    @staticmethod
    def parse_quote(instrument: Instrument, body: Dict[str, Any]) -> Quote:
        bid = body.get("bidPrice", body.get("bid"))
        ask = body.get("askPrice", body.get("ask"))
        return Quote(
            instrument=instrument,
            bid=_decimal(bid, "bid price"),
            ask=_decimal(ask, "ask price"),
            timestamp=datetime.now(timezone.utc),
        )

    @staticmethod
    def parse_order_book(instrument: Instrument, body: Dict[str, Any]) -> OrderBook:
        def levels(side: str) -> List[OrderBookLevel]:
            raw = body.get(side)
            if not isinstance(raw, list):
                raise ExchangeError(f"Missing {side} in response")
            parsed = []
            for level in raw:
                if not isinstance(level, (list, tuple)) or len(level) < 2:
                    raise ExchangeError(f"Invalid {side} level: {level!r}")
                parsed.append(
                    OrderBookLevel(
                        price=_decimal(level[0], "price"),
                        quantity=_decimal(level[1], "quantity"),
                    )
                )
            return parsed

        return OrderBook(
            instrument=instrument,
            bids=levels("bids"),
            asks=levels("asks"),
            timestamp=datetime.now(timezone.utc),
        )

    @staticmethod
    def parse_balances(body: Dict[str, Any]) -> List[Balance]:
        raw = body.get("balances")
        if not isinstance(raw, list):
            raise ExchangeError("Missing balances in response")

        balances = []
        for entry in raw:
            asset = entry.get("asset")
            if not asset:
                raise ExchangeError("Missing asset in balance")
            balance = Balance(
                asset=asset,
                free=_decimal(entry.get("free"), "free balance"),
                locked=_decimal(entry.get("locked"), "locked balance"),
            )
            # Empty wallets are noise on the dashboard.
            if balance.total > 0:
                balances.append(balance)
        return balances

    @staticmethod
    def parse_order_id(body: Dict[str, Any]) -> str:
        order_id = body.get("orderId", body.get("id", body.get("order_id")))
        if order_id is None:
            raise ExchangeError("Missing order ID in response")
        return str(order_id)
