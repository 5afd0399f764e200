"""
Exchange adapter contract.

The order lifecycle core (state machine, trade recorder, account session)
talks to an exchange family only through this capability set. Spot and
futures differ in endpoints, response shapes and push-event framing; those
differences stay behind the adapter so the lifecycle logic is written once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from binance_plugin.core.models import OrderRejection, OrderStatus
from binance_plugin.execution.status_mapper import expects_more_fills, map_exchange_order_status, map_rejection

Unsubscribe = Callable[[], Awaitable[None]]
RawCallback = Callable[[Dict[str, Any]], Any]


@dataclass
class PlacementAck:
    """Synchronous placement response, normalised across exchange families."""
    order_id: str
    status: str                     # raw exchange status, e.g. "FILLED"
    order_type: str                 # raw exchange type, e.g. "MARKET"
    transact_time_ms: int
    fills: List[Dict[str, Any]] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionReport:
    """
    One order update from the user-data push stream.

    Fields keep the exchange's raw vocabulary; the state machine maps them.
    trade_id is set only when execution_type is TRADE.
    """
    order_id: str
    symbol: str
    status: str
    order_type: str
    execution_type: str
    event_time_ms: int
    side: str = ""
    trade_id: Optional[str] = None
    last_price: Optional[Decimal] = None
    last_qty: Optional[Decimal] = None
    commission: Optional[Decimal] = None
    commission_asset: Optional[str] = None
    trade_time_ms: Optional[int] = None
    reject_reason: Optional[str] = None
    client_order_id: Optional[str] = None

    @property
    def is_trade(self) -> bool:
        return self.execution_type.upper() == "TRADE" and self.trade_id is not None

    def fill_payload(self) -> Dict[str, Any]:
        """The trade part of the report, shaped like a placement-response fill."""
        return {
            "tradeId": self.trade_id,
            "price": self.last_price,
            "qty": self.last_qty,
            "commission": self.commission if self.commission is not None else Decimal(0),
            "commissionAsset": self.commission_asset or "",
            "time": self.trade_time_ms or self.event_time_ms,
        }


class ExchangeAdapter(ABC):
    """
    Everything the lifecycle core needs from one exchange family.

    Network calls raise ExchangeAPIError (structured exchange error body) or
    ExchangeTransportError (timeouts, connection loss, malformed responses).
    """

    name: str = "exchange"
    rejection_codes: Mapping[int, OrderRejection] = {}

    # -- translation ---------------------------------------------------------

    def map_status(self, raw_status: Optional[str], raw_type: Optional[str]) -> OrderStatus:
        return map_exchange_order_status(raw_status, raw_type)

    def map_rejection(self, code: Optional[int]) -> OrderRejection:
        return map_rejection(code, self.rejection_codes)

    def expects_more_fills(self, raw_status: Optional[str]) -> bool:
        return expects_more_fills(raw_status)

    @abstractmethod
    def parse_user_event(self, raw: Dict[str, Any]) -> Optional[ExecutionReport]:
        """Return the order update carried by raw, or None if it is not one."""

    @abstractmethod
    def parse_book_ticker(self, raw: Dict[str, Any]) -> Tuple[str, Decimal, Decimal]:
        """Return (symbol, bid, ask) from a book-ticker push or REST payload."""

    @abstractmethod
    def parse_kline(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Return a candle dict (openTime, open, high, low, close, volume, closed)."""

    # -- trading -------------------------------------------------------------

    @abstractmethod
    async def place_order(self, params: Dict[str, Any]) -> PlacementAck: ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]: ...

    # -- account & market data ----------------------------------------------

    @abstractmethod
    async def get_account_info(self) -> Dict[str, Any]:
        """Account snapshot with a "balances" list of {asset, free, locked}."""

    @abstractmethod
    async def get_exchange_info(self) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_book_ticker(self, symbol: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_all_book_tickers(self) -> Dict[str, Dict[str, Any]]: ...

    @abstractmethod
    async def get_average_price(self, symbol: str) -> Decimal: ...

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def get_all_orders(self, symbol: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def get_my_trades(self, symbol: str) -> List[Dict[str, Any]]:
        """Account trades as {id, orderId, symbol, price, qty, commission, commissionAsset, time, isBuyer}."""

    @abstractmethod
    async def get_deposit_address(self, asset: str, network: Optional[str] = None) -> str:
        """Address to deposit asset to, on network or the asset's default network."""

    # -- streams -------------------------------------------------------------

    @abstractmethod
    async def subscribe_user_events(self, callback: RawCallback) -> Unsubscribe: ...

    @abstractmethod
    async def subscribe_book_ticker(self, symbol: str, callback: RawCallback) -> Unsubscribe: ...

    @abstractmethod
    async def subscribe_candles(self, symbol: str, interval: str, callback: RawCallback) -> Unsubscribe: ...

    async def close(self) -> None:
        return None
