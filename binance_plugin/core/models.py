"""
Canonical entities exposed to the host framework.

Exchange-specific strings never leak past the adapters: everything here is
expressed in the host's vocabulary (OrderStatus, TradeDirection, ...).
All prices, volumes and commissions are Decimal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

from binance_plugin.core.utils import ms_to_datetime, to_decimal, to_decimal_or_none


class OrderStatus(Enum):
    """
    Canonical order lifecycle states.

    State Diagram:

    REQUESTED ──┬──────────> PENDING ──┬──> EXECUTED
                │                       ├──> CANCELLED
                │                       ├──> EXPIRED
                │                       └──> REJECTED
                ├──> EXECUTED   (market orders never rest)
                └──> REJECTED
    """
    REQUESTED = "requested"    # Sent (or about to be), not yet settled by the exchange
    PENDING = "pending"        # Resting on the book
    EXECUTED = "executed"      # Filled, fully or partially (terminal)
    CANCELLED = "cancelled"    # Cancelled (terminal)
    EXPIRED = "expired"        # Expired by time in force (terminal)
    REJECTED = "rejected"      # Refused by the exchange or never sent (terminal)


TERMINAL_STATUSES = frozenset({
    OrderStatus.EXECUTED,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
    OrderStatus.REJECTED,
})


class OrderDirection(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderPurpose(Enum):
    OPEN = "open"
    CLOSE = "close"


class OrderTimeInForce(Enum):
    GOOD_TILL_CANCEL = "good_till_cancel"
    FILL_OR_KILL = "fill_or_kill"
    IMMEDIATE_OR_CANCEL = "immediate_or_cancel"
    GOOD_TILL_DATE = "good_till_date"


class OrderRejection(Enum):
    NOT_ENOUGH_MONEY = "not_enough_money"
    SYMBOL_NOT_FOUND = "symbol_not_found"
    UNKNOWN = "unknown"


class TradeDirection(Enum):
    BUY = "buy"
    SELL = "sell"


class TradePurpose(Enum):
    OPEN = "open"
    CLOSE = "close"


class TradeStatus(Enum):
    EXECUTED = "executed"


class TickMovement(Enum):
    BID = "bid"
    ASK = "ask"
    BID_ASK = "bid_ask"


class QuotationPrice(Enum):
    BID = "bid"


def purpose_for(direction: OrderDirection) -> OrderPurpose:
    """Spot has no positions: buying opens, selling closes."""
    return OrderPurpose.OPEN if direction == OrderDirection.BUY else OrderPurpose.CLOSE


@dataclass
class OrderDirectives:
    """Caller intent for place_order."""
    symbol: str
    direction: OrderDirection
    volume: Decimal
    limit: Optional[Decimal] = None
    stop: Optional[Decimal] = None
    position_id: Optional[str] = None
    time_in_force: Optional[OrderTimeInForce] = None
    # None means the default set (reject, pending, cancel, expire, execute)
    resolver_events: Optional[Sequence[str]] = None
    listeners: Dict[str, Callable[..., Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.volume = to_decimal(self.volume)
        self.limit = to_decimal_or_none(self.limit)
        self.stop = to_decimal_or_none(self.stop)


@dataclass(frozen=True)
class Trade:
    """One fill. Trades are immutable facts: created once, never updated."""
    id: str
    order_id: str
    symbol: str
    direction: TradeDirection
    purpose: TradePurpose
    volume: Decimal
    execution_price: Decimal
    commission: Decimal
    commission_asset: str
    execution_date_ms: int
    status: TradeStatus = TradeStatus.EXECUTED

    @property
    def execution_date(self) -> Optional[datetime]:
        return ms_to_datetime(self.execution_date_ms)

    @property
    def gross_value(self) -> Decimal:
        return self.volume * self.execution_price


@dataclass(frozen=True)
class Symbol:
    """Tradable constraints for one symbol, from the LOT_SIZE filter."""
    symbol: str
    base_asset: str
    quote_asset: str
    min_lots: Optional[Decimal] = None
    max_lots: Optional[Decimal] = None
    lot_units: Decimal = Decimal(1)
    description: str = ""


@dataclass(frozen=True)
class Asset:
    id: str
    name: str


@dataclass(frozen=True)
class AssetStatement:
    asset: str
    free_volume: Decimal
    locked_volume: Decimal
    date_ms: int
    borrowed_volume: Decimal = Decimal(0)

    @property
    def total_volume(self) -> Decimal:
        return self.free_volume + self.locked_volume + self.borrowed_volume


@dataclass(frozen=True)
class Tick:
    symbol: str
    bid: Decimal
    ask: Decimal
    date_ms: int
    movement: TickMovement = TickMovement.BID_ASK

    @property
    def date(self) -> Optional[datetime]:
        return ms_to_datetime(self.date_ms)

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class Period:
    """One candle. timeframe is in seconds."""
    symbol: str
    timeframe: int
    start_date_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quotation_price: QuotationPrice = QuotationPrice.BID
    is_closed: bool = True

    @property
    def start_date(self) -> Optional[datetime]:
        return ms_to_datetime(self.start_date_ms)
