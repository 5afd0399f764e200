"""
Core package.

Canonical entities, the exception hierarchy, the per-entity event emitter
and small helpers shared by every other package.
"""

from binance_plugin.core.emitter import ALL_EVENTS, Emitter, Event, Subscription
from binance_plugin.core.errors import (
    ConfigurationError,
    ExchangeAPIError,
    ExchangeError,
    ExchangeTransportError,
    PluginError,
    UnsupportedDirectiveError,
)
from binance_plugin.core.models import (
    TERMINAL_STATUSES,
    Asset,
    AssetStatement,
    OrderDirection,
    OrderDirectives,
    OrderPurpose,
    OrderRejection,
    OrderStatus,
    OrderTimeInForce,
    Period,
    QuotationPrice,
    Symbol,
    Tick,
    TickMovement,
    Trade,
    TradeDirection,
    TradePurpose,
    TradeStatus,
)
from binance_plugin.core.utils import now_ms, to_decimal, to_int_safe

__all__ = [
    "ALL_EVENTS",
    "Emitter",
    "Event",
    "Subscription",
    "ConfigurationError",
    "ExchangeAPIError",
    "ExchangeError",
    "ExchangeTransportError",
    "PluginError",
    "UnsupportedDirectiveError",
    "TERMINAL_STATUSES",
    "Asset",
    "AssetStatement",
    "OrderDirection",
    "OrderDirectives",
    "OrderPurpose",
    "OrderRejection",
    "OrderStatus",
    "OrderTimeInForce",
    "Period",
    "QuotationPrice",
    "Symbol",
    "Tick",
    "TickMovement",
    "Trade",
    "TradeDirection",
    "TradePurpose",
    "TradeStatus",
    "now_ms",
    "to_decimal",
    "to_int_safe",
]
