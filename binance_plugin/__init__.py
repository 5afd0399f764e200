"""
Binance broker plugin.

Order lifecycle reconciliation for Binance Spot and Futures: every placed
order is tracked from the synchronous placement response and the
asynchronous user-data stream until it settles.
"""

from binance_plugin.account import AccountSession, BinancePlatform, BinancePlugin
from binance_plugin.core.models import (
    OrderDirection,
    OrderDirectives,
    OrderRejection,
    OrderStatus,
    OrderTimeInForce,
)
from binance_plugin.execution import Order, OrderResolver

__version__ = "2.1.1"

__all__ = [
    "AccountSession",
    "BinancePlatform",
    "BinancePlugin",
    "OrderDirection",
    "OrderDirectives",
    "OrderRejection",
    "OrderStatus",
    "OrderTimeInForce",
    "Order",
    "OrderResolver",
    "__version__",
]
