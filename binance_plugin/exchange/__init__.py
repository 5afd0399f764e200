"""
Exchange package.

Adapter contract plus the Binance spot and futures implementations and the
timeframe / time-in-force lookup tables.
"""

from binance_plugin.exchange.base import ExchangeAdapter, ExecutionReport, PlacementAck
from binance_plugin.exchange.binance import (
    BinanceAdapter,
    BinanceFuturesAdapter,
    BinanceSpotAdapter,
    create_adapter,
)
from binance_plugin.exchange.mappings import (
    from_binance_interval,
    from_binance_time_in_force,
    to_binance_time_in_force,
    to_binance_timeframe,
)

__all__ = [
    "ExchangeAdapter",
    "ExecutionReport",
    "PlacementAck",
    "BinanceAdapter",
    "BinanceFuturesAdapter",
    "BinanceSpotAdapter",
    "create_adapter",
    "from_binance_interval",
    "from_binance_time_in_force",
    "to_binance_time_in_force",
    "to_binance_timeframe",
]
