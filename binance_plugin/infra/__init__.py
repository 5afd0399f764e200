"""
Infrastructure package.

Transport clients (signed REST over httpx, websocket streams over aiohttp)
and logging configuration.
"""

from binance_plugin.infra.logging_cfg import build_logger, log_event
from binance_plugin.infra.rest_client import BinanceRestClient
from binance_plugin.infra.stream_client import StreamClient

__all__ = [
    "build_logger",
    "log_event",
    "BinanceRestClient",
    "StreamClient",
]
