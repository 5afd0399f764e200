"""
Account package.

The AccountSession (orders, balances, market-data watchers), the platform
login entry point and the plugin registration glue.
"""

from binance_plugin.account.platform import BinancePlatform
from binance_plugin.account.plugin import PLUGIN_ID, PLUGIN_VERSION, BinancePlugin
from binance_plugin.account.session import AccountSession, classify_tick_movement

__all__ = [
    "BinancePlatform",
    "PLUGIN_ID",
    "PLUGIN_VERSION",
    "BinancePlugin",
    "AccountSession",
    "classify_tick_movement",
]
