"""
Plugin registration glue for the host trading framework.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from binance_plugin.account.platform import BinancePlatform
from binance_plugin.config.config import Settings

PLUGIN_ID = "2ae5e8d1-1101-4b9c-b6e1-e44497bb2803"
PLUGIN_VERSION = "2.1.1"


class PluginActions(Protocol):
    def add_platform(self, name: str, platform: Any) -> None: ...


class BinancePlugin:
    id = PLUGIN_ID
    name = "Binance"
    version = PLUGIN_VERSION
    description = "Binance Spot and Futures trading platforms"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings

    def install(self, actions: PluginActions) -> None:
        actions.add_platform("Binance/Spot", BinancePlatform("spot", settings=self._settings))
        actions.add_platform("Binance/Futures", BinancePlatform("futures", settings=self._settings))
