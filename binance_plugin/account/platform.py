"""
Trading platform entry point: credentials in, preloaded AccountSession out.
"""

from __future__ import annotations

import logging
from typing import Optional

from binance_plugin.account.session import PRIMARY_ASSET, AccountSession
from binance_plugin.config.config import Settings
from binance_plugin.exchange.binance import create_adapter
from binance_plugin.infra.logging_cfg import log_event
from binance_plugin.infra.rest_client import BinanceRestClient
from binance_plugin.infra.stream_client import StreamClient
from binance_plugin.monitoring.metrics import PluginMetrics

log = logging.getLogger("binance_plugin")

PLATFORM_SITE_URI = "https://www.binance.com"
PLATFORM_PRIMARY_ASSET = PRIMARY_ASSET

PLATFORM_NAMES = {
    "spot": "Binance Spot",
    "futures": "Binance Futures",
}


class BinancePlatform:
    def __init__(self, market: str = "spot", settings: Optional[Settings] = None,
                 metrics: Optional[PluginMetrics] = None) -> None:
        self.market = market.lower()
        self.name = PLATFORM_NAMES.get(self.market, f"Binance {market}")
        self.site_uri = PLATFORM_SITE_URI
        self._settings = settings
        self._metrics = metrics

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.load(market=self.market)
        return self._settings

    async def login(self, api_key: Optional[str] = None, api_secret: Optional[str] = None) -> AccountSession:
        """
        Open an authenticated session.

        Credentials default to BINANCE_API_KEY / BINANCE_API_SECRET; missing
        ones raise ConfigurationError before any network call.
        """
        cfg = self.settings
        if not (api_key and api_secret):
            api_key, api_secret = cfg.resolve_credentials()

        rest = BinanceRestClient(
            cfg.rest_url,
            api_key=api_key,
            api_secret=api_secret,
            timeout=cfg.http_timeout,
            recv_window_ms=cfg.recv_window_ms,
            retries=cfg.http_retries,
        )
        streams = StreamClient(cfg.ws_url, reconnect_max_sec=cfg.ws_reconnect_max_sec)
        adapter = create_adapter(self.market, rest, streams,
                                 listen_key_keepalive_sec=cfg.listen_key_keepalive_sec)
        session = AccountSession(
            adapter,
            primary_asset=cfg.primary_asset or PLATFORM_PRIMARY_ASSET,
            pending_event_buffer=cfg.pending_event_buffer,
            pending_event_ttl_ms=cfg.pending_event_ttl_ms,
            metrics=self._metrics,
        )
        try:
            await session.preload()
        except Exception:
            await adapter.close()
            raise
        log_event(log, "platform_login", platform=self.name, testnet=cfg.testnet)
        return session
