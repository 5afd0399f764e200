"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from binance_plugin.core.errors import ConfigurationError

load_dotenv()

MARKETS = ("spot", "futures")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

# market -> (rest url, ws url)
ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "spot": ("https://api.binance.com", "wss://stream.binance.com:9443"),
    "futures": ("https://fapi.binance.com", "wss://fstream.binance.com"),
}
TESTNET_ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "spot": ("https://testnet.binance.vision", "wss://testnet.binance.vision"),
    "futures": ("https://testnet.binancefuture.com", "wss://stream.binancefuture.com"),
}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str]
    api_secret: Optional[str]
    market: str
    testnet: bool
    rest_url: str
    ws_url: str
    primary_asset: str
    http_timeout: float
    http_retries: int
    recv_window_ms: int
    listen_key_keepalive_sec: float
    ws_reconnect_max_sec: float
    pending_event_buffer: int
    pending_event_ttl_ms: int
    log_level: str
    log_file: Optional[str]
    metrics_port: int  # 0 disables the metrics endpoint

    def dump(self) -> dict:
        """Return a dict of settings for logging, secrets masked."""
        data = self.__dict__.copy()
        for key in ("api_key", "api_secret"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls, market: Optional[str] = None) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        market = (market or os.getenv("BINANCE_MARKET", "spot")).lower()
        testnet = env_bool("BINANCE_TESTNET", False)
        table = TESTNET_ENDPOINTS if testnet else ENDPOINTS
        default_rest, default_ws = table.get(market, ("", ""))

        cfg = cls(
            api_key=os.getenv("BINANCE_API_KEY"),
            api_secret=os.getenv("BINANCE_API_SECRET"),
            market=market,
            testnet=testnet,
            rest_url=os.getenv("BINANCE_REST_URL") or default_rest,
            ws_url=os.getenv("BINANCE_WS_URL") or default_ws,
            primary_asset=os.getenv("BINANCE_PRIMARY_ASSET", "USDT").upper(),
            http_timeout=_float_env("BINANCE_HTTP_TIMEOUT", 10.0),
            http_retries=_int_env("BINANCE_HTTP_RETRIES", 2),
            recv_window_ms=_int_env("BINANCE_RECV_WINDOW_MS", 5000),
            listen_key_keepalive_sec=_float_env("BINANCE_LISTEN_KEY_KEEPALIVE_SEC", 1800.0),
            ws_reconnect_max_sec=_float_env("BINANCE_WS_RECONNECT_MAX_SEC", 60.0),
            pending_event_buffer=_int_env("BINANCE_PENDING_EVENT_BUFFER", 1000),
            pending_event_ttl_ms=_int_env("BINANCE_PENDING_EVENT_TTL_MS", 30000),
            log_level=os.getenv("BINANCE_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("BINANCE_LOG_FILE") or None,
            metrics_port=_int_env("BINANCE_METRICS_PORT", 0),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_credentials(self) -> Tuple[str, str]:
        if self.api_key and self.api_secret:
            return self.api_key, self.api_secret
        raise ConfigurationError("Missing credentials: set BINANCE_API_KEY and BINANCE_API_SECRET")

    def _validate(self) -> None:
        if self.market not in MARKETS:
            raise ValueError(f"BINANCE_MARKET must be one of {MARKETS}, got {self.market!r}")
        if not self.rest_url or not self.ws_url:
            raise ValueError("BINANCE_REST_URL and BINANCE_WS_URL must be set")
        if self.http_timeout <= 0:
            raise ValueError("BINANCE_HTTP_TIMEOUT must be > 0")
        if self.http_retries < 0:
            raise ValueError("BINANCE_HTTP_RETRIES must be >= 0")
        # Binance caps recvWindow at 60 seconds
        if not 0 < self.recv_window_ms <= 60000:
            raise ValueError("BINANCE_RECV_WINDOW_MS must be in (0, 60000]")
        if self.listen_key_keepalive_sec <= 0:
            raise ValueError("BINANCE_LISTEN_KEY_KEEPALIVE_SEC must be > 0")
        if self.ws_reconnect_max_sec <= 0:
            raise ValueError("BINANCE_WS_RECONNECT_MAX_SEC must be > 0")
        if self.pending_event_buffer < 0 or self.pending_event_ttl_ms < 0:
            raise ValueError("Pending event buffer size and TTL must be >= 0")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Unknown BINANCE_LOG_LEVEL {self.log_level!r}")
        if not 0 <= self.metrics_port <= 65535:
            raise ValueError("BINANCE_METRICS_PORT must be in [0, 65535]")

        # Listen keys expire after 60 minutes without a keepalive
        if self.listen_key_keepalive_sec >= 3600:
            logging.getLogger("binance_plugin").warning(
                "WARNING: BINANCE_LISTEN_KEY_KEEPALIVE_SEC=%s is not below the 60 minute "
                "listen key expiry. The user data stream will be closed by the exchange.",
                self.listen_key_keepalive_sec,
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    from binance_plugin.infra.logging_cfg import log_event

    log_event(
        logging.getLogger("binance_plugin"),
        "config_loaded",
        market=cfg.market,
        testnet=cfg.testnet,
        rest_url=cfg.rest_url,
        ws_url=cfg.ws_url,
        primary_asset=cfg.primary_asset,
        has_credentials=bool(cfg.api_key and cfg.api_secret),
    )
