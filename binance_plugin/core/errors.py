"""
Exception hierarchy for the plugin.

Placement rejections are NOT exceptions: they surface as a REJECTED order
carrying an OrderRejection. Exceptions here are for caller mistakes
(validation/configuration) and for the transport layer below the adapters.
"""

from __future__ import annotations

from typing import Any, Optional


class PluginError(Exception):
    """Base class for every error raised by binance_plugin."""


class ConfigurationError(PluginError):
    """Unknown timeframe, time in force, market or missing credentials."""


class UnsupportedDirectiveError(PluginError):
    """
    Order directives or account operations this exchange family cannot honour
    (stop and position-linked orders, deposit addresses on futures).
    """


class ExchangeError(PluginError):
    """Base for failures talking to the exchange."""


class ExchangeAPIError(ExchangeError):
    """
    Structured error body returned by the exchange: {"code": -2010, "msg": "..."}.
    """

    def __init__(self, code: int, msg: str = "", status: Optional[int] = None,
                 payload: Optional[Any] = None) -> None:
        super().__init__(f"[{code}] {msg}" if msg else f"[{code}]")
        self.code = code
        self.msg = msg
        self.status = status
        self.payload = payload


class ExchangeTransportError(ExchangeError):
    """Network failure, timeout or malformed response."""
