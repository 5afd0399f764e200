"""
Lookup tables between canonical vocabulary and Binance wire strings.

Unknown values are caller/config mistakes, not runtime races, so they raise
ConfigurationError instead of falling back.
"""

from __future__ import annotations

from typing import Dict, Optional

from binance_plugin.core.errors import ConfigurationError
from binance_plugin.core.models import OrderDirection, OrderTimeInForce

# timeframe in seconds -> kline interval
TIMEFRAMES: Dict[int, str] = {
    60: "1m",
    180: "3m",
    300: "5m",
    900: "15m",
    1800: "30m",
    3600: "1h",
    7200: "2h",
    14400: "4h",
    21600: "6h",
    28800: "8h",
    43200: "12h",
    86400: "1d",
    259200: "3d",
    604800: "1w",
    2592000: "1M",
}

_INTERVALS: Dict[str, int] = {v: k for k, v in TIMEFRAMES.items()}

TIME_IN_FORCE: Dict[OrderTimeInForce, str] = {
    OrderTimeInForce.GOOD_TILL_CANCEL: "GTC",
    OrderTimeInForce.FILL_OR_KILL: "FOK",
    OrderTimeInForce.IMMEDIATE_OR_CANCEL: "IOC",
}

_TIME_IN_FORCE_FROM_WIRE: Dict[str, OrderTimeInForce] = {
    **{v: k for k, v in TIME_IN_FORCE.items()},
    # futures only: post-only and good-till-date
    "GTX": OrderTimeInForce.GOOD_TILL_CANCEL,
    "GTD": OrderTimeInForce.GOOD_TILL_DATE,
}


def to_binance_timeframe(timeframe: int) -> str:
    try:
        return TIMEFRAMES[int(timeframe)]
    except (KeyError, TypeError, ValueError):
        raise ConfigurationError(f"Binance doesn't support the timeframe {timeframe!r} (seconds)") from None


def from_binance_interval(interval: str) -> int:
    try:
        return _INTERVALS[interval]
    except KeyError:
        raise ConfigurationError(f"Unknown Binance kline interval {interval!r}") from None


def to_binance_time_in_force(time_in_force: OrderTimeInForce) -> str:
    try:
        return TIME_IN_FORCE[time_in_force]
    except KeyError:
        raise ConfigurationError(f"Binance doesn't support the time in force {time_in_force!r}") from None


def from_binance_time_in_force(raw: Optional[str]) -> OrderTimeInForce:
    # Market orders listed over REST carry GTC or nothing at all
    if not raw:
        return OrderTimeInForce.GOOD_TILL_CANCEL
    try:
        return _TIME_IN_FORCE_FROM_WIRE[raw.upper()]
    except KeyError:
        raise ConfigurationError(f"Unknown order time in force {raw!r}") from None


def to_binance_side(direction: OrderDirection) -> str:
    return "BUY" if direction == OrderDirection.BUY else "SELL"


def from_binance_side(raw: str) -> OrderDirection:
    return OrderDirection.BUY if str(raw).upper() == "BUY" else OrderDirection.SELL
