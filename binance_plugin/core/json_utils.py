"""
Fast JSON utilities for structured log payloads and stream frames.

Uses orjson (3-10x faster than stdlib json). Decimal values, which orjson
does not encode natively, are written as strings so no precision is lost.

Usage:
    from binance_plugin.core.json_utils import dumps, loads

    log.info(dumps({"event": "trade_recorded", "px": Decimal("20000.00")}))
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

import orjson


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=_default).decode("utf-8")


def dumps_bytes(obj: Any) -> bytes:
    """Fast JSON encode to bytes (skips the utf-8 decode)."""
    return orjson.dumps(obj, default=_default)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
