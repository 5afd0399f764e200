"""
Utility helpers.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def to_decimal(value: Any) -> Decimal:
    """
    Parse a wire value into Decimal without going through binary float.

    Wire values are decimal strings ("20000.00"); ints and floats are routed
    through str() so 0.01 stays 0.01.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        raise ValueError("cannot parse empty value as decimal")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal value: {value!r}") from exc


def to_decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def ms_to_datetime(ts_ms: Optional[int]) -> Optional[datetime]:
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)


def to_int_safe(value: Any) -> Optional[int]:
    """Coerce ids/timestamps that may arrive as str or int; None on failure."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
