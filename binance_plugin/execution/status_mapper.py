"""
Status Mapper: exchange order-status vocabulary -> canonical OrderStatus.

The exchange reports PARTIALLY_FILLED and FILLED as distinct statuses but,
from the order-status perspective, both mean EXECUTED. PARTIALLY_FILLED also
means more fills are coming (expects_more_fills); the accumulated trade list
is the only volume accounting, no completion percentage is inferred here.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from binance_plugin.core.models import OrderRejection, OrderStatus

log = logging.getLogger("binance_plugin")

MARKET_ORDER_TYPE = "MARKET"

_STATUS_TABLE: Dict[str, OrderStatus] = {
    "PARTIALLY_FILLED": OrderStatus.EXECUTED,
    "FILLED": OrderStatus.EXECUTED,
    "PENDING_CANCEL": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "EXPIRED": OrderStatus.EXPIRED,
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
    "REJECTED": OrderStatus.REJECTED,
}

# The order is executed but part of its volume is still working on the book
OPEN_FILL_STATUSES = frozenset({"PARTIALLY_FILLED"})

# Error codes reference: https://github.com/binance/binance-spot-api-docs/blob/master/errors.md
REJECTION_CODES: Dict[int, OrderRejection] = {
    -2010: OrderRejection.NOT_ENOUGH_MONEY,
    -1121: OrderRejection.SYMBOL_NOT_FOUND,
}


def map_exchange_order_status(raw_status: Optional[str], raw_type: Optional[str]) -> OrderStatus:
    """
    Translate a raw order status + order type into the canonical status.

    NEW on a market order stays REQUESTED: market orders skip the resting
    state. Unknown statuses never raise; they log and fall back to REQUESTED.
    """
    status = (raw_status or "").upper()
    if status == "NEW":
        if (raw_type or "").upper() == MARKET_ORDER_TYPE:
            return OrderStatus.REQUESTED
        return OrderStatus.PENDING

    mapped = _STATUS_TABLE.get(status)
    if mapped is None:
        log.warning("unknown_order_status raw_status=%s raw_type=%s", raw_status, raw_type)
        return OrderStatus.REQUESTED
    return mapped


def expects_more_fills(raw_status: Optional[str]) -> bool:
    """True while the exchange can still report fills for an executed order."""
    return (raw_status or "").upper() in OPEN_FILL_STATUSES


def map_rejection(code: Optional[int], overrides: Optional[Mapping[int, OrderRejection]] = None) -> OrderRejection:
    """Classify an exchange error code into a canonical rejection reason."""
    if code is None:
        return OrderRejection.UNKNOWN
    if overrides and code in overrides:
        return overrides[code]
    return REJECTION_CODES.get(code, OrderRejection.UNKNOWN)
