"""
Execution package.

Order lifecycle reconciliation: status mapping, idempotent trade recording,
the per-order state machine, the id -> order dispatch table, and the
awaitable resolver handed back by place_order.
"""

from binance_plugin.execution.order_registry import OrderRegistry
from binance_plugin.execution.order_state_machine import (
    STATUS_EVENTS,
    VALID_TRANSITIONS,
    Order,
    StateTransition,
    TransitionResult,
)
from binance_plugin.execution.resolver import DEFAULT_RESOLVER_EVENTS, OrderResolver
from binance_plugin.execution.status_mapper import (
    REJECTION_CODES,
    expects_more_fills,
    map_exchange_order_status,
    map_rejection,
)
from binance_plugin.execution.trade_recorder import TradeRecorder

__all__ = [
    "OrderRegistry",
    "STATUS_EVENTS",
    "VALID_TRANSITIONS",
    "Order",
    "StateTransition",
    "TransitionResult",
    "DEFAULT_RESOLVER_EVENTS",
    "OrderResolver",
    "REJECTION_CODES",
    "expects_more_fills",
    "map_exchange_order_status",
    "map_rejection",
    "TradeRecorder",
]
