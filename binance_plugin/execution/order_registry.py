"""
OrderRegistry: dispatch table from exchange order id to live Order.

Holds weak references only; a registered order disappears when it settles
(terminal with no fills still expected) or when nothing else references it
any more. The status-change listener id kept per order is weakly keyed too,
so a dropped order takes its bookkeeping with it.

Pre-id race: the exchange can push an update for an order before the
placement response carrying its id has been processed. While at least one
submission is in flight, updates for unknown ids are buffered (bounded count
and age) and replayed when the id gets registered. With nothing in flight,
updates for unknown ids belong to orders placed elsewhere and are discarded.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from weakref import WeakKeyDictionary, WeakValueDictionary

from binance_plugin.core.emitter import Event
from binance_plugin.core.utils import now_ms
from binance_plugin.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from binance_plugin.exchange.base import ExecutionReport
    from binance_plugin.execution.order_state_machine import Order
    from binance_plugin.monitoring.metrics import PluginMetrics

log = logging.getLogger("binance_plugin")

DISPATCHED = "dispatched"
BUFFERED = "buffered"
DISCARDED = "discarded"


class OrderRegistry:
    def __init__(
        self,
        max_buffered: int = 1000,
        buffer_ttl_ms: int = 30_000,
        metrics: Optional["PluginMetrics"] = None,
    ) -> None:
        self.max_buffered = max_buffered
        self.buffer_ttl_ms = buffer_ttl_ms
        self._metrics = metrics
        self._orders: "WeakValueDictionary[str, Order]" = WeakValueDictionary()
        self._listener_ids: "WeakKeyDictionary[Order, str]" = WeakKeyDictionary()
        # order id -> [(received_ms, report)], oldest id first
        self._buffer: "OrderedDict[str, List[Tuple[int, ExecutionReport]]]" = OrderedDict()
        self._buffered_count = 0
        self._in_flight = 0
        self._stats = {
            "registered": 0,
            "dispatched": 0,
            "buffered": 0,
            "replayed": 0,
            "discarded": 0,
            "expired": 0,
        }

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, order: "Order") -> int:
        """
        Register order under its exchange id and replay buffered updates.

        Settled orders are not registered; their buffered updates are dropped.
        An order that settles while its buffer is replayed is unregistered again.

        Returns:
            Number of buffered updates replayed
        """
        if not order.id:
            raise ValueError("cannot register an order without an exchange id")

        buffered = self._buffer.pop(order.id, [])
        self._buffered_count -= len(buffered)

        if order.is_settled:
            self._stats["discarded"] += len(buffered)
            return 0

        existing = self._orders.get(order.id)
        if existing is not None and existing is not order:
            log_event(log, "order_registry_replaced", level=logging.WARNING, order_id=order.id)
            self.unregister(order.id)

        if order.id not in self._orders:
            self._orders[order.id] = order
            self._listener_ids[order] = order.on("status-change", self._on_status_change)
            self._stats["registered"] += 1

        replayed = 0
        for _, report in sorted(buffered, key=lambda item: item[1].event_time_ms):
            order.apply_push_update(report)
            replayed += 1
        if replayed:
            self._stats["replayed"] += replayed
            log_event(log, "push_event_replayed", level=logging.DEBUG, order_id=order.id, count=replayed)
        if order.is_settled:
            self.unregister(order.id)
        return replayed

    def unregister(self, order_id: str) -> bool:
        order = self._orders.pop(order_id, None)
        if order is None:
            return False
        listener_id = self._listener_ids.pop(order, None)
        if listener_id is not None:
            order.remove_listener(listener_id)
        return True

    def lookup(self, order_id: str) -> Optional["Order"]:
        return self._orders.get(order_id)

    def active_orders(self) -> List["Order"]:
        return list(self._orders.values())

    def _on_status_change(self, event: Event) -> None:
        order = event.data["order"]
        if order.is_settled:
            self.unregister(order.id)

    # -------------------------------------------------------------------------
    # Submissions in flight
    # -------------------------------------------------------------------------

    def begin_submission(self) -> None:
        self._in_flight += 1

    def end_submission(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        if self._in_flight == 0 and self._buffer:
            dropped = self._buffered_count
            self._buffer.clear()
            self._buffered_count = 0
            self._stats["discarded"] += dropped
            log_event(log, "push_event_buffer_cleared", level=logging.DEBUG, dropped=dropped)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, report: "ExecutionReport") -> str:
        """
        Route one push update to its order.

        Returns:
            DISPATCHED, BUFFERED or DISCARDED
        """
        order = self._orders.get(report.order_id)
        if order is not None:
            self._stats["dispatched"] += 1
            self._record(DISPATCHED)
            order.apply_push_update(report)
            if order.is_settled and report.order_id in self._orders:
                self.unregister(report.order_id)
            return DISPATCHED

        if self._in_flight == 0:
            self._stats["discarded"] += 1
            self._record(DISCARDED)
            log_event(log, "push_event_unknown_order", level=logging.DEBUG,
                      order_id=report.order_id, symbol=report.symbol)
            return DISCARDED

        now = now_ms()
        self.prune_buffer(now)
        while self._buffered_count >= self.max_buffered and self._buffer:
            _, evicted = self._buffer.popitem(last=False)
            self._buffered_count -= len(evicted)
            self._stats["discarded"] += len(evicted)
            log_event(log, "push_event_buffer_full", level=logging.WARNING,
                      symbol=report.symbol, evicted=len(evicted))

        self._buffer.setdefault(report.order_id, []).append((now, report))
        self._buffered_count += 1
        self._stats["buffered"] += 1
        self._record(BUFFERED)
        return BUFFERED

    def prune_buffer(self, now: Optional[int] = None) -> int:
        """Drop buffered updates older than buffer_ttl_ms. Returns how many."""
        now = now if now is not None else now_ms()
        cutoff = now - self.buffer_ttl_ms
        removed = 0
        for order_id in list(self._buffer):
            kept = [item for item in self._buffer[order_id] if item[0] >= cutoff]
            removed += len(self._buffer[order_id]) - len(kept)
            if kept:
                self._buffer[order_id] = kept
            else:
                del self._buffer[order_id]
        if removed:
            self._buffered_count -= removed
            self._stats["expired"] += removed
        return removed

    @property
    def buffered_count(self) -> int:
        return self._buffered_count

    def _record(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_push_event(outcome)

    def clear(self) -> None:
        for order_id in list(self._orders):
            self.unregister(order_id)
        self._buffer.clear()
        self._buffered_count = 0

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "active": len(self._orders),
            "buffered_now": self._buffered_count,
            "in_flight": self._in_flight,
            "listeners": len(self._listener_ids),
        }
