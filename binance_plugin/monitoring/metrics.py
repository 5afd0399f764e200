"""
Prometheus metrics for the order lifecycle.

Organized into: orders, trades, push events, market data.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, start_http_server


class PluginMetrics:
    """Counters for order reconciliation observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self._registry = reg

        # === Order Metrics ===
        self.orders_placed = Counter(
            'binance_orders_placed_total',
            'Orders handed to the exchange',
            labelnames=['symbol', 'side', 'type'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'binance_orders_rejected_total',
            'Orders ending REJECTED',
            labelnames=['reason'],
            registry=reg
        )
        self.status_transitions = Counter(
            'binance_order_transitions_total',
            'Accepted order status transitions',
            labelnames=['to_status'],
            registry=reg
        )
        self.invalid_transitions = Counter(
            'binance_order_invalid_transitions_total',
            'Status transitions refused by the state machine',
            registry=reg
        )

        # === Trade Metrics ===
        self.trades_recorded = Counter(
            'binance_trades_recorded_total',
            'Trades appended to orders',
            registry=reg
        )
        self.trades_duplicate = Counter(
            'binance_trades_duplicate_total',
            'Fills skipped because the trade id was already recorded',
            registry=reg
        )

        # === Push Event Metrics ===
        self.push_events = Counter(
            'binance_push_events_total',
            'User stream order updates by outcome',
            labelnames=['outcome'],  # dispatched, buffered, discarded, stale, after_terminal, ignored
            registry=reg
        )

        # === Market Data Metrics ===
        self.ticks = Counter(
            'binance_ticks_total',
            'Book ticker updates by outcome',
            labelnames=['symbol', 'outcome'],  # emitted, suppressed
            registry=reg
        )

    def record_order_placed(self, symbol: str, side: str, order_type: str) -> None:
        self.orders_placed.labels(symbol=symbol, side=side, type=order_type).inc()

    def record_rejection(self, reason: str) -> None:
        self.orders_rejected.labels(reason=reason).inc()

    def record_transition(self, to_status: str) -> None:
        self.status_transitions.labels(to_status=to_status).inc()

    def record_invalid_transition(self) -> None:
        self.invalid_transitions.inc()

    def record_trade(self, duplicate: bool = False) -> None:
        if duplicate:
            self.trades_duplicate.inc()
        else:
            self.trades_recorded.inc()

    def record_push_event(self, outcome: str) -> None:
        self.push_events.labels(outcome=outcome).inc()

    def record_tick(self, symbol: str, emitted: bool) -> None:
        self.ticks.labels(symbol=symbol, outcome="emitted" if emitted else "suppressed").inc()

    def get_registry(self) -> CollectorRegistry:
        return self._registry

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose this registry over HTTP (prometheus scrape endpoint)."""
        start_http_server(port, addr=addr, registry=self._registry)
