"""
Order State Machine - one live order and its lifecycle.

An Order is fed from two independent sources:
- the synchronous placement response (submit)
- asynchronous user-stream push updates (apply_push_update)

Both converge on apply_transition(), the single place where status changes.
It enforces VALID_TRANSITIONS, keeps an audit trail, and emits events:

    "status-change"   every accepted transition (status, previous, order)
    "pending" | "execute" | "cancel" | "expire" | "reject"
                      the status-specific event, right after "status-change"
    "trade"           every newly recorded fill (trade, order)

Ordering rules:
- Push updates carry the exchange event time; an update not strictly newer
  than the last accepted one is stale and changes nothing.
- Terminal statuses absorb status changes. An order executed while part of
  its volume is still working (PARTIALLY_FILLED) keeps recording the fills
  of later updates until the exchange reports it FILLED, CANCELED or
  EXPIRED; only then is it settled and later updates are dropped.
- A placement failure never raises; it ends as REJECTED with a rejection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from binance_plugin.core.emitter import Emitter, Listener
from binance_plugin.core.errors import ExchangeAPIError
from binance_plugin.core.models import (
    TERMINAL_STATUSES,
    OrderDirection,
    OrderPurpose,
    OrderRejection,
    OrderStatus,
    OrderTimeInForce,
    Trade,
    purpose_for,
)
from binance_plugin.core.utils import now_ms
from binance_plugin.execution.trade_recorder import TradeRecorder
from binance_plugin.exchange.mappings import to_binance_side, to_binance_time_in_force
from binance_plugin.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from binance_plugin.exchange.base import ExchangeAdapter, ExecutionReport, PlacementAck
    from binance_plugin.monitoring.metrics import PluginMetrics

log = logging.getLogger("binance_plugin")


# Valid status transitions
VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.REQUESTED: [
        OrderStatus.PENDING,       # Resting on the book
        OrderStatus.EXECUTED,      # Matched immediately (market order)
        OrderStatus.REJECTED,      # Refused, or never reached the exchange
    ],
    OrderStatus.PENDING: [
        OrderStatus.EXECUTED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
        OrderStatus.REJECTED,
    ],
    # Terminal states - no transitions allowed
    OrderStatus.EXECUTED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.EXPIRED: [],
    OrderStatus.REJECTED: [],
}

STATUS_EVENTS: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "pending",
    OrderStatus.EXECUTED: "execute",
    OrderStatus.CANCELLED: "cancel",
    OrderStatus.EXPIRED: "expire",
    OrderStatus.REJECTED: "reject",
}

# Statuses only reachable from PENDING; a REQUESTED order reported in one of
# these (IOC/FOK expiring unmatched) passes through PENDING first.
_VIA_PENDING = frozenset({OrderStatus.CANCELLED, OrderStatus.EXPIRED})


@dataclass
class StateTransition:
    """Record of a status transition."""
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp_ms: int
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionResult:
    """Outcome of apply_transition: the resulting status, or why it was refused."""
    accepted: bool
    status: OrderStatus
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted


class Order:
    """
    One order placed through an account session.

    Thread-safety: none. All mutation happens on the event loop thread; an
    emit() delivers to sync listeners before returning, so no two updates of
    the same order ever interleave.
    """

    def __init__(
        self,
        *,
        symbol: str,
        direction: OrderDirection,
        requested_volume: Decimal,
        adapter: "ExchangeAdapter",
        id: str = "",
        limit_price: Optional[Decimal] = None,
        time_in_force: OrderTimeInForce = OrderTimeInForce.GOOD_TILL_CANCEL,
        purpose: Optional[OrderPurpose] = None,
        status: OrderStatus = OrderStatus.REQUESTED,
        creation_date_ms: Optional[int] = None,
        last_update_ms: Optional[int] = None,
        trades: Optional[Iterable[Trade]] = None,
        rejection: Optional[OrderRejection] = None,
        is_stop_out: bool = False,
        awaiting_fills: bool = False,
        recorder: Optional[TradeRecorder] = None,
        metrics: Optional["PluginMetrics"] = None,
    ) -> None:
        self.symbol = symbol
        self.direction = direction
        self.requested_volume = requested_volume
        self.limit_price = limit_price
        self.time_in_force = time_in_force
        self.purpose = purpose or purpose_for(direction)
        self.is_stop_out = is_stop_out
        self.creation_date_ms = creation_date_ms

        self._id = str(id) if id else ""
        self._status = status
        self._rejection = rejection
        self._last_update_ms = last_update_ms
        self._trades: List[Trade] = list(trades or [])
        self._trade_ids = {t.id for t in self._trades}
        self._transitions: List[StateTransition] = []
        self._submitted = False
        self._awaiting_fills = awaiting_fills

        self._adapter = adapter
        self._recorder = recorder or TradeRecorder(metrics)
        self._metrics = metrics
        self._emitter = Emitter(source=f"order:{self._id or 'new'}")

    def __repr__(self) -> str:
        return (
            f"Order(id={self._id!r}, symbol={self.symbol!r}, direction={self.direction.value}, "
            f"volume={self.requested_volume}, status={self._status.value})"
        )

    # -------------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def status(self) -> OrderStatus:
        return self._status

    @property
    def rejection(self) -> Optional[OrderRejection]:
        return self._rejection

    @property
    def last_update_ms(self) -> Optional[int]:
        return self._last_update_ms

    @property
    def trades(self) -> Tuple[Trade, ...]:
        return tuple(self._trades)

    @property
    def transitions(self) -> Tuple[StateTransition, ...]:
        return tuple(self._transitions)

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def awaiting_fills(self) -> bool:
        """Executed, with more fills still expected from the exchange."""
        return self._awaiting_fills

    @property
    def is_settled(self) -> bool:
        """Terminal and expecting nothing more: no update can change it any more."""
        return self.is_terminal and not self._awaiting_fills

    @property
    def is_market(self) -> bool:
        return self.limit_price is None

    @property
    def executed_volume(self) -> Decimal:
        return sum((t.volume for t in self._trades), Decimal(0))

    @property
    def emitter(self) -> Emitter:
        return self._emitter

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        if trade_id not in self._trade_ids:
            return None
        for trade in self._trades:
            if trade.id == trade_id:
                return trade
        return None

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: Listener, priority: int = 0) -> str:
        return self._emitter.on(event, handler, priority=priority)

    def remove_listener(self, listener_id: str) -> bool:
        return self._emitter.remove_listener(listener_id)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def _assign_id(self, order_id: str) -> None:
        order_id = str(order_id)
        if self._id and self._id != order_id:
            log_event(log, "order_id_mismatch", level=logging.WARNING,
                      order_id=self._id, reported_id=order_id)
            return
        self._id = order_id
        self._emitter.source = f"order:{order_id}"

    def _touch(self, timestamp_ms: Optional[int]) -> None:
        # last update never moves backwards
        if timestamp_ms is None:
            return
        if self._last_update_ms is None or timestamp_ms > self._last_update_ms:
            self._last_update_ms = timestamp_ms

    def _append_trade(self, trade: Trade) -> None:
        """Called by TradeRecorder once the trade id is known to be new."""
        self._trades.append(trade)
        self._trade_ids.add(trade.id)
        self._emitter.emit("trade", trade=trade, order=self)

    def apply_transition(
        self,
        to_status: OrderStatus,
        timestamp_ms: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Move the order to to_status if VALID_TRANSITIONS allows it.

        Returns:
            TransitionResult(accepted=True, status=to_status) on success,
            otherwise accepted=False with the unchanged status and a reason
        """
        from_status = self._status

        if to_status == from_status:
            return TransitionResult(False, from_status, "unchanged")

        if from_status in TERMINAL_STATUSES:
            log_event(log, "order_update_after_terminal", level=logging.DEBUG,
                      order_id=self._id, status=from_status.value, to_status=to_status.value)
            return TransitionResult(False, from_status, "terminal")

        if from_status == OrderStatus.REQUESTED and to_status in _VIA_PENDING:
            self.apply_transition(OrderStatus.PENDING, timestamp_ms=timestamp_ms,
                                  reason="implicit_ack", metadata=metadata)
            from_status = self._status

        if to_status not in VALID_TRANSITIONS.get(from_status, []):
            if self._metrics:
                self._metrics.record_invalid_transition()
            log_event(log, "order_invalid_transition", level=logging.WARNING,
                      order_id=self._id, from_status=from_status.value,
                      to_status=to_status.value, reason=reason)
            return TransitionResult(False, from_status, "invalid_transition")

        ts = timestamp_ms if timestamp_ms is not None else now_ms()
        self._transitions.append(StateTransition(
            from_status=from_status,
            to_status=to_status,
            timestamp_ms=ts,
            reason=reason,
            metadata=metadata or {},
        ))
        self._status = to_status
        self._touch(ts)

        if self._metrics:
            self._metrics.record_transition(to_status.value)

        # Acks are routine; fills, cancels and rejects are worth INFO
        level = logging.DEBUG if to_status == OrderStatus.PENDING else logging.INFO
        log_event(
            log,
            "order_status_change",
            level=level,
            order_id=self._id,
            symbol=self.symbol,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
            rejection=self._rejection.value if self._rejection else None,
            trades=len(self._trades),
        )

        self._emitter.emit("status-change", status=to_status, previous=from_status, order=self)
        self._emitter.emit(STATUS_EVENTS[to_status], order=self)
        return TransitionResult(True, to_status)

    # -------------------------------------------------------------------------
    # Placement
    # -------------------------------------------------------------------------

    def build_order_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": to_binance_side(self.direction),
            "quantity": str(self.requested_volume),
        }
        if self.is_market:
            params["type"] = "MARKET"
        else:
            params["type"] = "LIMIT"
            params["price"] = str(self.limit_price)
            params["timeInForce"] = to_binance_time_in_force(self.time_in_force)
        return params

    async def submit(self) -> None:
        """
        Send the order to the exchange and apply the placement response.

        Never raises: any failure ends in REJECTED with a rejection reason
        (UNKNOWN unless the exchange error code maps to a known one).
        """
        if self._submitted:
            log_event(log, "order_submit_twice", level=logging.WARNING, order_id=self._id)
            return
        self._submitted = True

        try:
            params = self.build_order_params()
            log_event(log, "order_submit", level=logging.DEBUG, **params)
            ack = await self._adapter.place_order(params)
        except ExchangeAPIError as exc:
            self._reject(self._adapter.map_rejection(exc.code), f"exchange_error:{exc.code}", str(exc))
            return
        except Exception as exc:
            self._reject(OrderRejection.UNKNOWN, "submit_failed", str(exc))
            return

        try:
            self._apply_placement(ack)
        except Exception as exc:
            log_event(log, "order_placement_response_error", level=logging.ERROR,
                      order_id=self._id, err=str(exc))
            if not self.is_terminal:
                self._reject(OrderRejection.UNKNOWN, "malformed_response", str(exc))

    def _apply_placement(self, ack: "PlacementAck") -> None:
        self._assign_id(ack.order_id)
        if self.creation_date_ms is None:
            self.creation_date_ms = ack.transact_time_ms
        self._touch(ack.transact_time_ms)

        status = self._adapter.map_status(ack.status, ack.order_type)
        if status == OrderStatus.REJECTED and self._rejection is None:
            self._rejection = OrderRejection.UNKNOWN

        for fill in ack.fills:
            self._recorder.record_fill(self, fill, execution_date_ms=ack.transact_time_ms)

        # Set before the transition so registry listeners see an open order
        if status == OrderStatus.EXECUTED:
            self._awaiting_fills = self._adapter.expects_more_fills(ack.status)

        if status != self._status:
            self.apply_transition(status, timestamp_ms=ack.transact_time_ms, reason="placement_response")

    def _reject(self, rejection: OrderRejection, reason: str, err: str) -> None:
        ts = now_ms()
        if self.creation_date_ms is None:
            self.creation_date_ms = ts
        # Set before the transition so "reject" listeners can read it
        self._rejection = rejection
        if self._metrics:
            self._metrics.record_rejection(rejection.value)
        log_event(log, "order_rejected", level=logging.WARNING, order_id=self._id,
                  symbol=self.symbol, rejection=rejection.value, reason=reason, err=err)
        self.apply_transition(OrderStatus.REJECTED, timestamp_ms=ts, reason=reason)

    # -------------------------------------------------------------------------
    # Push updates
    # -------------------------------------------------------------------------

    def apply_push_update(self, report: "ExecutionReport") -> bool:
        """
        Apply one user-stream update.

        The trade carried by the update is recorded before any status change.
        An executed order still awaiting fills records further trades but
        never transitions again; it settles once the raw status stops being
        PARTIALLY_FILLED.

        Returns:
            True if the update was accepted (newer than everything seen so
            far and the order not yet settled), False if it was dropped
        """
        if report.order_id != self._id:
            log_event(log, "push_event_wrong_order", level=logging.DEBUG,
                      order_id=self._id, reported_id=report.order_id)
            return False

        if self.is_settled:
            if self._metrics:
                self._metrics.record_push_event("after_terminal")
            log_event(log, "push_event_after_terminal", level=logging.DEBUG,
                      order_id=self._id, status=self._status.value, raw_status=report.status)
            return False

        ts = report.event_time_ms
        if self._last_update_ms is not None and ts <= self._last_update_ms:
            if self._metrics:
                self._metrics.record_push_event("stale")
            log_event(log, "push_event_stale", level=logging.DEBUG, order_id=self._id,
                      symbol=self.symbol, event_time=ts, last_update=self._last_update_ms)
            return False

        self._touch(ts)
        status = self._adapter.map_status(report.status, report.order_type)

        if report.is_trade:
            self._recorder.record_fill(self, report.fill_payload(), execution_date_ms=ts)

        if self.is_terminal:
            self._awaiting_fills = self._adapter.expects_more_fills(report.status)
            if not self._awaiting_fills:
                log_event(log, "order_fills_complete", order_id=self._id, symbol=self.symbol,
                          raw_status=report.status, executed_volume=self.executed_volume,
                          trades=len(self._trades))
            return True

        if status == OrderStatus.EXECUTED:
            self._awaiting_fills = self._adapter.expects_more_fills(report.status)
        if status == OrderStatus.REJECTED and self._rejection is None:
            self._rejection = OrderRejection.UNKNOWN

        if status != self._status:
            self.apply_transition(status, timestamp_ms=ts, reason=f"push:{report.execution_type}")
        return True

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    async def cancel(self) -> bool:
        """
        Cancel a resting order.

        Only PENDING orders can be cancelled; anything else is a no-op. A
        failed cancel request leaves the status unchanged.

        Returns:
            True if the order ended CANCELLED by this call
        """
        if self._status != OrderStatus.PENDING:
            log_event(log, "order_cancel_ignored", level=logging.DEBUG,
                      order_id=self._id, status=self._status.value)
            return False

        try:
            await self._adapter.cancel_order(self.symbol, self._id)
        except Exception as exc:
            log_event(log, "order_cancel_failed", level=logging.WARNING,
                      order_id=self._id, symbol=self.symbol, err=str(exc))
            return False

        # A push update may have settled the order while the request was in flight
        return self.apply_transition(OrderStatus.CANCELLED, timestamp_ms=now_ms(),
                                     reason="cancel_ack").accepted
