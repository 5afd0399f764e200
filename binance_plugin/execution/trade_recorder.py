"""
TradeRecorder: idempotent conversion of raw fills into Trade records.

The same fill can reach an order twice: once inside the synchronous placement
response and again as a TRADE push update. Trades are keyed by exchange trade
id within the order, so a repeated fill is a no-op.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from binance_plugin.core.models import (
    OrderDirection,
    OrderPurpose,
    Trade,
    TradeDirection,
    TradePurpose,
    TradeStatus,
)
from binance_plugin.core.utils import now_ms, to_decimal, to_int_safe
from binance_plugin.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from binance_plugin.execution.order_state_machine import Order
    from binance_plugin.monitoring.metrics import PluginMetrics

log = logging.getLogger("binance_plugin")


class TradeRecorder:
    """
    Builds Trade records from raw fills and appends them to their order.

    Single-threaded asyncio usage only (no internal locks).
    """

    def __init__(self, metrics: Optional["PluginMetrics"] = None) -> None:
        self._metrics = metrics
        self._stats = {
            "recorded": 0,
            "duplicates": 0,
        }

    @staticmethod
    def make_trade_key(order_id: str, trade_id: Any) -> str:
        return f"{order_id}_{trade_id}"

    def build_trade(self, order: "Order", raw_fill: Dict[str, Any],
                    execution_date_ms: Optional[int] = None) -> Trade:
        """
        Build a Trade from a raw fill.

        raw_fill keys: tradeId, price, qty, commission, commissionAsset and
        optionally time. Direction and purpose are taken from the order.
        """
        trade_id = raw_fill.get("tradeId")
        if trade_id is None or trade_id == "":
            raise ValueError(f"fill without tradeId for order {order.id}")

        executed_at = to_int_safe(raw_fill.get("time")) or execution_date_ms
        if executed_at is None:
            executed_at = order.last_update_ms or now_ms()

        commission = raw_fill.get("commission")
        return Trade(
            id=str(trade_id),
            order_id=order.id,
            symbol=order.symbol,
            direction=TradeDirection.BUY if order.direction == OrderDirection.BUY else TradeDirection.SELL,
            purpose=TradePurpose.OPEN if order.purpose == OrderPurpose.OPEN else TradePurpose.CLOSE,
            volume=to_decimal(raw_fill["qty"]),
            execution_price=to_decimal(raw_fill["price"]),
            commission=to_decimal(commission) if commission not in (None, "") else to_decimal(0),
            commission_asset=str(raw_fill.get("commissionAsset") or ""),
            execution_date_ms=executed_at,
            status=TradeStatus.EXECUTED,
        )

    def record_fill(self, order: "Order", raw_fill: Dict[str, Any],
                    execution_date_ms: Optional[int] = None) -> Trade:
        """
        Record one fill on order.

        Returns:
            The new Trade, or the already recorded one when the trade id
            was seen before on this order (no event is emitted then)
        """
        trade = self.build_trade(order, raw_fill, execution_date_ms)

        existing = order.get_trade(trade.id)
        if existing is not None:
            self._stats["duplicates"] += 1
            if self._metrics:
                self._metrics.record_trade(duplicate=True)
            log.debug("trade_dedup_skip key=%s", self.make_trade_key(order.id, trade.id))
            return existing

        order._append_trade(trade)
        self._stats["recorded"] += 1
        if self._metrics:
            self._metrics.record_trade(duplicate=False)
        log_event(
            log,
            "trade_recorded",
            order_id=order.id,
            trade_id=trade.id,
            symbol=trade.symbol,
            direction=trade.direction.value,
            volume=trade.volume,
            price=trade.execution_price,
            commission=trade.commission,
            commission_asset=trade.commission_asset,
        )
        return trade

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
