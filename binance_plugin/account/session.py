"""
AccountSession: one authenticated trading account.

Owns the exchange adapter, the symbol table, exactly one user-data push
subscription, and the dispatch table that routes every push update to the
Order it belongs to. Orders are created here (send_order / place_order) and
reconcile themselves from then on.

Session events:
    "order"          a new order was created by send_order (order)
    "tick"           a watched symbol's best bid/ask moved (tick)
    "period-update"  a watched symbol's current candle changed (period)
    "period-close"   a watched symbol's candle closed (period)
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from binance_plugin.core.emitter import Emitter, Listener
from binance_plugin.core.errors import UnsupportedDirectiveError
from binance_plugin.core.models import (
    Asset,
    AssetStatement,
    OrderDirectives,
    OrderStatus,
    OrderTimeInForce,
    Period,
    QuotationPrice,
    Symbol,
    Tick,
    TickMovement,
    Trade,
    TradeDirection,
    TradePurpose,
    TradeStatus,
)
from binance_plugin.core.utils import now_ms, to_decimal, to_decimal_or_none, to_int_safe
from binance_plugin.exchange.base import ExchangeAdapter, Unsubscribe
from binance_plugin.exchange.mappings import (
    from_binance_side,
    from_binance_time_in_force,
    to_binance_side,
    to_binance_time_in_force,
    to_binance_timeframe,
)
from binance_plugin.execution.order_registry import OrderRegistry
from binance_plugin.execution.order_state_machine import Order
from binance_plugin.execution.resolver import OrderResolver
from binance_plugin.execution.trade_recorder import TradeRecorder
from binance_plugin.infra.logging_cfg import log_event
from binance_plugin.monitoring.metrics import PluginMetrics

log = logging.getLogger("binance_plugin")

PRIMARY_ASSET = "USDT"


def get_symbol_filter(raw_symbol: Dict[str, Any], filter_type: str) -> Optional[Dict[str, Any]]:
    for entry in raw_symbol.get("filters", []):
        if entry.get("filterType") == filter_type:
            return entry
    return None


def classify_tick_movement(previous: Optional[Tick], bid: Decimal, ask: Decimal) -> Optional[TickMovement]:
    """
    Movement of a new bid/ask pair relative to the previous tick.

    Returns None when neither side changed (the update is a duplicate).
    """
    if previous is None:
        return TickMovement.BID_ASK
    bid_changed = bid != previous.bid
    ask_changed = ask != previous.ask
    if bid_changed and ask_changed:
        return TickMovement.BID_ASK
    if bid_changed:
        return TickMovement.BID
    if ask_changed:
        return TickMovement.ASK
    return None


class AccountSession:
    def __init__(
        self,
        adapter: ExchangeAdapter,
        account_id: str = "",
        primary_asset: str = PRIMARY_ASSET,
        pending_event_buffer: int = 1000,
        pending_event_ttl_ms: int = 30_000,
        metrics: Optional[PluginMetrics] = None,
    ) -> None:
        self.adapter = adapter
        self.account_id = account_id
        self.primary_asset = primary_asset
        self.metrics = metrics
        self._emitter = Emitter(source=f"account:{account_id or adapter.name}")
        self._recorder = TradeRecorder(metrics)
        self._registry = OrderRegistry(
            max_buffered=pending_event_buffer,
            buffer_ttl_ms=pending_event_ttl_ms,
            metrics=metrics,
        )
        self._symbols: Dict[str, Symbol] = {}
        self._last_ticks: Dict[str, Tick] = {}
        self._tick_streams: Dict[str, Unsubscribe] = {}
        self._period_streams: Dict[Tuple[str, int], Unsubscribe] = {}
        self._user_stream: Optional[Unsubscribe] = None
        self._submissions: Set[asyncio.Task] = set()
        self._logged_out = False

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: Listener, priority: int = 0) -> str:
        return self._emitter.on(event, handler, priority=priority)

    def remove_listener(self, listener_id: str) -> bool:
        return self._emitter.remove_listener(listener_id)

    @property
    def registry(self) -> OrderRegistry:
        return self._registry

    # -------------------------------------------------------------------------
    # Login / preload
    # -------------------------------------------------------------------------

    async def preload(self) -> None:
        await self._preload_symbols()
        await self._configure_listeners()
        log_event(log, "account_preloaded", account=self.account_id,
                  adapter=self.adapter.name, symbols=len(self._symbols))

    async def _preload_symbols(self) -> None:
        info = await self.adapter.get_exchange_info()
        # Rebuilt from scratch so delisted symbols disappear
        self._symbols.clear()
        for raw in info.get("symbols", []):
            lot = get_symbol_filter(raw, "LOT_SIZE") or {}
            self._symbols[raw["symbol"]] = Symbol(
                symbol=raw["symbol"],
                base_asset=raw.get("baseAsset", ""),
                quote_asset=raw.get("quoteAsset", ""),
                min_lots=to_decimal_or_none(lot.get("minQty")),
                max_lots=to_decimal_or_none(lot.get("maxQty")),
            )

    async def _configure_listeners(self) -> None:
        if self._user_stream is not None:
            return
        self._user_stream = await self.adapter.subscribe_user_events(self._on_user_event)

    def _on_user_event(self, raw: Dict[str, Any]) -> None:
        try:
            report = self.adapter.parse_user_event(raw)
        except (KeyError, TypeError, ValueError) as exc:
            log_event(log, "push_event_malformed", level=logging.WARNING, err=str(exc))
            return
        if report is None:
            if self.metrics:
                self.metrics.record_push_event("ignored")
            return
        try:
            self._registry.dispatch(report)
        except Exception as exc:
            log_event(log, "push_event_dispatch_error", level=logging.ERROR,
                      order_id=report.order_id, err=str(exc))

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def validate_directives(self, directives: OrderDirectives) -> None:
        """Raise UnsupportedDirectiveError/ConfigurationError before any network call."""
        if directives.stop is not None:
            raise UnsupportedDirectiveError("Stop orders are not supported by Binance in this plugin")
        if directives.position_id:
            raise UnsupportedDirectiveError("Position-linked orders are not supported by Binance")
        if not directives.symbol:
            raise UnsupportedDirectiveError("Order directives require a symbol")
        if directives.volume <= 0:
            raise UnsupportedDirectiveError(f"Order volume must be positive, got {directives.volume}")
        if directives.limit is not None and directives.limit <= 0:
            raise UnsupportedDirectiveError(f"Limit price must be positive, got {directives.limit}")
        if directives.limit is not None:
            to_binance_time_in_force(directives.time_in_force or OrderTimeInForce.GOOD_TILL_CANCEL)

    def send_order(self, directives: OrderDirectives) -> OrderResolver:
        """
        Create an order and submit it in the background.

        Validation errors raise here, synchronously. Everything after that is
        expressed through the order's status and events.

        Returns:
            Resolver settling on the first of directives.resolver_events
        """
        self.validate_directives(directives)

        order = Order(
            symbol=directives.symbol,
            direction=directives.direction,
            requested_volume=directives.volume,
            limit_price=directives.limit,
            time_in_force=directives.time_in_force or OrderTimeInForce.GOOD_TILL_CANCEL,
            adapter=self.adapter,
            recorder=self._recorder,
            metrics=self.metrics,
        )
        resolver = OrderResolver(order, directives.resolver_events)
        for event, listener in directives.listeners.items():
            order.on(event, listener)

        self._emitter.emit("order", order=order)
        if self.metrics:
            self.metrics.record_order_placed(order.symbol, to_binance_side(order.direction),
                                             "MARKET" if order.is_market else "LIMIT")

        self._registry.begin_submission()
        task = asyncio.create_task(self._submit(order), name=f"submit:{order.symbol}")
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)
        return resolver

    async def place_order(self, directives: OrderDirectives) -> Order:
        """send_order, then wait for the resolver."""
        return await self.send_order(directives)

    async def _submit(self, order: Order) -> None:
        try:
            await order.submit()
            # No await between the response and registration: buffered
            # updates are replayed before any newer one is dispatched
            if order.id:
                self._registry.register(order)
        finally:
            self._registry.end_submission()

    def _normalize_order(self, raw: Dict[str, Any]) -> Order:
        order_id = str(raw["orderId"])
        live = self._registry.lookup(order_id)
        if live is not None:
            return live

        created = to_int_safe(raw.get("time"))
        updated = to_int_safe(raw.get("updateTime")) or created
        order_type = str(raw.get("type", ""))
        status = self.adapter.map_status(raw.get("status"), order_type)
        awaiting_fills = status == OrderStatus.EXECUTED and self.adapter.expects_more_fills(raw.get("status"))
        order = Order(
            id=order_id,
            symbol=raw["symbol"],
            direction=from_binance_side(raw.get("side", "")),
            requested_volume=to_decimal(raw.get("origQty", "0")),
            limit_price=to_decimal(raw["price"]) if order_type.upper() == "LIMIT" else None,
            time_in_force=from_binance_time_in_force(raw.get("timeInForce")),
            status=status,
            creation_date_ms=created,
            last_update_ms=updated,
            awaiting_fills=awaiting_fills,
            adapter=self.adapter,
            recorder=self._recorder,
            metrics=self.metrics,
        )
        if not order.is_settled:
            self._registry.register(order)
        return order

    async def get_orders(self, symbol: str) -> List[Order]:
        """Executed orders of symbol."""
        raw_orders = await self.adapter.get_all_orders(symbol)
        orders = [self._normalize_order(raw) for raw in raw_orders]
        return [o for o in orders if o.status == OrderStatus.EXECUTED]

    async def get_pending_orders(self, symbol: Optional[str] = None) -> List[Order]:
        raw_orders = await self.adapter.get_open_orders(symbol)
        orders = [self._normalize_order(raw) for raw in raw_orders]
        return [o for o in orders if o.status == OrderStatus.PENDING]

    async def get_trades(self, symbol: str) -> List[Trade]:
        trades = []
        for raw in await self.adapter.get_my_trades(symbol):
            is_buyer = bool(raw.get("isBuyer"))
            trades.append(Trade(
                id=str(raw["id"]),
                order_id=str(raw["orderId"]),
                symbol=symbol,
                direction=TradeDirection.BUY if is_buyer else TradeDirection.SELL,
                purpose=TradePurpose.OPEN if is_buyer else TradePurpose.CLOSE,
                volume=to_decimal(raw["qty"]),
                execution_price=to_decimal(raw["price"]),
                commission=to_decimal(raw.get("commission", "0")),
                commission_asset=str(raw.get("commissionAsset", "")),
                execution_date_ms=int(raw["time"]),
                status=TradeStatus.EXECUTED,
            ))
        return trades

    # -------------------------------------------------------------------------
    # Balances
    # -------------------------------------------------------------------------

    async def _balances(self) -> List[Dict[str, Any]]:
        return (await self.adapter.get_account_info()).get("balances", [])

    @staticmethod
    def _statement(raw: Dict[str, Any], date_ms: int) -> AssetStatement:
        return AssetStatement(
            asset=raw["asset"],
            free_volume=to_decimal(raw.get("free", "0")),
            locked_volume=to_decimal(raw.get("locked", "0")),
            date_ms=date_ms,
        )

    async def get_asset_balance(self, asset: str) -> AssetStatement:
        date_ms = now_ms()
        for raw in await self._balances():
            if raw["asset"] == asset:
                return self._statement(raw, date_ms)
        return AssetStatement(asset=asset, free_volume=Decimal(0), locked_volume=Decimal(0), date_ms=date_ms)

    async def get_balance(self) -> Decimal:
        """Total (free + locked + borrowed) of the primary asset."""
        return (await self.get_asset_balance(self.primary_asset)).total_volume

    async def get_balance_sheet(self) -> List[AssetStatement]:
        """Every asset with a non-zero total."""
        date_ms = now_ms()
        sheet = []
        for raw in await self._balances():
            statement = self._statement(raw, date_ms)
            if statement.total_volume > 0:
                sheet.append(statement)
        return sheet

    async def get_assets(self) -> List[str]:
        return [raw["asset"] for raw in await self._balances()]

    async def get_asset(self, asset: str) -> Optional[Asset]:
        """The asset if the account lists it among its balances, else None."""
        for raw in await self._balances():
            if raw["asset"] == asset:
                return Asset(id=asset, name=asset)
        return None

    async def get_crypto_asset_deposit_address(self, asset: str, network: Optional[str] = None) -> str:
        address = await self.adapter.get_deposit_address(asset, network)
        log_event(log, "deposit_address_fetched", level=logging.DEBUG, asset=asset, network=network)
        return address

    async def get_equity(self) -> Decimal:
        """
        Balance sheet valued in the primary asset at the best bid.

        Assets with no direct market against the primary asset are left out.
        """
        sheet = await self.get_balance_sheet()
        tickers = await self.adapter.get_all_book_tickers()
        total = Decimal(0)
        for statement in sheet:
            asset = statement.asset
            volume = statement.free_volume + statement.locked_volume
            if asset == self.primary_asset:
                total += volume
                continue
            direct = tickers.get(asset + self.primary_asset)
            if direct is not None:
                total += volume * to_decimal(direct["bidPrice"])
                continue
            inverse = tickers.get(self.primary_asset + asset)
            if inverse is None or to_decimal(inverse["bidPrice"]) == 0:
                log_event(log, "equity_rate_missing", level=logging.WARNING,
                          asset=asset, primary_asset=self.primary_asset)
                continue
            total += volume / to_decimal(inverse["bidPrice"])
        return total

    async def get_open_positions(self) -> List[Any]:
        return []

    # -------------------------------------------------------------------------
    # Symbols & market data
    # -------------------------------------------------------------------------

    async def get_symbols(self) -> List[str]:
        return list(self._symbols)

    async def get_symbol(self, symbol: str) -> Optional[Symbol]:
        return self._symbols.get(symbol)

    async def is_symbol_market_open(self, symbol: str) -> bool:
        return True

    async def _fetch_tick(self, symbol: str) -> Tick:
        _, bid, ask = self.adapter.parse_book_ticker(await self.adapter.get_book_ticker(symbol))
        return Tick(symbol=symbol, bid=bid, ask=ask, date_ms=now_ms())

    async def get_symbol_bid(self, symbol: str) -> Decimal:
        tick = self._last_ticks.get(symbol) or await self._fetch_tick(symbol)
        return tick.bid

    async def get_symbol_ask(self, symbol: str) -> Decimal:
        tick = self._last_ticks.get(symbol) or await self._fetch_tick(symbol)
        return tick.ask

    async def get_symbol_average_price(self, symbol: str) -> Decimal:
        return await self.adapter.get_average_price(symbol)

    async def get_symbol_periods(self, symbol: str, timeframe: int) -> List[Period]:
        interval = to_binance_timeframe(timeframe)
        candles = await self.adapter.get_candles(symbol, interval)
        return [self._period(symbol, timeframe, candle) for candle in candles]

    @staticmethod
    def _period(symbol: str, timeframe: int, candle: Dict[str, Any]) -> Period:
        return Period(
            symbol=symbol,
            timeframe=timeframe,
            start_date_ms=int(candle["openTime"]),
            open=to_decimal(candle["open"]),
            high=to_decimal(candle["high"]),
            low=to_decimal(candle["low"]),
            close=to_decimal(candle["close"]),
            volume=to_decimal(candle["volume"]),
            quotation_price=QuotationPrice.BID,
            is_closed=bool(candle.get("closed", True)),
        )

    async def watch_symbol_ticks(self, symbol: str) -> None:
        if symbol in self._tick_streams:
            return
        self._tick_streams[symbol] = await self.adapter.subscribe_book_ticker(symbol, self._on_tick)

    async def unwatch_symbol_ticks(self, symbol: str) -> None:
        unsubscribe = self._tick_streams.pop(symbol, None)
        if unsubscribe is not None:
            await unsubscribe()

    def _on_tick(self, raw: Dict[str, Any]) -> Optional[Tick]:
        symbol, bid, ask = self.adapter.parse_book_ticker(raw)
        movement = classify_tick_movement(self._last_ticks.get(symbol), bid, ask)
        if movement is None:
            if self.metrics:
                self.metrics.record_tick(symbol, emitted=False)
            return None

        tick = Tick(symbol=symbol, bid=bid, ask=ask, date_ms=now_ms(), movement=movement)
        self._last_ticks[symbol] = tick
        if self.metrics:
            self.metrics.record_tick(symbol, emitted=True)
        if symbol in self._tick_streams:
            self._emitter.emit("tick", tick=tick)
        return tick

    async def watch_symbol_periods(self, symbol: str, timeframe: int) -> None:
        key = (symbol, timeframe)
        if key in self._period_streams:
            return
        interval = to_binance_timeframe(timeframe)

        def _on_kline(raw: Dict[str, Any]) -> None:
            candle = self.adapter.parse_kline(raw)
            period = self._period(symbol, timeframe, candle)
            self._emitter.emit("period-update", period=period)
            if period.is_closed:
                self._emitter.emit("period-close", period=period)

        self._period_streams[key] = await self.adapter.subscribe_candles(symbol, interval, _on_kline)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def logout(self) -> None:
        if self._logged_out:
            return
        self._logged_out = True

        if self._submissions:
            await asyncio.gather(*list(self._submissions), return_exceptions=True)

        streams: List[Unsubscribe] = list(self._tick_streams.values()) + list(self._period_streams.values())
        if self._user_stream is not None:
            streams.append(self._user_stream)
        self._tick_streams.clear()
        self._period_streams.clear()
        self._user_stream = None
        for unsubscribe in streams:
            await unsubscribe()

        self._registry.clear()
        await self.adapter.close()
        log_event(log, "account_logged_out", account=self.account_id, adapter=self.adapter.name)
