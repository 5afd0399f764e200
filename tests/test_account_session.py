"""
Tests for AccountSession.

Tests cover:
- Preload (symbol table, single user-stream subscription)
- Order placement end to end (market, limit, rejections, validation)
- Push dispatch (routing, pre-id race, unknown ids, isolation)
- Balances, equity, trades, orders
- Tick and candle watchers
- Logout
"""

import asyncio
from decimal import Decimal

import pytest

from binance_plugin.account.session import AccountSession, classify_tick_movement
from binance_plugin.core.errors import ConfigurationError, ExchangeAPIError, UnsupportedDirectiveError
from binance_plugin.core.models import (
    Asset,
    OrderDirection,
    OrderDirectives,
    OrderRejection,
    OrderStatus,
    OrderTimeInForce,
    Tick,
    TickMovement,
    TradeDirection,
)

from conftest import execution_report, fill, placement_response


EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "baseAsset": "BTC",
            "quoteAsset": "USDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "minPrice": "0.01", "maxPrice": "1000000.00", "tickSize": "0.01"},
                {"filterType": "LOT_SIZE", "minQty": "0.00001000", "maxQty": "9000.00000000", "stepSize": "0.00001000"},
            ],
        },
        {"symbol": "ETHBTC", "baseAsset": "ETH", "quoteAsset": "BTC", "filters": []},
    ]
}


def buy(volume="0.001", **kwargs):
    return OrderDirectives(symbol="BTCUSDT", direction=OrderDirection.BUY, volume=Decimal(volume), **kwargs)


class TestPreload:

    @pytest.mark.asyncio
    async def test_symbols_parsed_from_lot_size(self, adapter):
        adapter.exchange_info = EXCHANGE_INFO
        session = AccountSession(adapter)
        await session.preload()

        assert await session.get_symbols() == ["BTCUSDT", "ETHBTC"]
        btc = await session.get_symbol("BTCUSDT")
        assert btc.base_asset == "BTC"
        assert btc.quote_asset == "USDT"
        assert btc.min_lots == Decimal("0.00001")
        assert btc.max_lots == Decimal("9000")
        eth = await session.get_symbol("ETHBTC")
        assert eth.min_lots is None and eth.max_lots is None
        assert await session.get_symbol("NOPE") is None

    @pytest.mark.asyncio
    async def test_preload_twice_refreshes_symbols_and_keeps_one_subscription(self, adapter):
        adapter.exchange_info = EXCHANGE_INFO
        session = AccountSession(adapter)
        await session.preload()

        adapter.exchange_info = {"symbols": [EXCHANGE_INFO["symbols"][1]]}
        await session.preload()

        assert await session.get_symbols() == ["ETHBTC"]
        assert len(adapter.user_callbacks) == 1


class TestPlaceOrder:

    @pytest.mark.asyncio
    async def test_market_order_happy_path(self, session, adapter):
        adapter.place_results = [placement_response(
            order_id=1001, status="FILLED",
            fills=[fill(1, price="20000.00", qty="0.001", commission="0.00000100", commission_asset="BTC")],
        )]

        order = await session.place_order(buy())

        assert order.status == OrderStatus.EXECUTED
        assert order.id == "1001"
        assert len(order.trades) == 1
        trade = order.trades[0]
        assert trade.volume == Decimal("0.001")
        assert trade.execution_price == Decimal("20000.00")
        assert trade.commission == Decimal("0.00000100")
        assert trade.direction == TradeDirection.BUY
        # Terminal orders are never added to the dispatch table
        assert session.registry.lookup("1001") is None

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, session, adapter):
        adapter.place_results = [ExchangeAPIError(code=-2010, msg="Account has insufficient balance")]
        order = await session.place_order(buy())
        assert order.status == OrderStatus.REJECTED
        assert order.rejection == OrderRejection.NOT_ENOUGH_MONEY

    @pytest.mark.asyncio
    async def test_invalid_symbol(self, session, adapter):
        adapter.place_results = [ExchangeAPIError(code=-1121, msg="Invalid symbol.")]
        order = await session.place_order(buy())
        assert order.rejection == OrderRejection.SYMBOL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_limit_order_then_fill_push(self, session, adapter):
        adapter.place_results = [placement_response(order_id=77, status="NEW", order_type="LIMIT", transact_time=1_000)]

        order = await session.place_order(buy(limit=Decimal("19000")))
        assert order.status == OrderStatus.PENDING
        assert session.registry.lookup("77") is order

        adapter.push(execution_report(order_id=77, status="FILLED", execution_type="TRADE", event_time=2_000,
                                      trade_id=5, last_price="19000", last_qty="0.001"))

        assert order.status == OrderStatus.EXECUTED
        assert len(order.trades) == 1
        assert session.registry.lookup("77") is None

    @pytest.mark.asyncio
    async def test_limit_order_partial_fills_until_filled(self, session, adapter):
        adapter.place_results = [placement_response(order_id=78, status="NEW", order_type="LIMIT", transact_time=1_000)]
        order = await session.place_order(buy(volume="1", limit=Decimal("19000")))
        executed = []
        order.on("execute", lambda e: executed.append(e.name))

        adapter.push(execution_report(order_id=78, status="PARTIALLY_FILLED", execution_type="TRADE",
                                      event_time=2_000, trade_id=1, last_price="19000", last_qty="0.4"))
        assert order.status == OrderStatus.EXECUTED
        assert session.registry.lookup("78") is order

        adapter.push(execution_report(order_id=78, status="FILLED", execution_type="TRADE",
                                      event_time=3_000, trade_id=2, last_price="19000", last_qty="0.6"))

        assert [t.id for t in order.trades] == ["1", "2"]
        assert order.executed_volume == Decimal("1.0")
        assert executed == ["execute"]
        assert session.registry.lookup("78") is None

    @pytest.mark.asyncio
    async def test_send_order_returns_resolver_immediately(self, session, adapter):
        adapter.place_gate = asyncio.Event()
        resolver = session.send_order(buy())

        assert not resolver.done()
        assert resolver.order.status == OrderStatus.REQUESTED

        adapter.place_gate.set()
        order = await resolver
        assert order.status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_empty_resolver_events(self, session, adapter):
        adapter.place_gate = asyncio.Event()
        order = await session.place_order(buy(resolver_events=[]))
        assert order.status == OrderStatus.REQUESTED
        adapter.place_gate.set()

    @pytest.mark.asyncio
    async def test_custom_resolver_events_and_listeners(self, session, adapter):
        adapter.place_results = [placement_response(order_id=8, status="NEW", order_type="LIMIT", transact_time=1_000)]
        seen = []
        resolver = session.send_order(buy(
            limit=Decimal("100"),
            resolver_events=["cancel"],
            listeners={"pending": lambda e: seen.append("pending")},
        ))

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert seen == ["pending"]
        assert not resolver.done()

        adapter.push(execution_report(order_id=8, status="CANCELED", execution_type="CANCELED", event_time=2_000))
        order = await resolver
        assert order.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_order_event_emitted(self, session, adapter):
        orders = []
        session.on("order", lambda e: orders.append(e.data["order"]))
        order = await session.place_order(buy())
        assert orders == [order]

    @pytest.mark.asyncio
    async def test_stop_order_rejected_synchronously(self, session, adapter):
        with pytest.raises(UnsupportedDirectiveError):
            session.send_order(buy(stop=Decimal("100")))
        assert adapter.placements == []

    @pytest.mark.asyncio
    async def test_position_linked_order_rejected_synchronously(self, session, adapter):
        with pytest.raises(UnsupportedDirectiveError):
            session.send_order(buy(position_id="pos-1"))
        assert adapter.placements == []

    @pytest.mark.asyncio
    async def test_non_positive_volume_rejected(self, session, adapter):
        with pytest.raises(UnsupportedDirectiveError):
            session.send_order(buy(volume="0"))

    @pytest.mark.asyncio
    async def test_unsupported_time_in_force(self, session, adapter):
        with pytest.raises(ConfigurationError):
            session.send_order(buy(limit=Decimal("1"), time_in_force=OrderTimeInForce.GOOD_TILL_DATE))
        assert adapter.placements == []

    @pytest.mark.asyncio
    async def test_placed_metric(self, session, adapter, metrics):
        await session.place_order(buy())
        assert metrics.get_registry().get_sample_value(
            "binance_orders_placed_total", {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET"}) == 1


class TestDispatch:

    @pytest.mark.asyncio
    async def test_push_before_placement_response_is_replayed(self, session, adapter):
        """The user stream reports the fill before the REST response arrives."""
        adapter.place_gate = asyncio.Event()
        adapter.place_results = [placement_response(order_id=500, status="NEW", order_type="LIMIT", transact_time=1_000)]
        resolver = session.send_order(buy(limit=Decimal("100"), resolver_events=["execute"]))
        await asyncio.sleep(0)

        adapter.push(execution_report(order_id=500, status="FILLED", execution_type="TRADE", event_time=1_500,
                                      trade_id=9, last_price="100", last_qty="0.001"))
        assert session.registry.buffered_count == 1

        adapter.place_gate.set()
        order = await resolver

        assert order.status == OrderStatus.EXECUTED
        assert [t.id for t in order.trades] == ["9"]
        assert session.registry.buffered_count == 0

    @pytest.mark.asyncio
    async def test_unknown_order_discarded(self, session, adapter):
        adapter.push(execution_report(order_id=31337, status="FILLED", execution_type="TRADE", event_time=5,
                                      trade_id=1, last_price="1", last_qty="1"))
        assert session.registry.buffered_count == 0
        assert session.registry.get_stats()["discarded"] == 1

    @pytest.mark.asyncio
    async def test_non_order_events_ignored(self, session, adapter, metrics):
        adapter.push({"e": "outboundAccountPosition", "E": 1, "B": []})
        assert metrics.get_registry().get_sample_value(
            "binance_push_events_total", {"outcome": "ignored"}) == 1

    @pytest.mark.asyncio
    async def test_malformed_push_is_contained(self, session, adapter):
        adapter.push({"e": "executionReport", "E": 1})  # no order id
        assert session.registry.get_stats()["dispatched"] == 0

    @pytest.mark.asyncio
    async def test_updates_for_one_order_leave_others_alone(self, session, adapter):
        adapter.place_results = [
            placement_response(order_id=1, status="NEW", order_type="LIMIT"),
            placement_response(order_id=2, status="NEW", order_type="LIMIT"),
        ]
        a = await session.place_order(buy(limit=Decimal("100")))
        b = await session.place_order(buy(limit=Decimal("101")))

        adapter.push(execution_report(order_id=1, status="CANCELED", execution_type="CANCELED", event_time=2_000))

        assert a.status == OrderStatus.CANCELLED
        assert b.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_slow_async_listener_does_not_block_dispatch(self, session, adapter):
        adapter.place_results = [
            placement_response(order_id=1, status="NEW", order_type="LIMIT"),
            placement_response(order_id=2, status="NEW", order_type="LIMIT"),
        ]
        a = await session.place_order(buy(limit=Decimal("100")))
        b = await session.place_order(buy(limit=Decimal("101")))
        release = asyncio.Event()

        async def slow(event):
            await release.wait()

        a.on("cancel", slow)
        adapter.push(execution_report(order_id=1, status="CANCELED", execution_type="CANCELED", event_time=2_000))
        adapter.push(execution_report(order_id=2, status="CANCELED", execution_type="CANCELED", event_time=2_000))

        assert b.status == OrderStatus.CANCELLED
        release.set()
        await a.emitter.drain()


class TestReadOperations:

    @pytest.mark.asyncio
    async def test_balances(self, session, adapter):
        adapter.account = {"balances": [
            {"asset": "USDT", "free": "100.5", "locked": "20"},
            {"asset": "BTC", "free": "0.5", "locked": "0"},
            {"asset": "DOGE", "free": "0", "locked": "0"},
        ]}

        assert await session.get_balance() == Decimal("120.5")
        sheet = await session.get_balance_sheet()
        assert [s.asset for s in sheet] == ["USDT", "BTC"]
        assert await session.get_assets() == ["USDT", "BTC", "DOGE"]
        missing = await session.get_asset_balance("XRP")
        assert missing.total_volume == 0

    @pytest.mark.asyncio
    async def test_get_asset(self, session, adapter):
        adapter.account = {"balances": [
            {"asset": "USDT", "free": "100", "locked": "0"},
            {"asset": "DOGE", "free": "0", "locked": "0"},
        ]}

        asset = await session.get_asset("DOGE")
        assert asset == Asset(id="DOGE", name="DOGE")
        assert await session.get_asset("XRP") is None

    @pytest.mark.asyncio
    async def test_crypto_asset_deposit_address(self, session, adapter):
        adapter.deposit_addresses = {"BTC": "1HPn8Rx2y6nNSfagQBKy27GB99Vbzg89wv"}

        address = await session.get_crypto_asset_deposit_address("BTC", "BTC")

        assert address == "1HPn8Rx2y6nNSfagQBKy27GB99Vbzg89wv"
        assert adapter.deposit_address_calls == [("BTC", "BTC")]

    @pytest.mark.asyncio
    async def test_equity(self, session, adapter):
        adapter.account = {"balances": [
            {"asset": "USDT", "free": "100", "locked": "0"},
            {"asset": "BTC", "free": "0.5", "locked": "0.5"},
            {"asset": "EUR", "free": "10", "locked": "0"},
            {"asset": "XYZ", "free": "1000", "locked": "0"},
        ]}
        adapter.book_tickers = {
            "BTCUSDT": {"symbol": "BTCUSDT", "bidPrice": "20000", "askPrice": "20001"},
            "USDTEUR": {"symbol": "USDTEUR", "bidPrice": "0.5", "askPrice": "0.51"},
        }

        # 100 + 1 * 20000 + 10 / 0.5, XYZ has no rate
        assert await session.get_equity() == Decimal("20120")

    @pytest.mark.asyncio
    async def test_trades(self, session, adapter):
        adapter.my_trades = [
            {"symbol": "BTCUSDT", "id": 28457, "orderId": 100234, "price": "4.00000100", "qty": "12.00000000",
             "commission": "10.10000000", "commissionAsset": "BNB", "time": 1499865549590, "isBuyer": True},
            {"symbol": "BTCUSDT", "id": 28458, "orderId": 100235, "price": "4.1", "qty": "1",
             "commission": "0", "commissionAsset": "USDT", "time": 1499865549591, "isBuyer": False},
        ]
        trades = await session.get_trades("BTCUSDT")
        assert [t.id for t in trades] == ["28457", "28458"]
        assert trades[0].direction == TradeDirection.BUY
        assert trades[1].direction == TradeDirection.SELL
        assert trades[0].execution_price == Decimal("4.00000100")

    @pytest.mark.asyncio
    async def test_get_orders_keeps_executed(self, session, adapter):
        adapter.all_orders = [
            {"symbol": "BTCUSDT", "orderId": 1, "price": "100", "origQty": "1", "status": "FILLED",
             "timeInForce": "GTC", "type": "LIMIT", "side": "BUY", "time": 10, "updateTime": 20},
            {"symbol": "BTCUSDT", "orderId": 2, "price": "0", "origQty": "1", "status": "CANCELED",
             "timeInForce": "GTC", "type": "LIMIT", "side": "SELL", "time": 10, "updateTime": 20},
        ]
        orders = await session.get_orders("BTCUSDT")
        assert [o.id for o in orders] == ["1"]
        assert orders[0].limit_price == Decimal("100")
        assert orders[0].last_update_ms == 20

    @pytest.mark.asyncio
    async def test_pending_orders_registered_for_dispatch(self, session, adapter):
        adapter.open_orders = [
            {"symbol": "BTCUSDT", "orderId": 42, "price": "100", "origQty": "1", "status": "NEW",
             "timeInForce": "IOC", "type": "LIMIT", "side": "BUY", "time": 10, "updateTime": 20},
        ]
        pending = await session.get_pending_orders()
        assert len(pending) == 1
        order = pending[0]
        assert order.time_in_force == OrderTimeInForce.IMMEDIATE_OR_CANCEL

        adapter.push(execution_report(order_id=42, status="CANCELED", execution_type="CANCELED", event_time=30))
        assert order.status == OrderStatus.CANCELLED

        # a second listing returns the same live instance while it is registered
        adapter.open_orders[0]["orderId"] = 43
        again = await session.get_pending_orders()
        again_twice = await session.get_pending_orders()
        assert again[0] is again_twice[0]

    @pytest.mark.asyncio
    async def test_bid_ask_fallback_and_cache(self, session, adapter):
        adapter.book_tickers = {"BTCUSDT": {"symbol": "BTCUSDT", "bidPrice": "100", "askPrice": "101"}}
        assert await session.get_symbol_bid("BTCUSDT") == Decimal("100")
        assert await session.get_symbol_ask("BTCUSDT") == Decimal("101")

        await session.watch_symbol_ticks("BTCUSDT")
        adapter.push_book_ticker("BTCUSDT", "200", "201")
        assert await session.get_symbol_bid("BTCUSDT") == Decimal("200")

    @pytest.mark.asyncio
    async def test_average_price(self, session, adapter):
        adapter.average_price = "123.45"
        assert await session.get_symbol_average_price("BTCUSDT") == Decimal("123.45")

    @pytest.mark.asyncio
    async def test_periods(self, session, adapter):
        adapter.candles = [
            {"openTime": 60_000, "open": "1", "high": "3", "low": "0.5", "close": "2", "volume": "10", "closed": True},
        ]
        periods = await session.get_symbol_periods("BTCUSDT", 60)
        assert len(periods) == 1
        assert periods[0].close == Decimal("2")
        assert periods[0].timeframe == 60

    @pytest.mark.asyncio
    async def test_periods_unknown_timeframe(self, session):
        with pytest.raises(ConfigurationError):
            await session.get_symbol_periods("BTCUSDT", 42)

    @pytest.mark.asyncio
    async def test_positions_and_market_open(self, session):
        assert await session.get_open_positions() == []
        assert await session.is_symbol_market_open("BTCUSDT") is True


class TestTickWatch:

    def test_classify_tick_movement(self):
        prev = Tick(symbol="X", bid=Decimal(1), ask=Decimal(2), date_ms=0)
        assert classify_tick_movement(None, Decimal(1), Decimal(2)) == TickMovement.BID_ASK
        assert classify_tick_movement(prev, Decimal(1), Decimal(2)) is None
        assert classify_tick_movement(prev, Decimal(3), Decimal(2)) == TickMovement.BID
        assert classify_tick_movement(prev, Decimal(1), Decimal(3)) == TickMovement.ASK
        assert classify_tick_movement(prev, Decimal(0), Decimal(3)) == TickMovement.BID_ASK

    @pytest.mark.asyncio
    async def test_duplicate_ticks_suppressed(self, session, adapter, metrics):
        ticks = []
        session.on("tick", lambda e: ticks.append(e.data["tick"]))
        await session.watch_symbol_ticks("BTCUSDT")

        adapter.push_book_ticker("BTCUSDT", "100", "101")
        adapter.push_book_ticker("BTCUSDT", "100", "101")
        assert len(ticks) == 1

        adapter.push_book_ticker("BTCUSDT", "100", "102")
        assert len(ticks) == 2
        assert ticks[1].movement == TickMovement.ASK
        assert ticks[1].ask == Decimal("102")

        adapter.push_book_ticker("BTCUSDT", "99", "102")
        assert ticks[2].movement == TickMovement.BID

        reg = metrics.get_registry()
        assert reg.get_sample_value("binance_ticks_total", {"symbol": "BTCUSDT", "outcome": "suppressed"}) == 1

    @pytest.mark.asyncio
    async def test_watch_twice_subscribes_once(self, session, adapter):
        await session.watch_symbol_ticks("BTCUSDT")
        first = adapter.book_callbacks["BTCUSDT"]
        await session.watch_symbol_ticks("BTCUSDT")
        assert adapter.book_callbacks["BTCUSDT"] is first

    @pytest.mark.asyncio
    async def test_unwatch(self, session, adapter):
        await session.watch_symbol_ticks("BTCUSDT")
        await session.unwatch_symbol_ticks("BTCUSDT")
        assert "BTCUSDT" not in adapter.book_callbacks


class TestPeriodWatch:

    @pytest.mark.asyncio
    async def test_period_update_and_close(self, session, adapter):
        updates, closes = [], []
        session.on("period-update", lambda e: updates.append(e.data["period"]))
        session.on("period-close", lambda e: closes.append(e.data["period"]))
        await session.watch_symbol_periods("BTCUSDT", 60)

        callback = adapter.kline_callbacks["BTCUSDT@1m"]
        kline = {"t": 60_000, "s": "BTCUSDT", "o": "1", "h": "2", "l": "0.5", "c": "1.5", "v": "10", "x": False}
        callback({"e": "kline", "E": 1, "s": "BTCUSDT", "k": kline})
        callback({"e": "kline", "E": 2, "s": "BTCUSDT", "k": {**kline, "x": True}})

        assert len(updates) == 2
        assert len(closes) == 1
        assert closes[0].is_closed is True
        assert closes[0].close == Decimal("1.5")


class TestLogout:

    @pytest.mark.asyncio
    async def test_logout_closes_everything(self, adapter):
        session = AccountSession(adapter)
        await session.preload()
        await session.watch_symbol_ticks("BTCUSDT")
        await session.watch_symbol_periods("BTCUSDT", 60)

        await session.logout()

        assert adapter.user_unsubscribed == 1
        assert adapter.user_callbacks == []
        assert adapter.book_callbacks == {}
        assert adapter.kline_callbacks == {}
        assert adapter.closed is True

        await session.logout()
        assert adapter.user_unsubscribed == 1
