"""
Binance adapters: Spot (/api/v3) and USD-M Futures (/fapi/v1).

Both share the REST signing, listen-key user stream and market-data streams;
they differ in endpoint paths, account/trade response shapes and in how the
user stream frames order updates:

    spot     {"e": "executionReport", "E": ..., "i": ..., "X": ..., ...}
    futures  {"e": "ORDER_TRADE_UPDATE", "E": ..., "o": {"i": ..., "X": ..., ...}}
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from binance_plugin.core.errors import (
    ConfigurationError,
    ExchangeAPIError,
    ExchangeError,
    UnsupportedDirectiveError,
)
from binance_plugin.core.models import OrderRejection
from binance_plugin.core.utils import now_ms, to_decimal, to_decimal_or_none, to_int_safe
from binance_plugin.exchange.base import (
    ExchangeAdapter,
    ExecutionReport,
    PlacementAck,
    RawCallback,
    Unsubscribe,
)
from binance_plugin.execution.status_mapper import REJECTION_CODES
from binance_plugin.infra.logging_cfg import log_event
from binance_plugin.infra.rest_client import BinanceRestClient
from binance_plugin.infra.stream_client import StreamClient

log = logging.getLogger("binance_plugin")

# Listen keys expire after 60 minutes without a keepalive
DEFAULT_LISTEN_KEY_KEEPALIVE_SEC = 30 * 60
LISTEN_KEY_EXPIRED_EVENT = "listenKeyExpired"


class BinanceAdapter(ExchangeAdapter):
    """Shared Binance behaviour. Subclasses set the endpoint table."""

    name = "binance"
    market = ""
    rejection_codes = REJECTION_CODES

    order_path = ""
    open_orders_path = ""
    all_orders_path = ""
    my_trades_path = ""
    account_path = ""
    exchange_info_path = ""
    book_ticker_path = ""
    klines_path = ""
    listen_key_path = ""
    deposit_address_path = ""
    user_event_type = ""

    def __init__(
        self,
        rest: BinanceRestClient,
        streams: StreamClient,
        listen_key_keepalive_sec: float = DEFAULT_LISTEN_KEY_KEEPALIVE_SEC,
    ) -> None:
        self.rest = rest
        self.streams = streams
        self.listen_key_keepalive_sec = listen_key_keepalive_sec
        self._user_streams: Set[UserDataStream] = set()

    # -------------------------------------------------------------------------
    # Trading
    # -------------------------------------------------------------------------

    async def place_order(self, params: Dict[str, Any]) -> PlacementAck:
        resp = await self.rest.post(self.order_path, self._order_params(params), signed=True)
        return self._parse_placement(resp)

    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        return await self.rest.delete(
            self.order_path, {"symbol": symbol, "orderId": order_id}, signed=True
        )

    def _order_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return dict(params)

    def _parse_placement(self, resp: Dict[str, Any]) -> PlacementAck:
        order_id = resp.get("orderId")
        if order_id is None or "status" not in resp:
            raise ExchangeError(f"placement response without orderId/status: {resp!r}")
        return PlacementAck(
            order_id=str(order_id),
            status=str(resp["status"]),
            order_type=str(resp.get("type", "")),
            transact_time_ms=to_int_safe(resp.get("transactTime")) or now_ms(),
            fills=list(resp.get("fills") or []),
            raw=resp,
        )

    # -------------------------------------------------------------------------
    # Account & market data
    # -------------------------------------------------------------------------

    async def get_account_info(self) -> Dict[str, Any]:
        return await self.rest.get(self.account_path, signed=True)

    async def get_exchange_info(self) -> Dict[str, Any]:
        return await self.rest.get(self.exchange_info_path)

    async def get_book_ticker(self, symbol: str) -> Dict[str, Any]:
        return await self.rest.get(self.book_ticker_path, {"symbol": symbol})

    async def get_all_book_tickers(self) -> Dict[str, Dict[str, Any]]:
        tickers = await self.rest.get(self.book_ticker_path)
        return {t["symbol"]: t for t in tickers}

    async def get_average_price(self, symbol: str) -> Decimal:
        ticker = await self.get_book_ticker(symbol)
        _, bid, ask = self.parse_book_ticker(ticker)
        return (bid + ask) / 2

    async def get_candles(self, symbol: str, interval: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = await self.rest.get(self.klines_path, {"symbol": symbol, "interval": interval, "limit": limit})
        return [
            {
                "openTime": int(row[0]),
                "open": row[1],
                "high": row[2],
                "low": row[3],
                "close": row[4],
                "volume": row[5],
                "closeTime": int(row[6]),
                "closed": int(row[6]) < now_ms(),
            }
            for row in rows
        ]

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.rest.get(self.open_orders_path, {"symbol": symbol}, signed=True)

    async def get_all_orders(self, symbol: str) -> List[Dict[str, Any]]:
        return await self.rest.get(self.all_orders_path, {"symbol": symbol}, signed=True)

    async def get_my_trades(self, symbol: str) -> List[Dict[str, Any]]:
        return await self.rest.get(self.my_trades_path, {"symbol": symbol}, signed=True)

    async def get_deposit_address(self, asset: str, network: Optional[str] = None) -> str:
        if not self.deposit_address_path:
            raise UnsupportedDirectiveError(f"Deposit addresses are not served by the Binance {self.market} API")
        resp = await self.rest.get(self.deposit_address_path, {"coin": asset, "network": network}, signed=True)
        return str(resp["address"])

    # -------------------------------------------------------------------------
    # Streams
    # -------------------------------------------------------------------------

    async def subscribe_user_events(self, callback: RawCallback) -> Unsubscribe:
        """
        Open the user-data stream: create a listen key, keep it alive (renewing
        it if it expires), and subscribe to it. The returned coroutine tears
        all three down.
        """
        stream = UserDataStream(self, callback)
        await stream.open()
        self._user_streams.add(stream)
        return stream.close

    async def subscribe_book_ticker(self, symbol: str, callback: RawCallback) -> Unsubscribe:
        return await self.streams.subscribe(f"{symbol.lower()}@bookTicker", callback)

    async def subscribe_candles(self, symbol: str, interval: str, callback: RawCallback) -> Unsubscribe:
        return await self.streams.subscribe(f"{symbol.lower()}@kline_{interval}", callback)

    # -------------------------------------------------------------------------
    # Push parsing
    # -------------------------------------------------------------------------

    def parse_user_event(self, raw: Dict[str, Any]) -> Optional[ExecutionReport]:
        if not isinstance(raw, dict) or raw.get("e") != self.user_event_type:
            return None
        body = self._order_body(raw)
        trade_id = to_int_safe(body.get("t"))
        execution_type = str(body.get("x", ""))
        return ExecutionReport(
            order_id=str(body["i"]),
            symbol=str(body.get("s", "")),
            status=str(body.get("X", "")),
            order_type=str(body.get("o", "")),
            execution_type=execution_type,
            event_time_ms=int(raw["E"]),
            side=str(body.get("S", "")),
            # t is -1 on non-trade updates
            trade_id=str(trade_id) if trade_id is not None and trade_id >= 0 else None,
            last_price=to_decimal_or_none(body.get("L")),
            last_qty=to_decimal_or_none(body.get("l")),
            commission=to_decimal_or_none(body.get("n")),
            commission_asset=body.get("N"),
            trade_time_ms=to_int_safe(body.get("T")),
            reject_reason=body.get("r"),
            client_order_id=body.get("c"),
        )

    def _order_body(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return raw

    def parse_book_ticker(self, raw: Dict[str, Any]) -> Tuple[str, Decimal, Decimal]:
        # Push frames use s/b/a, REST uses symbol/bidPrice/askPrice
        symbol = raw.get("s") or raw.get("symbol")
        bid = raw.get("b", raw.get("bidPrice"))
        ask = raw.get("a", raw.get("askPrice"))
        return str(symbol), to_decimal(bid), to_decimal(ask)

    def parse_kline(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        k = raw["k"]
        return {
            "symbol": str(k.get("s") or raw.get("s", "")),
            "openTime": int(k["t"]),
            "open": k["o"],
            "high": k["h"],
            "low": k["l"],
            "close": k["c"],
            "volume": k["v"],
            "closed": bool(k.get("x", False)),
        }

    async def close(self) -> None:
        for stream in list(self._user_streams):
            await stream.close()
        await self.streams.close()
        await self.rest.close()


class BinanceSpotAdapter(BinanceAdapter):
    name = "binance_spot"
    market = "spot"

    order_path = "/api/v3/order"
    open_orders_path = "/api/v3/openOrders"
    all_orders_path = "/api/v3/allOrders"
    my_trades_path = "/api/v3/myTrades"
    account_path = "/api/v3/account"
    exchange_info_path = "/api/v3/exchangeInfo"
    book_ticker_path = "/api/v3/ticker/bookTicker"
    klines_path = "/api/v3/klines"
    listen_key_path = "/api/v3/userDataStream"
    # Wallet endpoints live on the spot host
    deposit_address_path = "/sapi/v1/capital/deposit/address"
    user_event_type = "executionReport"

    def _order_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        # FULL carries the fills of an immediately matched order
        return {**params, "newOrderRespType": "FULL"}

    async def get_average_price(self, symbol: str) -> Decimal:
        resp = await self.rest.get("/api/v3/avgPrice", {"symbol": symbol})
        return to_decimal(resp["price"])


class BinanceFuturesAdapter(BinanceAdapter):
    name = "binance_futures"
    market = "futures"
    rejection_codes = {
        **REJECTION_CODES,
        -2019: OrderRejection.NOT_ENOUGH_MONEY,  # margin is insufficient
    }

    order_path = "/fapi/v1/order"
    open_orders_path = "/fapi/v1/openOrders"
    all_orders_path = "/fapi/v1/allOrders"
    my_trades_path = "/fapi/v1/userTrades"
    account_path = "/fapi/v2/account"
    exchange_info_path = "/fapi/v1/exchangeInfo"
    book_ticker_path = "/fapi/v1/ticker/bookTicker"
    klines_path = "/fapi/v1/klines"
    listen_key_path = "/fapi/v1/listenKey"
    user_event_type = "ORDER_TRADE_UPDATE"

    def _order_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {**params, "newOrderRespType": "RESULT"}

    def _parse_placement(self, resp: Dict[str, Any]) -> PlacementAck:
        # Futures acks carry updateTime instead of transactTime and never include fills
        resp = dict(resp)
        resp.setdefault("transactTime", resp.get("updateTime"))
        resp["fills"] = []
        return super()._parse_placement(resp)

    def _order_body(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return raw.get("o") or {}

    async def get_account_info(self) -> Dict[str, Any]:
        resp = await self.rest.get(self.account_path, signed=True)
        balances = []
        for entry in resp.get("assets", []):
            wallet = to_decimal(entry.get("walletBalance", "0"))
            available = to_decimal(entry.get("availableBalance", "0"))
            balances.append({
                "asset": entry["asset"],
                "free": str(available),
                "locked": str(max(wallet - available, Decimal(0))),
            })
        return {**resp, "balances": balances}

    async def get_my_trades(self, symbol: str) -> List[Dict[str, Any]]:
        trades = await self.rest.get(self.my_trades_path, {"symbol": symbol}, signed=True)
        for trade in trades:
            trade.setdefault("isBuyer", bool(trade.get("buyer", str(trade.get("side", "")).upper() == "BUY")))
        return trades


class UserDataStream:
    """
    One listen-key user-data stream.

    The key is kept alive on a timer. When the exchange reports it expired,
    either with a listenKeyExpired frame or by refusing a keepalive, a new
    key is created and the stream resubscribed under it; order updates keep
    flowing to the same callback.
    """

    def __init__(self, adapter: BinanceAdapter, callback: RawCallback) -> None:
        self._adapter = adapter
        self._callback = callback
        self.listen_key: Optional[str] = None
        self.renewals = 0
        self._close_stream: Optional[Unsubscribe] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._renew_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def market(self) -> str:
        return self._adapter.market

    @property
    def connected(self) -> bool:
        return self._close_stream is not None

    async def open(self) -> None:
        await self._connect()
        self._keepalive_task = asyncio.create_task(self._keepalive(), name=f"listen-key:{self.market}")
        log_event(log, "user_stream_opened", market=self.market)

    async def _connect(self) -> None:
        resp = await self._adapter.rest.post(self._adapter.listen_key_path)
        self.listen_key = resp["listenKey"]
        self._close_stream = await self._adapter.streams.subscribe(self.listen_key, self._on_frame)

    def _on_frame(self, raw: Dict[str, Any]) -> Any:
        if isinstance(raw, dict) and raw.get("e") == LISTEN_KEY_EXPIRED_EVENT:
            log_event(log, "listen_key_expired", level=logging.WARNING, market=self.market)
            self._schedule_renew()
            return None
        return self._callback(raw)

    def _schedule_renew(self) -> Optional[asyncio.Task]:
        if self._closed:
            return None
        if self._renew_task is None or self._renew_task.done():
            self._renew_task = asyncio.create_task(self.renew(), name=f"listen-key-renew:{self.market}")
        return self._renew_task

    async def _wait_renewed(self) -> None:
        task = self._schedule_renew()
        if task is not None:
            await task

    async def renew(self) -> bool:
        """
        Drop the current key and stream, then open new ones.

        Returns:
            True once the stream is subscribed under a fresh key
        """
        close_stream, self._close_stream = self._close_stream, None
        if close_stream is not None:
            await close_stream()
        try:
            await self._connect()
        except ExchangeError as exc:
            log_event(log, "listen_key_renew_failed", level=logging.ERROR,
                      market=self.market, err=str(exc))
            return False
        self.renewals += 1
        log_event(log, "listen_key_renewed", level=logging.WARNING,
                  market=self.market, renewals=self.renewals)
        return True

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self._adapter.listen_key_keepalive_sec)
            if not self.connected:
                # a previous renewal failed; retry on every tick
                await self._wait_renewed()
                continue
            try:
                await self._adapter.rest.put(self._adapter.listen_key_path, {"listenKey": self.listen_key})
                log_event(log, "listen_key_keepalive", level=logging.DEBUG, market=self.market)
            except ExchangeAPIError as exc:
                # The exchange no longer knows the key
                log_event(log, "listen_key_keepalive_failed", level=logging.WARNING,
                          market=self.market, err=str(exc), code=exc.code)
                await self._wait_renewed()
            except ExchangeError as exc:
                log_event(log, "listen_key_keepalive_failed", level=logging.WARNING,
                          market=self.market, err=str(exc))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        tasks = [t for t in (self._keepalive_task, self._renew_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        close_stream, self._close_stream = self._close_stream, None
        if close_stream is not None:
            await close_stream()
        if self.listen_key:
            try:
                await self._adapter.rest.delete(self._adapter.listen_key_path, {"listenKey": self.listen_key})
            except ExchangeError as exc:
                log_event(log, "listen_key_close_failed", level=logging.WARNING,
                          market=self.market, err=str(exc))
        self._adapter._user_streams.discard(self)
        log_event(log, "user_stream_closed", market=self.market)


ADAPTERS = {
    "spot": BinanceSpotAdapter,
    "futures": BinanceFuturesAdapter,
}


def create_adapter(
    market: str,
    rest: BinanceRestClient,
    streams: StreamClient,
    listen_key_keepalive_sec: float = DEFAULT_LISTEN_KEY_KEEPALIVE_SEC,
) -> BinanceAdapter:
    try:
        adapter_cls = ADAPTERS[market.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown Binance market {market!r} (expected one of {sorted(ADAPTERS)})") from None
    return adapter_cls(rest, streams, listen_key_keepalive_sec=listen_key_keepalive_sec)
