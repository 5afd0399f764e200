"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import binance_plugin
without installing it.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from binance_plugin.account.session import AccountSession  # noqa: E402
from binance_plugin.core.utils import to_decimal  # noqa: E402
from binance_plugin.exchange.base import PlacementAck  # noqa: E402
from binance_plugin.exchange.binance import BinanceSpotAdapter  # noqa: E402
from binance_plugin.monitoring.metrics import PluginMetrics  # noqa: E402


def placement_response(
    order_id: int = 1001,
    status: str = "FILLED",
    order_type: str = "MARKET",
    fills: Optional[List[Dict[str, Any]]] = None,
    transact_time: int = 1_000,
    symbol: str = "BTCUSDT",
) -> Dict[str, Any]:
    """Spot POST /api/v3/order response (newOrderRespType=FULL)."""
    return {
        "symbol": symbol,
        "orderId": order_id,
        "clientOrderId": f"client-{order_id}",
        "transactTime": transact_time,
        "status": status,
        "type": order_type,
        "fills": fills or [],
    }


def fill(trade_id: int, price: str = "20000.00", qty: str = "0.001",
         commission: str = "0.00000100", commission_asset: str = "BTC") -> Dict[str, Any]:
    return {
        "tradeId": trade_id,
        "price": price,
        "qty": qty,
        "commission": commission,
        "commissionAsset": commission_asset,
    }


def execution_report(
    order_id: int = 1001,
    status: str = "NEW",
    execution_type: str = "NEW",
    event_time: int = 2_000,
    order_type: str = "LIMIT",
    trade_id: int = -1,
    last_price: str = "0.00000000",
    last_qty: str = "0.00000000",
    commission: str = "0",
    commission_asset: Optional[str] = None,
    symbol: str = "BTCUSDT",
    side: str = "BUY",
) -> Dict[str, Any]:
    """Spot user-stream executionReport frame."""
    return {
        "e": "executionReport",
        "E": event_time,
        "s": symbol,
        "c": f"client-{order_id}",
        "S": side,
        "o": order_type,
        "f": "GTC",
        "x": execution_type,
        "X": status,
        "r": "NONE",
        "i": order_id,
        "l": last_qty,
        "L": last_price,
        "n": commission,
        "N": commission_asset,
        "T": event_time,
        "t": trade_id,
    }


class FakeSpotAdapter(BinanceSpotAdapter):
    """
    In-memory spot adapter: real wire parsing, scripted network calls.

    place_results holds response dicts or exceptions, consumed in order.
    Setting place_gate makes place_order wait until the event is set.
    """

    def __init__(self) -> None:
        super().__init__(rest=None, streams=None)
        self.placements: List[Dict[str, Any]] = []
        self.place_results: List[Any] = []
        self.place_gate: Optional[asyncio.Event] = None
        self.cancel_calls: List[Dict[str, Any]] = []
        self.cancel_error: Optional[BaseException] = None
        self.user_callbacks: List[Callable[[Dict[str, Any]], Any]] = []
        self.user_unsubscribed = 0
        self.book_callbacks: Dict[str, Callable] = {}
        self.kline_callbacks: Dict[str, Callable] = {}
        self.account: Dict[str, Any] = {"balances": []}
        self.exchange_info: Dict[str, Any] = {"symbols": []}
        self.book_tickers: Dict[str, Dict[str, Any]] = {}
        self.candles: List[Dict[str, Any]] = []
        self.open_orders: List[Dict[str, Any]] = []
        self.all_orders: List[Dict[str, Any]] = []
        self.my_trades: List[Dict[str, Any]] = []
        self.average_price = "0"
        self.deposit_addresses: Dict[str, str] = {}
        self.deposit_address_calls: List[Tuple[str, Optional[str]]] = []
        self.closed = False

    async def place_order(self, params: Dict[str, Any]) -> PlacementAck:
        self.placements.append(params)
        if self.place_gate is not None:
            await self.place_gate.wait()
        result = self.place_results.pop(0) if self.place_results else placement_response()
        if isinstance(result, BaseException):
            raise result
        return self._parse_placement(result)

    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        self.cancel_calls.append({"symbol": symbol, "orderId": order_id})
        if self.cancel_error is not None:
            raise self.cancel_error
        return {"symbol": symbol, "orderId": order_id, "status": "CANCELED"}

    async def get_account_info(self) -> Dict[str, Any]:
        return self.account

    async def get_exchange_info(self) -> Dict[str, Any]:
        return self.exchange_info

    async def get_book_ticker(self, symbol: str) -> Dict[str, Any]:
        return self.book_tickers[symbol]

    async def get_all_book_tickers(self) -> Dict[str, Dict[str, Any]]:
        return self.book_tickers

    async def get_average_price(self, symbol: str):
        return to_decimal(self.average_price)

    async def get_candles(self, symbol: str, interval: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.candles

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.open_orders

    async def get_all_orders(self, symbol: str) -> List[Dict[str, Any]]:
        return self.all_orders

    async def get_my_trades(self, symbol: str) -> List[Dict[str, Any]]:
        return self.my_trades

    async def get_deposit_address(self, asset: str, network: Optional[str] = None) -> str:
        self.deposit_address_calls.append((asset, network))
        return self.deposit_addresses[asset]

    async def subscribe_user_events(self, callback):
        self.user_callbacks.append(callback)

        async def unsubscribe() -> None:
            self.user_unsubscribed += 1
            self.user_callbacks.remove(callback)

        return unsubscribe

    async def subscribe_book_ticker(self, symbol: str, callback):
        self.book_callbacks[symbol] = callback

        async def unsubscribe() -> None:
            self.book_callbacks.pop(symbol, None)

        return unsubscribe

    async def subscribe_candles(self, symbol: str, interval: str, callback):
        self.kline_callbacks[f"{symbol}@{interval}"] = callback

        async def unsubscribe() -> None:
            self.kline_callbacks.pop(f"{symbol}@{interval}", None)

        return unsubscribe

    async def close(self) -> None:
        self.closed = True

    # Test drivers

    def push(self, raw: Dict[str, Any]) -> None:
        for callback in list(self.user_callbacks):
            callback(raw)

    def push_book_ticker(self, symbol: str, bid: str, ask: str) -> None:
        self.book_callbacks[symbol]({"u": 1, "s": symbol, "b": bid, "B": "1.0", "a": ask, "A": "1.0"})


@pytest.fixture
def adapter():
    return FakeSpotAdapter()


@pytest.fixture
def metrics():
    return PluginMetrics()


@pytest_asyncio.fixture
async def session(adapter, metrics):
    """Preloaded session over the fake adapter."""
    account = AccountSession(adapter, account_id="test", metrics=metrics)
    await account.preload()
    yield account
    await account.logout()
