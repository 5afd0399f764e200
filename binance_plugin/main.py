"""
Entry point: log in, print the balance sheet, stream ticks until stopped.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from binance_plugin.account.platform import BinancePlatform
from binance_plugin.config.config import Settings
from binance_plugin.core.emitter import Event
from binance_plugin.infra.logging_cfg import build_logger, log_event
from binance_plugin.monitoring.metrics import PluginMetrics

log = build_logger("binance_plugin")


async def main(symbols: List[str], market: Optional[str] = None) -> None:
    cfg = Settings.load(market=market)
    log.setLevel(getattr(logging, cfg.log_level))
    if cfg.log_file:
        # Handlers are installed once; rebuild with the file handler
        log.handlers.clear()
        build_logger("binance_plugin", level=getattr(logging, cfg.log_level), file_path=cfg.log_file)

    metrics = PluginMetrics()
    if cfg.metrics_port:
        metrics.serve(cfg.metrics_port)
        log_event(log, "metrics_server_started", port=cfg.metrics_port)

    platform = BinancePlatform(cfg.market, settings=cfg, metrics=metrics)
    session = await platform.login()

    for statement in await session.get_balance_sheet():
        log_event(log, "balance", asset=statement.asset,
                  free=statement.free_volume, locked=statement.locked_volume)
    log_event(log, "equity", asset=session.primary_asset, value=await session.get_equity())

    def on_tick(event: Event) -> None:
        tick = event.data["tick"]
        log_event(log, "tick", level=logging.DEBUG, symbol=tick.symbol,
                  bid=tick.bid, ask=tick.ask, movement=tick.movement.value)

    session.on("tick", on_tick)
    for symbol in symbols:
        await session.watch_symbol_ticks(symbol)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await stop.wait()
    finally:
        log.info("Closing streams and connections...")
        await session.logout()
        log.info("Shutdown complete")


def cli(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Binance broker plugin")
    parser.add_argument("symbols", nargs="*", default=["BTCUSDT"], help="Symbols to watch")
    parser.add_argument("--market", choices=["spot", "futures"], default=None,
                        help="Overrides BINANCE_MARKET")
    args = parser.parse_args(argv)

    try:
        asyncio.run(main(args.symbols, market=args.market))
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)


if __name__ == "__main__":
    cli()
