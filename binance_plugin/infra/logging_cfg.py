"""
Logging for the plugin: one logger ("binance_plugin"), structured events.

Every lifecycle step is logged through log_event() as an event name plus
fields, e.g. order_status_change (order_id, from_status, to_status),
trade_recorded, push_event_stale, stream_reconnect, listen_key_renewed.
The fields travel on the record itself, so handlers can use them directly:

- console: Rich, one compact JSON line per event, with bursts of the same
  reconnect/stale/buffer warning for one symbol or stream collapsed
- file (optional): one flat JSON object per line, written by a background
  listener so order handling on the event loop never waits on disk
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import time
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Dict, FrozenSet, Iterable, Optional

from rich.logging import RichHandler

from binance_plugin.core.json_utils import dumps
from binance_plugin.core.utils import ms_to_datetime

LOGGER_NAME = "binance_plugin"

# Events that repeat in bursts when a connection flaps or the exchange
# replays old updates; the console keeps the first of each burst
THROTTLED_EVENTS: FrozenSet[str] = frozenset({
    "stream_reconnect",
    "stream_callback_error",
    "push_event_stale",
    "push_event_buffer_full",
    "listen_key_keepalive_failed",
    "equity_rate_missing",
})

# Fields that tell two bursts of the same event apart
_THROTTLE_KEY_FIELDS = ("symbol", "stream", "asset", "market")


def event_of(record: logging.LogRecord) -> Optional[str]:
    return getattr(record, "event", None)


def event_data_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "event_data", None) or {}


class JsonFormatter(logging.Formatter):
    """
    One flat JSON object per record: timestamp, level, event and its fields.

    Records not produced by log_event() carry their message under "msg".
    """

    def format(self, record: logging.LogRecord) -> str:
        ts_ms = int(record.created * 1000)
        payload: Dict[str, Any] = {
            "ts_ms": ts_ms,
            "time": ms_to_datetime(ts_ms).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        event = event_of(record)
        if event is None:
            payload["msg"] = record.getMessage()
        else:
            payload["event"] = event
            for key, value in event_data_of(record).items():
                payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class DroppingQueueHandler(QueueHandler):
    """
    Queue handler that never blocks the caller: when the writer falls behind
    and the queue is full, the record is counted and dropped.
    """

    def __init__(self, record_queue: "queue.Queue[logging.LogRecord]") -> None:
        super().__init__(record_queue)
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


class ThrottledFilter(logging.Filter):
    """
    Pass the first record of a throttled event, then drop repeats of the same
    event for the same symbol, stream, asset or market until cooldown_sec
    has elapsed.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Iterable[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._events = frozenset(throttled_events) if throttled_events is not None else THROTTLED_EVENTS
        self._last_seen: Dict[str, float] = {}
        self.suppressed = 0

    def filter(self, record: logging.LogRecord) -> bool:
        event = event_of(record)
        if event not in self._events:
            return True

        data = event_data_of(record)
        scope = next((str(data[f]) for f in _THROTTLE_KEY_FIELDS if data.get(f)), "")
        key = f"{event}:{scope}"
        now = time.monotonic()
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            self.suppressed += 1
            return False
        self._last_seen[key] = now
        return True


def _start_file_listener(file_path: str, level: int) -> DroppingQueueHandler:
    file_handler = logging.FileHandler(file_path)
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)

    handler = DroppingQueueHandler(queue.Queue(maxsize=10_000))
    handler.setLevel(level)
    listener = QueueListener(handler.queue, file_handler, respect_handler_level=True)
    listener.start()

    def _stop() -> None:
        listener.stop()
        file_handler.close()
        if handler.dropped:
            sys.stderr.write(f"[binance_plugin] dropped {handler.dropped} log records (file writer behind)\n")

    atexit.register(_stop)
    return handler


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = None,
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the plugin logger. Calling it again only updates the level.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON-lines log file (None for console only)
        async_file: Write the file from a background listener thread
        throttle_warnings: Collapse bursts of THROTTLED_EVENTS on the console
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_time=True, show_level=True, show_path=False, markup=False)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        if async_file:
            logger.addHandler(_start_file_listener(file_path, level))
        else:
            file_handler = logging.FileHandler(file_path)
            file_handler.setFormatter(JsonFormatter())
            file_handler.setLevel(level)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data: Any,
) -> None:
    """
    Log event with its fields.

    The message is the compact JSON of {"event": ..., **data}; the event name
    and fields are also attached to the record as `event` and `event_data`.

    Usage:
        log_event(log, "trade_recorded", order_id="42", price=Decimal("20000.10"))
    """
    if not logger.isEnabledFor(level):
        return
    logger.log(level, dumps({"event": event, **data}), extra={"event": event, "event_data": data})
