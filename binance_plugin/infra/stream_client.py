"""
Websocket stream client for Binance market and user-data streams (aiohttp).

One connection and receive loop per subscribed stream. Dropped connections
are re-established with capped exponential backoff; the callback keeps
receiving frames across reconnects until the returned unsubscribe coroutine
is awaited.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import aiohttp

from binance_plugin.core.json_utils import loads
from binance_plugin.infra.logging_cfg import log_event

log = logging.getLogger("binance_plugin")

StreamCallback = Callable[[Dict[str, Any]], Any]
Unsubscribe = Callable[[], Awaitable[None]]


class StreamClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_max_sec: float = 60.0,
        heartbeat_sec: float = 20.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._reconnect_max = reconnect_max_sec
        self._heartbeat = heartbeat_sec
        self._tasks: Dict[str, asyncio.Task] = {}
        self._callback_tasks: Set[asyncio.Task] = set()
        self._stopping = False
        self._seq = 0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def subscribe(self, stream: str, callback: StreamCallback) -> Unsubscribe:
        """
        Open `<base_url>/ws/<stream>` and feed every decoded frame to callback.

        Returns:
            Coroutine function that closes this subscription
        """
        self._stopping = False
        self._seq += 1
        key = f"{stream}#{self._seq}"
        self._tasks[key] = asyncio.create_task(self._run(stream, callback), name=f"ws:{stream}")
        log_event(log, "stream_subscribed", level=logging.DEBUG, stream=stream)

        async def unsubscribe() -> None:
            task = self._tasks.pop(key, None)
            if task is None:
                return
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            log_event(log, "stream_unsubscribed", level=logging.DEBUG, stream=stream)

        return unsubscribe

    @property
    def active_streams(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        self._stopping = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _run(self, stream: str, callback: StreamCallback) -> None:
        url = f"{self.base_url}/ws/{stream}"
        backoff = 1.0
        while not self._stopping:
            try:
                async with self._get_session().ws_connect(url, heartbeat=self._heartbeat) as ws:
                    backoff = 1.0
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self._deliver(stream, callback, msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            log_event(log, "stream_error", level=logging.WARNING,
                                      stream=stream, err=str(ws.exception()))
                            break
                        elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                            break
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                log_event(log, "stream_reconnect", level=logging.WARNING,
                          stream=stream, err=str(exc), backoff_sec=backoff)
            if self._stopping:
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._reconnect_max)

    def _deliver(self, stream: str, callback: StreamCallback, raw: str) -> None:
        try:
            payload = loads(raw)
        except ValueError:
            log_event(log, "stream_bad_frame", level=logging.WARNING, stream=stream)
            return
        try:
            result = callback(payload)
        except Exception as exc:
            log_event(log, "stream_callback_error", level=logging.ERROR, stream=stream, err=str(exc))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)
