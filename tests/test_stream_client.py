"""
Tests for StreamClient frame delivery and subscription bookkeeping.
"""

import asyncio

import pytest

from binance_plugin.infra.stream_client import StreamClient


class TestDeliver:

    def test_decoded_frame_reaches_callback(self):
        client = StreamClient("wss://example.test")
        frames = []
        client._deliver("btcusdt@bookTicker", frames.append, '{"s":"BTCUSDT","b":"1.0","a":"1.1"}')
        assert frames == [{"s": "BTCUSDT", "b": "1.0", "a": "1.1"}]

    def test_bad_frame_is_dropped(self):
        client = StreamClient("wss://example.test")
        frames = []
        client._deliver("s", frames.append, "not json")
        assert frames == []

    def test_callback_error_is_contained(self):
        client = StreamClient("wss://example.test")

        def broken(payload):
            raise RuntimeError("boom")

        client._deliver("s", broken, "{}")

    @pytest.mark.asyncio
    async def test_async_callback_is_scheduled(self):
        client = StreamClient("wss://example.test")
        frames = []

        async def handler(payload):
            frames.append(payload)

        client._deliver("s", handler, '{"x":1}')
        await asyncio.sleep(0)
        assert frames == [{"x": 1}]


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels_the_stream_task(self):
        client = StreamClient("wss://example.test")

        async def idle(stream, callback):
            await asyncio.Event().wait()

        client._run = idle
        unsubscribe = await client.subscribe("btcusdt@bookTicker", lambda payload: None)
        assert client.active_streams == 1

        await unsubscribe()
        assert client.active_streams == 0
        await unsubscribe()

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self):
        client = StreamClient("wss://example.test")

        async def idle(stream, callback):
            await asyncio.Event().wait()

        client._run = idle
        await client.subscribe("a", lambda payload: None)
        await client.subscribe("b", lambda payload: None)

        await client.close()

        assert client.active_streams == 0
