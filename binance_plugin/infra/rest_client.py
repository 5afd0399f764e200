"""
Minimal async HTTP client for Binance REST endpoints using HTTP/2.

Signed endpoints get timestamp + recvWindow + HMAC-SHA256 signature over the
exact query string sent. Idempotent GETs are retried with jittered
exponential backoff; order placement/cancellation is never retried here
(a retried POST could place the order twice).
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import random
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from binance_plugin.core.errors import ExchangeAPIError, ExchangeTransportError
from binance_plugin.core.json_utils import loads

log = logging.getLogger("binance_plugin")

API_KEY_HEADER = "X-MBX-APIKEY"


class BinanceRestClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 10.0,
        recv_window_ms: int = 5000,
        retries: int = 2,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_secret = api_secret
        self._recv_window_ms = recv_window_ms
        self._retries = retries
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self.request("GET", path, params, signed=signed, retries=self._retries)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self.request("POST", path, params, signed=signed, retries=0)

    async def put(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self.request("PUT", path, params, signed=signed, retries=self._retries)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self.request("DELETE", path, params, signed=signed, retries=0)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        retries: int = 0,
    ) -> Any:
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                return await self._send(method, path, params, signed)
            except ExchangeTransportError as exc:
                if attempt >= retries:
                    raise
                log.debug("http_retry method=%s path=%s attempt=%d err=%s", method, path, attempt + 1, exc)
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2

    def sign(self, params: Dict[str, Any]) -> str:
        """Return the signed query string for params (timestamp/recvWindow added)."""
        if not self._api_secret:
            raise ExchangeTransportError("signed endpoint requires an API secret")
        query = dict(params)
        query["timestamp"] = int(time.time() * 1000)
        if self._recv_window_ms:
            query["recvWindow"] = self._recv_window_ms
        encoded = urlencode(query)
        signature = hmac.new(self._api_secret.encode(), encoded.encode(), hashlib.sha256).hexdigest()
        return f"{encoded}&signature={signature}"

    async def _send(self, method: str, path: str, params: Optional[Dict[str, Any]], signed: bool) -> Any:
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        query = self.sign(clean) if signed else urlencode(clean)
        url = f"{path}?{query}" if query else path
        headers = {API_KEY_HEADER: self._api_key} if self._api_key else {}

        try:
            resp = await self.client.request(method, url, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExchangeTransportError(f"timeout: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise ExchangeTransportError(f"network error: {method} {path}: {exc}") from exc

        try:
            data = loads(resp.content) if resp.content else {}
        except ValueError as exc:
            raise ExchangeTransportError(
                f"malformed response ({resp.status_code}) for {method} {path}"
            ) from exc

        if resp.status_code >= 400:
            if isinstance(data, dict) and "code" in data:
                raise ExchangeAPIError(
                    code=int(data["code"]),
                    msg=str(data.get("msg", "")),
                    status=resp.status_code,
                    payload=data,
                )
            raise ExchangeTransportError(f"http {resp.status_code} for {method} {path}")
        return data
