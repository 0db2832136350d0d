"""Lightweight async JSON-RPC transport shared by the chain, bundler and CAB clients."""

from __future__ import annotations

import itertools
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from .errors import RpcError, TransportError

logger = logging.getLogger(__name__)

_REQUEST_IDS = itertools.count(int(time.time() * 1000))


def int_from_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity (hex string, decimal string or number)."""

    if value in (None, ""):
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith(("0x", "0X")):
            return int(text, 16)
        try:
            return int(text)
        except ValueError:
            return 0
    return 0


def bytes_from_hex(value: Any) -> bytes:
    if value in (None, "", "0x"):
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client; construction performs no I/O."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return self._url

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(_REQUEST_IDS), "method": method, "params": params}
        logger.debug("RPC -> %s %s", method, payload["params"])
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                response = await client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} failed: {exc}", url=self._url) from exc
        if response.status_code >= 400:
            raise TransportError(
                f"{method} responded with HTTP {response.status_code}",
                url=self._url,
                code=response.status_code,
            )
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise TransportError(f"{method} returned a non-JSON body", url=self._url) from exc
        if not isinstance(data, dict):
            raise TransportError(f"{method} returned an invalid JSON-RPC envelope", url=self._url)
        if data.get("error"):
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise RpcError(
                str(error.get("message") or f"{method} failed"),
                code=error.get("code"),
                data=error.get("data"),
            )
        logger.debug("RPC <- %s %s", method, data.get("result"))
        return data.get("result")
