"""JSON-RPC client for the per-chain ERC-4337 bundler."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from .errors import RpcError
from .rpc import JsonRpcClient


class BundlerClient:
    """Receipt lookups against the chain's bundler."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._rpc = JsonRpcClient(url, headers=headers, timeout=timeout, transport=transport)

    @property
    def url(self) -> str:
        return self._rpc.url

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[Dict[str, Any]]:
        """Return the on-chain receipt for ``user_op_hash`` or ``None`` while pending."""

        result = await self._rpc.call("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RpcError("Bundler returned an invalid receipt payload")
        return result
