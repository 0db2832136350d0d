"""Client for the chain-independent CAB aggregation service."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .errors import RpcError, SubmissionError
from .rpc import JsonRpcClient

logger = logging.getLogger(__name__)

METHOD_ENABLE_TOKENS = "cab_enableTokens"
METHOD_ENABLED_CHAINS = "cab_getEnabledChains"
METHOD_BALANCE = "cab_getBalance"
METHOD_PREPARE = "cab_prepareUserOperation"
METHOD_SEND = "cab_sendUserOperation"


def detect_simulation_error(error: RpcError) -> bool:
    """Best-effort detection of simulation failures from error payloads."""

    message = str(error).lower()
    if "simulation" in message or "failedop" in message:
        return True
    if isinstance(error.code, int) and error.code in {-32500, -32501}:
        return True
    data = error.data
    if isinstance(data, dict):
        err_text = str(data.get("error") or data.get("cause") or "").lower()
        if "simulation" in err_text:
            return True
        if "failedOp" in json.dumps(data):
            return True
    return False


def _quantity(value: Any, label: str, payload: Any) -> int:
    """Parse a non-negative quantity from a service payload, rejecting anything else."""

    parsed: Optional[int] = None
    if isinstance(value, int) and not isinstance(value, bool):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = int(text, 16) if text.startswith(("0x", "0X")) else int(text)
        except ValueError:
            parsed = None
    if parsed is None or parsed < 0:
        raise RpcError(f"CAB service returned an invalid {label}: {value!r}", data=payload)
    return parsed


class CABClient:
    """Thin JSON-RPC wrapper scoped to one account and execution chain."""

    def __init__(
        self,
        url: str,
        *,
        account: str,
        chain_id: int,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._rpc = JsonRpcClient(url, headers=headers, timeout=timeout, transport=transport)
        self._account = account
        self._chain_id = chain_id

    @property
    def url(self) -> str:
        return self._rpc.url

    async def enable_tokens(self, tokens: Sequence[str]) -> Any:
        params = {
            "account": self._account,
            "chainId": hex(self._chain_id),
            "tokens": [{"name": token} for token in tokens],
        }
        logger.debug("Requesting CAB enrollment for %s on chain %d", list(tokens), self._chain_id)
        return await self._rpc.call(METHOD_ENABLE_TOKENS, [params])

    async def get_enabled_chains(self) -> List[int]:
        result = await self._rpc.call(METHOD_ENABLED_CHAINS, [{"account": self._account}])
        chains = result.get("enabledChains") if isinstance(result, dict) else result
        if not isinstance(chains, list):
            raise RpcError("CAB service returned an invalid enabledChains payload", data=result)
        return [_quantity(chain, "chain id", result) for chain in chains]

    async def get_balances(self, tokens: Sequence[str]) -> Dict[str, int]:
        result = await self._rpc.call(
            METHOD_BALANCE,
            [{"account": self._account, "tokens": list(tokens)}],
        )
        balances = result.get("balances", result) if isinstance(result, dict) else None
        if not isinstance(balances, dict):
            raise RpcError("CAB service returned an invalid balance payload", data=result)
        return {
            str(symbol).upper(): _quantity(amount, f"{symbol} balance", result)
            for symbol, amount in balances.items()
        }

    async def prepare_user_operation(
        self,
        user_operation: Dict[str, Any],
        repay_tokens: Sequence[str],
    ) -> Dict[str, Any]:
        params = {
            "chainId": hex(self._chain_id),
            "userOperation": user_operation,
            "repayTokens": list(repay_tokens),
        }
        result = await self._rpc.call(METHOD_PREPARE, [params])
        if not isinstance(result, dict) or not isinstance(result.get("userOperation"), dict):
            raise RpcError("CAB service returned an invalid prepared operation", data=result)
        return result

    async def send_user_operation(self, user_operation: Dict[str, Any]) -> str:
        params = {"chainId": hex(self._chain_id), "userOperation": user_operation}
        try:
            result = await self._rpc.call(METHOD_SEND, [params])
        except RpcError as exc:
            raise SubmissionError(str(exc), simulation=detect_simulation_error(exc)) from exc
        if not isinstance(result, str):
            raise SubmissionError("CAB service returned an invalid userOp hash")
        return result
