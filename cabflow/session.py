"""Bind the shared smart account to one chain and its bundler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3

from .account import SmartAccount, selector
from .bundler import BundlerClient
from .cab import CABClient
from .config import ChainConfig
from .rpc import JsonRpcClient, bytes_from_hex


@dataclass(frozen=True)
class ChainSession:
    """Per-chain execution context; sessions share no mutable state."""

    chain: ChainConfig
    account: SmartAccount
    bundler_endpoint: str
    paymaster_endpoint: str
    chain_rpc: JsonRpcClient = field(repr=False)
    bundler: BundlerClient = field(repr=False)
    cab: CABClient = field(repr=False)

    @property
    def chain_id(self) -> int:
        return self.chain.chain_id

    async def fetch_nonce(self, key: int = 0) -> int:
        """Read the account's EntryPoint nonce for ``key``."""

        data = selector("getNonce(address,uint192)") + abi_encode(["address", "uint192"], [self.account.address, key])
        result = await self.chain_rpc.call(
            "eth_call",
            [{"to": self.account.entry_point, "data": Web3.to_hex(data)}, "latest"],
        )
        raw = bytes_from_hex(result)
        if len(raw) < 32:
            return 0
        (nonce,) = abi_decode(["uint256"], raw[:32])
        return int(nonce)


class SessionFactory:
    """Produce :class:`ChainSession` objects; construction is side-effect free."""

    def __init__(
        self,
        account: SmartAccount,
        *,
        paymaster_url: str,
        paymaster_headers: Optional[Dict[str, str]] = None,
        bundler_headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account = account
        self._paymaster_url = paymaster_url
        self._paymaster_headers = dict(paymaster_headers or {})
        self._bundler_headers = dict(bundler_headers or {})
        self._timeout = timeout
        self._transport = transport

    def open_session(self, chain: ChainConfig, bundler_endpoint: Optional[str] = None) -> ChainSession:
        endpoint = bundler_endpoint or chain.bundler_url
        return ChainSession(
            chain=chain,
            account=self._account,
            bundler_endpoint=endpoint,
            paymaster_endpoint=self._paymaster_url,
            chain_rpc=JsonRpcClient(chain.rpc_url, timeout=self._timeout, transport=self._transport),
            bundler=BundlerClient(
                endpoint,
                headers=self._bundler_headers,
                timeout=self._timeout,
                transport=self._transport,
            ),
            cab=CABClient(
                self._paymaster_url,
                account=self._account.address,
                chain_id=chain.chain_id,
                headers=self._paymaster_headers,
                timeout=self._timeout,
                transport=self._transport,
            ),
        )
