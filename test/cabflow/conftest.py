"""Fixtures faking the chain RPC, bundler and CAB service over httpx."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from cab_fakes import ACCOUNT_ADDRESS, BUNDLER_URL, CAB_URL, CHAIN_URL, PRIVATE_KEY, USDC, USDT, FakeClock, FakeNetwork
from cabflow.account import SmartAccount, ValidatorConfig
from cabflow.config import CABConfig, ChainConfig, TokenRegistry
from cabflow.session import ChainSession, SessionFactory
from cabflow.signers import SignerIdentity


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def transport(network: FakeNetwork) -> httpx.MockTransport:
    return network.transport()


@pytest.fixture
def chain() -> ChainConfig:
    return ChainConfig(chain_id=56, name="bsc", rpc_url=CHAIN_URL, bundler_url=BUNDLER_URL, env_prefix="BNB")


@pytest.fixture
def registry() -> TokenRegistry:
    return TokenRegistry.from_mapping(
        {
            "56": {
                "USDC": {"address": USDC, "decimals": 18},
                "USDT": {"address": USDT, "decimals": 18},
            }
        }
    )


@pytest.fixture
def config(chain: ChainConfig) -> CABConfig:
    return CABConfig(
        private_key=PRIVATE_KEY,
        paymaster_url=CAB_URL,
        chain=chain,
        transfer_amount=Decimal("0.001"),
        enabled_chain_threshold=3,
        receipt_timeout=60.0,
        receipt_poll_interval=2.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def account() -> SmartAccount:
    return SmartAccount(
        address=ACCOUNT_ADDRESS,
        validator=ValidatorConfig(),
        signer=SignerIdentity.from_private_key(PRIVATE_KEY),
    )


@pytest.fixture
def session(account: SmartAccount, chain: ChainConfig, transport: httpx.MockTransport) -> ChainSession:
    return SessionFactory(account, paymaster_url=CAB_URL, transport=transport).open_session(chain)
