"""Configuration for the CAB workflow.

Everything the workflow needs from the outside world is collected into a
:class:`CABConfig` which is validated once, at startup, with all problems
reported together.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from web3 import Web3

from .account import DEFAULT_VALIDATOR_ADDRESS, ValidatorConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_CONFIG_DIR = os.path.join(os.path.dirname(__file__), "..", "config")
DEFAULT_TOKEN_REGISTRY_PATH = os.path.join(_CONFIG_DIR, "cab-tokens.json")

_PRIVATE_KEY_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class ChainConfig:
    """A chain the account can execute on."""

    chain_id: int
    name: str
    rpc_url: str
    bundler_url: str = ""
    env_prefix: str = ""


# name -> (chain id, public RPC, bundler env prefix)
KNOWN_CHAINS: Dict[str, Tuple[int, str, str]] = {
    "bsc": (56, "https://bsc-dataseed.bnbchain.org", "BNB"),
    "arbitrum": (42161, "https://arb1.arbitrum.io/rpc", "ARB"),
    "optimism": (10, "https://mainnet.optimism.io", "OP"),
    "base": (8453, "https://mainnet.base.org", "BASE"),
    "polygon": (137, "https://polygon-rpc.com", "POLYGON"),
}


def resolve_chain(identifier: str) -> Tuple[str, int, str, str]:
    """Return ``(name, chain_id, default_rpc, env_prefix)`` for a name or numeric id."""

    text = identifier.strip().lower()
    if text in KNOWN_CHAINS:
        chain_id, rpc_url, prefix = KNOWN_CHAINS[text]
        return text, chain_id, rpc_url, prefix
    try:
        wanted = int(text, 0)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown chain {identifier!r}") from exc
    for name, (chain_id, rpc_url, prefix) in KNOWN_CHAINS.items():
        if chain_id == wanted:
            return name, chain_id, rpc_url, prefix
    return f"chain-{wanted}", wanted, "", f"CHAIN_{wanted}"


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str
    decimals: int


class TokenRegistry:
    """Injected ``chain_id -> symbol -> TokenInfo`` lookup."""

    def __init__(self, tokens: Optional[Mapping[int, Mapping[str, TokenInfo]]] = None) -> None:
        self._tokens: Dict[int, Dict[str, TokenInfo]] = {
            int(chain_id): {symbol.upper(): info for symbol, info in entries.items()}
            for chain_id, entries in (tokens or {}).items()
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TokenRegistry":
        """Build a registry from ``{"<chainId>": {"USDC": {"address": ..., "decimals": ...}}}``."""

        tokens: Dict[int, Dict[str, TokenInfo]] = {}
        for raw_chain, entries in data.items():
            try:
                chain_id = int(str(raw_chain), 0)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid chain id {raw_chain!r} in token registry") from exc
            if not isinstance(entries, Mapping):
                raise ConfigurationError(f"Token registry entry for chain {chain_id} must be an object")
            for symbol, token in entries.items():
                if not isinstance(token, Mapping):
                    raise ConfigurationError(f"Token {symbol} on chain {chain_id} must be an object")
                address = str(token.get("address") or "")
                if not Web3.is_address(address):
                    raise ConfigurationError(f"Token {symbol} on chain {chain_id} has an invalid address")
                decimals = token.get("decimals")
                if not isinstance(decimals, int) or not (0 <= decimals <= 36):
                    raise ConfigurationError(f"Token {symbol} on chain {chain_id} has invalid decimals")
                tokens.setdefault(chain_id, {})[symbol.upper()] = TokenInfo(
                    symbol=symbol.upper(),
                    address=Web3.to_checksum_address(address),
                    decimals=decimals,
                )
        return cls(tokens)

    def lookup(self, chain_id: int, symbol: str) -> TokenInfo:
        try:
            return self._tokens[int(chain_id)][symbol.upper()]
        except KeyError as exc:
            raise ConfigurationError(f"No {symbol} token registered for chain {chain_id}") from exc

    def symbols(self, chain_id: int) -> Tuple[str, ...]:
        return tuple(sorted(self._tokens.get(int(chain_id), {})))


def load_token_registry(path: Optional[str] = None) -> TokenRegistry:
    """Load a token registry from JSON on disk."""

    target = path or DEFAULT_TOKEN_REGISTRY_PATH
    try:
        with open(target, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Token registry not found at {target}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Token registry at {target} is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Token registry at {target} must be a JSON object")
    return TokenRegistry.from_mapping(payload)


def _parse_int(raw: Optional[str], name: str, default: int, problems: list[str]) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw, 0)
    except ValueError:
        problems.append(f"{name} must be an integer, got {raw!r}")
        return default


def _parse_json_object(raw: Optional[str], name: str, problems: list[str]) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        problems.append(f"{name} is not valid JSON")
        return {}
    if not isinstance(parsed, dict):
        problems.append(f"{name} must be a JSON object, received {type(parsed).__name__}")
        return {}
    return {str(k): str(v) for k, v in parsed.items()}


def _parse_bool(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class CABConfig:
    """Validated runtime configuration."""

    private_key: str = field(repr=False)
    paymaster_url: str
    chain: ChainConfig
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    repay_tokens: Tuple[str, ...] = ("USDC", "USDT")
    transfer_amount: Decimal = Decimal("0.001")
    enabled_chain_threshold: int = 3
    receipt_timeout: float = 60.0
    receipt_poll_interval: float = 2.0
    require_each_repay_token: bool = False
    paymaster_headers: Dict[str, str] = field(default_factory=dict)
    bundler_headers: Dict[str, str] = field(default_factory=dict)
    token_registry_path: Optional[str] = None

    def __post_init__(self) -> None:
        problems: list[str] = []
        if not self.private_key:
            problems.append("PRIVATE_KEY is not set")
        elif not _PRIVATE_KEY_PATTERN.match(self.private_key):
            problems.append("PRIVATE_KEY must be a 0x-prefixed 32-byte hex string")
        if not self.paymaster_url:
            problems.append("CAB_PAYMASTER_URL is not set")
        if not self.chain.bundler_url:
            prefix = self.chain.env_prefix or "CAB"
            problems.append(f"bundler RPC for {self.chain.name} is not set (CAB_BUNDLER_RPC_URL or {prefix}_BUNDLER_RPC)")
        if not self.chain.rpc_url:
            problems.append(f"chain RPC for {self.chain.name} is not set (CAB_CHAIN_RPC_URL)")
        self.repay_tokens = tuple(token.strip().upper() for token in self.repay_tokens if token.strip())
        if not self.repay_tokens:
            problems.append("at least one repay token is required")
        if not self.transfer_amount.is_finite():
            problems.append(f"transfer amount must be a finite decimal, got {self.transfer_amount}")
        elif self.transfer_amount <= 0:
            problems.append("transfer amount must be positive")
        if self.enabled_chain_threshold < 0:
            problems.append("enabled chain threshold must be non-negative")
        if self.receipt_timeout <= 0:
            problems.append("receipt timeout must be positive")
        if self.receipt_poll_interval <= 0:
            problems.append("receipt poll interval must be positive")
        if problems:
            raise ConfigurationError("Invalid CAB configuration", problems=problems)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CABConfig":
        env = os.environ if environ is None else environ
        problems: list[str] = []

        try:
            name, chain_id, default_rpc, prefix = resolve_chain(env.get("CAB_CHAIN") or "bsc")
        except ConfigurationError as exc:
            raise ConfigurationError("Invalid CAB configuration", problems=[str(exc)]) from exc
        bundler_url = env.get("CAB_BUNDLER_RPC_URL") or env.get(f"{prefix}_BUNDLER_RPC") or ""
        chain = ChainConfig(
            chain_id=chain_id,
            name=name,
            rpc_url=env.get("CAB_CHAIN_RPC_URL") or default_rpc,
            bundler_url=bundler_url,
            env_prefix=prefix,
        )

        raw_amount = env.get("CAB_TRANSFER_AMOUNT") or "0.001"
        try:
            transfer_amount = Decimal(raw_amount)
        except InvalidOperation:
            problems.append(f"CAB_TRANSFER_AMOUNT must be a decimal, got {raw_amount!r}")
            transfer_amount = Decimal("0.001")

        threshold = _parse_int(env.get("CAB_ENABLED_CHAIN_THRESHOLD"), "CAB_ENABLED_CHAIN_THRESHOLD", 3, problems)
        timeout_ms = _parse_int(env.get("CAB_RECEIPT_TIMEOUT_MS"), "CAB_RECEIPT_TIMEOUT_MS", 60_000, problems)
        poll_ms = _parse_int(env.get("CAB_RECEIPT_POLL_INTERVAL_MS"), "CAB_RECEIPT_POLL_INTERVAL_MS", 2_000, problems)
        index = _parse_int(env.get("CAB_ACCOUNT_INDEX"), "CAB_ACCOUNT_INDEX", 0, problems)
        paymaster_headers = _parse_json_object(env.get("CAB_PAYMASTER_HEADERS"), "CAB_PAYMASTER_HEADERS", problems)
        bundler_headers = _parse_json_object(env.get("CAB_BUNDLER_HEADERS"), "CAB_BUNDLER_HEADERS", problems)

        validator_address = env.get("CAB_VALIDATOR_ADDRESS") or DEFAULT_VALIDATOR_ADDRESS
        if not Web3.is_address(validator_address):
            problems.append("CAB_VALIDATOR_ADDRESS must be a 20-byte address")
            validator_address = DEFAULT_VALIDATOR_ADDRESS
        validator = ValidatorConfig(
            validator_address=Web3.to_checksum_address(validator_address),
            kernel_version=env.get("CAB_KERNEL_VERSION") or "0.3.1",
            index=max(index, 0),
        )

        repay_tokens = tuple((env.get("CAB_REPAY_TOKENS") or "USDC,USDT").split(","))

        try:
            config = cls(
                private_key=(env.get("PRIVATE_KEY") or "").strip(),
                paymaster_url=(env.get("CAB_PAYMASTER_URL") or "").strip(),
                chain=chain,
                validator=validator,
                repay_tokens=repay_tokens,
                transfer_amount=transfer_amount,
                enabled_chain_threshold=threshold,
                receipt_timeout=max(timeout_ms, 1) / 1000,
                receipt_poll_interval=max(poll_ms, 1) / 1000,
                require_each_repay_token=_parse_bool(env.get("CAB_REQUIRE_EACH_REPAY_TOKEN")),
                paymaster_headers=paymaster_headers,
                bundler_headers=bundler_headers,
                token_registry_path=env.get("CAB_TOKEN_REGISTRY") or None,
            )
        except ConfigurationError as exc:
            raise ConfigurationError("Invalid CAB configuration", problems=problems + exc.problems) from None
        if problems:
            raise ConfigurationError("Invalid CAB configuration", problems=problems)
        logger.debug("Loaded CAB configuration for chain %s (%d)", chain.name, chain.chain_id)
        return config

    def load_token_registry(self) -> TokenRegistry:
        return load_token_registry(self.token_registry_path)
