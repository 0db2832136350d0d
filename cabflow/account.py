"""Kernel smart-account provisioning.

The account address is a CREATE2 address owned by the Kernel factory, which
is deployed at the same address on every supported chain. Asking the factory
for the address of a given ``(signer, validator)`` pair therefore yields the
same identity everywhere, which is what lets the CAB service aggregate
balances under one account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3

from .errors import ConfigurationError
from .rpc import JsonRpcClient, bytes_from_hex
from .signers import Signer

logger = logging.getLogger(__name__)

ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
DEFAULT_VALIDATOR_ADDRESS = "0x02d32f9c668C92A60b44825C4f79B501c0F685dA"

_VALIDATOR_TYPE_VALIDATOR = b"\x01"
_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class KernelDeployment:
    kernel_version: str
    entry_point_version: str
    entry_point: str
    factory: str
    initialize_signature: str


SUPPORTED_DEPLOYMENTS: Dict[Tuple[str, str], KernelDeployment] = {
    ("0.3.0", "0.7"): KernelDeployment(
        kernel_version="0.3.0",
        entry_point_version="0.7",
        entry_point=ENTRY_POINT_V07,
        factory="0x6723b44Abeec4E71eBE3232BD5B455805baDD22f",
        initialize_signature="initialize(bytes21,address,bytes,bytes)",
    ),
    ("0.3.1", "0.7"): KernelDeployment(
        kernel_version="0.3.1",
        entry_point_version="0.7",
        entry_point=ENTRY_POINT_V07,
        factory="0xaac5D4240AF87249B3f71BC8E4A2cae074A3E419",
        initialize_signature="initialize(bytes21,address,bytes,bytes,bytes[])",
    ),
}


@dataclass(frozen=True)
class ValidatorConfig:
    """How authorisation is checked on the account; identical on every chain."""

    validator_address: str = DEFAULT_VALIDATOR_ADDRESS
    kernel_version: str = "0.3.1"
    entry_point_version: str = "0.7"
    index: int = 0


@dataclass(frozen=True)
class SmartAccount:
    address: str
    validator: ValidatorConfig
    signer: Signer = field(compare=False, repr=False)
    entry_point: str = ENTRY_POINT_V07
    factory: Optional[str] = None
    factory_data: Optional[str] = None
    deployed: bool = False

    def init_fields(self) -> Dict[str, str]:
        """Deployment fields for the first user operation of an undeployed account."""

        if self.deployed or not self.factory:
            return {}
        return {"factory": self.factory, "factoryData": self.factory_data or "0x"}


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def resolve_deployment(validator: ValidatorConfig, entry_point_version: Optional[str] = None) -> KernelDeployment:
    version = entry_point_version or validator.entry_point_version
    deployment = SUPPORTED_DEPLOYMENTS.get((validator.kernel_version, version))
    if deployment is None:
        raise ConfigurationError(
            f"Unsupported validator combination: kernel {validator.kernel_version} on EntryPoint {version}"
        )
    if not Web3.is_address(validator.validator_address):
        raise ConfigurationError(f"Invalid validator address {validator.validator_address!r}")
    if validator.index < 0:
        raise ConfigurationError("Account index must be non-negative")
    return deployment


def build_initialize_data(owner: str, validator: ValidatorConfig, deployment: KernelDeployment) -> bytes:
    """Kernel ``initialize`` calldata installing ``owner`` behind the root validator."""

    root_validator = _VALIDATOR_TYPE_VALIDATOR + bytes_from_hex(Web3.to_checksum_address(validator.validator_address))
    owner_bytes = bytes_from_hex(Web3.to_checksum_address(owner))
    args = [root_validator, _ZERO_ADDRESS, owner_bytes, b""]
    types = ["bytes21", "address", "bytes", "bytes"]
    if deployment.kernel_version != "0.3.0":
        args.append([])
        types.append("bytes[]")
    return selector(deployment.initialize_signature) + abi_encode(types, args)


def account_salt(index: int) -> bytes:
    return index.to_bytes(32, "big")


class AccountProvisioner:
    """Derive the smart account for a signer by querying the Kernel factory."""

    def __init__(self, rpc: JsonRpcClient) -> None:
        self._rpc = rpc
        self._cache: Dict[Tuple[str, ValidatorConfig, str], SmartAccount] = {}

    async def derive(
        self,
        signer: Signer,
        validator: ValidatorConfig,
        entry_point_version: Optional[str] = None,
    ) -> SmartAccount:
        deployment = resolve_deployment(validator, entry_point_version)
        key = (signer.address, validator, deployment.entry_point_version)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        init_data = build_initialize_data(signer.address, validator, deployment)
        salt = account_salt(validator.index)
        call_data = selector("getAddress(bytes,bytes32)") + abi_encode(["bytes", "bytes32"], [init_data, salt])
        result = await self._rpc.call(
            "eth_call",
            [{"to": deployment.factory, "data": Web3.to_hex(call_data)}, "latest"],
        )
        raw = bytes_from_hex(result)
        if len(raw) < 32:
            raise ConfigurationError(f"Kernel factory {deployment.factory} returned no address")
        (address,) = abi_decode(["address"], raw[:32])
        address = Web3.to_checksum_address(address)

        code = await self._rpc.call("eth_getCode", [address, "latest"])
        deployed = len(bytes_from_hex(code)) > 0
        factory_data = selector("createAccount(bytes,bytes32)") + abi_encode(["bytes", "bytes32"], [init_data, salt])

        account = SmartAccount(
            address=address,
            validator=validator,
            signer=signer,
            entry_point=deployment.entry_point,
            factory=deployment.factory,
            factory_data=Web3.to_hex(factory_data),
            deployed=deployed,
        )
        self._cache[key] = account
        logger.info(
            "Derived smart account %s for signer %s (kernel %s, deployed=%s)",
            address,
            signer.address,
            validator.kernel_version,
            deployed,
        )
        return account
