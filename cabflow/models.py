"""Shared models exchanged between the workflow stages."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from web3 import Web3

from .rpc import int_from_quantity


@dataclass(frozen=True)
class Call:
    """One sub-action of a multi-call operation."""

    to: str
    data: bytes = b""
    value: int = 0

    def __post_init__(self) -> None:
        if not Web3.is_address(self.to):
            raise ValueError(f"call target {self.to!r} is not an address")
        if self.value < 0 or self.value >= 2**256:
            raise ValueError("call value must fit in uint256")
        object.__setattr__(self, "to", Web3.to_checksum_address(self.to))
        object.__setattr__(self, "data", bytes(self.data))

    def to_json(self) -> Dict[str, str]:
        return {"to": self.to, "data": Web3.to_hex(self.data), "value": hex(self.value)}


class PreparedOperation(BaseModel):
    """Priced and sponsored bundle returned by the aggregation service.

    Instances are frozen: the bundle must be submitted exactly as returned or
    prepared again.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    chain_id: int
    account: str
    calls: Tuple[Call, ...]
    repay_tokens: Tuple[str, ...]
    user_operation: Dict[str, Any] = Field(alias="userOperation")
    repay_tokens_info: List[Dict[str, Any]] = Field(default_factory=list, alias="repayTokensInfo")
    sponsor_tokens_info: List[Dict[str, Any]] = Field(default_factory=list, alias="sponsorTokensInfo")

    @field_validator("user_operation")
    @classmethod
    def _require_sender(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value.get("sender"):
            raise ValueError("userOperation.sender is required")
        if "callData" not in value:
            raise ValueError("userOperation.callData is required")
        return value


class OperationReceipt(BaseModel):
    """Terminal inclusion record reported by the bundler."""

    model_config = ConfigDict(frozen=True)

    user_op_hash: str
    transaction_hash: str
    success: bool
    block_number: Optional[int] = None
    actual_gas_cost: int = 0
    reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_bundler(cls, user_op_hash: str, payload: Dict[str, Any]) -> "OperationReceipt":
        receipt = payload.get("receipt") or {}
        tx_hash = receipt.get("transactionHash") or payload.get("transactionHash")
        if not tx_hash:
            raise ValueError("bundler receipt has no transaction hash")
        block = receipt.get("blockNumber") or payload.get("blockNumber")
        return cls(
            user_op_hash=str(payload.get("userOpHash") or user_op_hash),
            transaction_hash=str(tx_hash),
            success=bool(payload.get("success")),
            block_number=int_from_quantity(block) if block is not None else None,
            actual_gas_cost=int_from_quantity(payload.get("actualGasCost")),
            reason=payload.get("reason") or None,
            raw=payload,
        )
