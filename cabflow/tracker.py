"""Submission and confirmation tracking for prepared operations."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from eth_abi import encode as abi_encode
from web3 import Web3

from .errors import DoubleSubmissionError, ReceiptTimeoutError, RpcError, SubmissionError, TransportError
from .models import OperationReceipt, PreparedOperation
from .rpc import bytes_from_hex, int_from_quantity
from .session import ChainSession

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    PREPARED = "prepared"
    SUBMITTED = "submitted"
    INCLUDED_SUCCESS = "included_success"
    INCLUDED_FAILURE = "included_failure"
    TIMED_OUT = "timed_out"


_TRANSITIONS = {
    SubmissionState.PREPARED: {SubmissionState.SUBMITTED},
    SubmissionState.SUBMITTED: {
        SubmissionState.INCLUDED_SUCCESS,
        SubmissionState.INCLUDED_FAILURE,
        SubmissionState.TIMED_OUT,
    },
}


@dataclass
class SubmissionRecord:
    operation_id: str
    state: SubmissionState = SubmissionState.PREPARED
    user_op_hash: Optional[str] = None
    receipt: Optional[OperationReceipt] = None

    def advance(self, state: SubmissionState) -> None:
        if state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"illegal submission transition {self.state.value} -> {state.value}")
        self.state = state


def _uint128(value: Any) -> bytes:
    return int_from_quantity(value).to_bytes(16, "big")


def pack_user_operation(user_op: Mapping[str, Any]) -> bytes:
    """ABI-encode the hashed fields of an EntryPoint v0.7 packed user operation."""

    init_code = b""
    if user_op.get("factory"):
        init_code = bytes_from_hex(user_op["factory"]) + bytes_from_hex(user_op.get("factoryData"))
    paymaster_and_data = b""
    if user_op.get("paymaster"):
        paymaster_and_data = (
            bytes_from_hex(user_op["paymaster"])
            + _uint128(user_op.get("paymasterVerificationGasLimit"))
            + _uint128(user_op.get("paymasterPostOpGasLimit"))
            + bytes_from_hex(user_op.get("paymasterData"))
        )
    account_gas_limits = _uint128(user_op.get("verificationGasLimit")) + _uint128(user_op.get("callGasLimit"))
    gas_fees = _uint128(user_op.get("maxPriorityFeePerGas")) + _uint128(user_op.get("maxFeePerGas"))
    return abi_encode(
        ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
        [
            Web3.to_checksum_address(user_op["sender"]),
            int_from_quantity(user_op.get("nonce")),
            bytes(Web3.keccak(init_code)),
            bytes(Web3.keccak(bytes_from_hex(user_op.get("callData")))),
            account_gas_limits,
            int_from_quantity(user_op.get("preVerificationGas")),
            gas_fees,
            bytes(Web3.keccak(paymaster_and_data)),
        ],
    )


def user_operation_hash(user_op: Mapping[str, Any], *, entry_point: str, chain_id: int) -> bytes:
    inner = bytes(Web3.keccak(pack_user_operation(user_op)))
    return bytes(
        Web3.keccak(
            abi_encode(["bytes32", "address", "uint256"], [inner, Web3.to_checksum_address(entry_point), chain_id])
        )
    )


class SubmissionTracker:
    """Submit each prepared operation once and wait for a terminal receipt.

    ``Prepared -> Submitted -> {Included(success) | Included(failure) | TimedOut}``
    """

    def __init__(
        self,
        session: ChainSession,
        *,
        receipt_timeout: float = 60.0,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._receipt_timeout = receipt_timeout
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._records: Dict[str, SubmissionRecord] = {}
        self._by_hash: Dict[str, SubmissionRecord] = {}

    def record(self, operation_id: str) -> Optional[SubmissionRecord]:
        return self._records.get(operation_id)

    def _sign(self, prepared: PreparedOperation) -> Dict[str, Any]:
        account = self._session.account
        user_op = dict(prepared.user_operation)
        digest = user_operation_hash(user_op, entry_point=account.entry_point, chain_id=prepared.chain_id)
        user_op["signature"] = account.signer.sign_digest(digest)
        return user_op

    async def submit(self, prepared: PreparedOperation) -> str:
        """Send ``prepared`` exactly once; never retried internally."""

        if prepared.operation_id in self._records:
            raise DoubleSubmissionError(f"operation {prepared.operation_id} was already submitted")
        if prepared.chain_id != self._session.chain_id or prepared.account != self._session.account.address:
            raise SubmissionError("prepared operation does not belong to this session")

        record = SubmissionRecord(operation_id=prepared.operation_id)
        self._records[prepared.operation_id] = record
        signed = self._sign(prepared)
        user_op_hash = await self._session.cab.send_user_operation(signed)
        record.user_op_hash = user_op_hash
        record.advance(SubmissionState.SUBMITTED)
        self._by_hash[user_op_hash] = record
        logger.info("Submitted operation %s as userOp %s", prepared.operation_id, user_op_hash)
        return user_op_hash

    async def _poll(self, user_op_hash: str, budget: float) -> Optional[OperationReceipt]:
        try:
            payload = await asyncio.wait_for(
                self._session.bundler.get_user_operation_receipt(user_op_hash),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.warning("Receipt lookup for %s exceeded %.1fs", user_op_hash, budget)
            return None
        except (TransportError, RpcError) as exc:
            logger.warning("Receipt lookup for %s failed: %s", user_op_hash, exc)
            return None
        if payload is None:
            return None
        try:
            return OperationReceipt.from_bundler(user_op_hash, payload)
        except ValueError as exc:
            logger.warning("Ignoring malformed receipt for %s: %s", user_op_hash, exc)
            return None

    async def await_receipt(
        self,
        user_op_hash: str,
        timeout: Optional[float] = None,
        *,
        poll_interval: Optional[float] = None,
    ) -> OperationReceipt:
        """Poll the bundler until inclusion; raise :class:`ReceiptTimeoutError` otherwise."""

        limit = self._receipt_timeout if timeout is None else timeout
        interval = self._poll_interval if poll_interval is None else poll_interval
        record = self._by_hash.get(user_op_hash)
        if record is not None and record.receipt is not None:
            return record.receipt
        deadline = self._clock() + limit
        while True:
            remaining = deadline - self._clock()
            receipt = await self._poll(user_op_hash, max(remaining, interval))
            if receipt is not None:
                if record is not None:
                    record.receipt = receipt
                    # a timed-out record keeps its state; the receipt settles its fate
                    if record.state is SubmissionState.SUBMITTED:
                        record.advance(
                            SubmissionState.INCLUDED_SUCCESS if receipt.success else SubmissionState.INCLUDED_FAILURE
                        )
                logger.info(
                    "UserOp %s included in %s (success=%s)",
                    user_op_hash,
                    receipt.transaction_hash,
                    receipt.success,
                )
                return receipt
            remaining = deadline - self._clock()
            if remaining <= 0:
                if record is not None and record.state is SubmissionState.SUBMITTED:
                    record.advance(SubmissionState.TIMED_OUT)
                raise ReceiptTimeoutError(user_op_hash, limit)
            await self._sleep(min(interval, remaining))
