import asyncio

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from cab_fakes import ACCOUNT_ADDRESS, FakeClock, FakeNetwork, RpcFailure
from cabflow.account import ENTRY_POINT_V07
from cabflow.errors import DoubleSubmissionError, ReceiptTimeoutError, SubmissionError
from cabflow.models import PreparedOperation
from cabflow.tracker import SubmissionRecord, SubmissionState, SubmissionTracker, user_operation_hash

USER_OP = {
    "sender": ACCOUNT_ADDRESS,
    "nonce": "0x1",
    "callData": "0x1234",
    "callGasLimit": "0x30d40",
    "verificationGasLimit": "0x186a0",
    "preVerificationGas": "0xc350",
    "maxFeePerGas": "0x3b9aca00",
    "maxPriorityFeePerGas": "0x3b9aca00",
    "paymaster": "0x" + "cd" * 20,
    "paymasterVerificationGasLimit": "0x186a0",
    "paymasterPostOpGasLimit": "0x1",
    "paymasterData": "0x1234",
    "signature": "0x",
}


def _prepared(chain_id: int = 56, account: str = ACCOUNT_ADDRESS) -> PreparedOperation:
    return PreparedOperation(
        chain_id=chain_id,
        account=account,
        calls=(),
        repay_tokens=("USDC",),
        userOperation=dict(USER_OP),
    )


def _tracker(session, clock: FakeClock, **kwargs) -> SubmissionTracker:
    return SubmissionTracker(session, clock=clock, sleep=clock.sleep, **kwargs)


def test_submitted_signature_recovers_to_owner(network: FakeNetwork, session, clock):
    asyncio.run(_tracker(session, clock).submit(_prepared()))

    (request,) = network.calls("cab_sendUserOperation")
    sent = request["params"][0]["userOperation"]
    digest = user_operation_hash(USER_OP, entry_point=ENTRY_POINT_V07, chain_id=56)
    recovered = Account.recover_message(encode_defunct(primitive=digest), signature=sent["signature"])
    assert recovered == session.account.signer.address


def test_hash_depends_on_chain_and_fields():
    base = user_operation_hash(USER_OP, entry_point=ENTRY_POINT_V07, chain_id=56)

    assert base != user_operation_hash(USER_OP, entry_point=ENTRY_POINT_V07, chain_id=42161)
    assert base != user_operation_hash(dict(USER_OP, nonce="0x2"), entry_point=ENTRY_POINT_V07, chain_id=56)
    assert base == user_operation_hash(dict(USER_OP, signature="0xff"), entry_point=ENTRY_POINT_V07, chain_id=56)


def test_operation_is_submitted_at_most_once(network: FakeNetwork, session, clock):
    tracker = _tracker(session, clock)
    prepared = _prepared()

    user_op_hash = asyncio.run(tracker.submit(prepared))
    with pytest.raises(DoubleSubmissionError):
        asyncio.run(tracker.submit(prepared))

    assert user_op_hash == "0x" + "77" * 32
    assert len(network.calls("cab_sendUserOperation")) == 1
    assert tracker.record(prepared.operation_id).state is SubmissionState.SUBMITTED


def test_failed_send_is_not_retried(network: FakeNetwork, session, clock):
    network.send_result = RpcFailure("simulation failed: AA23 reverted", code=-32500)
    tracker = _tracker(session, clock)
    prepared = _prepared()

    with pytest.raises(SubmissionError) as excinfo:
        asyncio.run(tracker.submit(prepared))
    with pytest.raises(DoubleSubmissionError):
        asyncio.run(tracker.submit(prepared))

    assert excinfo.value.is_simulation_error
    assert len(network.calls("cab_sendUserOperation")) == 1


def test_operation_from_another_session_is_rejected(network: FakeNetwork, session, clock):
    with pytest.raises(SubmissionError):
        asyncio.run(_tracker(session, clock).submit(_prepared(chain_id=42161)))

    assert network.requests == []


def test_receipt_is_returned_when_included(network: FakeNetwork, session, clock):
    included = network.receipt
    network.receipt = lambda user_op_hash: included(user_op_hash) if clock.now >= 10 else None
    tracker = _tracker(session, clock, receipt_timeout=60, poll_interval=2)
    prepared = _prepared()

    async def submit_and_wait():
        user_op_hash = await tracker.submit(prepared)
        return await tracker.await_receipt(user_op_hash)

    receipt = asyncio.run(submit_and_wait())

    assert receipt.success is True
    assert receipt.transaction_hash == "0x" + "99" * 32
    assert receipt.block_number == 42
    assert clock.now == 10
    assert tracker.record(prepared.operation_id).state is SubmissionState.INCLUDED_SUCCESS


def test_reverted_inclusion_is_terminal(network: FakeNetwork, session, clock):
    network.receipt = lambda user_op_hash: {
        "userOpHash": user_op_hash,
        "success": False,
        "reason": "0x08c379a0",
        "receipt": {"transactionHash": "0x" + "98" * 32},
    }
    tracker = _tracker(session, clock)
    prepared = _prepared()

    async def submit_and_wait():
        return await tracker.await_receipt(await tracker.submit(prepared))

    receipt = asyncio.run(submit_and_wait())

    assert receipt.success is False
    assert receipt.reason == "0x08c379a0"
    assert tracker.record(prepared.operation_id).state is SubmissionState.INCLUDED_FAILURE


def test_wait_is_bounded_by_timeout(network: FakeNetwork, session, clock):
    network.receipt = lambda user_op_hash: None
    tracker = _tracker(session, clock, poll_interval=2)
    prepared = _prepared()

    async def submit_and_wait():
        return await tracker.await_receipt(await tracker.submit(prepared), timeout=7)

    with pytest.raises(ReceiptTimeoutError) as excinfo:
        asyncio.run(submit_and_wait())

    assert excinfo.value.user_op_hash == "0x" + "77" * 32
    assert 7 <= clock.now <= 7 + 2
    assert tracker.record(prepared.operation_id).state is SubmissionState.TIMED_OUT


def test_included_receipt_is_returned_again_without_lookup(network: FakeNetwork, session, clock):
    tracker = _tracker(session, clock)
    prepared = _prepared()

    async def submit_and_wait_twice():
        user_op_hash = await tracker.submit(prepared)
        return await tracker.await_receipt(user_op_hash), await tracker.await_receipt(user_op_hash)

    first, second = asyncio.run(submit_and_wait_twice())

    assert first == second
    assert len(network.calls("eth_getUserOperationReceipt")) == 1
    assert tracker.record(prepared.operation_id).state is SubmissionState.INCLUDED_SUCCESS


def test_timed_out_operation_can_be_rechecked(network: FakeNetwork, session, clock):
    included = network.receipt
    network.receipt = lambda user_op_hash: included(user_op_hash) if clock.now >= 20 else None
    tracker = _tracker(session, clock, poll_interval=2)
    prepared = _prepared()

    async def submit_time_out_and_recheck():
        user_op_hash = await tracker.submit(prepared)
        with pytest.raises(ReceiptTimeoutError):
            await tracker.await_receipt(user_op_hash, timeout=5)
        with pytest.raises(ReceiptTimeoutError):
            await tracker.await_receipt(user_op_hash, timeout=5)
        return await tracker.await_receipt(user_op_hash, timeout=30)

    receipt = asyncio.run(submit_time_out_and_recheck())

    record = tracker.record(prepared.operation_id)
    assert receipt.success is True
    assert record.receipt == receipt
    assert record.state is SubmissionState.TIMED_OUT


def test_lookup_errors_are_retried_until_deadline(network: FakeNetwork, session, clock):
    def flaky(user_op_hash):
        if clock.now < 4:
            raise RpcFailure("bundler overloaded")
        return {"success": True, "receipt": {"transactionHash": "0x" + "97" * 32}}

    network.receipt = flaky

    receipt = asyncio.run(_tracker(session, clock).await_receipt("0x" + "55" * 32))

    assert receipt.transaction_hash == "0x" + "97" * 32
    assert len(network.calls("eth_getUserOperationReceipt")) == 3


def test_illegal_transition_is_refused():
    record = SubmissionRecord(operation_id="op")

    with pytest.raises(RuntimeError):
        record.advance(SubmissionState.INCLUDED_SUCCESS)
    record.advance(SubmissionState.SUBMITTED)
    record.advance(SubmissionState.TIMED_OUT)
    with pytest.raises(RuntimeError):
        record.advance(SubmissionState.INCLUDED_SUCCESS)
