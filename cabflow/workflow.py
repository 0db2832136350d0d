"""End-to-end CAB workflow: provision, enroll, wait, build, submit, confirm."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import httpx

from .account import AccountProvisioner, SmartAccount
from .config import CABConfig, TokenRegistry
from .enrollment import EnrollmentController, EnrollmentState
from .errors import BalanceQueryError, ConfigurationError, EnrollmentQueryError
from .gating import StdinTrigger, TriggerSource, more_chains_than, positive_balance, wait_for_gate
from .models import Call, OperationReceipt, PreparedOperation
from .operations import AggregatedBalance, OperationBuilder, parse_units, transfer_call
from .rpc import JsonRpcClient
from .session import ChainSession, SessionFactory
from .signers import Signer, SignerIdentity
from .tracker import SubmissionTracker

logger = logging.getLogger(__name__)


@dataclass
class WorkflowResult:
    account: SmartAccount
    enrollment: EnrollmentState
    balance: AggregatedBalance
    prepared: PreparedOperation
    user_op_hash: str
    receipt: OperationReceipt


class CABWorkflow:
    """Drive one account through the CAB gas-abstraction flow.

    Stages run strictly in order and each stage's output is handed to the
    next; nothing is persisted between runs.
    """

    def __init__(
        self,
        config: CABConfig,
        *,
        signer: Optional[Signer] = None,
        registry: Optional[TokenRegistry] = None,
        chain_trigger: Optional[TriggerSource] = None,
        balance_trigger: Optional[TriggerSource] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.signer = signer or SignerIdentity.from_private_key(config.private_key)
        self.registry = registry or config.load_token_registry()
        self.chain_trigger = chain_trigger or StdinTrigger(
            "Checking enabled chains. Press Enter to check CAB. Will proceed when CAB is enabled."
        )
        self.balance_trigger = balance_trigger or StdinTrigger(
            f"Deposit {'/'.join(config.repay_tokens)} on another chain. "
            "Press Enter to check CAB. Will proceed when CAB is greater than 0."
        )
        self.max_attempts = max_attempts
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        for symbol in config.repay_tokens:
            token = self.registry.lookup(config.chain.chain_id, symbol)
            try:
                parse_units(config.transfer_amount, token.decimals)
            except ValueError as exc:
                raise ConfigurationError(f"transfer amount does not fit {symbol}: {exc}") from exc

    async def provision(self) -> SmartAccount:
        rpc = JsonRpcClient(self.config.chain.rpc_url, transport=self._transport)
        return await AccountProvisioner(rpc).derive(self.signer, self.config.validator)

    def open_session(self, account: SmartAccount) -> ChainSession:
        factory = SessionFactory(
            account,
            paymaster_url=self.config.paymaster_url,
            paymaster_headers=self.config.paymaster_headers,
            bundler_headers=self.config.bundler_headers,
            transport=self._transport,
        )
        return factory.open_session(self.config.chain)

    async def enroll(self, session: ChainSession) -> EnrollmentState:
        controller = EnrollmentController(session)
        state = await controller.enable(self.config.repay_tokens)

        async def poll() -> EnrollmentState:
            nonlocal state
            state = state.merge(await controller.poll_enabled_chains())
            return state

        outcome = await wait_for_gate(
            poll,
            more_chains_than(self.config.enabled_chain_threshold),
            self.chain_trigger,
            name="enabled chains",
            retry_on=(EnrollmentQueryError,),
            max_attempts=self.max_attempts,
        )
        return outcome.value

    async def await_balance(self, builder: OperationBuilder) -> AggregatedBalance:
        tokens = self.config.repay_tokens
        outcome = await wait_for_gate(
            lambda: builder.poll_balance(tokens),
            positive_balance(tokens, require_each=self.config.require_each_repay_token),
            self.balance_trigger,
            name="CAB balance",
            retry_on=(BalanceQueryError,),
            max_attempts=self.max_attempts,
        )
        return outcome.value

    def build_calls(self, session: ChainSession) -> List[Call]:
        """Transfer ``transfer_amount`` of every repay token to the account itself."""

        return [
            transfer_call(
                self.registry,
                session.chain_id,
                token,
                session.account.address,
                self.config.transfer_amount,
            )
            for token in self.config.repay_tokens
        ]

    async def run(self) -> WorkflowResult:
        account = await self.provision()
        logger.info("My account: %s", account.address)
        session = self.open_session(account)

        enrollment = await self.enroll(session)
        builder = OperationBuilder(session, self.registry)
        balance = await self.await_balance(builder)

        prepared = await builder.build_operation(self.build_calls(session), self.config.repay_tokens)
        tracker = SubmissionTracker(
            session,
            receipt_timeout=self.config.receipt_timeout,
            poll_interval=self.config.receipt_poll_interval,
            clock=self._clock,
            sleep=self._sleep,
        )
        user_op_hash = await tracker.submit(prepared)
        receipt = await tracker.await_receipt(user_op_hash)
        logger.info("userOp completed txHash %s", receipt.transaction_hash)
        return WorkflowResult(
            account=account,
            enrollment=enrollment,
            balance=balance,
            prepared=prepared,
            user_op_hash=user_op_hash,
            receipt=receipt,
        )
