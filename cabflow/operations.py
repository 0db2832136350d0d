"""Balance polling and construction of sponsored multi-call operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Optional, Sequence

from eth_abi import encode as abi_encode
from pydantic import ValidationError
from web3 import Web3

from .account import selector
from .config import TokenRegistry
from .enrollment import normalize_tokens
from .errors import BalanceQueryError, QuoteError, RpcError, TransportError
from .models import Call, PreparedOperation
from .session import ChainSession

logger = logging.getLogger(__name__)

# Placeholder ECDSA signature accepted by bundlers during gas estimation.
DUMMY_ECDSA_SIGNATURE = (
    "0xfffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

_CALLTYPE_SINGLE = b"\x00"
_CALLTYPE_BATCH = b"\x01"


@dataclass(frozen=True)
class AggregatedBalance:
    """Snapshot of the account's cross-chain balance, in smallest token units."""

    amounts: Dict[str, int] = field(default_factory=dict)

    def amount(self, token: str) -> int:
        return int(self.amounts.get(token.upper(), 0))

    def total(self, tokens: Optional[Iterable[str]] = None) -> int:
        if tokens is None:
            return sum(self.amounts.values())
        return sum(self.amount(token) for token in tokens)

    def is_positive(self, tokens: Iterable[str], *, require_each: bool = False) -> bool:
        wanted = list(tokens)
        if require_each:
            return bool(wanted) and all(self.amount(token) > 0 for token in wanted)
        return self.total(wanted) > 0


def parse_units(amount: str | Decimal, decimals: int) -> int:
    """Convert a decimal amount into the token's smallest unit."""

    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"invalid token amount {amount!r}") from exc
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    if scaled < 0:
        raise ValueError("token amount must be non-negative")
    return int(scaled)


def encode_erc20_transfer(recipient: str, amount: int) -> bytes:
    return selector("transfer(address,uint256)") + abi_encode(
        ["address", "uint256"],
        [Web3.to_checksum_address(recipient), amount],
    )


def transfer_call(
    registry: TokenRegistry,
    chain_id: int,
    symbol: str,
    recipient: str,
    amount: str | Decimal,
) -> Call:
    token = registry.lookup(chain_id, symbol)
    return Call(to=token.address, data=encode_erc20_transfer(recipient, parse_units(amount, token.decimals)))


def encode_kernel_execute(calls: Sequence[Call]) -> bytes:
    """Encode ``calls`` as a Kernel v3 ``execute(bytes32,bytes)`` invocation."""

    if not calls:
        raise ValueError("at least one call is required")
    if len(calls) == 1:
        call = calls[0]
        mode = _CALLTYPE_SINGLE + bytes(31)
        execution = bytes.fromhex(call.to[2:]) + call.value.to_bytes(32, "big") + call.data
    else:
        mode = _CALLTYPE_BATCH + bytes(31)
        execution = abi_encode(
            ["(address,uint256,bytes)[]"],
            [[(call.to, call.value, call.data) for call in calls]],
        )
    return selector("execute(bytes32,bytes)") + abi_encode(["bytes32", "bytes"], [mode, execution])


class OperationBuilder:
    """Poll aggregated balances and ask the CAB service to price a bundle."""

    def __init__(self, session: ChainSession, registry: TokenRegistry) -> None:
        self._session = session
        self._registry = registry

    async def poll_balance(self, tokens: Iterable[str]) -> AggregatedBalance:
        """One round-trip to the service; never waits for a positive balance."""

        normalized = normalize_tokens(tokens)
        try:
            amounts = await self._session.cab.get_balances(normalized)
        except (RpcError, TransportError) as exc:
            raise BalanceQueryError(f"Querying CAB balance failed: {exc}") from exc
        balance = AggregatedBalance(amounts={token: amounts.get(token, 0) for token in normalized})
        logger.info("CAB balance: %s", balance.amounts)
        return balance

    def _check_targets(self, calls: Sequence[Call]) -> None:
        chain_id = self._session.chain_id
        allowed = {
            self._registry.lookup(chain_id, symbol).address for symbol in self._registry.symbols(chain_id)
        }
        for call in calls:
            if call.to not in allowed:
                raise QuoteError(f"call target {call.to} is not a registered token on chain {chain_id}")

    async def build_operation(self, calls: Sequence[Call], repay_tokens: Iterable[str]) -> PreparedOperation:
        calls = tuple(calls)
        if not calls:
            raise QuoteError("at least one call is required")
        repay = normalize_tokens(repay_tokens)
        if not repay:
            raise QuoteError("at least one repay token is required")
        self._check_targets(calls)

        account = self._session.account
        nonce = await self._session.fetch_nonce()
        draft: Dict[str, object] = {
            "sender": account.address,
            "nonce": hex(nonce),
            "callData": Web3.to_hex(encode_kernel_execute(calls)),
            "signature": DUMMY_ECDSA_SIGNATURE,
        }
        draft.update(account.init_fields())

        try:
            result = await self._session.cab.prepare_user_operation(draft, repay)
        except (RpcError, TransportError) as exc:
            raise QuoteError(f"CAB service could not price the operation: {exc}") from exc

        try:
            prepared = PreparedOperation(
                chain_id=self._session.chain_id,
                account=account.address,
                calls=calls,
                repay_tokens=repay,
                user_operation=result["userOperation"],
                repay_tokens_info=list(result.get("repayTokensInfo") or []),
                sponsor_tokens_info=list(result.get("sponsorTokensInfo") or []),
            )
        except ValidationError as exc:
            raise QuoteError(f"CAB service returned an unusable bundle: {exc}") from exc
        sender = str(prepared.user_operation.get("sender"))
        if not Web3.is_address(sender) or Web3.to_checksum_address(sender) != account.address:
            raise QuoteError(f"prepared operation is for {sender}, expected {account.address}")
        logger.info(
            "Prepared operation %s: repay=%s sponsor=%s",
            prepared.operation_id,
            prepared.repay_tokens_info,
            prepared.sponsor_tokens_info,
        )
        return prepared
