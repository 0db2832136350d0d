"""CAB enrollment: register tokens for aggregation and poll enabled chains."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Sequence, Tuple

from .errors import EnrollmentQueryError, RpcError, TransportError
from .session import ChainSession

logger = logging.getLogger(__name__)


def normalize_tokens(tokens: Iterable[str]) -> Tuple[str, ...]:
    return tuple(sorted({token.strip().upper() for token in tokens if token and token.strip()}))


@dataclass(frozen=True)
class EnrollmentState:
    """Tokens enrolled for the account and the chains reporting it enabled.

    ``enabled_chains`` only grows: a chain missing from a later poll is kept.
    """

    tokens: FrozenSet[str] = frozenset()
    enabled_chains: Tuple[int, ...] = ()

    def merge(self, polled: Sequence[int]) -> "EnrollmentState":
        dropped = [chain for chain in self.enabled_chains if chain not in polled]
        if dropped:
            logger.warning("CAB service no longer reports chains %s as enabled; keeping them", dropped)
        merged = list(self.enabled_chains)
        for chain in polled:
            if chain not in merged:
                merged.append(chain)
        return EnrollmentState(tokens=self.tokens, enabled_chains=tuple(merged))


class EnrollmentController:
    """Stateless wrapper around the enrollment endpoints of the CAB service."""

    def __init__(self, session: ChainSession) -> None:
        self._session = session

    async def enable(self, tokens: Iterable[str]) -> EnrollmentState:
        """Register ``tokens`` for aggregation; enabling twice is a no-op."""

        normalized = normalize_tokens(tokens)
        if not normalized:
            raise EnrollmentQueryError("at least one token is required to enable CAB")
        try:
            await self._session.cab.enable_tokens(normalized)
        except RpcError as exc:
            if "already" not in str(exc).lower():
                raise EnrollmentQueryError(f"Enabling CAB for {', '.join(normalized)} failed: {exc}") from exc
            logger.info("CAB already enabled for %s", ", ".join(normalized))
        except TransportError as exc:
            raise EnrollmentQueryError(f"Enabling CAB for {', '.join(normalized)} failed: {exc}") from exc
        else:
            logger.info("Enabled CAB for %s on account %s", ", ".join(normalized), self._session.account.address)
        return EnrollmentState(tokens=frozenset(normalized))

    async def poll_enabled_chains(self) -> Tuple[int, ...]:
        """One round-trip to the service; never waits for a target count."""

        try:
            chains = await self._session.cab.get_enabled_chains()
        except (RpcError, TransportError) as exc:
            raise EnrollmentQueryError(f"Querying enabled chains failed: {exc}") from exc
        logger.info("Enabled chains: %s", chains)
        return tuple(chains)
