"""Suspend-until-triggered polling loops.

A wait loop is made of three independent parts: a trigger source deciding
*when* to poll, a poll coroutine doing one round-trip, and a pure predicate
deciding whether the latest result is good enough to move on.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterable, Optional, Protocol, TextIO, Tuple, Type, TypeVar

from .enrollment import EnrollmentState
from .errors import GateExhaustedError
from .operations import AggregatedBalance

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TriggerSource(Protocol):
    async def wait(self) -> None:  # pragma: no cover - protocol
        """Return when the next poll should happen."""


class StdinTrigger:
    """Wait for the operator to press Enter."""

    def __init__(self, prompt: Optional[str] = None, *, stream: Optional[TextIO] = None) -> None:
        self._prompt = prompt
        self._stream = stream

    async def wait(self) -> None:
        if self._prompt:
            print(self._prompt, flush=True)
        stream = self._stream or sys.stdin
        loop = asyncio.get_running_loop()
        line = await loop.run_in_executor(None, stream.readline)
        if line == "":
            raise GateExhaustedError("input closed while waiting for confirmation")


class IntervalTrigger:
    """Fire immediately, then every ``interval`` seconds."""

    def __init__(self, interval: float, *, immediate: bool = True) -> None:
        self._interval = interval
        self._first = immediate

    async def wait(self) -> None:
        if self._first:
            self._first = False
            return
        await asyncio.sleep(self._interval)


class BackoffTrigger:
    """Fire immediately, then with exponentially growing delays."""

    def __init__(self, initial: float = 1.0, *, factor: float = 2.0, maximum: float = 60.0) -> None:
        self._initial = initial
        self._factor = factor
        self._maximum = maximum
        self._delay: Optional[float] = None

    async def wait(self) -> None:
        if self._delay is None:
            self._delay = self._initial
            return
        await asyncio.sleep(self._delay)
        self._delay = min(self._delay * self._factor, self._maximum)


class ManualTrigger:
    """Trigger fired programmatically, e.g. from an event subscription."""

    def __init__(self) -> None:
        self._pending: asyncio.Queue[None] = asyncio.Queue()

    def fire(self, times: int = 1) -> None:
        for _ in range(times):
            self._pending.put_nowait(None)

    async def wait(self) -> None:
        await self._pending.get()


def more_chains_than(threshold: int) -> Callable[[EnrollmentState], bool]:
    def predicate(state: EnrollmentState) -> bool:
        return len(state.enabled_chains) > threshold

    return predicate


def positive_balance(tokens: Iterable[str], *, require_each: bool = False) -> Callable[[AggregatedBalance], bool]:
    wanted = tuple(token.upper() for token in tokens)

    def predicate(balance: AggregatedBalance) -> bool:
        return balance.is_positive(wanted, require_each=require_each)

    return predicate


@dataclass(frozen=True)
class GateOutcome(Generic[T]):
    value: T
    attempts: int


async def wait_for_gate(
    poll: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    trigger: TriggerSource,
    *,
    name: str = "gate",
    retry_on: Tuple[Type[BaseException], ...] = (),
    max_attempts: Optional[int] = None,
) -> GateOutcome[T]:
    """Repeat trigger -> poll -> predicate until the predicate holds.

    Errors in ``retry_on`` are logged and re-attempted on the next trigger.
    Unbounded unless ``max_attempts`` is given; cancel the task to abort.
    """

    attempts = 0
    while max_attempts is None or attempts < max_attempts:
        await trigger.wait()
        attempts += 1
        try:
            value = await poll()
        except retry_on as exc:
            logger.warning("%s poll %d failed: %s", name, attempts, exc)
            continue
        if predicate(value):
            logger.info("%s satisfied after %d poll(s)", name, attempts)
            return GateOutcome(value=value, attempts=attempts)
        logger.info("%s not yet satisfied (poll %d)", name, attempts)
    raise GateExhaustedError(f"{name} not satisfied after {attempts} attempt(s)")
