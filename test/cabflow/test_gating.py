"""Wait-loop behaviour with fabricated polls and triggers."""

import asyncio
import io

import pytest

from cabflow.enrollment import EnrollmentState
from cabflow.errors import EnrollmentQueryError, GateExhaustedError
from cabflow.gating import (
    BackoffTrigger,
    IntervalTrigger,
    ManualTrigger,
    StdinTrigger,
    more_chains_than,
    positive_balance,
    wait_for_gate,
)
from cabflow.operations import AggregatedBalance


class CountingTrigger:
    def __init__(self) -> None:
        self.fired = 0

    async def wait(self) -> None:
        self.fired += 1


def _scripted(values):
    queue = list(values)
    seen = []

    async def poll():
        value = queue.pop(0)
        if isinstance(value, Exception):
            raise value
        seen.append(value)
        return value

    return poll, seen


def test_chain_gate_exits_on_third_poll():
    poll, seen = _scripted([EnrollmentState(enabled_chains=tuple(range(n))) for n in (1, 2, 4)])
    trigger = CountingTrigger()

    outcome = asyncio.run(wait_for_gate(poll, more_chains_than(3), trigger))

    assert outcome.attempts == 3
    assert len(outcome.value.enabled_chains) == 4
    assert trigger.fired == 3
    assert len(seen) == 3


def test_chain_gate_requires_strictly_more_than_threshold():
    predicate = more_chains_than(3)

    assert not predicate(EnrollmentState(enabled_chains=(1, 2, 3)))
    assert predicate(EnrollmentState(enabled_chains=(1, 2, 3, 4)))


def test_balance_gate_exits_on_first_positive_poll():
    poll, _ = _scripted([AggregatedBalance({"USDC": amount}) for amount in (0, 0, 5)])

    outcome = asyncio.run(wait_for_gate(poll, positive_balance(["USDC"]), CountingTrigger()))

    assert outcome.attempts == 3
    assert outcome.value.amount("USDC") == 5


def test_balance_gate_per_token_mode():
    balance = AggregatedBalance({"USDC": 5, "USDT": 0})

    assert positive_balance(["USDC", "USDT"])(balance)
    assert not positive_balance(["USDC", "USDT"], require_each=True)(balance)
    assert positive_balance(["usdc"], require_each=True)(balance)


def test_listed_errors_are_retried_on_next_trigger():
    poll, _ = _scripted(
        [
            EnrollmentQueryError("flaky"),
            EnrollmentState(enabled_chains=(1, 2, 3, 4)),
        ]
    )

    outcome = asyncio.run(
        wait_for_gate(poll, more_chains_than(3), CountingTrigger(), retry_on=(EnrollmentQueryError,))
    )

    assert outcome.attempts == 2


def test_unlisted_errors_propagate():
    poll, _ = _scripted([EnrollmentQueryError("down")])

    with pytest.raises(EnrollmentQueryError):
        asyncio.run(wait_for_gate(poll, more_chains_than(3), CountingTrigger()))


def test_max_attempts_bounds_the_loop():
    poll, seen = _scripted([EnrollmentState(enabled_chains=(1,))] * 5)

    with pytest.raises(GateExhaustedError):
        asyncio.run(wait_for_gate(poll, more_chains_than(3), CountingTrigger(), max_attempts=2))

    assert len(seen) == 2


def test_wait_loop_can_be_cancelled():
    async def runner() -> None:
        trigger = ManualTrigger()

        async def poll():  # pragma: no cover - never triggered
            raise AssertionError("poll must not run")

        task = asyncio.create_task(wait_for_gate(poll, more_chains_than(0), trigger))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(runner())


def test_manual_trigger_releases_one_poll_per_fire():
    async def runner() -> int:
        trigger = ManualTrigger()
        trigger.fire(2)
        poll, _ = _scripted([AggregatedBalance({"USDC": 0}), AggregatedBalance({"USDC": 1})])
        outcome = await wait_for_gate(poll, positive_balance(["USDC"]), trigger)
        return outcome.attempts

    assert asyncio.run(runner()) == 2


def test_stdin_trigger_reads_a_line_and_fails_on_eof(capsys):
    trigger = StdinTrigger("Press Enter", stream=io.StringIO("\n"))

    asyncio.run(trigger.wait())
    assert "Press Enter" in capsys.readouterr().out

    with pytest.raises(GateExhaustedError):
        asyncio.run(trigger.wait())


def test_interval_and_backoff_triggers_sleep_between_polls(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)

    async def runner() -> None:
        interval = IntervalTrigger(5)
        for _ in range(3):
            await interval.wait()
        backoff = BackoffTrigger(1, factor=2, maximum=3)
        for _ in range(4):
            await backoff.wait()

    asyncio.run(runner())

    assert delays == [5, 5, 1, 2, 3]
