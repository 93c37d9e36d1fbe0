import asyncio
from datetime import timedelta
from typing import Any

import pytest
from kungfu import Result, Ok, Error

from commerceflex import idempotency as I

from conftest import FakeClock, err, ok


class Charges:
    """Counts calls; fails while ``failing`` is set."""

    def __init__(self) -> None:
        self.calls = 0
        self.failing = False
        self.gate: asyncio.Event | None = None

    async def __call__(self, amount: int) -> Result[str, str]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failing:
            return Error("declined")
        return Ok(f"ch_{amount}_{self.calls}")


def executor(charges: Charges, clock: FakeClock, policy: I.Policy = I.Policy(), **kw: Any) -> I.IdempotentExecutor[int, str, str]:
    builder = I.idempotent(charges).key(lambda amount: "order-1").policy(policy).clock(clock)
    if kw.get("fingerprinted"):
        builder = builder.fingerprint(lambda amount: I.fingerprint(amount))
    if kw.get("store") is not None:
        builder = builder.store(kw["store"])
    return builder.build()


async def test_replay_returns_the_first_result(clock: FakeClock) -> None:
    charges = Charges()
    run = executor(charges, clock)

    first = ok(await run.run(500))
    second = ok(await run.run(500))

    assert first.value == second.value == "ch_500_1"
    assert not first.from_cache
    assert second.from_cache
    assert charges.calls == 1


async def test_fingerprint_rejects_a_different_request(clock: FakeClock) -> None:
    charges = Charges()
    run = executor(charges, clock, fingerprinted=True)

    ok(await run.run(500))
    error = err(await run.run(700))

    assert error.kind is I.IdempotencyErrorKind.INPUT_MISMATCH
    assert charges.calls == 1


async def test_failures_are_not_remembered_by_default(clock: FakeClock) -> None:
    charges = Charges()
    charges.failing = True
    run = executor(charges, clock)

    error = err(await run.run(500))
    assert error.kind is I.IdempotencyErrorKind.EXECUTION
    assert error.original_error == "declined"

    charges.failing = False
    assert ok(await run.run(500)).value == "ch_500_2"


async def test_persisted_failures_replay(clock: FakeClock) -> None:
    charges = Charges()
    charges.failing = True
    run = executor(charges, clock, I.Policy().with_store_failed())

    err(await run.run(500))
    charges.failing = False
    error = err(await run.run(500))

    assert error.kind is I.IdempotencyErrorKind.EXECUTION
    assert error.message == "Cached failure"
    assert charges.calls == 1


async def test_ttl_lets_the_key_run_again(clock: FakeClock) -> None:
    charges = Charges()
    run = executor(charges, clock, I.Policy().with_ttl(hours=1))

    ok(await run.run(500))
    clock.advance(hours=2)

    assert not ok(await run.run(500)).from_cache
    assert charges.calls == 2


async def test_concurrent_duplicate_fails_under_fail_policy(clock: FakeClock) -> None:
    charges = Charges()
    charges.gate = asyncio.Event()
    run = executor(charges, clock, I.Policy().with_on_pending(I.FAIL))

    async def first() -> Any:
        return await run.run(500)

    task = asyncio.create_task(first())
    while charges.calls == 0:
        await asyncio.sleep(0)

    assert err(await run.run(500)).kind is I.IdempotencyErrorKind.CONFLICT

    charges.gate.set()
    assert ok(await task).value == "ch_500_1"


async def test_concurrent_duplicate_waits_under_wait_policy(clock: FakeClock) -> None:
    charges = Charges()
    charges.gate = asyncio.Event()
    run = executor(charges, clock, I.Policy().with_poll_interval(seconds=0.005))

    async def submit() -> Any:
        return await run.run(500)

    first = asyncio.create_task(submit())
    while charges.calls == 0:
        await asyncio.sleep(0)
    second = asyncio.create_task(submit())
    await asyncio.sleep(0.02)
    charges.gate.set()

    a, b = ok(await first), ok(await second)
    assert a.value == b.value
    assert b.from_cache
    assert charges.calls == 1


async def test_invalidate_clears_the_key(clock: FakeClock) -> None:
    charges = Charges()
    run = executor(charges, clock)

    ok(await run.run(500))
    assert await run.invalidate(500)
    ok(await run.run(500))

    assert charges.calls == 2


async def test_cancelled_attempt_frees_the_key(clock: FakeClock) -> None:
    charges = Charges()
    charges.gate = asyncio.Event()
    run = executor(charges, clock, I.Policy().with_on_pending(I.FAIL))

    async def submit() -> Any:
        return await run.run(500)

    task = asyncio.create_task(submit())
    while charges.calls == 0:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    charges.gate = None
    assert ok(await run.run(500)).value == "ch_500_2"


async def test_abandoned_claim_lapses_after_the_pending_lease(clock: FakeClock) -> None:
    charges = Charges()
    store = I.MemoryStore(clock)
    policy = I.Policy().with_ttl(hours=72).with_pending_ttl(seconds=60).with_on_pending(I.FAIL)
    run = executor(charges, clock, policy, store=store)

    # A worker claimed the key and died before recording anything
    assert ok(await store.set_pending("order-1", policy.pending_ttl))
    assert err(await run.run(500)).kind is I.IdempotencyErrorKind.CONFLICT

    clock.advance(seconds=61)
    done = ok(await run.run(500))

    assert not done.from_cache
    assert charges.calls == 1
    # The completed record keeps the long retention
    clock.advance(hours=1)
    assert ok(await run.run(500)).from_cache


def test_pending_lease_must_be_positive() -> None:
    assert I.Policy().with_pending_ttl(delta=timedelta(minutes=2)).pending_ttl == timedelta(minutes=2)
    with pytest.raises(ValueError):
        I.Policy().with_pending_ttl(seconds=0)
