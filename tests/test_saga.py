from typing import Any

import pytest
from kungfu import Result, Ok, Error, LazyCoroResult

from commerceflex import saga as S

from conftest import err, ok


def returning(value: Any) -> LazyCoroResult[Any, str]:
    async def action() -> Result[Any, str]:
        return Ok(value)

    return LazyCoroResult(action)


def failing(reason: str) -> LazyCoroResult[Any, str]:
    async def action() -> Result[Any, str]:
        return Error(reason)

    return LazyCoroResult(action)


@pytest.fixture
def undone() -> list[str]:
    return []


def undo(log: list[str], label: str) -> Any:
    async def compensate(value: Any) -> None:
        log.append(f"{label}:{value}")

    return compensate


async def test_success_chains_values(undone: list[str]) -> None:
    flow = (
        S.step(returning(2), compensate=undo(undone, "a"), name="a")
        .then(lambda n: S.step(returning(n * 10), name="b"))
    )

    done = ok(await S.run(flow))

    assert done.value == 20
    assert done.steps_executed == 2
    assert done.compensators_recorded == 1
    assert undone == []


async def test_failure_compensates_newest_first(undone: list[str]) -> None:
    flow = (
        S.step(returning("reserved"), compensate=undo(undone, "discount"), name="discount")
        .then(lambda _: S.step(returning("pi_1"), compensate=undo(undone, "intent"), name="intent"))
        .then(lambda _: S.step(failing("db down"), name="record"))
    )

    failure = err(await S.run(flow))

    assert failure.error == "db down"
    assert failure.failed_step == "record"
    assert failure.step_failed == 3
    assert undone == ["intent:pi_1", "discount:reserved"]
    assert failure.rollback_complete


async def test_broken_compensator_does_not_stop_the_rest(undone: list[str]) -> None:
    async def explode(value: Any) -> None:
        raise RuntimeError("cannot undo")

    flow = (
        S.step(returning(1), compensate=undo(undone, "first"), name="first")
        .then(lambda _: S.step(returning(2), compensate=explode, name="second"))
        .then(lambda _: S.step(failing("boom"), name="third"))
    )

    failure = err(await S.run(flow))

    assert failure.compensators_run == 1
    assert failure.compensators_failed == 1
    assert not failure.rollback_complete
    assert undone == ["first:1"]


async def test_from_async_classifies_exceptions() -> None:
    async def crash() -> None:
        raise ValueError("bad input")

    failure = err(await S.run(S.from_async(crash, on_error=lambda e: f"classified {e}", name="crash")))

    assert failure.error == "classified bad input"
    assert failure.failed_step == "crash"
