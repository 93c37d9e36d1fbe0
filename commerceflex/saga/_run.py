"""
Saga execution with automatic rollback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from kungfu import Result, Ok, Error

from commerceflex.saga._types import (
    Compensator,
    SagaError,
    SagaExpr,
    SagaResult,
    SagaStep,
    Then,
)

logger = logging.getLogger(__name__)


@dataclass
class _Ledger:
    compensators: list[tuple[str, Any, Compensator[Any]]] = field(default_factory=list)
    steps: int = 0


@dataclass(frozen=True, slots=True)
class _Failed[E]:
    error: E
    step_name: str


async def _run_step(step: SagaStep[Any, Any], ledger: _Ledger) -> Result[Any, _Failed[Any]]:
    ledger.steps += 1
    match await step.action:
        case Ok(value):
            if step.compensate is not None:
                ledger.compensators.append((step.name, value, step.compensate))
            return Ok(value)
        case Error(e):
            return Error(_Failed(e, step.name))


async def _run_expr(expr: SagaExpr[Any, Any], ledger: _Ledger) -> Result[Any, _Failed[Any]]:
    match expr:
        case SagaStep():
            return await _run_step(expr, ledger)
        case Then(inner=inner, f=f):
            match await _run_expr(inner, ledger):
                case Ok(value):
                    return await _run_expr(f(value), ledger)
                case Error(failed):
                    return Error(failed)
    raise TypeError(f"Not a saga: {expr!r}")


async def _compensate(ledger: _Ledger) -> tuple[int, int]:
    """Run recorded compensators newest first. Returns (run, failed)."""
    run_count = 0
    failed = 0
    for name, value, comp in reversed(ledger.compensators):
        try:
            await comp(value)
            run_count += 1
        except Exception:
            logger.exception("Compensation for %s failed", name)
            failed += 1
    return run_count, failed


async def run[T, E](saga: SagaExpr[T, E]) -> Result[SagaResult[T], SagaError[E]]:
    """
    Execute a saga; on failure compensate every completed step in reverse.

    Example:
        cutover = (
            S.from_async(freeze, on_error=classify, compensate=thaw, name="freeze")
            .then(lambda _: S.from_async(final_sync, on_error=classify, name="sync"))
        )
        match await S.run(cutover):
            case Ok(done): ...
            case Error(failure): ...
    """
    ledger = _Ledger()

    match await _run_expr(saga, ledger):
        case Ok(value):
            return Ok(SagaResult(
                value=value,
                steps_executed=ledger.steps,
                compensators_recorded=len(ledger.compensators),
            ))
        case Error(failed):
            logger.warning("Saga step %s failed: %s", failed.step_name, failed.error)
            comp_run, comp_failed = await _compensate(ledger)
            return Error(SagaError(
                error=failed.error,
                step_failed=ledger.steps,
                failed_step=failed.step_name,
                compensators_run=comp_run,
                compensators_failed=comp_failed,
            ))


__all__ = ("run",)
