"""
Saga types — steps, chains and outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from collections.abc import Callable, Awaitable

from kungfu import LazyCoroResult

type Compensator[T] = Callable[[T], Awaitable[None]]
"""Receives the action result and undoes it."""


# ═══════════════════════════════════════════════════════════════════════════════
# SagaStep — Single Step with Compensation
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class SagaStep[T, E]:
    """
    Action plus its compensator.

    The compensator is recorded once the action succeeds; if a later step
    fails, recorded compensators run in reverse.
    """

    action: LazyCoroResult[T, E]
    compensate: Compensator[T] | None
    name: str = "step"

    def then[U](self, f: Callable[[T], SagaExpr[U, E]]) -> Then[T, U, E]:
        return Then(self, f)


@dataclass(frozen=True, slots=True)
class Then[T, U, E]:
    """Sequential composition: ``f`` builds the next saga from the value."""

    inner: SagaExpr[T, E]
    f: Callable[[T], SagaExpr[U, E]]

    def then[V](self, g: Callable[[U], SagaExpr[V, E]]) -> Then[U, V, E]:
        return Then(self, g)


type SagaExpr[T, E] = SagaStep[T, E] | Then[Any, T, E]


# ═══════════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class SagaResult[T]:
    value: T
    steps_executed: int
    compensators_recorded: int


@dataclass(frozen=True, slots=True)
class SagaError[E]:
    """Failure with rollback status."""

    error: E
    step_failed: int
    failed_step: str
    compensators_run: int
    compensators_failed: int

    @property
    def rollback_complete(self) -> bool:
        return self.compensators_failed == 0


__all__ = (
    "Compensator",
    "SagaStep",
    "Then",
    "SagaExpr",
    "SagaResult",
    "SagaError",
)
