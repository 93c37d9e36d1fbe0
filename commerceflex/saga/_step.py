"""
Saga step creation.
"""

from __future__ import annotations

from collections.abc import Callable, Awaitable

from kungfu import LazyCoroResult
from combinators import lift as L

from commerceflex.saga._types import SagaStep, Compensator


def step[T, E](
    action: LazyCoroResult[T, E],
    compensate: Compensator[T] | None = None,
    *,
    name: str = "step",
) -> SagaStep[T, E]:
    """
    Example:
        from commerceflex import saga as S

        reserve = S.step(
            processor_intent(session),
            compensate=lambda intent: processor.cancel(intent.id),
            name="payment_intent",
        )
    """
    return SagaStep(action=action, compensate=compensate, name=name)


def from_async[T, E](
    action: Callable[[], Awaitable[T]],
    on_error: Callable[[Exception], E],
    compensate: Compensator[T] | None = None,
    *,
    name: str = "step",
) -> SagaStep[T, E]:
    """
    Step from a plain coroutine; exceptions become ``on_error(exc)``.

    Example:
        S.from_async(
            lambda: gate.freeze(tenant_id),
            on_error=classify,
            compensate=lambda _: gate.thaw(tenant_id),
            name="freeze",
        )
    """
    return SagaStep(
        action=L.catching_async(action, on_error=on_error),
        compensate=compensate,
        name=name,
    )


__all__ = ("step", "from_async")
