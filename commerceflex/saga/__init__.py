"""
Saga — multi-step workflows with compensation.

    from commerceflex import saga as S

    flow = (
        S.step(create_intent, compensate=cancel_intent, name="intent")
        .then(lambda intent: S.step(reserve_discount(intent), compensate=release))
    )
    result = await S.run(flow)

Compensators run newest first; a failing compensator is logged and
counted in ``SagaError.compensators_failed`` without stopping the rest.
"""

from commerceflex.saga._types import (
    Compensator,
    SagaStep,
    Then,
    SagaExpr,
    SagaResult,
    SagaError,
)
from commerceflex.saga._step import step, from_async
from commerceflex.saga._run import run

__all__ = (
    "Compensator",
    "SagaStep",
    "Then",
    "SagaExpr",
    "SagaResult",
    "SagaError",
    "step",
    "from_async",
    "run",
)
