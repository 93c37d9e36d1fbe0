"""
Method boundary, read retry and the migration write gate.
"""

from __future__ import annotations

import asyncio
import logging
import functools
import random
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Concatenate
from collections.abc import AsyncIterator, Awaitable, Callable

from kungfu import LazyCoroResult, Result, Ok, Error
from combinators import lift as L

from commerceflex.idempotency import IdempotencyError, IdempotencyErrorKind
from commerceflex.model import (
    CommerceError,
    ConflictError,
    ProviderTransientError,
    ValidationError,
    classify,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Boundary
# ═══════════════════════════════════════════════════════════════════════════════


def _on_error(exc: Exception) -> CommerceError:
    error = classify(exc)
    if not isinstance(exc, CommerceError):
        logger.error("Unexpected %s at provider boundary", type(exc).__name__, exc_info=exc)
    return error


def guarded[T](fn: Callable[[], Awaitable[T]]) -> LazyCoroResult[T, CommerceError]:
    """
    Run ``fn`` and turn anything it raises into a typed ``Error``.

    Example:
        async def get(self, product_id: str) -> Result[Product, CommerceError]:
            return await guarded(lambda: self._get(product_id))
    """
    return L.catching_async(fn, on_error=_on_error)


def ledger_error(err: IdempotencyError[Any]) -> CommerceError:
    """Typed error for an idempotency engine failure."""
    match err.kind:
        case IdempotencyErrorKind.EXECUTION if isinstance(err.original_error, Exception):
            return classify(err.original_error)
        case IdempotencyErrorKind.CONFLICT:
            return ConflictError(err.message)
        case IdempotencyErrorKind.INPUT_MISMATCH:
            return ValidationError(err.message, field="idempotency_key")
        case IdempotencyErrorKind.TIMEOUT | IdempotencyErrorKind.STORE_ERROR:
            return ProviderTransientError(err.message)
        case _:
            return classify(RuntimeError(err.message))


# ═══════════════════════════════════════════════════════════════════════════════
# Read Retry
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Exponential backoff for idempotent reads.

    Only ``ProviderTransientError`` is retried. Mutations that move money
    or state never go through here.
    """

    attempts: int = 3
    backoff_initial: float = 0.1
    backoff_factor: float = 2.0
    backoff_max: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (1-based)."""
        base = min(self.backoff_initial * self.backoff_factor ** (attempt - 1), self.backoff_max)
        if self.jitter:
            return random.uniform(base / 2, base)
        return base


NO_RETRY = RetryPolicy(attempts=1)


async def retry_reads[T](
    policy: RetryPolicy,
    call: Callable[[], Awaitable[Result[T, CommerceError]]],
) -> Result[T, CommerceError]:
    attempt = 1
    while True:
        result = await call()
        match result:
            case Error(ProviderTransientError() as err) if attempt < policy.attempts:
                delay = policy.delay(attempt)
                logger.info("Transient read failure (%s), retry %d in %.2fs", err, attempt, delay)
                await asyncio.sleep(delay)
                attempt += 1
            case _:
                return result


async def read[T](
    policy: RetryPolicy, fn: Callable[[], Awaitable[T]]
) -> Result[T, CommerceError]:
    """Guarded read with retry."""
    return await retry_reads(policy, lambda: guarded(fn))


def check_page_size(first: int) -> int:
    if not 1 <= first <= 250:
        raise ValidationError("first must be between 1 and 250", field="first")
    return first


# ═══════════════════════════════════════════════════════════════════════════════
# Write Gate
# ═══════════════════════════════════════════════════════════════════════════════


class WriteGate:
    """
    Per-tenant mutation freeze used during migration cutover.

    Frozen tenants get ``ProviderTransientError`` on cart, checkout and
    order mutations, which storefronts present as "retry this step".
    Writes run inside ``writing``, so ``freeze`` returns only once the
    ones already admitted have finished.
    """

    def __init__(self) -> None:
        self._frozen: set[str] = set()
        self._inflight: Counter[str] = Counter()
        self._drained = asyncio.Condition()

    async def freeze(self, tenant_id: str, *, timeout: float = 30.0) -> None:
        logger.warning("Freezing writes for tenant %s", tenant_id)
        self._frozen.add(tenant_id)
        try:
            async with asyncio.timeout(timeout), self._drained:
                await self._drained.wait_for(lambda: not self._inflight[tenant_id])
        except TimeoutError:
            self._frozen.discard(tenant_id)
            raise ProviderTransientError(
                f"{self._inflight[tenant_id]} write(s) for {tenant_id} still running after {timeout}s"
            ) from None

    def thaw(self, tenant_id: str) -> None:
        if tenant_id in self._frozen:
            logger.warning("Thawing writes for tenant %s", tenant_id)
        self._frozen.discard(tenant_id)

    def is_frozen(self, tenant_id: str) -> bool:
        return tenant_id in self._frozen

    def in_flight(self, tenant_id: str) -> int:
        return self._inflight[tenant_id]

    def check(self, tenant_id: str) -> None:
        if tenant_id in self._frozen:
            raise ProviderTransientError(
                f"Tenant {tenant_id} is migrating; writes are paused", status_code=503
            )

    @asynccontextmanager
    async def writing(self, tenant_id: str) -> AsyncIterator[None]:
        """Admit one write, or raise while the tenant is frozen."""
        self.check(tenant_id)
        self._inflight[tenant_id] += 1
        try:
            yield
        finally:
            self._inflight[tenant_id] -= 1
            if self._inflight[tenant_id] <= 0:
                del self._inflight[tenant_id]
                async with self._drained:
                    self._drained.notify_all()


def writes[**P, T](
    method: Callable[Concatenate[Any, P], Awaitable[T]],
) -> Callable[Concatenate[Any, P], Awaitable[T]]:
    """
    Run an adapter write under the tenant's write gate.

    Example:
        @writes
        async def _create(self, cart_id: str) -> CheckoutSession: ...
    """

    @functools.wraps(method)
    async def wrapper(self: Any, *args: P.args, **kwargs: P.kwargs) -> T:
        async with self._ctx.writing():
            return await method(self, *args, **kwargs)

    return wrapper


__all__ = (
    "guarded",
    "ledger_error",
    "RetryPolicy",
    "NO_RETRY",
    "retry_reads",
    "read",
    "check_page_size",
    "WriteGate",
    "writes",
)
