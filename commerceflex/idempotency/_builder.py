"""
Idempotency builder — fluent API over the graph.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from typing import Any
from collections.abc import Awaitable, Callable

from kungfu import LazyCoroResult, Result, Ok, Error

from commerceflex._types import Clock, utcnow
from commerceflex.idempotency._types import IdempotencyResult, IdempotencyError
from commerceflex.idempotency._store import StoreAny, MemoryStore
from commerceflex.idempotency._policy import Policy


type KeyFn[K] = Callable[[K], str]
type FingerprintFn[K] = Callable[[K], str]
type Operation[K, T, E] = Callable[[K], Awaitable[Result[T, E]]]


@dataclass(frozen=True, slots=True)
class Codec[T]:
    """Round-trips values through a text ledger."""

    encode: Callable[[T], Any]
    decode: Callable[[Any], T]


def fingerprint(*parts: object) -> str:
    """Stable sha256 fingerprint of the request parts."""
    joined = "\x1f".join(repr(p) for p in parts)
    return hashlib.sha256(joined.encode()).hexdigest()


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotent Builder
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class Idempotent[K, T, E]:
    _operation: Operation[K, T, E]
    _key_fn: KeyFn[K] | None = None
    _fingerprint_fn: FingerprintFn[K] | None = None
    _store: StoreAny | None = None
    _policy: Policy = Policy()
    _codec: Codec[T] | None = None
    _clock: Clock = utcnow

    def key(self, fn: KeyFn[K]) -> Idempotent[K, T, E]:
        return replace(self, _key_fn=fn)

    def fingerprint(self, fn: FingerprintFn[K]) -> Idempotent[K, T, E]:
        """Reject key reuse with a different request (INPUT_MISMATCH)."""
        return replace(self, _fingerprint_fn=fn)

    def store(self, s: StoreAny) -> Idempotent[K, T, E]:
        return replace(self, _store=s)

    def policy(self, p: Policy) -> Idempotent[K, T, E]:
        return replace(self, _policy=p)

    def codec(self, encode: Callable[[T], Any], decode: Callable[[Any], T]) -> Idempotent[K, T, E]:
        """Serialize results for stores that only hold text."""
        return replace(self, _codec=Codec(encode, decode))

    def clock(self, c: Clock) -> Idempotent[K, T, E]:
        return replace(self, _clock=c)

    def build(self) -> IdempotentExecutor[K, T, E]:
        if self._key_fn is None:
            raise ValueError("key() is required")

        return IdempotentExecutor(
            operation=self._operation,
            key_fn=self._key_fn,
            fingerprint_fn=self._fingerprint_fn,
            store=self._store if self._store is not None else MemoryStore(self._clock),
            policy=self._policy,
            codec=self._codec,
            clock=self._clock,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotent Executor
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class IdempotentExecutor[K, T, E]:
    """Compiled executor: builds a LedgerSpec per call and runs the graph."""

    operation: Operation[K, T, E]
    key_fn: KeyFn[K]
    fingerprint_fn: FingerprintFn[K] | None
    store: StoreAny
    policy: Policy
    codec: Codec[T] | None
    clock: Clock

    def run(self, input_val: K) -> LazyCoroResult[IdempotencyResult[T], IdempotencyError[E]]:
        from commerceflex.idempotency._graph import LedgerSpec, run_idempotent

        key = self.key_fn(input_val)
        input_hash = self.fingerprint_fn(input_val) if self.fingerprint_fn else None
        codec = self.codec
        operation: Callable[[Any], Awaitable[Result[Any, Any]]] = self.operation

        if codec is not None:
            raw = self.operation

            async def encoded(value: K) -> Result[Any, E]:
                match await raw(value):
                    case Ok(v):
                        return Ok(codec.encode(v))
                    case Error(e):
                        return Error(e)

            operation = encoded

        spec = LedgerSpec(
            key=key,
            input_value=input_val,
            operation=operation,
            store=self.store,
            policy=self.policy,
            clock=self.clock,
            input_hash=input_hash,
        )

        async def execute() -> Result[IdempotencyResult[T], IdempotencyError[E]]:
            match await run_idempotent(spec):
                case Ok(res) if codec is not None:
                    return Ok(replace(res, value=codec.decode(res.value)))
                case other:
                    return other

        return LazyCoroResult(execute)

    async def invalidate(self, input_val: K) -> bool:
        match await self.store.delete(self.key_fn(input_val)):
            case Ok(deleted):
                return deleted
            case _:
                return False


def idempotent[K, T, E](operation: Operation[K, T, E]) -> Idempotent[K, T, E]:
    """
    Wrap an operation with a ledger.

    Example:
        executor = (
            I.idempotent(refund)
            .key(lambda req: f"refund:{req.order_id}:{req.key}")
            .fingerprint(lambda req: I.fingerprint(req.amount))
            .store(store)
            .policy(I.Policy().with_ttl(hours=24))
            .build()
        )
        result = await executor.run(request)
    """
    return Idempotent(_operation=operation)


__all__ = (
    "Codec",
    "Idempotent",
    "IdempotentExecutor",
    "idempotent",
    "fingerprint",
)
