"""
Idempotency graph — the decision logic as nodnod nodes.

    LedgerSpec (injected)
         │
         ▼
    LookupNode ─────────────┬───────────────┬──────────────┬─────────────┐
         │                  │               │              │             │
    CompletedNode      FailedNode      PendingNode    VacantNode   StoreFaultNode
         │                  │               │              │             │
    MatchingInputNode       └───────────────┴──── Outcome (@polymorphic) ┘
         └────────────────────────────────────────────┘
                                                      │
                                                      ▼
                                               FinalResultNode

Each state node raises NodeError unless the ledger is in its state, so
exactly one branch of the polymorphic outcome can resolve.

No 'from __future__ import annotations': nodnod reads the hints at
runtime to wire dependencies.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from collections.abc import Awaitable, Callable

from nodnod import NodeError, polymorphic, case

from kungfu import Result, Ok, Error

from commerceflex import _graph as G
from commerceflex._types import Clock
from commerceflex.idempotency._policy import OnPending, Policy
from commerceflex.idempotency._store import StoreAny
from commerceflex.idempotency._types import (
    IdempotencyError,
    IdempotencyErrorKind,
    IdempotencyResult,
    LedgerRecord,
    RecordState,
    StoreError,
)


# ═══════════════════════════════════════════════════════════════════════════════
# Input — Spec (injected)
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class LedgerSpec:
    """Everything one idempotent execution needs."""

    key: str
    input_value: Any
    operation: Callable[[Any], Awaitable[Result[Any, Any]]]
    store: StoreAny
    policy: Policy
    clock: Clock
    input_hash: str | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Lookup
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class LookupNode:
    """Reads the ledger once."""

    def __init__(
        self,
        spec: LedgerSpec,
        record: LedgerRecord[Any] | None,
        now: datetime,
        fault: StoreError | None = None,
    ) -> None:
        self.spec = spec
        self.record = record
        self.now = now
        self.fault = fault

    @classmethod
    async def __compose__(cls, spec: LedgerSpec) -> "LookupNode":
        now = spec.clock()
        match await spec.store.get(spec.key):
            case Ok(record):
                return cls(spec, record, now)
            case Error(err):
                return cls(spec, None, now, fault=err)


# ═══════════════════════════════════════════════════════════════════════════════
# State Nodes
# ═══════════════════════════════════════════════════════════════════════════════


def _live(lookup: LookupNode, state: RecordState) -> LedgerRecord[Any]:
    record = lookup.record
    if record is None:
        raise NodeError("No record")
    if record.state != state:
        raise NodeError(f"Not {state.name.lower()}")
    if record.is_expired(lookup.now):
        raise NodeError("Expired")
    return record


@G.node
class CompletedNode:
    def __init__(self, record: LedgerRecord[Any], spec: LedgerSpec) -> None:
        self.record = record
        self.spec = spec

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "CompletedNode":
        return cls(_live(lookup, RecordState.COMPLETED), lookup.spec)


@G.node
class FailedNode:
    def __init__(self, record: LedgerRecord[Any], spec: LedgerSpec) -> None:
        self.record = record
        self.spec = spec

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "FailedNode":
        return cls(_live(lookup, RecordState.FAILED), lookup.spec)


@G.node
class PendingNode:
    def __init__(self, record: LedgerRecord[Any], spec: LedgerSpec) -> None:
        self.record = record
        self.spec = spec

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "PendingNode":
        return cls(_live(lookup, RecordState.PENDING), lookup.spec)


@G.node
class VacantNode:
    """No live record: the key may run."""

    def __init__(self, spec: LedgerSpec) -> None:
        self.spec = spec

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "VacantNode":
        if lookup.fault is not None:
            raise NodeError("Store error")
        if lookup.record is not None and not lookup.record.is_expired(lookup.now):
            raise NodeError("Record exists")
        return cls(lookup.spec)


@G.node
class StoreFaultNode:
    def __init__(self, fault: StoreError) -> None:
        self.fault = fault

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "StoreFaultNode":
        if lookup.fault is None:
            raise NodeError("No store error")
        return cls(lookup.fault)


@G.node
class MatchingInputNode:
    """Completed record whose fingerprint matches (or nobody fingerprints)."""

    def __init__(self, completed: CompletedNode) -> None:
        self.completed = completed

    @classmethod
    def __compose__(cls, completed: CompletedNode) -> "MatchingInputNode":
        if _mismatch(completed.spec, completed.record):
            raise NodeError("Input hash mismatch")
        return cls(completed)


def _mismatch(spec: LedgerSpec, record: LedgerRecord[Any]) -> bool:
    return (
        spec.input_hash is not None
        and record.input_hash is not None
        and record.input_hash != spec.input_hash
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Outcome Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class OutcomeOk:
    value: Any
    from_cache: bool
    key: str


@dataclass(frozen=True)
class OutcomeError:
    kind: IdempotencyErrorKind
    message: str
    original_error: Any | None = None


type Outcome = OutcomeOk | OutcomeError


def _store_failure(err: StoreError) -> OutcomeError:
    return OutcomeError(IdempotencyErrorKind.STORE_ERROR, err.message, err.cause)


# ═══════════════════════════════════════════════════════════════════════════════
# Execution
# ═══════════════════════════════════════════════════════════════════════════════


async def _execute(spec: LedgerSpec) -> Outcome:
    """Run the operation under a claimed key and record its outcome."""
    try:
        result = await spec.operation(spec.input_value)
    except Exception as e:
        await spec.store.delete(spec.key)
        return OutcomeError(IdempotencyErrorKind.EXECUTION, str(e), e)
    except BaseException:
        # Cancelled mid-flight: free the claim so a redelivery can run
        await asyncio.shield(spec.store.delete(spec.key))
        raise

    match result:
        case Ok(value):
            match await spec.store.set_completed(spec.key, value, spec.policy.result_ttl):
                case Error(err):
                    return _store_failure(err)
                case Ok(_):
                    return OutcomeOk(value=value, from_cache=False, key=spec.key)
        case Error(err):
            if spec.policy.persist_failed:
                ttl = spec.policy.failed_result_ttl or spec.policy.result_ttl
                await spec.store.set_failed(spec.key, str(err), ttl)
            else:
                await spec.store.delete(spec.key)
            return OutcomeError(IdempotencyErrorKind.EXECUTION, "Operation returned Error", err)


async def _await_settled(spec: LedgerSpec) -> Outcome:
    """Poll a pending record until it completes, fails or times out."""
    deadline = spec.policy.pending_wait_timeout.total_seconds()
    interval = spec.policy.poll_interval.total_seconds()
    waited = 0.0

    while waited < deadline:
        await asyncio.sleep(interval)
        waited += interval

        match await spec.store.get(spec.key):
            case Error(err):
                return _store_failure(err)
            case Ok(None):
                # The first attempt failed without persisting; let the caller retry
                return OutcomeError(
                    IdempotencyErrorKind.CONFLICT,
                    f"Concurrent attempt for {spec.key} did not complete",
                )
            case Ok(record):
                if record.state == RecordState.COMPLETED:
                    if _mismatch(spec, record):
                        return OutcomeError(
                            IdempotencyErrorKind.INPUT_MISMATCH,
                            f"Key reused with a different request: {spec.key}",
                        )
                    return OutcomeOk(value=record.value, from_cache=True, key=spec.key)
                if record.state == RecordState.FAILED:
                    return OutcomeError(
                        IdempotencyErrorKind.EXECUTION,
                        "Operation failed while waiting",
                        record.error,
                    )

    return OutcomeError(
        IdempotencyErrorKind.TIMEOUT,
        f"Timed out waiting for pending operation {spec.key}",
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Polymorphic Outcome
# ═══════════════════════════════════════════════════════════════════════════════


@polymorphic[Outcome]
class LedgerOutcome:
    """Routes on the validated ledger state."""

    @case
    def store_fault(cls, node: StoreFaultNode) -> Outcome:
        return _store_failure(node.fault)

    @case
    def replay(cls, matching: MatchingInputNode) -> Outcome:
        node = matching.completed
        return OutcomeOk(value=node.record.value, from_cache=True, key=node.spec.key)

    @case
    def input_mismatch(cls, node: CompletedNode) -> Outcome:
        if not _mismatch(node.spec, node.record):
            raise NodeError("Fingerprints agree")
        return OutcomeError(
            IdempotencyErrorKind.INPUT_MISMATCH,
            f"Key reused with a different request: {node.spec.key}",
        )

    @case
    def cached_failure(cls, node: FailedNode) -> Outcome:
        return OutcomeError(
            IdempotencyErrorKind.EXECUTION, "Cached failure", node.record.error
        )

    @case
    def pending_conflict(cls, node: PendingNode) -> Outcome:
        if node.spec.policy.conflict_strategy != OnPending.FAIL:
            raise NodeError("Policy not FAIL")
        return OutcomeError(
            IdempotencyErrorKind.CONFLICT, f"Pending conflict: {node.spec.key}"
        )

    @case
    async def pending_wait(cls, node: PendingNode) -> Outcome:
        if node.spec.policy.conflict_strategy != OnPending.WAIT:
            raise NodeError("Policy not WAIT")
        return await _await_settled(node.spec)

    @case
    async def execute_new(cls, node: VacantNode) -> Outcome:
        spec = node.spec
        claimed = await spec.store.set_pending(spec.key, spec.policy.pending_ttl, spec.input_hash)

        match claimed:
            case Error(err):
                return _store_failure(err)
            case Ok(True):
                return await _execute(spec)
            case Ok(_):
                # Lost the claim race to a concurrent caller
                if spec.policy.conflict_strategy == OnPending.WAIT:
                    return await _await_settled(spec)
                return OutcomeError(IdempotencyErrorKind.CONFLICT, f"Race conflict: {spec.key}")


# ═══════════════════════════════════════════════════════════════════════════════
# Final Node
# ═══════════════════════════════════════════════════════════════════════════════


@G.node
class FinalResultNode:
    def __init__(self, outcome: Outcome) -> None:
        self.outcome = outcome

    @classmethod
    def __compose__(cls, outcome: LedgerOutcome) -> "FinalResultNode":
        return cls(outcome.value)

    def to_result(self) -> Result[IdempotencyResult[Any], IdempotencyError[Any]]:
        match self.outcome:
            case OutcomeOk(value=v, from_cache=fc, key=k):
                return Ok(IdempotencyResult(value=v, from_cache=fc, key=k))
            case OutcomeError(kind=kind, message=msg, original_error=orig):
                return Error(IdempotencyError(kind=kind, message=msg, original_error=orig))


# ═══════════════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════════════


async def run_idempotent(
    spec: LedgerSpec,
) -> Result[IdempotencyResult[Any], IdempotencyError[Any]]:
    node = await G.compose(FinalResultNode, spec)
    return node.to_result()


__all__ = (
    "LedgerSpec",
    "Outcome",
    "OutcomeOk",
    "OutcomeError",
    "LedgerOutcome",
    "FinalResultNode",
    "run_idempotent",
)
