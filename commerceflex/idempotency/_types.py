"""
Idempotency types — ledger records and outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto


# ═══════════════════════════════════════════════════════════════════════════════
# Record State — Operation Lifecycle
# ═══════════════════════════════════════════════════════════════════════════════


class RecordState(Enum):
    """
    State of a ledger record.

    Lifecycle:
        PENDING → COMPLETED (success)
                → FAILED (error, only when failures are persisted)
                → (expired/deleted)
    """

    PENDING = auto()
    COMPLETED = auto()
    FAILED = auto()


# ═══════════════════════════════════════════════════════════════════════════════
# Ledger Record — Stored State
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class LedgerRecord[T]:
    """
    A stored ledger record.

    ``value`` is set only for COMPLETED, ``error`` only for FAILED.
    ``input_hash`` fingerprints the request that created the record so a
    reused key with a different request is detected.
    """

    key: str
    state: RecordState
    value: T | None
    error: str | None
    created_at: datetime
    expires_at: datetime | None
    input_hash: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


# ═══════════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class IdempotencyResult[T]:
    """Value plus whether it was replayed from the ledger."""

    value: T
    from_cache: bool
    key: str


class IdempotencyErrorKind(Enum):
    CONFLICT = auto()  # Concurrent request with same key
    TIMEOUT = auto()  # Waiting for pending timed out
    STORE_ERROR = auto()  # Storage backend error
    EXECUTION = auto()  # Wrapped operation failed
    INPUT_MISMATCH = auto()  # Same key, different request


@dataclass(frozen=True, slots=True)
class IdempotencyError[E]:
    """
    Idempotency failure.

    ``original_error`` carries the wrapped operation's error for EXECUTION.
    """

    kind: IdempotencyErrorKind
    message: str
    original_error: E | None = None


@dataclass(frozen=True, slots=True)
class StoreError:
    """Storage operation error."""

    message: str
    cause: Exception | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "RecordState",
    "LedgerRecord",
    "IdempotencyResult",
    "IdempotencyErrorKind",
    "IdempotencyError",
    "StoreError",
)
