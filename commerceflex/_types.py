"""
Core types for commerceflex.

Re-exports from kungfu + clock and lazy-computation aliases.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from kungfu import Result, Ok, Error, LazyCoroResult

# ═══════════════════════════════════════════════════════════════════════════════
# Lazy Computation Aliases
# ═══════════════════════════════════════════════════════════════════════════════

type Lazy[T, E] = LazyCoroResult[T, E]
"""Lazy async computation that may fail."""

# ═══════════════════════════════════════════════════════════════════════════════
# Clock
# ═══════════════════════════════════════════════════════════════════════════════

type Clock = Callable[[], datetime]
"""Returns naive UTC. Every timestamp stored by the library is naive UTC."""


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(moment: datetime) -> datetime:
    """Normalize an aware datetime from a backend payload to naive UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(UTC).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    "Lazy",
    "Clock",
    "utcnow",
    "as_naive_utc",
)
