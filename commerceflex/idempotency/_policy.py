"""
Idempotency policy — behavior configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum, auto


# ═══════════════════════════════════════════════════════════════════════════════
# On Pending — Conflict Resolution Strategy
# ═══════════════════════════════════════════════════════════════════════════════


class OnPending(Enum):
    """
    What to do when a request arrives while another with the same key runs.

    WAIT: Poll until the first finishes, return its result.
          Checkout completion: a double-submitted confirm gets the same order.

    FAIL: Return CONFLICT immediately.
          Webhooks: the backend redelivers later, after the first settles.
    """

    WAIT = auto()
    FAIL = auto()


WAIT = OnPending.WAIT
FAIL = OnPending.FAIL


# ═══════════════════════════════════════════════════════════════════════════════
# Policy — Full Configuration
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Policy:
    """
    Idempotency policy.

    Example:
        policy = (
            Policy()
            .with_ttl(hours=72)
            .with_on_pending(FAIL)
        )

    Immutable: each method returns a new Policy.
    """

    result_ttl: timedelta | None = None
    # Claim lease; a crashed or cancelled holder frees the key after this
    pending_ttl: timedelta = timedelta(minutes=5)
    conflict_strategy: OnPending = OnPending.WAIT
    pending_wait_timeout: timedelta = timedelta(seconds=30)
    poll_interval: timedelta = timedelta(milliseconds=100)
    # Failures are not cached by default, so the caller may retry
    persist_failed: bool = False
    failed_result_ttl: timedelta | None = None

    def with_ttl(
        self,
        *,
        seconds: float | None = None,
        minutes: float | None = None,
        hours: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """
        TTL for completed records; afterwards the key may run again.

        Example:
            .with_ttl(hours=24)
            .with_ttl(delta=timedelta(days=7))
        """
        if delta is None:
            total_seconds = (seconds or 0) + (minutes or 0) * 60 + (hours or 0) * 3600
            delta = timedelta(seconds=total_seconds) if total_seconds > 0 else None
        return replace(self, result_ttl=delta)

    def with_on_pending(self, strategy: OnPending) -> Policy:
        return replace(self, conflict_strategy=strategy)

    def with_pending_ttl(self, *, seconds: float | None = None, delta: timedelta | None = None) -> Policy:
        """
        Lease on an in-flight claim, kept apart from the completed-record TTL
        so a lost claim does not block the key for the whole retention.
        """
        if delta is None:
            delta = timedelta(seconds=seconds or 0)
        if delta <= timedelta(0):
            raise ValueError("pending_ttl must be positive")
        return replace(self, pending_ttl=delta)

    def with_wait_timeout(self, *, seconds: float) -> Policy:
        """Only applies with WAIT."""
        return replace(self, pending_wait_timeout=timedelta(seconds=seconds))

    def with_poll_interval(self, *, seconds: float) -> Policy:
        return replace(self, poll_interval=timedelta(seconds=seconds))

    def with_store_failed(self, store: bool = True, *, ttl: timedelta | None = None) -> Policy:
        """
        Cache failures too (replays return the cached error).

        ``ttl`` defaults to the main TTL.
        """
        return replace(self, persist_failed=store, failed_result_ttl=ttl)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "OnPending",
    "WAIT",
    "FAIL",
    "Policy",
)
