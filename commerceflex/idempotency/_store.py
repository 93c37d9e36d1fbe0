"""
Ledger store protocol and the in-memory implementation.

All methods return Result for explicit error handling.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from kungfu import Result, Ok, Error

from commerceflex._types import Clock, utcnow
from commerceflex.idempotency._types import LedgerRecord, RecordState, StoreError


# ═══════════════════════════════════════════════════════════════════════════════
# Store Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class Store[T](Protocol):
    """
    Ledger store protocol.

    ``set_pending`` must be atomic: two callers racing on the same key get
    exactly one ``Ok(True)``.
    """

    async def get(self, key: str) -> Result[LedgerRecord[T] | None, StoreError]:
        """Live record for ``key``; expired records read as ``Ok(None)``."""
        ...

    async def set_pending(
        self,
        key: str,
        ttl: timedelta | None,
        input_hash: str | None = None,
    ) -> Result[bool, StoreError]:
        """Claim ``key``. ``Ok(False)`` if a live record already exists."""
        ...

    async def set_completed(
        self, key: str, value: T, ttl: timedelta | None
    ) -> Result[None, StoreError]: ...

    async def set_failed(
        self, key: str, error: str, ttl: timedelta | None
    ) -> Result[None, StoreError]: ...

    async def delete(self, key: str) -> Result[bool, StoreError]: ...


type StoreAny = Store[Any]


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Store — single process, tests
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class _Slot:
    state: RecordState
    value: Any
    error: str | None
    created_at: datetime
    expires_at: datetime | None
    input_hash: str | None

    def freeze(self, key: str) -> LedgerRecord[Any]:
        return LedgerRecord(
            key=key,
            state=self.state,
            value=self.value,
            error=self.error,
            created_at=self.created_at,
            expires_at=self.expires_at,
            input_hash=self.input_hash,
        )


class MemoryStore:
    """
    In-memory ledger.

    Only for a single process: no durability, no cross-process exclusion.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._slots: dict[str, _Slot] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> _Slot | None:
        slot = self._slots.get(key)
        if slot is None:
            return None
        if slot.expires_at is not None and self._clock() >= slot.expires_at:
            del self._slots[key]
            return None
        return slot

    def _expiry(self, ttl: timedelta | None) -> datetime | None:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> Result[LedgerRecord[Any] | None, StoreError]:
        async with self._lock:
            slot = self._live(key)
            return Ok(slot.freeze(key) if slot else None)

    async def set_pending(
        self,
        key: str,
        ttl: timedelta | None,
        input_hash: str | None = None,
    ) -> Result[bool, StoreError]:
        async with self._lock:
            if self._live(key) is not None:
                return Ok(False)
            self._slots[key] = _Slot(
                state=RecordState.PENDING,
                value=None,
                error=None,
                created_at=self._clock(),
                expires_at=self._expiry(ttl),
                input_hash=input_hash,
            )
            return Ok(True)

    async def set_completed(
        self, key: str, value: Any, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        async with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                return Error(StoreError(f"No pending record for key: {key}"))
            slot.state = RecordState.COMPLETED
            slot.value = value
            slot.expires_at = self._expiry(ttl)
            return Ok(None)

    async def set_failed(
        self, key: str, error: str, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        async with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                return Error(StoreError(f"No pending record for key: {key}"))
            slot.state = RecordState.FAILED
            slot.error = error
            slot.expires_at = self._expiry(ttl)
            return Ok(None)

    async def delete(self, key: str) -> Result[bool, StoreError]:
        async with self._lock:
            return Ok(self._slots.pop(key, None) is not None)

    def __len__(self) -> int:
        return len(self._slots)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Store",
    "StoreAny",
    "MemoryStore",
)
