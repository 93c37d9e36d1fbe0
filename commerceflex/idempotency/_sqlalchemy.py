"""
SQLAlchemy ledger — durable idempotency store for any mapped model.

Usage:
    1. Add IdempotencyMixin to a model:

        class LedgerTable(Base, IdempotencyMixin):
            __tablename__ = "idempotency_records"

    2. Build the store:

        store = SQLAlchemyStore(session_factory, LedgerTable, dialect="sqlite")

    The claim (``set_pending``) is an INSERT ... ON CONFLICT DO NOTHING on
    the unique key, so it is atomic across processes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, cast

from sqlalchemy import DateTime, String, Text, delete, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from kungfu import Result, Ok, Error

from commerceflex._sql import insert_for
from commerceflex._types import Clock, utcnow
from commerceflex.idempotency._types import LedgerRecord, RecordState, StoreError


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Mixin
# ═══════════════════════════════════════════════════════════════════════════════


class IdempotencyMixin:
    """
    Ledger columns.

    - idempotency_key: unique key, primary key of the ledger row
    - idempotency_status: "pending" | "completed" | "failed"
    - idempotency_value: serialized result
    - idempotency_error: error message
    - idempotency_input_hash: request fingerprint
    - idempotency_expires_at: retention bound
    """

    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    idempotency_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )
    idempotency_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    idempotency_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )


class IdempotencyStatus:
    """Status constants for idempotency_status column."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


_STATES = {
    IdempotencyStatus.PENDING: RecordState.PENDING,
    IdempotencyStatus.COMPLETED: RecordState.COMPLETED,
    IdempotencyStatus.FAILED: RecordState.FAILED,
}


# ═══════════════════════════════════════════════════════════════════════════════
# SQLAlchemy Store
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyStore:
    """
    Durable ledger over a model carrying IdempotencyMixin.

    Values are stored as text; callers serialize before completing.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type[IdempotencyMixin],
        *,
        dialect: str,
        clock: Clock = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._model = model
        self._insert = insert_for(dialect)
        self._clock = clock

    async def get(self, key: str) -> Result[LedgerRecord[str] | None, StoreError]:
        try:
            async with self._sessions() as session:
                row = await session.get(self._model, key)
        except Exception as e:
            return Error(StoreError(f"Failed to get {key}: {e}", e))

        if row is None:
            return Ok(None)
        if row.idempotency_expires_at and self._clock() >= row.idempotency_expires_at:
            return Ok(None)
        return Ok(self._to_record(row))

    async def set_pending(
        self,
        key: str,
        ttl: timedelta | None,
        input_hash: str | None = None,
    ) -> Result[bool, StoreError]:
        model = self._model
        now = self._clock()
        try:
            async with self._sessions() as session:
                # Expired rows would block the claim forever
                await session.execute(
                    delete(model).where(
                        model.idempotency_key == key,
                        model.idempotency_expires_at.is_not(None),
                        model.idempotency_expires_at <= now,
                    )
                )
                stmt = (
                    self._insert(model)
                    .values(
                        idempotency_key=key,
                        idempotency_status=IdempotencyStatus.PENDING,
                        idempotency_input_hash=input_hash,
                        idempotency_created_at=now,
                        idempotency_expires_at=now + ttl if ttl else None,
                    )
                    .on_conflict_do_nothing(index_elements=["idempotency_key"])
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount > 0)
        except Exception as e:
            return Error(StoreError(f"Failed to set pending {key}: {e}", e))

    async def set_completed(
        self, key: str, value: str, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        return await self._finish(
            key,
            idempotency_status=IdempotencyStatus.COMPLETED,
            idempotency_value=value,
            idempotency_expires_at=self._clock() + ttl if ttl else None,
        )

    async def set_failed(
        self, key: str, error: str, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        return await self._finish(
            key,
            idempotency_status=IdempotencyStatus.FAILED,
            idempotency_error=error,
            idempotency_expires_at=self._clock() + ttl if ttl else None,
        )

    async def delete(self, key: str) -> Result[bool, StoreError]:
        model = self._model
        try:
            async with self._sessions() as session:
                cursor = cast(
                    CursorResult[Any],
                    await session.execute(delete(model).where(model.idempotency_key == key)),
                )
                await session.commit()
                return Ok(cursor.rowcount > 0)
        except Exception as e:
            return Error(StoreError(f"Failed to delete {key}: {e}", e))

    async def purge_expired(self) -> int:
        """Drop records past retention. Returns the number removed."""
        model = self._model
        async with self._sessions() as session:
            cursor = cast(
                CursorResult[Any],
                await session.execute(
                    delete(model).where(
                        model.idempotency_expires_at.is_not(None),
                        model.idempotency_expires_at <= self._clock(),
                    )
                ),
            )
            await session.commit()
            return cursor.rowcount

    async def _finish(self, key: str, **values: Any) -> Result[None, StoreError]:
        model = self._model
        try:
            async with self._sessions() as session:
                cursor = cast(
                    CursorResult[Any],
                    await session.execute(
                        update(model).where(model.idempotency_key == key).values(**values)
                    ),
                )
                await session.commit()
        except Exception as e:
            return Error(StoreError(f"Failed to update {key}: {e}", e))
        if cursor.rowcount == 0:
            return Error(StoreError(f"Record not found: {key}"))
        return Ok(None)

    def _to_record(self, row: IdempotencyMixin) -> LedgerRecord[str]:
        return LedgerRecord(
            key=row.idempotency_key,
            state=_STATES.get(row.idempotency_status, RecordState.PENDING),
            value=row.idempotency_value,
            error=row.idempotency_error,
            created_at=row.idempotency_created_at,
            expires_at=row.idempotency_expires_at,
            input_hash=row.idempotency_input_hash,
        )


__all__ = (
    "IdempotencyMixin",
    "IdempotencyStatus",
    "SQLAlchemyStore",
)
