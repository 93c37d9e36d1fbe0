"""
Shared state of one self-hosted adapter instance.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex._types import Clock
from commerceflex.idempotency import SQLAlchemyStore
from commerceflex.model import ProviderTransientError, ValidationError
from commerceflex.provider import RetryPolicy, WriteGate, check_page_size
from commerceflex.selfhosted._database import Database
from commerceflex.selfhosted._processor import CardProcessor


@dataclass(frozen=True, slots=True)
class Options:
    """
    Store policy for a self-hosted tenant. Amounts are minor units of
    ``currency``.
    """

    currency: str = "USD"
    checkout_ttl: timedelta = timedelta(minutes=30)
    shipping_flat: int = 0
    free_shipping_over: int | None = None
    tax_bps: int = 0
    # How long a dispatched confirmation may stay unresolved before expiry
    confirm_timeout: timedelta = timedelta(minutes=15)
    ledger_ttl: timedelta = timedelta(hours=24)
    # A duplicate complete waits this long for the first attempt's outcome
    completion_wait: timedelta = timedelta(seconds=60)


@dataclass(frozen=True)
class Context:
    tenant_id: str
    db: Database
    processor: CardProcessor
    options: Options
    gate: WriteGate
    clock: Clock
    ledger: SQLAlchemyStore
    retry: RetryPolicy

    def writing(self) -> AbstractAsyncContextManager[None]:
        return self.gate.writing(self.tenant_id)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read session; closed without commit."""
        try:
            async with self.db.sessions() as session:
                yield session
        except OperationalError as e:
            raise ProviderTransientError(f"Database unavailable: {e.orig}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Commits on clean exit, rolls back on any exception."""
        try:
            async with self.db.sessions() as session, session.begin():
                yield session
        except OperationalError as e:
            raise ProviderTransientError(f"Database unavailable: {e.orig}") from e


def new_id() -> str:
    return str(uuid.uuid4())


def encode_cursor(last_id: str) -> str:
    return base64.urlsafe_b64encode(last_id.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> str:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError):
        raise ValidationError(f"Invalid cursor: {cursor!r}", field="after") from None


__all__ = (
    "Options",
    "Context",
    "new_id",
    "encode_cursor",
    "decode_cursor",
    "check_page_size",
)
