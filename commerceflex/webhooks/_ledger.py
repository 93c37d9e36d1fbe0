"""
Seen-events ledger.

Lives in its own schema so it works for every backend, including tenants
whose provider keeps no local database.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from commerceflex._types import Clock, utcnow
from commerceflex.idempotency import IdempotencyMixin, SQLAlchemyStore

logger = logging.getLogger(__name__)


class LedgerBase(DeclarativeBase):
    pass


class SeenEventRow(LedgerBase, IdempotencyMixin):
    __tablename__ = "webhook_events_seen"


class EventLedger:
    """
    Example:
        ledger = EventLedger("sqlite+aiosqlite:///webhooks.db")
        await ledger.create_all()
        normalizer = WebhookNormalizer(registry, sink, ledger.store)
    """

    def __init__(self, url: str, *, clock: Clock = utcnow) -> None:
        self.engine = create_async_engine(url)
        self.sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine, expire_on_commit=False
        )
        self.store = SQLAlchemyStore(
            self.sessions, SeenEventRow, dialect=self.engine.dialect.name, clock=clock
        )

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(LedgerBase.metadata.create_all)

    async def purge_expired(self) -> int:
        purged = await self.store.purge_expired()
        if purged:
            logger.info("Purged %d expired webhook ledger rows", purged)
        return purged

    async def dispose(self) -> None:
        await self.engine.dispose()


__all__ = ("LedgerBase", "SeenEventRow", "EventLedger")
