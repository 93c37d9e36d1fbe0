"""
Async engine and session factory for one self-hosted adapter.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from commerceflex.selfhosted._tables import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Example:
        db = Database("sqlite+aiosqlite:///shop.db")
        await db.create_all()
        async with db.sessions() as session:
            ...
        await db.dispose()
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo)
        self.sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        logger.debug("Disposing engine for %s", self.engine.url.render_as_string(hide_password=True))
        await self.engine.dispose()


__all__ = ("Database",)
