"""
Paginated export from the source provider into the self-hosted schema.

Each page is upserted and then checkpointed, so an interrupted pass
resumes at the page after the last one written. Re-running a page is
harmless: rows are keyed by the source's own ids.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from kungfu import Result, Ok, Error

from commerceflex.migration._checkpoint import Checkpoint, Checkpoints
from commerceflex.model import CommerceError, Page
from commerceflex.provider import Provider
from commerceflex.selfhosted import Importer

logger = logging.getLogger(__name__)

ENTITIES = ("products", "customers", "orders")

type Lister = Callable[..., Awaitable[Result[Page[Any], CommerceError]]]
type Loader = Callable[[Sequence[Any]], Awaitable[int]]
type OnPage = Callable[[str, int, int | None], Awaitable[None]]


def unwrap[T](result: Result[T, CommerceError]) -> T:
    match result:
        case Ok(value):
            return value
        case Error(e):
            raise e


def listers(source: Provider) -> dict[str, Lister]:
    return {
        "products": source.catalog.list,
        "customers": source.customers.list,
        "orders": source.orders.list,
    }


def loaders(importer: Importer) -> dict[str, Loader]:
    return {
        "products": importer.products,
        "customers": importer.customers,
        "orders": importer.orders,
    }


async def no_page(entity: str, offset: int, total: int | None) -> None:
    return None


@dataclass
class Sync:
    """
    Example:
        sync = Sync(source, destination.importer, Checkpoints(destination.database, tenant))
        await sync.entity("products")
    """

    source: Provider
    importer: Importer
    checkpoints: Checkpoints
    page_size: int = 100

    async def entity(
        self,
        entity: str,
        *,
        before_page: Callable[[], Awaitable[None]] | None = None,
        on_page: OnPage = no_page,
    ) -> int:
        """Copy one entity, resuming from its checkpoint. Returns the offset reached."""
        checkpoint = await self.checkpoints.load(entity)
        if checkpoint.done:
            return checkpoint.offset

        list_page = listers(self.source)[entity]
        load = loaders(self.importer)[entity]
        cursor, offset = checkpoint.cursor, checkpoint.offset
        if offset:
            logger.info("Resuming %s export at offset %d", entity, offset)

        while True:
            if before_page is not None:
                await before_page()
            page = unwrap(await list_page(first=self.page_size, after=cursor))
            await load(page.items)
            offset += len(page.items)
            cursor = page.next_cursor
            await self.checkpoints.save(Checkpoint(entity, cursor, offset, done=cursor is None))
            await on_page(entity, offset, page.total)
            logger.debug("Checkpointed %s at offset %d", entity, offset)
            if cursor is None:
                return offset

    async def all(
        self,
        *,
        before_page: Callable[[], Awaitable[None]] | None = None,
        on_page: OnPage = no_page,
    ) -> dict[str, int]:
        return {
            entity: await self.entity(entity, before_page=before_page, on_page=on_page)
            for entity in ENTITIES
        }

    async def full_pass(self, *, on_page: OnPage = no_page) -> dict[str, int]:
        """Start over from the first page of every entity."""
        await self.checkpoints.reset()
        return await self.all(on_page=on_page)


__all__ = ("ENTITIES", "OnPage", "Sync", "no_page", "unwrap", "listers", "loaders")
