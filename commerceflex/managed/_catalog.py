"""
Managed catalog reads.

Reads go to the platform first and fall back to the last good value when
it fails transiently (after the read retries are spent). Product webhooks
drop the affected entries.
"""

from __future__ import annotations

import logging

from kungfu import Result, Ok, Error

from commerceflex import cache as C
from commerceflex.managed import _mapping as mapping
from commerceflex.managed._client import Context
from commerceflex.model import CommerceError, NotFoundError, Page, Product, ValidationError
from commerceflex.provider import check_page_size, read

logger = logging.getLogger(__name__)


def _stale_ok(error: CommerceError) -> bool:
    return error.retryable


class Catalog:
    def __init__(self, ctx: Context, *, cache_size: int = 500) -> None:
        self._ctx = ctx
        self._products = (
            C.cache(lambda pid: f"product:{pid}", self._fetch)
            .tier(C.LocalTier[Product](max_size=cache_size))
            .stale_if(_stale_ok)
            .build()
        )
        self._handles = (
            C.cache(lambda handle: f"handle:{handle}", self._fetch_handle)
            .tier(C.LocalTier[Product](max_size=cache_size))
            .stale_if(_stale_ok)
            .build()
        )
        self._pages = (
            C.cache(lambda key: f"page:{key[0]}:{key[1] or ''}", self._fetch_page)
            .tier(C.LocalTier[Page[Product]](max_size=64))
            .stale_if(_stale_ok)
            .build()
        )

    async def get(self, product_id: str) -> Result[Product, CommerceError]:
        match await self._products.get(product_id):
            case Ok(hit):
                return Ok(hit.value)
            case Error(e):
                return Error(e)

    async def get_by_handle(self, handle: str) -> Result[Product, CommerceError]:
        match await self._handles.get(handle):
            case Ok(hit):
                return Ok(hit.value)
            case Error(e):
                return Error(e)

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Product], CommerceError]:
        match await self._pages.get((first, after)):
            case Ok(hit):
                return Ok(hit.value)
            case Error(e):
                return Error(e)

    async def search(self, query: str, *, first: int = 20) -> Result[Page[Product], CommerceError]:
        return await read(self._ctx.retry, lambda: self._search(query, first))

    async def invalidate(self, product_id: str, handle: str | None = None) -> None:
        logger.debug("Dropping cached product %s", product_id)
        await self._products.invalidate(product_id)
        if handle is not None:
            await self._handles.invalidate(handle)
        await self._pages.invalidate_pattern("page:*")

    # ─── origin ───────────────────────────────────────────────────────────────

    async def _fetch(self, product_id: str) -> Result[Product, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get(product_id))

    async def _fetch_handle(self, handle: str) -> Result[Product, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get_by_handle(handle))

    async def _fetch_page(
        self, key: tuple[int, str | None]
    ) -> Result[Page[Product], CommerceError]:
        first, after = key
        return await read(self._ctx.retry, lambda: self._page(first, after))

    async def _get(self, product_id: str) -> Product:
        data = await self._ctx.client.storefront("GET", f"/products/{product_id}")
        return mapping.product(data["product"])

    async def _get_by_handle(self, handle: str) -> Product:
        data = await self._ctx.client.storefront("GET", "/products", params={"handle": handle})
        for item in data.get("products") or ():
            if item.get("handle") == handle:
                return mapping.product(item)
        raise NotFoundError(f"Product {handle} not found", entity="product", id=handle)

    async def _page(self, first: int, after: str | None) -> Page[Product]:
        params: dict[str, str | int] = {"limit": check_page_size(first)}
        if after is not None:
            params["page_info"] = after
        data = await self._ctx.client.storefront("GET", "/products", params=params)
        return Page(
            items=tuple(mapping.product(p) for p in data.get("products") or ()),
            next_cursor=data.get("next_page_info"),
            total=data.get("count"),
        )

    async def _search(self, query: str, first: int) -> Page[Product]:
        term = query.strip()
        if not term:
            raise ValidationError("Search query is empty", field="query")
        data = await self._ctx.client.storefront(
            "GET", "/products/search", params={"q": term, "limit": check_page_size(first)}
        )
        return Page(
            items=tuple(mapping.product(p) for p in data.get("products") or ()),
            next_cursor=data.get("next_page_info"),
            total=data.get("count"),
        )


__all__ = ("Catalog",)
