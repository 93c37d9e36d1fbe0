"""
Self-hosted catalog reads.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence

from kungfu import Result
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex.model import CommerceError, NotFoundError, Page, Product, ValidationError
from commerceflex.provider import read
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._context import (
    Context,
    check_page_size,
    decode_cursor,
    encode_cursor,
)
from commerceflex.selfhosted._tables import ProductRow, VariantRow


async def load_products(
    session: AsyncSession, tenant_id: str, rows: Sequence[ProductRow]
) -> list[Product]:
    """Attach variants to product rows with one query."""
    if not rows:
        return []
    variants = await session.scalars(
        select(VariantRow).where(
            VariantRow.tenant_id == tenant_id,
            VariantRow.product_id.in_([r.id for r in rows]),
        )
    )
    by_product: dict[str, list[VariantRow]] = defaultdict(list)
    for v in variants:
        by_product[v.product_id].append(v)
    return [convert.product(r, by_product[r.id]) for r in rows]


class Catalog:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx

    async def get(self, product_id: str) -> Result[Product, CommerceError]:
        return await read(
            self._ctx.retry, lambda: self._one(ProductRow.id == product_id, product_id)
        )

    async def get_by_handle(self, handle: str) -> Result[Product, CommerceError]:
        return await read(self._ctx.retry, lambda: self._one(ProductRow.handle == handle, handle))

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Product], CommerceError]:
        return await read(self._ctx.retry, lambda: self._page(first, after, None))

    async def search(self, query: str, *, first: int = 20) -> Result[Page[Product], CommerceError]:
        return await read(self._ctx.retry, lambda: self._page(first, None, query))

    async def _one(self, clause: object, ref: str) -> Product:
        tenant = self._ctx.tenant_id
        async with self._ctx.session() as session:
            row = await session.scalar(
                select(ProductRow).where(ProductRow.tenant_id == tenant, clause)
            )
            if row is None:
                raise NotFoundError(f"Product {ref} not found", entity="product", id=ref)
            [product] = await load_products(session, tenant, [row])
            return product

    async def _page(self, first: int, after: str | None, query: str | None) -> Page[Product]:
        check_page_size(first)
        tenant = self._ctx.tenant_id
        scope = [ProductRow.tenant_id == tenant]

        if query is not None:
            term = query.strip()
            if not term:
                raise ValidationError("Search query is empty", field="query")
            pattern = f"%{term.lower()}%"
            scope += [
                ProductRow.status == "active",
                or_(
                    func.lower(ProductRow.title).like(pattern),
                    func.lower(ProductRow.handle).like(pattern),
                    func.lower(ProductRow.description).like(pattern),
                ),
            ]

        async with self._ctx.session() as session:
            count = await session.scalar(select(func.count()).select_from(ProductRow).where(*scope))

            stmt = select(ProductRow).where(*scope).order_by(ProductRow.id).limit(first + 1)
            if after is not None:
                stmt = stmt.where(ProductRow.id > decode_cursor(after))
            rows = list(await session.scalars(stmt))

            more = len(rows) > first
            rows = rows[:first]
            products = await load_products(session, tenant, rows)

        return Page(
            items=tuple(products),
            next_cursor=encode_cursor(rows[-1].id) if more else None,
            total=count,
        )


__all__ = ("Catalog", "load_products")
