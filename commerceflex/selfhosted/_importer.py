"""
Bulk import into the self-hosted schema.

Every write is an upsert keyed by ``(tenant_id, external_id)`` where the
external id is the record's id in the source backend, so re-running a page
converges on the same rows instead of duplicating them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex._sql import insert_for
from commerceflex.model import Customer, Order, Product
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._catalog import load_products
from commerceflex.selfhosted._context import Context, new_id
from commerceflex.selfhosted._tables import (
    Base,
    CustomerRow,
    OrderRow,
    ProductRow,
    VariantRow,
)

logger = logging.getLogger(__name__)

ENTITIES = {"products": ProductRow, "customers": CustomerRow, "orders": OrderRow}


class Importer:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx
        self._insert = insert_for(ctx.db.dialect)

    async def _upsert(
        self, session: AsyncSession, model: type[Base], values: dict[str, Any]
    ) -> str:
        """Insert or refresh one row; returns the local id."""
        updates = {k: v for k, v in values.items() if k not in ("id", "tenant_id", "created_at")}
        stmt = (
            self._insert(model)
            .values(**values)
            .on_conflict_do_update(index_elements=["tenant_id", "external_id"], set_=updates)
        )
        await session.execute(stmt)
        local_id = await session.scalar(
            select(model.id).where(  # type: ignore[attr-defined]
                model.tenant_id == values["tenant_id"],  # type: ignore[attr-defined]
                model.external_id == values["external_id"],  # type: ignore[attr-defined]
            )
        )
        assert local_id is not None
        return local_id

    async def _local_ids(
        self, session: AsyncSession, model: type[Base], external_ids: Sequence[str]
    ) -> dict[str, str]:
        if not external_ids:
            return {}
        rows = await session.execute(
            select(model.external_id, model.id).where(  # type: ignore[attr-defined]
                model.tenant_id == self._ctx.tenant_id,  # type: ignore[attr-defined]
                model.external_id.in_(external_ids),  # type: ignore[attr-defined]
            )
        )
        return {ext: local for ext, local in rows.tuples()}

    # ─── writes ───────────────────────────────────────────────────────────────

    async def products(self, items: Sequence[Product]) -> int:
        tenant = self._ctx.tenant_id
        now = self._ctx.clock()
        async with self._ctx.transaction() as session:
            for product in items:
                product_id = await self._upsert(
                    session,
                    ProductRow,
                    {
                        "id": new_id(),
                        "tenant_id": tenant,
                        "external_id": product.id,
                        "handle": product.handle,
                        "title": product.title,
                        "description": product.description,
                        "status": product.status.value,
                        "vendor": product.vendor,
                        "product_type": product.product_type,
                        "tags": list(product.tags),
                        "created_at": product.created_at or now,
                        "updated_at": product.updated_at or now,
                    },
                )
                for variant in product.variants:
                    await self._upsert(
                        session,
                        VariantRow,
                        {
                            "id": new_id(),
                            "tenant_id": tenant,
                            "external_id": variant.id,
                            "product_id": product_id,
                            "title": variant.title,
                            "sku": variant.sku,
                            "price": variant.price.amount,
                            "currency": variant.price.currency,
                            "inventory": variant.inventory,
                            "position": variant.position,
                        },
                    )
                # Variants removed at the source since the last pass
                await session.execute(
                    delete(VariantRow).where(
                        VariantRow.tenant_id == tenant,
                        VariantRow.product_id == product_id,
                        VariantRow.external_id.not_in([v.id for v in product.variants]),
                    )
                )
        logger.debug("Upserted %d products for %s", len(items), tenant)
        return len(items)

    async def customers(self, items: Sequence[Customer]) -> int:
        tenant = self._ctx.tenant_id
        now = self._ctx.clock()
        async with self._ctx.transaction() as session:
            for customer in items:
                await self._upsert(
                    session,
                    CustomerRow,
                    {
                        "id": new_id(),
                        "tenant_id": tenant,
                        "external_id": customer.id,
                        "email": customer.email.strip().lower(),
                        "first_name": customer.first_name,
                        "last_name": customer.last_name,
                        "phone": customer.phone,
                        "addresses": [a.to_dict() for a in customer.addresses],
                        "accepts_marketing": customer.accepts_marketing,
                        "created_at": customer.created_at or now,
                        "updated_at": now,
                    },
                )
        logger.debug("Upserted %d customers for %s", len(items), tenant)
        return len(items)

    async def orders(self, items: Sequence[Order]) -> int:
        tenant = self._ctx.tenant_id
        now = self._ctx.clock()
        async with self._ctx.transaction() as session:
            variants = await self._local_ids(
                session,
                VariantRow,
                [li.variant_id for o in items for li in o.line_items if li.variant_id],
            )
            products = await self._local_ids(
                session,
                ProductRow,
                [li.product_id for o in items for li in o.line_items if li.product_id],
            )
            customers = await self._local_ids(
                session, CustomerRow, [o.customer_id for o in items if o.customer_id]
            )
            for order in items:
                line_items = []
                for item in order.line_items:
                    data = convert.line_item_dict(item)
                    data["variant_id"] = variants.get(item.variant_id or "")
                    data["product_id"] = products.get(item.product_id or "")
                    line_items.append(data)
                await self._upsert(
                    session,
                    OrderRow,
                    {
                        "id": new_id(),
                        "tenant_id": tenant,
                        "external_id": order.id,
                        "number": order.number,
                        "currency": order.currency,
                        "line_items": line_items,
                        "subtotal": order.subtotal.amount,
                        "discount": order.discount.amount,
                        "shipping": order.shipping.amount,
                        "tax": order.tax.amount,
                        "total": order.total.amount,
                        "refunded": order.refunded.amount if order.refunded else 0,
                        "financial_status": order.financial_status.value,
                        "fulfillment_status": order.fulfillment_status.value,
                        "email": order.email,
                        "customer_id": customers.get(order.customer_id or ""),
                        "created_at": order.created_at or now,
                        "updated_at": order.updated_at or now,
                        "cancelled_at": order.cancelled_at,
                        "cancel_reason": order.cancel_reason,
                    },
                )
        logger.debug("Upserted %d orders for %s", len(items), tenant)
        return len(items)

    # ─── reads for verification ───────────────────────────────────────────────

    async def counts(self) -> dict[str, int]:
        tenant = self._ctx.tenant_id
        result: dict[str, int] = {}
        async with self._ctx.session() as session:
            for entity, model in ENTITIES.items():
                result[entity] = await session.scalar(
                    select(func.count()).select_from(model).where(model.tenant_id == tenant)  # type: ignore[attr-defined]
                ) or 0
        return result

    async def product_by_external(self, external_id: str) -> Product | None:
        tenant = self._ctx.tenant_id
        async with self._ctx.session() as session:
            row = await session.scalar(
                select(ProductRow).where(
                    ProductRow.tenant_id == tenant, ProductRow.external_id == external_id
                )
            )
            if row is None:
                return None
            [product] = await load_products(session, tenant, [row])
            return product

    async def customer_by_external(self, external_id: str) -> Customer | None:
        async with self._ctx.session() as session:
            row = await session.scalar(
                select(CustomerRow).where(
                    CustomerRow.tenant_id == self._ctx.tenant_id,
                    CustomerRow.external_id == external_id,
                )
            )
        return convert.customer(row) if row is not None else None

    async def order_by_external(self, external_id: str) -> Order | None:
        async with self._ctx.session() as session:
            row = await session.scalar(
                select(OrderRow).where(
                    OrderRow.tenant_id == self._ctx.tenant_id,
                    OrderRow.external_id == external_id,
                )
            )
        return convert.order(row) if row is not None else None


__all__ = ("Importer", "ENTITIES")
