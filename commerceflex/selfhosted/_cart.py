"""
Self-hosted carts.

Every mutation is one transaction that starts with a compare-and-swap on
``carts.version``; a stale ``expected_version`` or a cart locked by a live
checkout session fails before anything else is written.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import Any, cast

from kungfu import Result
from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex.model import (
    Cart,
    CommerceError,
    ConflictError,
    DiscountCode,
    Money,
    NotFoundError,
    ProviderPermanentError,
    ValidationError,
    normalize_code,
    total,
)
from commerceflex.provider import guarded, read, writes
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._context import Context, new_id
from commerceflex.selfhosted._tables import (
    CartLineRow,
    CartRow,
    CheckoutSessionRow,
    DiscountRow,
    ProductRow,
    VariantRow,
)

logger = logging.getLogger(__name__)

type Change = Callable[[AsyncSession, CartRow], Awaitable[None]]
type Sweep = Callable[[str], Awaitable[bool]]


# ═══════════════════════════════════════════════════════════════════════════════
# Loading
# ═══════════════════════════════════════════════════════════════════════════════


async def discount_rows(
    session: AsyncSession, tenant_id: str, codes: Sequence[str]
) -> dict[str, DiscountRow]:
    if not codes:
        return {}
    rows = await session.scalars(
        select(DiscountRow).where(DiscountRow.tenant_id == tenant_id, DiscountRow.code.in_(codes))
    )
    return {r.code: r for r in rows}


async def load_cart(session: AsyncSession, tenant_id: str, cart_id: str, now: datetime) -> Cart:
    row = await session.get(CartRow, cart_id)
    if row is None or row.tenant_id != tenant_id:
        raise NotFoundError(f"Cart {cart_id} not found", entity="cart", id=cart_id)

    line_rows = await session.scalars(
        select(CartLineRow).where(CartLineRow.cart_id == cart_id).order_by(CartLineRow.position)
    )
    lines = [convert.cart_line(r, row.currency) for r in line_rows]
    subtotal = total([line.line_total for line in lines], row.currency)

    # Codes that stopped qualifying (expired, limit reached) drop out of pricing
    by_code = await discount_rows(session, tenant_id, row.discount_codes or [])
    discounts: list[DiscountCode] = []
    for code in row.discount_codes or []:
        found = by_code.get(code)
        if found is None:
            continue
        discount = convert.discount(found)
        if discount.rejection(subtotal, now) is None:
            discounts.append(discount)

    return Cart.priced(
        id=row.id,
        currency=row.currency,
        lines=lines,
        discounts=discounts,
        version=row.version,
        attributes=row.attributes or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def variant_row(session: AsyncSession, tenant_id: str, variant_id: str) -> VariantRow:
    row = await session.get(VariantRow, variant_id)
    if row is None or row.tenant_id != tenant_id:
        raise NotFoundError(f"Variant {variant_id} not found", entity="variant", id=variant_id)
    return row


async def bump_version(
    session: AsyncSession,
    tenant_id: str,
    cart_id: str,
    expected_version: int | None,
    now: datetime,
) -> bool:
    """
    Compare-and-swap on the cart version. Fails when the version moved or
    a live checkout session holds the cart.
    """
    locked = select(CheckoutSessionRow.active_cart_id).where(
        CheckoutSessionRow.active_cart_id.is_not(None)
    )
    stmt = (
        update(CartRow)
        .where(CartRow.id == cart_id, CartRow.tenant_id == tenant_id, CartRow.id.not_in(locked))
        .values(version=CartRow.version + 1, updated_at=now)
    )
    if expected_version is not None:
        stmt = stmt.where(CartRow.version == expected_version)
    cursor = cast(CursorResult[Any], await session.execute(stmt))
    return cursor.rowcount == 1


async def cart_miss(session: AsyncSession, tenant_id: str, cart_id: str) -> CommerceError:
    """Why ``bump_version`` failed."""
    row = await session.get(CartRow, cart_id)
    if row is None or row.tenant_id != tenant_id:
        return NotFoundError(f"Cart {cart_id} not found", entity="cart", id=cart_id)
    active = await session.scalar(
        select(CheckoutSessionRow.id).where(CheckoutSessionRow.active_cart_id == cart_id)
    )
    if active is not None:
        return ConflictError(
            f"Cart {cart_id} is locked by checkout {active}", current_version=row.version
        )
    logger.info("Cart %s version conflict (current %d)", cart_id, row.version)
    return ConflictError(
        f"Cart {cart_id} changed; current version is {row.version}",
        current_version=row.version,
    )


def _check_stock(variant: VariantRow, quantity: int) -> None:
    if variant.inventory is not None and quantity > variant.inventory:
        raise ProviderPermanentError(
            f"Only {variant.inventory} of {variant.sku or variant.id} available"
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Carts
# ═══════════════════════════════════════════════════════════════════════════════


class Carts:
    def __init__(self, ctx: Context, *, sweep: Sweep | None = None) -> None:
        self._ctx = ctx
        # Expires overdue checkout sessions still holding a cart
        self._sweep = sweep

    # ─── public ───────────────────────────────────────────────────────────────

    async def create(
        self, *, attributes: Mapping[str, str] | None = None
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._create(attributes))

    async def get(self, cart_id: str) -> Result[Cart, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get(cart_id))

    async def add_line(
        self,
        cart_id: str,
        variant_id: str,
        quantity: int,
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._add_line(cart_id, variant_id, quantity, expected_version))

    async def update_line(
        self,
        cart_id: str,
        line_id: str,
        quantity: int,
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._update_line(cart_id, line_id, quantity, expected_version))

    async def remove_line(
        self, cart_id: str, line_id: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._update_line(cart_id, line_id, 0, expected_version))

    async def set_attributes(
        self,
        cart_id: str,
        attributes: Mapping[str, str],
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._set_attributes(cart_id, attributes, expected_version))

    async def set_discount_codes(
        self,
        cart_id: str,
        codes: Sequence[str],
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self.replace_codes(cart_id, codes, expected_version))

    # ─── implementation ───────────────────────────────────────────────────────

    async def _get(self, cart_id: str) -> Cart:
        async with self._ctx.session() as session:
            return await load_cart(session, self._ctx.tenant_id, cart_id, self._ctx.clock())

    @writes
    async def _create(self, attributes: Mapping[str, str] | None) -> Cart:
        now = self._ctx.clock()
        row = CartRow(
            id=new_id(),
            tenant_id=self._ctx.tenant_id,
            currency=self._ctx.options.currency,
            attributes=_clean_attributes(attributes or {}),
            discount_codes=[],
            version=0,
            created_at=now,
            updated_at=now,
        )
        async with self._ctx.transaction() as session:
            session.add(row)
        return await self._get(row.id)

    @writes
    async def mutate(self, cart_id: str, expected_version: int | None, change: Change) -> Cart:
        """Version CAS, then ``change`` inside the same transaction."""
        try:
            await self._write(cart_id, expected_version, change)
        except ConflictError:
            # A session past its TTL still holds the lock until someone settles it
            if self._sweep is None or not await self._sweep(cart_id):
                raise
            logger.info("Released cart %s from an overdue checkout", cart_id)
            await self._write(cart_id, expected_version, change)
        return await self._get(cart_id)

    async def _write(self, cart_id: str, expected_version: int | None, change: Change) -> None:
        tenant = self._ctx.tenant_id
        async with self._ctx.transaction() as session:
            if not await bump_version(session, tenant, cart_id, expected_version, self._ctx.clock()):
                raise await cart_miss(session, tenant, cart_id)
            row = await session.get(CartRow, cart_id)
            assert row is not None
            await change(session, row)

    async def _add_line(
        self, cart_id: str, variant_id: str, quantity: int, expected_version: int | None
    ) -> Cart:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", field="quantity")
        tenant = self._ctx.tenant_id

        async def change(session: AsyncSession, cart: CartRow) -> None:
            variant = await variant_row(session, tenant, variant_id)
            if variant.currency != cart.currency:
                raise ValidationError(
                    f"Variant priced in {variant.currency}, cart is in {cart.currency}",
                    field="variant_id",
                )
            existing = await session.scalar(
                select(CartLineRow).where(
                    CartLineRow.cart_id == cart.id, CartLineRow.variant_id == variant_id
                )
            )
            if existing is not None:
                _check_stock(variant, existing.quantity + quantity)
                existing.quantity += quantity
                existing.unit_price = variant.price
                return

            _check_stock(variant, quantity)
            last = await session.scalar(
                select(func.max(CartLineRow.position)).where(CartLineRow.cart_id == cart.id)
            )
            title = await _line_title(session, variant)
            session.add(
                CartLineRow(
                    id=new_id(),
                    cart_id=cart.id,
                    product_id=variant.product_id,
                    variant_id=variant.id,
                    title=title,
                    sku=variant.sku,
                    quantity=quantity,
                    unit_price=variant.price,
                    position=(last or 0) + 1,
                )
            )

        return await self.mutate(cart_id, expected_version, change)

    async def _update_line(
        self, cart_id: str, line_id: str, quantity: int, expected_version: int | None
    ) -> Cart:
        if quantity < 0:
            raise ValidationError("quantity cannot be negative", field="quantity")
        tenant = self._ctx.tenant_id

        async def change(session: AsyncSession, cart: CartRow) -> None:
            line = await session.get(CartLineRow, line_id)
            if line is None or line.cart_id != cart.id:
                raise NotFoundError(f"Line {line_id} not in cart", entity="cart_line", id=line_id)
            if quantity == 0:
                await session.execute(delete(CartLineRow).where(CartLineRow.id == line_id))
                return
            _check_stock(await variant_row(session, tenant, line.variant_id), quantity)
            line.quantity = quantity

        return await self.mutate(cart_id, expected_version, change)

    async def _set_attributes(
        self, cart_id: str, attributes: Mapping[str, str], expected_version: int | None
    ) -> Cart:
        cleaned = _clean_attributes(attributes)

        async def change(session: AsyncSession, cart: CartRow) -> None:
            cart.attributes = cleaned

        return await self.mutate(cart_id, expected_version, change)

    async def replace_codes(
        self, cart_id: str, codes: Sequence[str], expected_version: int | None
    ) -> Cart:
        return await self.edit_codes(cart_id, lambda _: codes, expected_version)

    async def edit_codes(
        self,
        cart_id: str,
        edit: Callable[[list[str]], Sequence[str]],
        expected_version: int | None,
    ) -> Cart:
        """Rewrite the applied codes from the ones stored, under the cart CAS."""
        tenant = self._ctx.tenant_id
        now = self._ctx.clock()

        async def change(session: AsyncSession, cart: CartRow) -> None:
            stored = list(cart.discount_codes or [])
            wanted = list(dict.fromkeys(normalize_code(c) for c in edit(stored)))
            line_rows = await session.scalars(
                select(CartLineRow).where(CartLineRow.cart_id == cart.id)
            )
            subtotal = total(
                [Money(r.unit_price, cart.currency).times(r.quantity) for r in line_rows],
                cart.currency,
            )
            found = await discount_rows(session, tenant, wanted)
            previous = set(cart.discount_codes or [])
            kept: list[str] = []
            for code in wanted:
                row = found.get(code)
                reason = (
                    "unknown code"
                    if row is None
                    else convert.discount(row).rejection(subtotal, now)
                )
                if reason is None:
                    kept.append(code)
                elif code in previous:
                    # Applied earlier and lapsed since; dropped without failing the call
                    logger.info("Dropping lapsed discount %s from cart %s: %s", code, cart.id, reason)
                else:
                    raise ValidationError(f"Discount {code}: {reason}", field="code")
            cart.discount_codes = kept

        return await self.mutate(cart_id, expected_version, change)


def _clean_attributes(attributes: Mapping[str, str]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in attributes.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("Attribute keys must be non-empty strings", field="attributes")
        cleaned[key] = str(value)
    return cleaned


async def _line_title(session: AsyncSession, variant: VariantRow) -> str:
    product_title = await session.scalar(
        select(ProductRow.title).where(ProductRow.id == variant.product_id)
    )
    if product_title and variant.title and variant.title != "Default Title":
        return f"{product_title} - {variant.title}"
    return product_title or variant.title


__all__ = ("Carts", "load_cart", "discount_rows", "variant_row", "bump_version", "cart_miss")
