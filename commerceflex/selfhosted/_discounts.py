"""
Self-hosted discount codes and usage reservations.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, cast

from kungfu import Result
from sqlalchemy import or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from commerceflex.model import (
    Cart,
    CommerceError,
    DiscountCode,
    NotFoundError,
    ValidationError,
    normalize_code,
)
from commerceflex.provider import guarded, read
from commerceflex.selfhosted import _convert as convert
from commerceflex.selfhosted._cart import Carts, load_cart
from commerceflex.selfhosted._context import Context
from commerceflex.selfhosted._tables import DiscountRow

logger = logging.getLogger(__name__)


async def reserve(session: AsyncSession, tenant_id: str, codes: Sequence[str]) -> None:
    """
    Count one use of each code. A code whose limit was reached since it
    was applied fails the whole reservation.
    """
    for code in codes:
        cursor = cast(
            CursorResult[Any],
            await session.execute(
                update(DiscountRow)
                .where(
                    DiscountRow.tenant_id == tenant_id,
                    DiscountRow.code == code,
                    or_(
                        DiscountRow.usage_limit.is_(None),
                        DiscountRow.usage_count < DiscountRow.usage_limit,
                    ),
                )
                .values(usage_count=DiscountRow.usage_count + 1)
            ),
        )
        if cursor.rowcount != 1:
            raise ValidationError(f"Discount {code} is no longer available", field="code")


async def release(session: AsyncSession, tenant_id: str, codes: Sequence[str]) -> None:
    for code in codes:
        await session.execute(
            update(DiscountRow)
            .where(
                DiscountRow.tenant_id == tenant_id,
                DiscountRow.code == code,
                DiscountRow.usage_count > 0,
            )
            .values(usage_count=DiscountRow.usage_count - 1)
        )
    if codes:
        logger.debug("Released discount reservation for %s", ", ".join(codes))


class Discounts:
    def __init__(self, ctx: Context, carts: Carts) -> None:
        self._ctx = ctx
        self._carts = carts

    async def validate(
        self, code: str, *, cart_id: str | None = None
    ) -> Result[DiscountCode, CommerceError]:
        return await read(self._ctx.retry, lambda: self._validate(code, cart_id))

    async def apply(
        self, cart_id: str, code: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._apply(cart_id, code, expected_version))

    async def remove(
        self, cart_id: str, code: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._remove(cart_id, code, expected_version))

    async def _validate(self, code: str, cart_id: str | None) -> DiscountCode:
        normalized = normalize_code(code)
        tenant = self._ctx.tenant_id
        now = self._ctx.clock()
        async with self._ctx.session() as session:
            row = await session.scalar(
                select(DiscountRow).where(
                    DiscountRow.tenant_id == tenant, DiscountRow.code == normalized
                )
            )
            if row is None:
                raise NotFoundError(
                    f"Discount code {normalized} not found", entity="discount", id=normalized
                )
            discount = convert.discount(row)

            if cart_id is None:
                # Without a cart only the code itself is checked
                if discount.exhausted:
                    raise ValidationError(f"Discount {normalized}: usage limit reached", field="code")
                if discount.starts_at is not None and now < discount.starts_at:
                    raise ValidationError(f"Discount {normalized}: not started", field="code")
                if discount.ends_at is not None and now >= discount.ends_at:
                    raise ValidationError(f"Discount {normalized}: expired", field="code")
                return discount

            cart = await load_cart(session, tenant, cart_id, now)

        reason = discount.rejection(cart.subtotal, now)
        if reason is not None:
            raise ValidationError(f"Discount {normalized}: {reason}", field="code")
        return discount

    async def _apply(self, cart_id: str, code: str, expected_version: int | None) -> Cart:
        normalized = normalize_code(code)

        def add(codes: list[str]) -> list[str]:
            return codes if normalized in codes else [*codes, normalized]

        return await self._carts.edit_codes(cart_id, add, expected_version)

    async def _remove(self, cart_id: str, code: str, expected_version: int | None) -> Cart:
        normalized = normalize_code(code)

        def drop(codes: list[str]) -> list[str]:
            if normalized not in codes:
                raise NotFoundError(
                    f"Discount {normalized} is not applied to cart {cart_id}",
                    entity="discount",
                    id=normalized,
                )
            return [c for c in codes if c != normalized]

        return await self._carts.edit_codes(cart_id, drop, expected_version)


__all__ = ("Discounts", "reserve", "release")
