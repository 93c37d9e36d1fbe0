"""
Managed carts and discount codes.

The platform applies cart mutations unconditionally, so a caller-supplied
``expected_version`` is compared against a fresh read first. The window
between that read and the write is the platform's own; two storefront
requests racing inside it both land.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from kungfu import Result

from commerceflex.managed import _mapping as mapping
from commerceflex.managed._client import Context
from commerceflex.model import (
    Cart,
    CommerceError,
    ConflictError,
    DiscountCode,
    NotFoundError,
    ProviderPermanentError,
    ValidationError,
    normalize_code,
)
from commerceflex.provider import guarded, read, writes

logger = logging.getLogger(__name__)


def _user_errors(data: Mapping[str, Any]) -> None:
    """The platform reports rejected mutations in the body of a 200."""
    errors = data.get("user_errors") or ()
    if errors:
        messages = "; ".join(str(e.get("message") or e) for e in errors)
        raise ProviderPermanentError(f"Cart update rejected: {messages}")


def window_rejection(code: DiscountCode, now: datetime) -> str | None:
    if code.exhausted:
        return "usage limit reached"
    if code.starts_at is not None and now < code.starts_at:
        return "not started"
    if code.ends_at is not None and now >= code.ends_at:
        return "expired"
    return None


class Carts:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx

    async def create(
        self, *, attributes: Mapping[str, str] | None = None
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._create(attributes or {}))

    async def get(self, cart_id: str) -> Result[Cart, CommerceError]:
        return await read(self._ctx.retry, lambda: self.fetch(cart_id))

    async def add_line(
        self,
        cart_id: str,
        variant_id: str,
        quantity: int,
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        async def add() -> Cart:
            if quantity < 1:
                raise ValidationError("quantity must be at least 1", field="quantity")
            return await self.mutate(
                cart_id,
                expected_version,
                "POST",
                f"/carts/{cart_id}/lines",
                json={"lines": [{"merchandise_id": variant_id, "quantity": quantity}]},
            )

        return await guarded(add)

    async def update_line(
        self,
        cart_id: str,
        line_id: str,
        quantity: int,
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        async def update() -> Cart:
            if quantity < 0:
                raise ValidationError("quantity cannot be negative", field="quantity")
            if quantity == 0:
                return await self._remove(cart_id, line_id, expected_version)
            return await self.mutate(
                cart_id,
                expected_version,
                "PUT",
                f"/carts/{cart_id}/lines/{line_id}",
                json={"quantity": quantity},
            )

        return await guarded(update)

    async def remove_line(
        self, cart_id: str, line_id: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self._remove(cart_id, line_id, expected_version))

    async def set_attributes(
        self,
        cart_id: str,
        attributes: Mapping[str, str],
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        return await guarded(
            lambda: self.mutate(
                cart_id,
                expected_version,
                "PUT",
                f"/carts/{cart_id}/attributes",
                json={"attributes": [{"key": k, "value": str(v)} for k, v in attributes.items()]},
            )
        )

    async def set_discount_codes(
        self,
        cart_id: str,
        codes: Sequence[str],
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]:
        return await guarded(lambda: self.replace_codes(cart_id, codes, expected_version))

    # ─── internals ────────────────────────────────────────────────────────────

    async def fetch(self, cart_id: str) -> Cart:
        data = await self._ctx.client.storefront("GET", f"/carts/{cart_id}")
        if not data.get("cart"):
            raise NotFoundError(f"Cart {cart_id} not found", entity="cart", id=cart_id)
        return mapping.cart(data["cart"])

    async def lookup_code(self, code: str) -> DiscountCode:
        data = await self._ctx.client.storefront(
            "GET", "/discount_codes/lookup", params={"code": code}
        )
        if not data.get("discount_code"):
            raise NotFoundError(f"Discount {code} not found", entity="discount", id=code)
        return mapping.discount(data["discount_code"])

    @writes
    async def _create(self, attributes: Mapping[str, str]) -> Cart:
        data = await self._ctx.client.storefront(
            "POST",
            "/carts",
            json={"cart": {"attributes": [{"key": k, "value": str(v)} for k, v in attributes.items()]}},
        )
        _user_errors(data)
        return mapping.cart(data["cart"])

    async def _remove(self, cart_id: str, line_id: str, expected_version: int | None) -> Cart:
        return await self.mutate(
            cart_id, expected_version, "DELETE", f"/carts/{cart_id}/lines/{line_id}"
        )

    @writes
    async def mutate(
        self,
        cart_id: str,
        expected_version: int | None,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Cart:
        if expected_version is not None:
            current = await self.fetch(cart_id)
            if current.version != expected_version:
                raise ConflictError(
                    f"Cart {cart_id} changed since version {expected_version}",
                    current_version=current.version,
                )
        data = await self._ctx.client.storefront(method, path, **kwargs)
        _user_errors(data)
        return mapping.cart(data["cart"])

    async def replace_codes(
        self, cart_id: str, codes: Sequence[str], expected_version: int | None
    ) -> Cart:
        wanted = list(dict.fromkeys(normalize_code(c) for c in codes))
        current = await self.fetch(cart_id)
        now = self._ctx.clock()
        for code in wanted:
            if code in current.discount_codes:
                continue
            try:
                discount = await self.lookup_code(code)
            except NotFoundError:
                raise ValidationError(f"Discount {code}: unknown code", field="code") from None
            reason = discount.rejection(current.subtotal, now)
            if reason is not None:
                raise ValidationError(f"Discount {code}: {reason}", field="code")

        cart = await self.mutate(
            cart_id,
            expected_version,
            "PUT",
            f"/carts/{cart_id}/discount_codes",
            json={"discount_codes": wanted},
        )
        dropped = set(wanted) - set(cart.discount_codes)
        if dropped:
            logger.info("Platform did not apply %s to cart %s", ", ".join(sorted(dropped)), cart_id)
        return cart


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
        async def apply() -> Cart:
            normalized = normalize_code(code)
            cart = await self._carts.fetch(cart_id)
            codes = [*cart.discount_codes]
            if normalized not in codes:
                codes.append(normalized)
            return await self._carts.replace_codes(cart_id, codes, expected_version)

        return await guarded(apply)

    async def remove(
        self, cart_id: str, code: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]:
        async def remove() -> Cart:
            normalized = normalize_code(code)
            cart = await self._carts.fetch(cart_id)
            if normalized not in cart.discount_codes:
                raise NotFoundError(
                    f"Discount {normalized} is not on cart {cart_id}", entity="discount", id=normalized
                )
            codes = [c for c in cart.discount_codes if c != normalized]
            return await self._carts.replace_codes(cart_id, codes, expected_version)

        return await guarded(remove)

    async def _validate(self, code: str, cart_id: str | None) -> DiscountCode:
        normalized = normalize_code(code)
        discount = await self._carts.lookup_code(normalized)
        now = self._ctx.clock()
        if cart_id is None:
            reason = window_rejection(discount, now)
        else:
            cart = await self._carts.fetch(cart_id)
            reason = discount.rejection(cart.subtotal, now)
        if reason is not None:
            raise ValidationError(f"Discount {normalized}: {reason}", field="code")
        return discount


__all__ = ("Carts", "Discounts", "window_rejection")
