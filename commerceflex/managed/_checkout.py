"""
Managed checkout: the platform hosts the payment page.

A managed checkout session is a view over the cart: its id is the cart id,
its target is the cart's checkout URL, and it completes when the platform
has turned the cart into an order. Shipping, tax and payment are collected
on the hosted page, so ``advance`` has nothing to drive and ``complete``
only reports the order once the buyer has paid.
"""

from __future__ import annotations

from kungfu import Result, Ok

from commerceflex.managed import _mapping as mapping
from commerceflex.managed._cart import Carts
from commerceflex.managed._client import Context
from commerceflex.model import (
    Address,
    Cart,
    CheckoutSession,
    CheckoutStatus,
    CheckoutTarget,
    CheckoutTotals,
    CommerceError,
    ConflictError,
    Money,
    NotFoundError,
    Order,
    ProviderPermanentError,
    TargetKind,
    ValidationError,
)
from commerceflex.provider import guarded, read, writes


def _session(cart: Cart) -> CheckoutSession:
    zero = Money.zero(cart.currency)
    return CheckoutSession(
        id=cart.id,
        cart_id=cart.id,
        status=CheckoutStatus.AWAITING_PAYMENT,
        version=cart.version,
        currency=cart.currency,
        totals=CheckoutTotals(
            subtotal=cart.subtotal,
            discount=cart.total_discount,
            shipping=zero,
            tax=zero,
            total=cart.total,
        ),
        target=CheckoutTarget(TargetKind.REDIRECT, url=cart.checkout_url),
        created_at=cart.created_at,
    )


def _completed(session_id: str, order: Order) -> CheckoutSession:
    return CheckoutSession(
        id=session_id,
        cart_id=session_id,
        status=CheckoutStatus.COMPLETED,
        version=mapping.version_of(order.updated_at),
        currency=order.currency,
        totals=CheckoutTotals(
            subtotal=order.subtotal,
            discount=order.discount,
            shipping=order.shipping,
            tax=order.tax,
            total=order.total,
        ),
        email=order.email,
        order_id=order.id,
        created_at=order.created_at,
    )


class Checkout:
    def __init__(self, ctx: Context, carts: Carts) -> None:
        self._ctx = ctx
        self._carts = carts

    async def create(self, cart_id: str) -> Result[CheckoutSession, CommerceError]:
        return await guarded(lambda: self._create(cart_id))

    async def get_target(self, session_id: str) -> Result[CheckoutTarget, CommerceError]:
        return await read(self._ctx.retry, lambda: self._target(session_id))

    async def advance(
        self,
        session_id: str,
        *,
        expected_version: int | None = None,
        email: str | None = None,
        shipping_address: Address | None = None,
    ) -> Result[CheckoutSession, CommerceError]:
        async def advance() -> CheckoutSession:
            raise ProviderPermanentError(
                f"Checkout {session_id} is hosted; shipping and tax are collected on the platform's page"
            )

        return await guarded(advance)

    async def complete(
        self,
        session_id: str,
        *,
        idempotency_key: str,
        payment_method: str | None = None,
    ) -> Result[Order, CommerceError]:
        return await guarded(lambda: self._complete(session_id, idempotency_key))

    async def get_status(self, session_id: str) -> Result[CheckoutSession, CommerceError]:
        return await read(self._ctx.retry, lambda: self._status(session_id))

    async def expire_stale(self) -> Result[int, CommerceError]:
        # Hosted checkouts are expired by the platform
        return Ok(0)

    @writes
    async def _create(self, cart_id: str) -> CheckoutSession:
        cart = await self._carts.fetch(cart_id)
        if not cart.lines:
            raise ValidationError(f"Cart {cart_id} is empty", field="cart_id")
        if not cart.checkout_url:
            raise ProviderPermanentError(f"Cart {cart_id} has no checkout URL")
        return _session(cart)

    async def _target(self, session_id: str) -> CheckoutTarget:
        cart = await self._carts.fetch(session_id)
        if not cart.checkout_url:
            raise ProviderPermanentError(f"Cart {session_id} has no checkout URL")
        return CheckoutTarget(TargetKind.REDIRECT, url=cart.checkout_url)

    async def order_for(self, cart_id: str) -> Order | None:
        data = await self._ctx.client.admin(
            "GET", "/orders", params={"cart_token": cart_id, "status": "any", "limit": 1}
        )
        orders = data.get("orders") or ()
        return mapping.order(orders[0]) if orders else None

    @writes
    async def _complete(self, session_id: str, idempotency_key: str) -> Order:
        if not idempotency_key:
            raise ValidationError("idempotency_key is required", field="idempotency_key")
        order = await self.order_for(session_id)
        if order is None:
            raise ConflictError(f"Checkout {session_id} has not been paid on the hosted page yet")
        return order

    async def _status(self, session_id: str) -> CheckoutSession:
        order = await self.order_for(session_id)
        if order is not None:
            return _completed(session_id, order)
        try:
            cart = await self._carts.fetch(session_id)
        except NotFoundError:
            raise NotFoundError(
                f"Checkout {session_id} not found", entity="checkout_session", id=session_id
            ) from None
        return _session(cart)


__all__ = ("Checkout",)
