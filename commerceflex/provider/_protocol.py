"""
Provider protocol — one normalized surface over every backend.

Each method group is its own protocol so adapters can compose their
implementation from independent pieces. Every operation is async and
returns ``Result[T, CommerceError]``; nothing raises across this line.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol

from kungfu import Result

from commerceflex.model import (
    Address,
    Cart,
    CheckoutSession,
    CheckoutTarget,
    CommerceError,
    Customer,
    CustomerInput,
    Delivery,
    DiscountCode,
    Money,
    Order,
    Page,
    Product,
    Subscription,
    BillingInterval,
    WebhookEvent,
    WebhookVerificationError,
)
from commerceflex.provider._capability import Capability, ProviderKind


class CatalogOps(Protocol):
    async def get(self, product_id: str) -> Result[Product, CommerceError]: ...

    async def get_by_handle(self, handle: str) -> Result[Product, CommerceError]: ...

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Product], CommerceError]: ...

    async def search(
        self, query: str, *, first: int = 20
    ) -> Result[Page[Product], CommerceError]: ...


class CartOps(Protocol):
    async def create(
        self, *, attributes: Mapping[str, str] | None = None
    ) -> Result[Cart, CommerceError]: ...

    async def get(self, cart_id: str) -> Result[Cart, CommerceError]: ...

    async def add_line(
        self,
        cart_id: str,
        variant_id: str,
        quantity: int,
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]: ...

    async def update_line(
        self,
        cart_id: str,
        line_id: str,
        quantity: int,
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]: ...

    async def remove_line(
        self, cart_id: str, line_id: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]: ...

    async def set_attributes(
        self,
        cart_id: str,
        attributes: Mapping[str, str],
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]: ...

    async def set_discount_codes(
        self,
        cart_id: str,
        codes: Sequence[str],
        *,
        expected_version: int | None = None,
    ) -> Result[Cart, CommerceError]: ...


class CheckoutOps(Protocol):
    async def create(self, cart_id: str) -> Result[CheckoutSession, CommerceError]: ...

    async def get_target(self, session_id: str) -> Result[CheckoutTarget, CommerceError]: ...

    async def advance(
        self,
        session_id: str,
        *,
        expected_version: int | None = None,
        email: str | None = None,
        shipping_address: Address | None = None,
    ) -> Result[CheckoutSession, CommerceError]: ...

    async def complete(
        self,
        session_id: str,
        *,
        idempotency_key: str,
        payment_method: str | None = None,
    ) -> Result[Order, CommerceError]: ...

    async def get_status(self, session_id: str) -> Result[CheckoutSession, CommerceError]: ...

    async def expire_stale(self) -> Result[int, CommerceError]: ...


class OrderOps(Protocol):
    async def get(self, order_id: str) -> Result[Order, CommerceError]: ...

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Order], CommerceError]: ...

    async def cancel(
        self, order_id: str, *, reason: str | None = None
    ) -> Result[Order, CommerceError]: ...

    async def refund(
        self,
        order_id: str,
        *,
        amount: Money | None = None,
        idempotency_key: str,
    ) -> Result[Order, CommerceError]: ...


class CustomerOps(Protocol):
    async def get(self, customer_id: str) -> Result[Customer, CommerceError]: ...

    async def get_by_email(self, email: str) -> Result[Customer, CommerceError]: ...

    async def create(self, data: CustomerInput) -> Result[Customer, CommerceError]: ...

    async def update(
        self, customer_id: str, data: CustomerInput
    ) -> Result[Customer, CommerceError]: ...

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Customer], CommerceError]: ...


class DiscountOps(Protocol):
    async def validate(
        self, code: str, *, cart_id: str | None = None
    ) -> Result[DiscountCode, CommerceError]: ...

    async def apply(
        self, cart_id: str, code: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]: ...

    async def remove(
        self, cart_id: str, code: str, *, expected_version: int | None = None
    ) -> Result[Cart, CommerceError]: ...


class WebhookOps(Protocol):
    def verify(
        self, headers: Mapping[str, str], body: bytes
    ) -> Result[Delivery, WebhookVerificationError]: ...

    async def process(self, delivery: Delivery) -> Result[WebhookEvent | None, CommerceError]: ...


class SubscriptionOps(Protocol):
    async def create(
        self,
        customer_id: str,
        variant_id: str,
        *,
        quantity: int = 1,
        interval: BillingInterval = BillingInterval.MONTH,
        interval_count: int = 1,
    ) -> Result[Subscription, CommerceError]: ...

    async def get(self, subscription_id: str) -> Result[Subscription, CommerceError]: ...

    async def update(
        self,
        subscription_id: str,
        *,
        quantity: int | None = None,
        variant_id: str | None = None,
    ) -> Result[Subscription, CommerceError]: ...

    async def cancel(self, subscription_id: str) -> Result[Subscription, CommerceError]: ...

    async def pause(self, subscription_id: str) -> Result[Subscription, CommerceError]: ...

    async def resume(self, subscription_id: str) -> Result[Subscription, CommerceError]: ...


class Provider(Protocol):
    """
    A tenant-bound backend.

    Tenant scoping is implicit: identifiers from another tenant never
    resolve through this instance.
    """

    @property
    def tenant_id(self) -> str: ...

    @property
    def kind(self) -> ProviderKind: ...

    @property
    def capabilities(self) -> frozenset[Capability]: ...

    @property
    def catalog(self) -> CatalogOps: ...

    @property
    def cart(self) -> CartOps: ...

    @property
    def checkout(self) -> CheckoutOps: ...

    @property
    def orders(self) -> OrderOps: ...

    @property
    def customers(self) -> CustomerOps: ...

    @property
    def discounts(self) -> DiscountOps: ...

    @property
    def webhooks(self) -> WebhookOps: ...

    @property
    def subscriptions(self) -> SubscriptionOps | None: ...

    def supports(self, capability: Capability) -> bool: ...

    async def aclose(self) -> None: ...


__all__ = (
    "CatalogOps",
    "CartOps",
    "CheckoutOps",
    "OrderOps",
    "CustomerOps",
    "DiscountOps",
    "WebhookOps",
    "SubscriptionOps",
    "Provider",
)
