"""
Managed orders and customers, served by the platform's admin API.
"""

from __future__ import annotations

import logging
from typing import Any

from kungfu import Result

from commerceflex.managed import _mapping as mapping
from commerceflex.managed._client import Context
from commerceflex.model import (
    CommerceError,
    Customer,
    CustomerInput,
    FulfillmentStatus,
    Money,
    NotFoundError,
    Order,
    Page,
    ProviderPermanentError,
    ValidationError,
    normalize_email,
)
from commerceflex.provider import check_page_size, guarded, read, writes

logger = logging.getLogger(__name__)


def _page_params(first: int, after: str | None) -> dict[str, Any]:
    params: dict[str, Any] = {"limit": check_page_size(first)}
    if after is not None:
        params["page_info"] = after
    return params


# ═══════════════════════════════════════════════════════════════════════════════
# Orders
# ═══════════════════════════════════════════════════════════════════════════════


class Orders:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx

    async def get(self, order_id: str) -> Result[Order, CommerceError]:
        return await read(self._ctx.retry, lambda: self.fetch(order_id))

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Order], CommerceError]:
        return await read(self._ctx.retry, lambda: self._page(first, after))

    async def cancel(
        self, order_id: str, *, reason: str | None = None
    ) -> Result[Order, CommerceError]:
        return await guarded(lambda: self._cancel(order_id, reason))

    async def refund(
        self,
        order_id: str,
        *,
        amount: Money | None = None,
        idempotency_key: str,
    ) -> Result[Order, CommerceError]:
        return await guarded(lambda: self._refund(order_id, amount, idempotency_key))

    async def fetch(self, order_id: str) -> Order:
        data = await self._ctx.client.admin("GET", f"/orders/{order_id}")
        return mapping.order(data["order"])

    async def _page(self, first: int, after: str | None) -> Page[Order]:
        params = _page_params(first, after)
        params["status"] = "any"
        data = await self._ctx.client.admin("GET", "/orders", params=params)
        return Page(
            items=tuple(mapping.order(o) for o in data.get("orders") or ()),
            next_cursor=data.get("next_page_info"),
            total=data.get("count"),
        )

    @writes
    async def _cancel(self, order_id: str, reason: str | None) -> Order:
        order = await self.fetch(order_id)
        if order.is_cancelled:
            return order
        if order.fulfillment_status is not FulfillmentStatus.UNFULFILLED:
            raise ProviderPermanentError(
                f"Order {order_id} is {order.fulfillment_status.value} and cannot be cancelled"
            )
        data = await self._ctx.client.admin(
            "POST",
            f"/orders/{order_id}/cancel",
            idempotency_key=f"{order_id}:cancel",
            json={"reason": reason or "other", "refund": True},
        )
        logger.info("Cancelled managed order %s for %s", order_id, self._ctx.tenant_id)
        return mapping.order(data["order"])

    @writes
    async def _refund(self, order_id: str, amount: Money | None, key: str) -> Order:
        if not key:
            raise ValidationError("idempotency_key is required", field="idempotency_key")
        order = await self.fetch(order_id)
        value = amount if amount is not None else order.refundable
        if value.currency != order.currency:
            raise ValidationError(
                f"Refund is in {value.currency}, order is in {order.currency}", field="amount"
            )
        if value.amount <= 0:
            raise ValidationError("Refund amount must be positive", field="amount")
        if order.refundable < value:
            raise ValidationError(
                f"Refund {value} exceeds refundable {order.refundable}", field="amount"
            )
        data = await self._ctx.client.admin(
            "POST",
            f"/orders/{order_id}/refunds",
            idempotency_key=f"{order_id}:{key}",
            json={"refund": {"amount": mapping.money_out(value), "notify": False}},
        )
        logger.info("Refunded %s on managed order %s", value, order_id)
        return mapping.order(data["order"])


# ═══════════════════════════════════════════════════════════════════════════════
# Customers
# ═══════════════════════════════════════════════════════════════════════════════


class Customers:
    def __init__(self, ctx: Context) -> None:
        self._ctx = ctx

    async def get(self, customer_id: str) -> Result[Customer, CommerceError]:
        return await read(self._ctx.retry, lambda: self._get(customer_id))

    async def get_by_email(self, email: str) -> Result[Customer, CommerceError]:
        return await read(self._ctx.retry, lambda: self._by_email(email))

    async def create(self, data: CustomerInput) -> Result[Customer, CommerceError]:
        return await guarded(lambda: self._create(data))

    async def update(
        self, customer_id: str, data: CustomerInput
    ) -> Result[Customer, CommerceError]:
        return await guarded(lambda: self._update(customer_id, data))

    async def list(
        self, *, first: int = 50, after: str | None = None
    ) -> Result[Page[Customer], CommerceError]:
        return await read(self._ctx.retry, lambda: self._page(first, after))

    async def _get(self, customer_id: str) -> Customer:
        data = await self._ctx.client.admin("GET", f"/customers/{customer_id}")
        return mapping.customer(data["customer"])

    async def _by_email(self, email: str) -> Customer:
        normalized = normalize_email(email)
        data = await self._ctx.client.admin(
            "GET", "/customers/search", params={"email": normalized}
        )
        for item in data.get("customers") or ():
            if (item.get("email") or "").strip().lower() == normalized:
                return mapping.customer(item)
        raise NotFoundError(f"No customer with email {normalized}", entity="customer", id=normalized)

    @writes
    async def _create(self, data: CustomerInput) -> Customer:
        if data.email is None:
            raise ValidationError("email is required", field="email")
        body = mapping.customer_out(data)
        body["email"] = normalize_email(data.email)
        result = await self._ctx.client.admin("POST", "/customers", json={"customer": body})
        return mapping.customer(result["customer"])

    @writes
    async def _update(self, customer_id: str, data: CustomerInput) -> Customer:
        body = mapping.customer_out(data)
        if data.email is not None:
            body["email"] = normalize_email(data.email)
        result = await self._ctx.client.admin(
            "PUT", f"/customers/{customer_id}", json={"customer": body}
        )
        return mapping.customer(result["customer"])

    async def _page(self, first: int, after: str | None) -> Page[Customer]:
        data = await self._ctx.client.admin("GET", "/customers", params=_page_params(first, after))
        return Page(
            items=tuple(mapping.customer(c) for c in data.get("customers") or ()),
            next_cursor=data.get("next_page_info"),
            total=data.get("count"),
        )


__all__ = ("Orders", "Customers")
