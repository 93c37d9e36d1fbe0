"""
Managed platform payloads ⇄ canonical types.

Amounts arrive as decimal strings with a currency code
(``{"amount": "10.00", "currency_code": "USD"}``) and are parsed into
minor units with half-to-even rounding. Timestamps are ISO-8601 and are
stored naive UTC.

The platform has no cart version; the cart's ``updated_at`` in epoch
milliseconds stands in for it, so a cart changed by anyone since the
caller read it reports a different version.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from commerceflex._types import as_naive_utc
from commerceflex.model import (
    Address,
    Cart,
    CartLine,
    CartTotals,
    Customer,
    CustomerInput,
    DiscountCode,
    DiscountKind,
    FinancialStatus,
    FulfillmentStatus,
    Money,
    Order,
    OrderLineItem,
    Product,
    ProductStatus,
    ProviderPermanentError,
    Variant,
    total,
)

type Json = Mapping[str, Any]

_EPOCH = datetime(1970, 1, 1)

_FINANCIAL = {
    "pending": FinancialStatus.PENDING,
    "partially_paid": FinancialStatus.PENDING,
    "authorized": FinancialStatus.AUTHORIZED,
    "paid": FinancialStatus.PAID,
    "partially_refunded": FinancialStatus.PARTIALLY_REFUNDED,
    "refunded": FinancialStatus.REFUNDED,
    "voided": FinancialStatus.VOIDED,
}

_FULFILLMENT = {
    None: FulfillmentStatus.UNFULFILLED,
    "unfulfilled": FulfillmentStatus.UNFULFILLED,
    "partial": FulfillmentStatus.PARTIALLY_FULFILLED,
    "partially_fulfilled": FulfillmentStatus.PARTIALLY_FULFILLED,
    "fulfilled": FulfillmentStatus.FULFILLED,
}


# ─── scalars ──────────────────────────────────────────────────────────────────


def money(data: Json) -> Money:
    return Money.from_decimal(data["amount"], str(data["currency_code"]).upper())


def money_or_zero(data: Json | None, currency: str) -> Money:
    return money(data) if data else Money.zero(currency)


def money_out(amount: Money) -> dict[str, str]:
    return {"amount": amount.format(), "currency_code": amount.currency}


def timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def version_of(updated_at: datetime | None) -> int:
    if updated_at is None:
        return 0
    return (updated_at - _EPOCH) // timedelta(milliseconds=1)


def _lower(value: Any) -> str | None:
    return str(value).lower() if value is not None else None


# ─── catalog ──────────────────────────────────────────────────────────────────


def variant(data: Json, product_id: str) -> Variant:
    return Variant(
        id=str(data["id"]),
        product_id=product_id,
        title=data.get("title") or "",
        price=money(data["price"]),
        sku=data.get("sku") or None,
        inventory=data.get("inventory_quantity"),
        position=int(data.get("position") or 1),
    )


def product(data: Json) -> Product:
    product_id = str(data["id"])
    return Product(
        id=product_id,
        handle=data["handle"],
        title=data["title"],
        variants=tuple(variant(v, product_id) for v in data.get("variants") or ()),
        status=ProductStatus(_lower(data.get("status")) or "active"),
        description=data.get("description") or "",
        vendor=data.get("vendor") or None,
        product_type=data.get("product_type") or None,
        tags=tuple(data.get("tags") or ()),
        created_at=timestamp(data.get("created_at")),
        updated_at=timestamp(data.get("updated_at")),
    )


# ─── customers ────────────────────────────────────────────────────────────────


def address(data: Json) -> Address:
    return Address(
        line1=data.get("address1") or "",
        line2=data.get("address2") or None,
        city=data.get("city") or "",
        province=data.get("province") or None,
        postal_code=data.get("zip") or "",
        country_code=data.get("country_code") or "",
        first_name=data.get("first_name") or None,
        last_name=data.get("last_name") or None,
        phone=data.get("phone") or None,
    )


def address_out(value: Address) -> dict[str, Any]:
    return {
        "address1": value.line1,
        "address2": value.line2,
        "city": value.city,
        "province": value.province,
        "zip": value.postal_code,
        "country_code": value.country_code,
        "first_name": value.first_name,
        "last_name": value.last_name,
        "phone": value.phone,
    }


def customer(data: Json) -> Customer:
    return Customer(
        id=str(data["id"]),
        email=data.get("email") or "",
        first_name=data.get("first_name") or None,
        last_name=data.get("last_name") or None,
        phone=data.get("phone") or None,
        addresses=tuple(address(a) for a in data.get("addresses") or ()),
        accepts_marketing=bool(data.get("accepts_marketing")),
        created_at=timestamp(data.get("created_at")),
    )


def customer_out(data: CustomerInput) -> dict[str, Any]:
    """Only the fields that are set; the platform treats absent keys as unchanged."""
    body: dict[str, Any] = {}
    for name in ("email", "first_name", "last_name", "phone", "accepts_marketing"):
        value = getattr(data, name)
        if value is not None:
            body[name] = value
    if data.addresses is not None:
        body["addresses"] = [address_out(a) for a in data.addresses]
    return body


# ─── cart ─────────────────────────────────────────────────────────────────────


def cart_line(data: Json) -> CartLine:
    merchandise = data["merchandise"]
    return CartLine(
        id=str(data["id"]),
        product_id=str(merchandise["product_id"]),
        variant_id=str(merchandise["id"]),
        quantity=int(data["quantity"]),
        unit_price=money(merchandise["price"]),
        title=merchandise.get("title") or "",
        sku=merchandise.get("sku") or None,
    )


def cart(data: Json) -> Cart:
    """
    The subtotal is recomputed from the lines; only the discount amount is
    taken from the platform, which evaluates its own rules.
    """
    currency = str(data["currency_code"]).upper()
    lines = tuple(cart_line(line) for line in data.get("lines") or ())
    subtotal = total([line.line_total for line in lines], currency)
    cost = data.get("cost") or {}
    off = money_or_zero(cost.get("total_discount"), currency).min(subtotal)
    updated_at = timestamp(data.get("updated_at"))
    return Cart(
        id=str(data["id"]),
        currency=currency,
        lines=lines,
        totals=CartTotals(subtotal=subtotal, total_discount=off, total=subtotal - off),
        version=version_of(updated_at),
        attributes={a["key"]: a["value"] for a in data.get("attributes") or ()},
        discount_codes=tuple(
            str(d["code"]).upper() for d in data.get("discount_codes") or () if d.get("applicable")
        ),
        checkout_url=data.get("checkout_url"),
        created_at=timestamp(data.get("created_at")),
        updated_at=updated_at,
    )


def discount(data: Json) -> DiscountCode:
    kind = DiscountKind(data["value_type"])
    currency = data.get("currency_code")
    minimum = data.get("minimum_subtotal")
    return DiscountCode(
        code=str(data["code"]).upper(),
        kind=kind,
        percentage=Decimal(str(data["value"])) if kind is DiscountKind.PERCENTAGE else None,
        amount=(
            Money.from_decimal(data["value"], str(currency).upper())
            if kind is DiscountKind.FIXED_AMOUNT
            else None
        ),
        usage_count=int(data.get("usage_count") or 0),
        usage_limit=data.get("usage_limit"),
        starts_at=timestamp(data.get("starts_at")),
        ends_at=timestamp(data.get("ends_at")),
        minimum_subtotal=money(minimum) if minimum else None,
        id=str(data["id"]) if data.get("id") is not None else None,
    )


# ─── orders ───────────────────────────────────────────────────────────────────


def financial_status(value: str | None) -> FinancialStatus:
    try:
        return _FINANCIAL[_lower(value) or "pending"]
    except KeyError:
        raise ProviderPermanentError(f"Unknown financial status {value!r}") from None


def fulfillment_status(value: str | None) -> FulfillmentStatus:
    try:
        return _FULFILLMENT[_lower(value)]
    except KeyError:
        raise ProviderPermanentError(f"Unknown fulfillment status {value!r}") from None


def line_item(data: Json, currency: str) -> OrderLineItem:
    return OrderLineItem(
        id=str(data["id"]),
        product_id=str(data["product_id"]) if data.get("product_id") else None,
        variant_id=str(data["variant_id"]) if data.get("variant_id") else None,
        title=data.get("title") or "",
        quantity=int(data["quantity"]),
        unit_price=money(data["original_unit_price"]),
        discount=money_or_zero(data.get("total_discount"), currency),
        sku=data.get("sku") or None,
    )


def order(data: Json) -> Order:
    currency = str(data["currency_code"]).upper()
    refunded = money_or_zero(data.get("total_refunded"), currency)
    return Order(
        id=str(data["id"]),
        number=data.get("name") or str(data["id"]),
        currency=currency,
        line_items=tuple(line_item(li, currency) for li in data.get("line_items") or ()),
        subtotal=money(data["subtotal_price"]),
        discount=money_or_zero(data.get("total_discounts"), currency),
        shipping=money_or_zero(data.get("total_shipping_price"), currency),
        tax=money_or_zero(data.get("total_tax"), currency),
        total=money(data["total_price"]),
        financial_status=financial_status(data.get("financial_status")),
        fulfillment_status=fulfillment_status(data.get("fulfillment_status")),
        refunded=refunded if refunded.amount else None,
        email=data.get("email") or None,
        customer_id=str(data["customer_id"]) if data.get("customer_id") else None,
        created_at=timestamp(data.get("created_at")),
        updated_at=timestamp(data.get("updated_at")),
        cancelled_at=timestamp(data.get("cancelled_at")),
        cancel_reason=data.get("cancel_reason") or None,
    )


__all__ = (
    "money",
    "money_or_zero",
    "money_out",
    "timestamp",
    "version_of",
    "variant",
    "product",
    "address",
    "address_out",
    "customer",
    "customer_out",
    "cart_line",
    "cart",
    "discount",
    "financial_status",
    "fulfillment_status",
    "line_item",
    "order",
)
