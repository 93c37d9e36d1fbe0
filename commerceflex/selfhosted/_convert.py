"""
Row <-> canonical model conversion.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from commerceflex.model import (
    Address,
    CartLine,
    CheckoutSession,
    CheckoutStatus,
    CheckoutTarget,
    CheckoutTotals,
    Customer,
    DiscountCode,
    DiscountKind,
    FinancialStatus,
    FulfillmentStatus,
    Money,
    Order,
    OrderLineItem,
    Product,
    ProductStatus,
    Subscription,
    SubscriptionStatus,
    BillingInterval,
    TargetKind,
    Variant,
)
from commerceflex.selfhosted._tables import (
    CartLineRow,
    CheckoutSessionRow,
    CustomerRow,
    DiscountRow,
    OrderRow,
    ProductRow,
    SubscriptionRow,
    VariantRow,
)


def variant(row: VariantRow) -> Variant:
    return Variant(
        id=row.id,
        product_id=row.product_id,
        title=row.title,
        price=Money(row.price, row.currency),
        sku=row.sku,
        inventory=row.inventory,
        position=row.position,
        external_id=row.external_id,
    )


def product(row: ProductRow, variants: Sequence[VariantRow]) -> Product:
    return Product(
        id=row.id,
        handle=row.handle,
        title=row.title,
        description=row.description or "",
        status=ProductStatus(row.status),
        vendor=row.vendor,
        product_type=row.product_type,
        tags=tuple(row.tags or ()),
        variants=tuple(variant(v) for v in sorted(variants, key=lambda v: v.position)),
        external_id=row.external_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def customer(row: CustomerRow) -> Customer:
    return Customer(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        addresses=tuple(Address.from_dict(a) for a in row.addresses or ()),
        accepts_marketing=row.accepts_marketing,
        external_id=row.external_id,
        created_at=row.created_at,
    )


def discount(row: DiscountRow) -> DiscountCode:
    return DiscountCode(
        code=row.code,
        kind=DiscountKind(row.kind),
        percentage=Decimal(row.percentage) if row.percentage is not None else None,
        amount=Money(row.amount, row.currency) if row.amount is not None and row.currency else None,
        usage_count=row.usage_count,
        usage_limit=row.usage_limit,
        starts_at=row.starts_at,
        ends_at=row.ends_at,
        minimum_subtotal=(
            Money(row.minimum_subtotal, row.currency)
            if row.minimum_subtotal is not None and row.currency
            else None
        ),
        id=row.id,
        external_id=row.external_id,
    )


def cart_line(row: CartLineRow, currency: str) -> CartLine:
    return CartLine(
        id=row.id,
        product_id=row.product_id,
        variant_id=row.variant_id,
        quantity=row.quantity,
        unit_price=Money(row.unit_price, currency),
        title=row.title,
        sku=row.sku,
    )


# ─── checkout snapshot lines ──────────────────────────────────────────────────


def snapshot_line(line: CartLine) -> dict[str, Any]:
    return {
        "id": line.id,
        "product_id": line.product_id,
        "variant_id": line.variant_id,
        "title": line.title,
        "sku": line.sku,
        "quantity": line.quantity,
        "unit_price": line.unit_price.amount,
    }


def checkout_session(row: CheckoutSessionRow) -> CheckoutSession:
    cur = row.currency
    target = None
    if row.client_secret:
        target = CheckoutTarget(kind=TargetKind.EMBED, client_secret=row.client_secret)
    return CheckoutSession(
        id=row.id,
        cart_id=row.cart_id,
        status=CheckoutStatus(row.status),
        version=row.version,
        currency=cur,
        totals=CheckoutTotals(
            subtotal=Money(row.subtotal, cur),
            discount=Money(row.discount, cur),
            shipping=Money(row.shipping, cur),
            tax=Money(row.tax, cur),
            total=Money(row.total, cur),
        ),
        expires_at=row.expires_at,
        email=row.email,
        shipping_address=Address.from_dict(row.shipping_address) if row.shipping_address else None,
        payment_reference=row.payment_reference,
        target=target,
        order_id=row.order_id,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
    )


# ─── orders ───────────────────────────────────────────────────────────────────


def line_item_dict(item: OrderLineItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "variant_id": item.variant_id,
        "title": item.title,
        "sku": item.sku,
        "quantity": item.quantity,
        "unit_price": item.unit_price.amount,
        "discount": item.discount.amount,
    }


def order(row: OrderRow) -> Order:
    cur = row.currency
    return Order(
        id=row.id,
        number=row.number,
        currency=cur,
        line_items=tuple(
            OrderLineItem(
                id=item["id"],
                product_id=item.get("product_id"),
                variant_id=item.get("variant_id"),
                title=item.get("title") or "",
                quantity=int(item["quantity"]),
                unit_price=Money(int(item["unit_price"]), cur),
                discount=Money(int(item.get("discount") or 0), cur),
                sku=item.get("sku"),
            )
            for item in row.line_items or ()
        ),
        subtotal=Money(row.subtotal, cur),
        discount=Money(row.discount, cur),
        shipping=Money(row.shipping, cur),
        tax=Money(row.tax, cur),
        total=Money(row.total, cur),
        financial_status=FinancialStatus(row.financial_status),
        fulfillment_status=FulfillmentStatus(row.fulfillment_status),
        refunded=Money(row.refunded, cur),
        email=row.email,
        customer_id=row.customer_id,
        checkout_session_id=row.checkout_session_id,
        external_id=row.external_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        cancelled_at=row.cancelled_at,
        cancel_reason=row.cancel_reason,
    )


def subscription(row: SubscriptionRow) -> Subscription:
    return Subscription(
        id=row.id,
        customer_id=row.customer_id,
        variant_id=row.variant_id,
        quantity=row.quantity,
        interval=BillingInterval(row.interval),
        interval_count=row.interval_count,
        status=SubscriptionStatus(row.status),
        next_billing_at=row.next_billing_at,
        created_at=row.created_at,
        cancelled_at=row.cancelled_at,
    )
