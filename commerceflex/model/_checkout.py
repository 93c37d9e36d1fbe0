"""
Checkout session and order types.

Lifecycle:
    draft → collecting_shipping → calculating_tax → awaiting_payment
          → payment_processing → completed | failed | expired

Terminal states are final. Financial status of an order only moves
forward (see ``advance_financial``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from commerceflex.model._catalog import Address
from commerceflex.model._errors import ValidationError
from commerceflex.model._money import Money


# ═══════════════════════════════════════════════════════════════════════════════
# Checkout Status
# ═══════════════════════════════════════════════════════════════════════════════


class CheckoutStatus(Enum):
    DRAFT = "draft"
    COLLECTING_SHIPPING = "collecting_shipping"
    CALCULATING_TAX = "calculating_tax"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_PROCESSING = "payment_processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset(
    {CheckoutStatus.COMPLETED, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED}
)

# Caller-driven single steps
NEXT_STEP: dict[CheckoutStatus, CheckoutStatus] = {
    CheckoutStatus.DRAFT: CheckoutStatus.COLLECTING_SHIPPING,
    CheckoutStatus.COLLECTING_SHIPPING: CheckoutStatus.CALCULATING_TAX,
    CheckoutStatus.CALCULATING_TAX: CheckoutStatus.AWAITING_PAYMENT,
}

_TRANSITIONS: dict[CheckoutStatus, frozenset[CheckoutStatus]] = {
    CheckoutStatus.DRAFT: frozenset(
        {CheckoutStatus.COLLECTING_SHIPPING, CheckoutStatus.EXPIRED}
    ),
    CheckoutStatus.COLLECTING_SHIPPING: frozenset(
        {CheckoutStatus.CALCULATING_TAX, CheckoutStatus.EXPIRED}
    ),
    CheckoutStatus.CALCULATING_TAX: frozenset(
        {CheckoutStatus.AWAITING_PAYMENT, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED}
    ),
    CheckoutStatus.AWAITING_PAYMENT: frozenset(
        {
            CheckoutStatus.PAYMENT_PROCESSING,
            CheckoutStatus.COMPLETED,
            CheckoutStatus.FAILED,
            CheckoutStatus.EXPIRED,
        }
    ),
    CheckoutStatus.PAYMENT_PROCESSING: frozenset(
        {CheckoutStatus.COMPLETED, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED}
    ),
}


def can_transition(current: CheckoutStatus, new: CheckoutStatus) -> bool:
    return new in _TRANSITIONS.get(current, frozenset())


# ═══════════════════════════════════════════════════════════════════════════════
# Checkout Session
# ═══════════════════════════════════════════════════════════════════════════════


class TargetKind(Enum):
    REDIRECT = "redirect"
    EMBED = "embed"


@dataclass(frozen=True, slots=True)
class CheckoutTarget:
    """Where the buyer pays: a hosted page or an embedded payment element."""

    kind: TargetKind
    url: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True, slots=True)
class CheckoutTotals:
    subtotal: Money
    discount: Money
    shipping: Money
    tax: Money
    total: Money


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    id: str
    cart_id: str
    status: CheckoutStatus
    version: int
    currency: str
    totals: CheckoutTotals
    expires_at: datetime | None = None
    email: str | None = None
    shipping_address: Address | None = None
    payment_reference: str | None = None
    target: CheckoutTarget | None = None
    order_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ═══════════════════════════════════════════════════════════════════════════════
# Order
# ═══════════════════════════════════════════════════════════════════════════════


class FinancialStatus(Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"


class FulfillmentStatus(Enum):
    UNFULFILLED = "unfulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"


_FINANCIAL_RANK = {
    FinancialStatus.PENDING: 0,
    FinancialStatus.AUTHORIZED: 1,
    FinancialStatus.PAID: 2,
    FinancialStatus.PARTIALLY_REFUNDED: 3,
    FinancialStatus.REFUNDED: 4,
}


def advance_financial(current: FinancialStatus, new: FinancialStatus) -> FinancialStatus:
    """
    Validate a financial status change.

    Forward moves only; VOIDED is reachable from PENDING or AUTHORIZED and
    is final, as is REFUNDED. Re-applying the current status is a no-op.
    """
    if new is current:
        return new
    if new is FinancialStatus.VOIDED:
        if current in (FinancialStatus.PENDING, FinancialStatus.AUTHORIZED):
            return new
    elif current is not FinancialStatus.VOIDED:
        if _FINANCIAL_RANK[new] > _FINANCIAL_RANK[current]:
            return new
    raise ValidationError(
        f"Financial status cannot move from {current.value} to {new.value}",
        field="financial_status",
    )


@dataclass(frozen=True, slots=True)
class OrderLineItem:
    id: str
    product_id: str | None
    variant_id: str | None
    title: str
    quantity: int
    unit_price: Money
    discount: Money
    sku: str | None = None

    @property
    def total(self) -> Money:
        return self.unit_price.times(self.quantity) - self.discount


@dataclass(frozen=True, slots=True)
class Order:
    id: str
    number: str
    currency: str
    line_items: tuple[OrderLineItem, ...]
    subtotal: Money
    discount: Money
    shipping: Money
    tax: Money
    total: Money
    financial_status: FinancialStatus
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    refunded: Money | None = None
    email: str | None = None
    customer_id: str | None = None
    checkout_session_id: str | None = None
    external_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    @property
    def refundable(self) -> Money:
        refunded = self.refunded or Money.zero(self.currency)
        return self.total - refunded

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "CheckoutStatus",
    "TERMINAL",
    "NEXT_STEP",
    "can_transition",
    "TargetKind",
    "CheckoutTarget",
    "CheckoutTotals",
    "CheckoutSession",
    "FinancialStatus",
    "FulfillmentStatus",
    "advance_financial",
    "OrderLineItem",
    "Order",
)
