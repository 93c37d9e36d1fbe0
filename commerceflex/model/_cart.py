"""
Cart and discount types.

Totals are always derived from the lines, never stored independently:
``subtotal == Σ(line.unit_price × line.quantity)`` holds for every Cart
built through ``Cart.priced``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from commerceflex.model._errors import ValidationError
from commerceflex.model._money import Money, total


# ═══════════════════════════════════════════════════════════════════════════════
# Discount Code
# ═══════════════════════════════════════════════════════════════════════════════


class DiscountKind(Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


@dataclass(frozen=True, slots=True)
class DiscountCode:
    """
    Promotional rule.

    PERCENTAGE codes carry ``percentage`` (e.g. ``Decimal("10")``);
    FIXED_AMOUNT codes carry ``amount`` in a single currency.
    """

    code: str
    kind: DiscountKind
    percentage: Decimal | None = None
    amount: Money | None = None
    usage_count: int = 0
    usage_limit: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    minimum_subtotal: Money | None = None
    id: str | None = None
    external_id: str | None = None

    def __post_init__(self) -> None:
        if self.kind is DiscountKind.PERCENTAGE:
            if self.percentage is None or not Decimal(0) < self.percentage <= Decimal(100):
                raise ValidationError(f"Discount {self.code}: percentage must be in (0, 100]")
        elif self.amount is None or self.amount.amount <= 0:
            raise ValidationError(f"Discount {self.code}: fixed amount must be positive")
        if self.usage_limit is not None and self.usage_count > self.usage_limit:
            raise ValidationError(f"Discount {self.code}: usage count exceeds limit")

    @property
    def exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    def rejection(self, subtotal: Money, now: datetime) -> str | None:
        """Reason this code cannot apply to ``subtotal`` at ``now``, or None."""
        if self.exhausted:
            return "usage limit reached"
        if self.starts_at is not None and now < self.starts_at:
            return "not started"
        if self.ends_at is not None and now >= self.ends_at:
            return "expired"
        if self.amount is not None and self.amount.currency != subtotal.currency:
            return f"code is in {self.amount.currency}, cart is in {subtotal.currency}"
        if self.minimum_subtotal is not None:
            if self.minimum_subtotal.currency != subtotal.currency:
                return "minimum subtotal currency mismatch"
            if subtotal < self.minimum_subtotal:
                return f"requires a subtotal of at least {self.minimum_subtotal}"
        return None

    def amount_off(self, subtotal: Money) -> Money:
        """Discount for ``subtotal``, capped at the subtotal."""
        if self.kind is DiscountKind.PERCENTAGE:
            assert self.percentage is not None
            off = subtotal.percent(self.percentage)
        else:
            assert self.amount is not None
            off = self.amount
        return off.min(subtotal)


def normalize_code(code: str) -> str:
    cleaned = code.strip().upper()
    if not cleaned:
        raise ValidationError("Discount code is empty", field="code")
    return cleaned


# ═══════════════════════════════════════════════════════════════════════════════
# Cart
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CartLine:
    id: str
    product_id: str
    variant_id: str
    quantity: int
    unit_price: Money
    title: str = ""
    sku: str | None = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValidationError(f"Line {self.id}: quantity must be at least 1", field="quantity")

    @property
    def line_total(self) -> Money:
        return self.unit_price.times(self.quantity)


@dataclass(frozen=True, slots=True)
class CartTotals:
    subtotal: Money
    total_discount: Money
    total: Money

    @classmethod
    def compute(
        cls,
        currency: str,
        lines: Sequence[CartLine],
        discounts: Sequence[DiscountCode] = (),
    ) -> CartTotals:
        """
        Price a set of lines.

        Each code is evaluated against the subtotal; the sum is capped
        at the subtotal so the total never goes negative.
        """
        subtotal = total([line.line_total for line in lines], currency)
        off = total([d.amount_off(subtotal) for d in discounts], currency).min(subtotal)
        return cls(subtotal=subtotal, total_discount=off, total=subtotal - off)


@dataclass(frozen=True, slots=True)
class Cart:
    id: str
    currency: str
    lines: tuple[CartLine, ...]
    totals: CartTotals
    version: int = 0
    attributes: Mapping[str, str] = field(default_factory=dict)
    discount_codes: tuple[str, ...] = ()
    checkout_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def priced(
        cls,
        *,
        id: str,
        currency: str,
        lines: Sequence[CartLine],
        discounts: Sequence[DiscountCode] = (),
        version: int = 0,
        attributes: Mapping[str, str] | None = None,
        checkout_url: str | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> Cart:
        return cls(
            id=id,
            currency=currency,
            lines=tuple(lines),
            totals=CartTotals.compute(currency, lines, discounts),
            version=version,
            attributes=dict(attributes or {}),
            discount_codes=tuple(d.code for d in discounts),
            checkout_url=checkout_url,
            created_at=created_at,
            updated_at=updated_at,
        )

    @property
    def subtotal(self) -> Money:
        return self.totals.subtotal

    @property
    def total_discount(self) -> Money:
        return self.totals.total_discount

    @property
    def total(self) -> Money:
        return self.totals.total

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def line(self, line_id: str) -> CartLine | None:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "DiscountKind",
    "DiscountCode",
    "normalize_code",
    "CartLine",
    "CartTotals",
    "Cart",
)
