"""
Catalog types — products, variants, customers and pages.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from commerceflex.model._errors import ValidationError
from commerceflex.model._money import Money


# ═══════════════════════════════════════════════════════════════════════════════
# Page — cursor pagination
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Page[T]:
    """
    One page of a listing.

    ``next_cursor`` is opaque: pass it back as ``after=`` to continue.
    ``total`` is filled when the backend knows the full count.
    """

    items: tuple[T, ...]
    next_cursor: str | None = None
    total: int | None = None

    @property
    def has_next(self) -> bool:
        return self.next_cursor is not None


# ═══════════════════════════════════════════════════════════════════════════════
# Product / Variant
# ═══════════════════════════════════════════════════════════════════════════════


class ProductStatus(Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


@dataclass(frozen=True, slots=True)
class Variant:
    id: str
    product_id: str
    title: str
    price: Money
    sku: str | None = None
    inventory: int | None = None
    position: int = 1
    external_id: str | None = None

    def __post_init__(self) -> None:
        if self.price.is_negative():
            raise ValidationError(f"Variant {self.id} has a negative price", field="price")

    @property
    def available(self) -> bool:
        return self.inventory is None or self.inventory > 0


@dataclass(frozen=True, slots=True)
class Product:
    id: str
    handle: str
    title: str
    variants: tuple[Variant, ...]
    status: ProductStatus = ProductStatus.ACTIVE
    description: str = ""
    vendor: str | None = None
    product_type: str | None = None
    tags: tuple[str, ...] = ()
    external_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def variant(self, variant_id: str) -> Variant | None:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None

    @property
    def price_range(self) -> tuple[Money, Money] | None:
        if not self.variants:
            return None
        prices = sorted((v.price for v in self.variants), key=lambda m: m.amount)
        return prices[0], prices[-1]


# ═══════════════════════════════════════════════════════════════════════════════
# Customer
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Address:
    line1: str
    city: str
    country_code: str
    postal_code: str = ""
    line2: str | None = None
    province: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "province": self.province,
            "postal_code": self.postal_code,
            "country_code": self.country_code,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Address:
        return cls(
            line1=data.get("line1") or "",
            line2=data.get("line2"),
            city=data.get("city") or "",
            province=data.get("province"),
            postal_code=data.get("postal_code") or "",
            country_code=data.get("country_code") or "",
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=data.get("phone"),
        )


@dataclass(frozen=True, slots=True)
class Customer:
    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    addresses: tuple[Address, ...] = ()
    accepts_marketing: bool = False
    external_id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CustomerInput:
    """Fields accepted by customer create/update; ``None`` means unchanged."""

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    addresses: tuple[Address, ...] | None = None
    accepts_marketing: bool | None = None


def normalize_email(email: str) -> str:
    cleaned = email.strip().lower()
    if "@" not in cleaned or cleaned.startswith("@") or cleaned.endswith("@"):
        raise ValidationError(f"Invalid email: {email!r}", field="email")
    return cleaned


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Page",
    "ProductStatus",
    "Variant",
    "Product",
    "Address",
    "Customer",
    "CustomerInput",
    "normalize_email",
)
