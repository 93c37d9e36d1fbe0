"""
Provider kinds and capabilities.
"""

from __future__ import annotations

from enum import Enum


class ProviderKind(Enum):
    MANAGED = "managed"
    SELF_HOSTED = "self_hosted"

    @classmethod
    def parse(cls, value: str | None) -> ProviderKind | None:
        """Flag or override value to a kind; unknown values read as None."""
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class Capability(Enum):
    """Optional features a caller can test for with ``provider.supports``."""

    CATALOG_SEARCH = "catalog_search"
    HOSTED_CHECKOUT = "hosted_checkout"
    EMBEDDED_CHECKOUT = "embedded_checkout"
    PARTIAL_REFUNDS = "partial_refunds"
    ORDER_CANCEL = "order_cancel"
    CUSTOMER_ACCOUNTS = "customer_accounts"
    DISCOUNT_CODES = "discount_codes"
    SUBSCRIPTIONS = "subscriptions"
    INVENTORY_TRACKING = "inventory_tracking"


__all__ = ("ProviderKind", "Capability")
