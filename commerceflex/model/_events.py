"""
Webhook and subscription types.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ═══════════════════════════════════════════════════════════════════════════════
# Canonical Event
# ═══════════════════════════════════════════════════════════════════════════════


class EventType(Enum):
    ORDER_CREATED = "order.created"
    ORDER_PAID = "order.paid"
    ORDER_UPDATED = "order.updated"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_FULFILLED = "order.fulfilled"
    ORDER_REFUNDED = "order.refunded"
    CHECKOUT_COMPLETED = "checkout.completed"
    CHECKOUT_FAILED = "checkout.failed"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    """
    Backend-independent notification.

    ``id`` is the backend's own event id; together with ``source`` it is
    the dedupe key.
    """

    id: str
    tenant_id: str
    type: EventType
    object_type: str
    object_id: str
    occurred_at: datetime
    source: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "tenant_id": self.tenant_id,
                "type": self.type.value,
                "object_type": self.object_type,
                "object_id": self.object_id,
                "occurred_at": self.occurred_at.isoformat(),
                "source": self.source,
                "payload": dict(self.payload),
            },
            sort_keys=True,
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> WebhookEvent:
        data = json.loads(raw)
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            type=EventType(data["type"]),
            object_type=data["object_type"],
            object_id=data["object_id"],
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            source=data["source"],
            payload=data.get("payload") or {},
        )


@dataclass(frozen=True, slots=True)
class Delivery:
    """A verified, parsed inbound webhook before mapping."""

    source: str
    event_id: str
    topic: str
    occurred_at: datetime
    payload: Mapping[str, Any]


# ═══════════════════════════════════════════════════════════════════════════════
# Subscription
# ═══════════════════════════════════════════════════════════════════════════════


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class BillingInterval(Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True, slots=True)
class Subscription:
    id: str
    customer_id: str
    variant_id: str
    quantity: int
    interval: BillingInterval
    interval_count: int
    status: SubscriptionStatus
    next_billing_at: datetime | None = None
    created_at: datetime | None = None
    cancelled_at: datetime | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "EventType",
    "WebhookEvent",
    "Delivery",
    "SubscriptionStatus",
    "BillingInterval",
    "Subscription",
)
