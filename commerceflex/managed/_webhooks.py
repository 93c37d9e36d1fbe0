"""
Managed platform webhooks → canonical events.

Topics are ``<resource>/<action>``; the body is the resource itself.
Product topics also drop the product from the catalog cache so the next
read goes to the platform.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kungfu import Result

from commerceflex.managed._catalog import Catalog
from commerceflex.model import (
    CommerceError,
    Delivery,
    EventType,
    WebhookEvent,
    WebhookVerificationError,
)
from commerceflex.provider import guarded
from commerceflex.webhooks._signatures import ManagedVerifier

logger = logging.getLogger(__name__)

# topic → (event, object type)
TOPICS: dict[str, tuple[EventType, str]] = {
    "orders/create": (EventType.ORDER_CREATED, "order"),
    "orders/paid": (EventType.ORDER_PAID, "order"),
    "orders/updated": (EventType.ORDER_UPDATED, "order"),
    "orders/cancelled": (EventType.ORDER_CANCELLED, "order"),
    "orders/fulfilled": (EventType.ORDER_FULFILLED, "order"),
    "refunds/create": (EventType.ORDER_REFUNDED, "order"),
    "checkouts/complete": (EventType.CHECKOUT_COMPLETED, "checkout_session"),
    "products/create": (EventType.PRODUCT_UPDATED, "product"),
    "products/update": (EventType.PRODUCT_UPDATED, "product"),
    "products/delete": (EventType.PRODUCT_DELETED, "product"),
    "customers/create": (EventType.CUSTOMER_CREATED, "customer"),
    "customers/update": (EventType.CUSTOMER_UPDATED, "customer"),
}


def _object_id(topic: str, payload: Mapping[str, Any]) -> str | None:
    # Refunds reference their order; checkouts are keyed by cart token
    if topic == "refunds/create":
        value = payload.get("order_id")
    elif topic == "checkouts/complete":
        value = payload.get("cart_token") or payload.get("id")
    else:
        value = payload.get("id")
    return str(value) if value is not None else None


def _summary(payload: Mapping[str, Any]) -> dict[str, Any]:
    keep = (
        "name",
        "email",
        "handle",
        "title",
        "financial_status",
        "fulfillment_status",
        "total_price",
        "currency_code",
        "order_id",
    )
    return {k: payload[k] for k in keep if payload.get(k) is not None}


class ManagedWebhooks:
    def __init__(self, tenant_id: str, verifier: ManagedVerifier, catalog: Catalog) -> None:
        self._tenant_id = tenant_id
        self._verifier = verifier
        self._catalog = catalog

    def verify(
        self, headers: Mapping[str, str], body: bytes
    ) -> Result[Delivery, WebhookVerificationError]:
        return self._verifier.verify(headers, body)

    async def process(self, delivery: Delivery) -> Result[WebhookEvent | None, CommerceError]:
        return await guarded(lambda: self._process(delivery))

    async def _process(self, delivery: Delivery) -> WebhookEvent | None:
        mapped = TOPICS.get(delivery.topic)
        if mapped is None:
            logger.debug("Ignoring managed topic %s", delivery.topic)
            return None
        kind, object_type = mapped

        object_id = _object_id(delivery.topic, delivery.payload)
        if object_id is None:
            logger.warning("Managed %s %s has no object id", delivery.topic, delivery.event_id)
            return None

        if object_type == "product":
            await self._catalog.invalidate(object_id, delivery.payload.get("handle"))

        return WebhookEvent(
            id=delivery.event_id,
            tenant_id=self._tenant_id,
            type=kind,
            object_type=object_type,
            object_id=object_id,
            occurred_at=delivery.occurred_at,
            source=delivery.source,
            payload=_summary(delivery.payload),
        )


__all__ = ("ManagedWebhooks", "TOPICS")
