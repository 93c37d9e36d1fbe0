"""
Processor webhooks for the self-hosted backend.

Settlement goes through the same compare-and-swap as ``checkout.complete``,
so whichever of the two lands first decides the outcome and the other
observes it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kungfu import Result

from commerceflex.model import (
    CheckoutStatus,
    CommerceError,
    Delivery,
    EventType,
    FinancialStatus,
    WebhookEvent,
    WebhookVerificationError,
)
from commerceflex.provider import guarded
from commerceflex.selfhosted._checkout import Checkout
from commerceflex.selfhosted._context import Context
from commerceflex.selfhosted._orders import Orders
from commerceflex.selfhosted._processor import IntentStatus, parse_intent
from commerceflex.webhooks._signatures import ProcessorVerifier

logger = logging.getLogger(__name__)


class ProcessorWebhooks:
    def __init__(
        self, ctx: Context, checkout: Checkout, orders: Orders, verifier: ProcessorVerifier
    ) -> None:
        self._ctx = ctx
        self._checkout = checkout
        self._orders = orders
        self._verifier = verifier

    def verify(
        self, headers: Mapping[str, str], body: bytes
    ) -> Result[Delivery, WebhookVerificationError]:
        return self._verifier.verify(headers, body)

    async def process(self, delivery: Delivery) -> Result[WebhookEvent | None, CommerceError]:
        return await guarded(lambda: self._process(delivery))

    async def _process(self, delivery: Delivery) -> WebhookEvent | None:
        match delivery.topic:
            case "payment_intent.succeeded" | "payment_intent.amount_capturable_updated":
                return await self._succeeded(delivery)
            case "payment_intent.payment_failed":
                return await self._failed(delivery)
            case "charge.refunded":
                return await self._refunded(delivery)
            case topic:
                logger.debug("Ignoring processor topic %s", topic)
                return None

    def _event(
        self, delivery: Delivery, kind: EventType, object_type: str, object_id: str, **payload: Any
    ) -> WebhookEvent:
        return WebhookEvent(
            id=delivery.event_id,
            tenant_id=self._ctx.tenant_id,
            type=kind,
            object_type=object_type,
            object_id=object_id,
            occurred_at=delivery.occurred_at,
            source=delivery.source,
            payload=payload,
        )

    async def _succeeded(self, delivery: Delivery) -> WebhookEvent | None:
        intent = parse_intent(delivery.payload)
        row = await self._checkout.by_reference(intent.id)
        if row is None:
            logger.info("Intent %s belongs to no checkout of tenant %s", intent.id, self._ctx.tenant_id)
            return None
        if row.status in (CheckoutStatus.FAILED.value, CheckoutStatus.EXPIRED.value):
            logger.error(
                "Intent %s succeeded for %s checkout %s; needs a manual refund",
                intent.id,
                row.status,
                row.id,
            )
            return None

        financial = (
            FinancialStatus.PAID
            if intent.status is IntentStatus.SUCCEEDED
            else FinancialStatus.AUTHORIZED
        )
        order_id = await self._checkout.settle_completed(row.id, financial)
        return self._event(
            delivery,
            EventType.ORDER_PAID if financial is FinancialStatus.PAID else EventType.CHECKOUT_COMPLETED,
            "order",
            order_id,
            checkout_session_id=row.id,
            financial_status=financial.value,
            amount=intent.amount.amount,
            currency=intent.amount.currency,
        )

    async def _failed(self, delivery: Delivery) -> WebhookEvent | None:
        intent = parse_intent(delivery.payload)
        row = await self._checkout.by_reference(intent.id)
        if row is None:
            return None
        reason = intent.failure_message or "Payment was declined"
        if not await self._checkout.settle_failed(row.id, reason):
            current = await self._checkout.row(row.id)
            if current.status != CheckoutStatus.FAILED.value:
                logger.info("Late failure for checkout %s ignored (%s)", row.id, current.status)
                return None
        return self._event(
            delivery,
            EventType.CHECKOUT_FAILED,
            "checkout_session",
            row.id,
            reason=reason,
            decline_code=intent.decline_code,
        )

    async def _refunded(self, delivery: Delivery) -> WebhookEvent | None:
        reference = delivery.payload.get("payment_intent")
        refunded = delivery.payload.get("amount_refunded")
        if not isinstance(reference, str) or not isinstance(refunded, int):
            logger.warning("charge.refunded %s without payment_intent/amount_refunded", delivery.event_id)
            return None
        order = await self._orders.record_refund(reference, refunded)
        if order is None:
            return None
        return self._event(
            delivery,
            EventType.ORDER_REFUNDED,
            "order",
            order.id,
            refunded=order.refunded.amount if order.refunded else 0,
            currency=order.currency,
            financial_status=order.financial_status.value,
        )


__all__ = ("ProcessorWebhooks",)
