"""
Card processor client.

Payment intents follow the usual two-phase shape: an intent is created for
the checkout total when the buyer reaches payment, then confirmed when the
buyer submits. Every state-moving call carries an idempotency key so a
retried request never charges twice.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from commerceflex._http import send
from commerceflex.model import Money


class IntentStatus(Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


@dataclass(frozen=True, slots=True)
class PaymentIntent:
    id: str
    amount: Money
    status: IntentStatus
    client_secret: str | None = None
    decline_code: str | None = None
    failure_message: str | None = None

    @property
    def authorized(self) -> bool:
        return self.status in (IntentStatus.REQUIRES_CAPTURE, IntentStatus.SUCCEEDED)

    @property
    def declined(self) -> bool:
        """Confirmed and sent back for a new payment method, or cancelled."""
        return self.status is IntentStatus.CANCELED or (
            self.status is IntentStatus.REQUIRES_PAYMENT_METHOD and self.failure_message is not None
        )


@dataclass(frozen=True, slots=True)
class Refund:
    id: str
    amount: Money
    status: str


class CardProcessor(Protocol):
    async def create_intent(
        self, amount: Money, *, idempotency_key: str, metadata: Mapping[str, str] | None = None
    ) -> PaymentIntent: ...

    async def confirm(
        self, intent_id: str, *, idempotency_key: str, payment_method: str | None = None
    ) -> PaymentIntent: ...

    async def retrieve(self, intent_id: str) -> PaymentIntent: ...

    async def cancel(self, intent_id: str, *, idempotency_key: str) -> PaymentIntent: ...

    async def refund(
        self, intent_id: str, amount: Money, *, idempotency_key: str
    ) -> Refund: ...

    async def aclose(self) -> None: ...


def parse_intent(data: Mapping[str, Any]) -> PaymentIntent:
    error = data.get("last_payment_error") or {}
    return PaymentIntent(
        id=data["id"],
        amount=Money(int(data["amount"]), str(data["currency"]).upper()),
        status=IntentStatus(data["status"]),
        client_secret=data.get("client_secret"),
        decline_code=error.get("decline_code") or error.get("code"),
        failure_message=error.get("message"),
    )


class HttpProcessor:
    """Processor over its REST API, one pooled client per adapter."""

    backend = "processor"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def _call(
        self, method: str, url: str, *, idempotency_key: str | None = None, **kwargs: Any
    ) -> Any:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return await send(
            self._client, method, url, backend=self.backend, headers=headers, **kwargs
        )

    async def create_intent(
        self, amount: Money, *, idempotency_key: str, metadata: Mapping[str, str] | None = None
    ) -> PaymentIntent:
        data = await self._call(
            "POST",
            "/payment_intents",
            idempotency_key=idempotency_key,
            json={
                "amount": amount.amount,
                "currency": amount.currency.lower(),
                "capture_method": "automatic",
                "metadata": dict(metadata or {}),
            },
        )
        return parse_intent(data)

    async def confirm(
        self, intent_id: str, *, idempotency_key: str, payment_method: str | None = None
    ) -> PaymentIntent:
        body = {"payment_method": payment_method} if payment_method else {}
        data = await self._call(
            "POST",
            f"/payment_intents/{intent_id}/confirm",
            idempotency_key=idempotency_key,
            json=body,
        )
        return parse_intent(data)

    async def retrieve(self, intent_id: str) -> PaymentIntent:
        return parse_intent(await self._call("GET", f"/payment_intents/{intent_id}"))

    async def cancel(self, intent_id: str, *, idempotency_key: str) -> PaymentIntent:
        data = await self._call(
            "POST", f"/payment_intents/{intent_id}/cancel", idempotency_key=idempotency_key
        )
        return parse_intent(data)

    async def refund(self, intent_id: str, amount: Money, *, idempotency_key: str) -> Refund:
        data = await self._call(
            "POST",
            "/refunds",
            idempotency_key=idempotency_key,
            json={"payment_intent": intent_id, "amount": amount.amount},
        )
        return Refund(
            id=data["id"],
            amount=Money(int(data["amount"]), amount.currency),
            status=data.get("status", "succeeded"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = (
    "IntentStatus",
    "PaymentIntent",
    "Refund",
    "CardProcessor",
    "HttpProcessor",
    "parse_intent",
)
