"""
Webhook normalizer: verify, dedupe, apply, emit.

    delivery ──verify──▶ ledger claim ──▶ provider.process ──▶ sink.emit
                             │
                             └─ seen before ──▶ stored event, nothing applied

The ledger claim and the emission sit inside one idempotent operation, so
a failure anywhere releases the claim and the backend's redelivery runs
the whole thing again.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Protocol

from kungfu import Result, Ok, Error

from commerceflex._types import Clock, utcnow
from commerceflex.idempotency import FAIL, Policy, StoreAny, idempotent
from commerceflex.model import CommerceError, Delivery, WebhookEvent
from commerceflex.provider import Provider, ledger_error
from commerceflex.webhooks._sink import EventSink

logger = logging.getLogger(__name__)


class Resolver(Protocol):
    async def resolve(self, tenant_id: str) -> Result[Provider, CommerceError]: ...


class Disposition(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True, slots=True)
class Outcome:
    disposition: Disposition
    event: WebhookEvent | None = None

    @property
    def duplicate(self) -> bool:
        return self.disposition is Disposition.DUPLICATE


@dataclass(frozen=True, slots=True)
class _Inbound:
    tenant_id: str
    provider: Provider
    delivery: Delivery


def dedupe_key(tenant_id: str, delivery: Delivery) -> str:
    return f"webhook:{tenant_id}:{delivery.source}:{delivery.event_id}"


def _encode(event: WebhookEvent | None) -> str:
    return event.to_json() if event is not None else ""


def _decode(raw: str) -> WebhookEvent | None:
    return WebhookEvent.from_json(raw) if raw else None


class WebhookNormalizer:
    def __init__(
        self,
        resolver: Resolver,
        sink: EventSink,
        store: StoreAny,
        *,
        retention: timedelta = timedelta(hours=72),
        claim_lease: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow,
    ) -> None:
        self._resolver = resolver
        self._sink = sink
        # FAIL on pending: the second concurrent delivery gets a 409 and is redelivered
        self._apply = (
            idempotent(self._apply_once)
            .key(lambda inbound: dedupe_key(inbound.tenant_id, inbound.delivery))
            .store(store)
            .policy(
                Policy()
                .with_ttl(delta=retention)
                .with_pending_ttl(delta=claim_lease)
                .with_on_pending(FAIL)
            )
            .codec(_encode, _decode)
            .clock(clock)
            .build()
        )

    async def handle(
        self, tenant_id: str, headers: Mapping[str, str], body: bytes
    ) -> Result[Outcome, CommerceError]:
        match await self._resolver.resolve(tenant_id):
            case Ok(provider):
                pass
            case Error(err):
                return Error(err)

        match provider.webhooks.verify(headers, body):
            case Ok(delivery):
                pass
            case Error(rejected):
                logger.warning("Rejected webhook for %s: %s", tenant_id, rejected.message)
                return Error(rejected)

        match await self._apply.run(_Inbound(tenant_id, provider, delivery)):
            case Ok(done) if done.from_cache:
                logger.info("Duplicate delivery %s/%s for %s", delivery.source, delivery.event_id, tenant_id)
                return Ok(Outcome(Disposition.DUPLICATE, done.value))
            case Ok(done) if done.value is None:
                return Ok(Outcome(Disposition.IGNORED))
            case Ok(done):
                return Ok(Outcome(Disposition.PROCESSED, done.value))
            case Error(err):
                error = ledger_error(err)
                logger.warning(
                    "Webhook %s/%s for %s failed: %s", delivery.source, delivery.event_id, tenant_id, error
                )
                return Error(error)

    async def _apply_once(self, inbound: _Inbound) -> Result[WebhookEvent | None, CommerceError]:
        match await inbound.provider.webhooks.process(inbound.delivery):
            case Ok(None):
                logger.debug("Acknowledged %s topic %s", inbound.delivery.source, inbound.delivery.topic)
                return Ok(None)
            case Ok(event):
                await self._sink.emit(event)
                return Ok(event)
            case Error(err):
                return Error(err)


__all__ = (
    "Resolver",
    "Disposition",
    "Outcome",
    "WebhookNormalizer",
    "dedupe_key",
)
