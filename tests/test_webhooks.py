import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from kungfu import Result, Ok, Error

from commerceflex import model as M
from commerceflex import webhooks as W
from commerceflex.managed import ManagedProvider
from commerceflex.provider import Provider
from commerceflex.selfhosted import SelfHostedProvider

from conftest import (
    CURRENT_SECRET,
    MANAGED_SECRET,
    PREVIOUS_SECRET,
    TENANT,
    FakeClock,
    FakeProcessor,
    err,
    ok,
    platform_product,
    product,
    sqlite_url,
    variant_of,
)


class Fixed:
    """Resolves every tenant to one provider."""

    def __init__(self, provider: Provider) -> None:
        self.provider = provider

    async def resolve(self, tenant_id: str) -> Result[Provider, M.CommerceError]:
        return Ok(self.provider)


class Unknown:
    async def resolve(self, tenant_id: str) -> Result[Provider, M.CommerceError]:
        return Error(M.NotFoundError(f"Tenant {tenant_id} not found", entity="tenant", id=tenant_id))


@pytest.fixture
async def ledger(tmp_path: Path, clock: FakeClock) -> AsyncIterator[W.EventLedger]:
    ledger = W.EventLedger(sqlite_url(tmp_path / "events.db"), clock=clock)
    await ledger.create_all()
    yield ledger
    await ledger.dispose()


@pytest.fixture
def sink() -> W.MemorySink:
    return W.MemorySink()


def normalizer_for(provider: Provider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock) -> W.WebhookNormalizer:
    return W.WebhookNormalizer(Fixed(provider), sink, ledger.store, clock=clock)


def signed(body: bytes, clock: FakeClock, *, secret: str = CURRENT_SECRET, skew: int = 0) -> dict[str, str]:
    return {"Processor-Signature": W.processor_header(secret, clock.unix() + skew, body)}


async def awaiting_payment(shop: SelfHostedProvider) -> M.CheckoutSession:
    await shop.importer.products([product("tee", price=1000)])
    cart = ok(await shop.cart.create())
    ok(await shop.cart.add_line(cart.id, await variant_of(shop, "tee"), 2))
    session = ok(await shop.checkout.create(cart.id))
    ok(await shop.checkout.advance(session.id, email="buyer@example.com"))
    ok(
        await shop.checkout.advance(
            session.id, shipping_address=M.Address(line1="1 Main St", city="Springfield", country_code="US")
        )
    )
    return ok(await shop.checkout.advance(session.id))


# ═══════════════════════════════════════════════════════════════════════════════
# Processor signatures
# ═══════════════════════════════════════════════════════════════════════════════


async def test_previous_secret_is_accepted_during_rotation(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    body = processor.event("evt_1", "payment_intent.created", {"id": "pi_9"})

    current = ok(await normalizer.handle(TENANT, signed(body, clock), body))
    previous = ok(
        await normalizer.handle(TENANT, signed(body, clock, secret=PREVIOUS_SECRET), body)
    )
    forged = err(await normalizer.handle(TENANT, signed(body, clock, secret="whsec_other"), body))

    assert current.disposition is W.Disposition.IGNORED
    assert previous.duplicate
    assert isinstance(forged, M.WebhookVerificationError)


async def test_timestamp_tolerance(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    body = processor.event("evt_1", "payment_intent.created", {"id": "pi_9"})

    assert isinstance(
        err(await normalizer.handle(TENANT, signed(body, clock, skew=-301), body)),
        M.WebhookVerificationError,
    )
    assert isinstance(
        err(await normalizer.handle(TENANT, signed(body, clock, skew=301), body)),
        M.WebhookVerificationError,
    )
    ok(await normalizer.handle(TENANT, signed(body, clock, skew=-299), body))


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Processor-Signature": "garbage"},
        {"Processor-Signature": "t=abc,v1=00"},
    ],
)
async def test_malformed_signature_headers(
    shop: SelfHostedProvider,
    sink: W.MemorySink,
    ledger: W.EventLedger,
    clock: FakeClock,
    headers: dict[str, str],
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    error = err(await normalizer.handle(TENANT, headers, b"{}"))
    assert isinstance(error, M.WebhookVerificationError)


def test_header_lookup_is_case_insensitive() -> None:
    assert W.header({"x-hub-topic": "orders/paid"}, "X-Hub-Topic") == "orders/paid"
    assert W.header({}, "X-Hub-Topic") is None


# ═══════════════════════════════════════════════════════════════════════════════
# Processor events
# ═══════════════════════════════════════════════════════════════════════════════


async def test_replayed_success_settles_once(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    session = await awaiting_payment(shop)
    processor.intents["pi_1"]["status"] = "succeeded"
    body = processor.event("evt_paid", "payment_intent.succeeded", processor.intents["pi_1"])

    outcomes = [ok(await normalizer.handle(TENANT, signed(body, clock), body)) for _ in range(3)]

    assert [o.disposition for o in outcomes] == [
        W.Disposition.PROCESSED,
        W.Disposition.DUPLICATE,
        W.Disposition.DUPLICATE,
    ]
    assert outcomes[1].event == outcomes[0].event
    assert len(sink.events) == 1

    event = sink.events[0]
    assert event.type is M.EventType.ORDER_PAID
    assert event.source == "processor"
    assert event.payload["checkout_session_id"] == session.id

    page = ok(await shop.orders.list())
    assert [o.id for o in page.items] == [event.object_id]

    # complete observes the webhook's settlement and never confirms
    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))
    assert order.id == event.object_id
    assert processor.confirms == 0


async def test_success_webhook_racing_complete_writes_one_order(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    session = await awaiting_payment(shop)
    processor.intents["pi_1"]["status"] = "succeeded"
    body = processor.event("evt_paid", "payment_intent.succeeded", processor.intents["pi_1"])

    delivered, completed = await asyncio.gather(
        normalizer.handle(TENANT, signed(body, clock), body),
        shop.checkout.complete(session.id, idempotency_key="k1"),
    )

    assert ok(delivered).disposition is W.Disposition.PROCESSED
    order = ok(completed)
    page = ok(await shop.orders.list())
    assert [o.id for o in page.items] == [order.id]
    assert [e.object_id for e in sink.events] == [order.id]

    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.COMPLETED
    assert status.order_id == order.id
    assert processor.charges == 0


async def test_payment_failure_fails_the_checkout(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    session = await awaiting_payment(shop)
    intent = {
        **processor.intents["pi_1"],
        "status": "requires_payment_method",
        "last_payment_error": {"message": "Insufficient funds", "decline_code": "insufficient_funds"},
    }
    body = processor.event("evt_failed", "payment_intent.payment_failed", intent)

    outcome = ok(await normalizer.handle(TENANT, signed(body, clock), body))

    assert outcome.event is not None
    assert outcome.event.type is M.EventType.CHECKOUT_FAILED
    assert outcome.event.payload["decline_code"] == "insufficient_funds"
    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.FAILED


async def test_processor_refund_is_recorded(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    session = await awaiting_payment(shop)
    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    body = processor.event("evt_r1", "charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 500})
    outcome = ok(await normalizer.handle(TENANT, signed(body, clock), body))

    assert outcome.event is not None
    assert outcome.event.type is M.EventType.ORDER_REFUNDED
    refunded = ok(await shop.orders.get(order.id))
    assert refunded.financial_status is M.FinancialStatus.PARTIALLY_REFUNDED
    assert refunded.refunded == M.Money(500, "USD")

    # An older, smaller total arriving late never lowers the refund
    late = processor.event("evt_r0", "charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 200})
    ok(await normalizer.handle(TENANT, signed(late, clock), late))
    assert ok(await shop.orders.get(order.id)).refunded == M.Money(500, "USD")


async def test_success_for_unknown_intent_is_ignored(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    intent = {"id": "pi_404", "amount": 100, "currency": "usd", "status": "succeeded"}
    body = processor.event("evt_x", "payment_intent.succeeded", intent)

    outcome = ok(await normalizer.handle(TENANT, signed(body, clock), body))

    assert outcome.disposition is W.Disposition.IGNORED
    assert sink.events == []


# ═══════════════════════════════════════════════════════════════════════════════
# Managed deliveries
# ═══════════════════════════════════════════════════════════════════════════════


def managed_headers(body: bytes, topic: str, event_id: str, *, secret: str = MANAGED_SECRET) -> dict[str, str]:
    return {
        "X-Hub-Hmac-Sha256": W.sign_managed(secret, body),
        "X-Hub-Topic": topic,
        "X-Hub-Event-Id": event_id,
        "X-Hub-Triggered-At": "2026-03-02T11:59:00Z",
    }


async def test_managed_product_update(
    managed: ManagedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock
) -> None:
    normalizer = normalizer_for(managed, sink, ledger, clock)
    body = json.dumps(platform_product(1)).encode()

    outcome = ok(await normalizer.handle(TENANT, managed_headers(body, "products/update", "m-1"), body))

    assert outcome.event is not None
    assert outcome.event.type is M.EventType.PRODUCT_UPDATED
    assert outcome.event.object_id == "gid-p1"
    assert outcome.event.source == "managed"
    assert outcome.event.payload["handle"] == "product-1"
    assert outcome.event.occurred_at.minute == 59


async def test_managed_rejects_forgery_and_ignores_unknown_topics(
    managed: ManagedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock
) -> None:
    normalizer = normalizer_for(managed, sink, ledger, clock)
    body = json.dumps({"id": "gid-x"}).encode()

    forged = err(
        await normalizer.handle(TENANT, managed_headers(body, "orders/paid", "m-1", secret="nope"), body)
    )
    unknown = ok(await normalizer.handle(TENANT, managed_headers(body, "themes/publish", "m-2"), body))
    untitled = err(
        await normalizer.handle(TENANT, {"X-Hub-Hmac-Sha256": W.sign_managed(MANAGED_SECRET, body)}, body)
    )

    assert isinstance(forged, M.WebhookVerificationError)
    assert unknown.disposition is W.Disposition.IGNORED
    assert isinstance(untitled, M.WebhookVerificationError)
    assert sink.events == []


def test_same_event_id_from_different_sources_is_not_a_duplicate() -> None:
    at = FakeClock()()
    managed = M.Delivery("managed", "evt_1", "orders/paid", at, {})
    processor = M.Delivery("processor", "evt_1", "payment_intent.succeeded", at, {})
    assert W.dedupe_key(TENANT, managed) != W.dedupe_key(TENANT, processor)


# ═══════════════════════════════════════════════════════════════════════════════
# Resolution and retention
# ═══════════════════════════════════════════════════════════════════════════════


async def test_unknown_tenant(sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock) -> None:
    normalizer = W.WebhookNormalizer(Unknown(), sink, ledger.store, clock=clock)
    assert isinstance(err(await normalizer.handle("ghost", {}, b"{}")), M.NotFoundError)


async def test_ledger_rows_expire_after_retention(
    shop: SelfHostedProvider, sink: W.MemorySink, ledger: W.EventLedger, clock: FakeClock, processor: FakeProcessor
) -> None:
    normalizer = normalizer_for(shop, sink, ledger, clock)
    body = processor.event("evt_1", "payment_intent.created", {"id": "pi_9"})
    ok(await normalizer.handle(TENANT, signed(body, clock), body))

    assert await ledger.purge_expired() == 0
    clock.advance(hours=73)
    assert await ledger.purge_expired() == 1
