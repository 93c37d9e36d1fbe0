import asyncio
from pathlib import Path

from kungfu import Ok, Error

from commerceflex import model as M
from commerceflex.provider import NO_RETRY
from commerceflex.selfhosted import Database, HttpProcessor, Options, SelfHostedProvider

from conftest import (
    CURRENT_SECRET,
    PROCESSOR_URL,
    TENANT,
    FakeClock,
    FakeProcessor,
    add_discount,
    err,
    ok,
    product,
    sqlite_url,
    variant_of,
)

ADDRESS = M.Address(line1="1 Main St", city="Springfield", country_code="US", postal_code="12345")


async def filled_cart(shop: SelfHostedProvider, *codes: str) -> M.Cart:
    await shop.importer.products([product("tee", price=1000), product("mug", price=1500)])
    tee, mug = await variant_of(shop, "tee"), await variant_of(shop, "mug")
    cart = ok(await shop.cart.create())
    ok(await shop.cart.add_line(cart.id, tee, 1))
    cart = ok(await shop.cart.add_line(cart.id, mug, 2))
    for code in codes:
        cart = ok(await shop.discounts.apply(cart.id, code))
    return cart


async def payable(shop: SelfHostedProvider, cart: M.Cart) -> M.CheckoutSession:
    session = ok(await shop.checkout.create(cart.id))
    ok(await shop.checkout.advance(session.id, email="Buyer@Example.com"))
    ok(await shop.checkout.advance(session.id, shipping_address=ADDRESS))
    return ok(await shop.checkout.advance(session.id))


# ═══════════════════════════════════════════════════════════════════════════════
# Happy path
# ═══════════════════════════════════════════════════════════════════════════════


async def test_checkout_walks_to_an_order(shop: SelfHostedProvider, processor: FakeProcessor) -> None:
    cart = await filled_cart(shop)

    session = ok(await shop.checkout.create(cart.id))
    assert session.status is M.CheckoutStatus.DRAFT
    assert session.totals.subtotal == M.Money(4000, "USD")

    session = ok(await shop.checkout.advance(session.id, email="Buyer@Example.com"))
    assert session.status is M.CheckoutStatus.COLLECTING_SHIPPING
    assert session.email == "buyer@example.com"

    session = ok(await shop.checkout.advance(session.id, shipping_address=ADDRESS))
    assert session.status is M.CheckoutStatus.CALCULATING_TAX

    session = ok(await shop.checkout.advance(session.id))
    assert session.status is M.CheckoutStatus.AWAITING_PAYMENT
    assert session.payment_reference == "pi_1"

    target = ok(await shop.checkout.get_target(session.id))
    assert target.kind is M.TargetKind.EMBED
    assert target.client_secret == "pi_1_secret"

    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert order.number.startswith("SH-")
    assert order.financial_status is M.FinancialStatus.PAID
    assert order.total == M.Money(4000, "USD")
    assert order.email == "buyer@example.com"
    assert order.checkout_session_id == session.id
    assert processor.charges == 1

    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.COMPLETED
    assert status.order_id == order.id
    assert isinstance(err(await shop.cart.get(cart.id)), M.NotFoundError)

    tee = ok(await shop.catalog.get_by_handle("tee"))
    mug = ok(await shop.catalog.get_by_handle("mug"))
    assert tee.variants[0].inventory == 9
    assert mug.variants[0].inventory == 8


async def test_shipping_and_tax(tmp_path: Path, clock: FakeClock, processor: FakeProcessor) -> None:
    shop = SelfHostedProvider(
        TENANT,
        database=Database(sqlite_url(tmp_path / "taxed.db")),
        processor=HttpProcessor(PROCESSOR_URL, "sk_test", transport=processor.transport),
        webhook_secrets=[CURRENT_SECRET],
        options=Options(shipping_flat=500, tax_bps=825),
        clock=clock,
        retry=NO_RETRY,
    )
    await shop.create_all()
    try:
        session = await payable(shop, await filled_cart(shop))
    finally:
        await shop.aclose()

    # (40.00 + 5.00) × 8.25% = 3.7125 → 3.71
    assert session.totals.shipping == M.Money(500, "USD")
    assert session.totals.tax == M.Money(371, "USD")
    assert session.totals.total == M.Money(4871, "USD")
    assert processor.intents["pi_1"]["amount"] == 4871


async def test_discount_is_spread_over_order_lines(shop: SelfHostedProvider) -> None:
    await add_discount(shop, "SAVE10", percentage="10")
    session = await payable(shop, await filled_cart(shop, "SAVE10"))

    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert order.discount == M.Money(400, "USD")
    assert order.total == M.Money(3600, "USD")
    assert [item.discount.amount for item in order.line_items] == [100, 300]


async def test_fully_discounted_checkout_skips_the_processor(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    await add_discount(shop, "FREE", percentage="100")
    session = await payable(shop, await filled_cart(shop, "FREE"))
    assert session.payment_reference is None

    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert order.total == M.Money(0, "USD")
    assert order.financial_status is M.FinancialStatus.PAID
    assert processor.intents == {}


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotent completion
# ═══════════════════════════════════════════════════════════════════════════════


async def test_concurrent_complete_with_one_key_charges_once(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    session = await payable(shop, await filled_cart(shop))

    first, second = await asyncio.gather(
        shop.checkout.complete(session.id, idempotency_key="k1"),
        shop.checkout.complete(session.id, idempotency_key="k1"),
    )

    assert ok(first).id == ok(second).id
    assert processor.charges == 1
    assert processor.confirms == 1


async def test_complete_after_completion_returns_the_same_order(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    session = await payable(shop, await filled_cart(shop))
    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    again = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))
    other_key = ok(await shop.checkout.complete(session.id, idempotency_key="k2"))

    assert again.id == order.id
    assert other_key.id == order.id
    assert processor.charges == 1


async def test_complete_requires_a_key(shop: SelfHostedProvider) -> None:
    session = await payable(shop, await filled_cart(shop))
    assert isinstance(
        err(await shop.checkout.complete(session.id, idempotency_key=" ")), M.ValidationError
    )


async def test_retry_after_processing_settles_from_the_live_intent(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    session = await payable(shop, await filled_cart(shop))
    processor.hold = True

    error = err(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert isinstance(error, M.ProviderTransientError)
    assert error.recovery is M.Recovery.RETRY_STEP
    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.PAYMENT_PROCESSING

    # The bank settles later; a replayed confirm would still say "processing"
    processor.intents["pi_1"]["status"] = "succeeded"
    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert order.financial_status is M.FinancialStatus.PAID
    assert processor.confirms == 1


async def test_retry_while_still_processing_does_not_confirm_again(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    session = await payable(shop, await filled_cart(shop))
    processor.hold = True
    err(await shop.checkout.complete(session.id, idempotency_key="k1"))

    error = err(await shop.checkout.complete(session.id, idempotency_key="k2"))

    assert isinstance(error, M.ProviderTransientError)
    assert processor.confirms == 1


# ═══════════════════════════════════════════════════════════════════════════════
# Failure and finality
# ═══════════════════════════════════════════════════════════════════════════════


async def test_declined_payment_fails_the_session(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    cart = await filled_cart(shop)
    session = await payable(shop, cart)
    processor.decline = True

    error = err(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert isinstance(error, M.PaymentDeclinedError)
    assert error.decline_code == "generic_decline"
    assert error.recovery is M.Recovery.NEW_CHECKOUT
    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.FAILED
    assert status.failure_reason == "Your card was declined."

    # Retrying never re-confirms a failed session
    assert isinstance(
        err(await shop.checkout.complete(session.id, idempotency_key="k2")), M.PaymentDeclinedError
    )
    assert processor.confirms == 1
    closed = err(await shop.checkout.advance(session.id))
    assert isinstance(closed, M.CheckoutClosedError)
    assert closed.recovery is M.Recovery.NEW_CHECKOUT

    # The cart is released for a fresh attempt
    tee = await variant_of(shop, "tee")
    assert ok(await shop.cart.add_line(cart.id, tee, 1)).item_count == 4


async def test_terminal_sessions_are_final(shop: SelfHostedProvider) -> None:
    session = await payable(shop, await filled_cart(shop))
    ok(await shop.checkout.complete(session.id, idempotency_key="k1"))

    assert isinstance(err(await shop.checkout.advance(session.id)), M.ProviderPermanentError)
    assert isinstance(err(await shop.checkout.get_target(session.id)), M.ProviderPermanentError)
    assert ok(await shop.checkout.get_status(session.id)).status is M.CheckoutStatus.COMPLETED


async def test_advance_needs_its_inputs(shop: SelfHostedProvider) -> None:
    session = ok(await shop.checkout.create((await filled_cart(shop)).id))

    assert isinstance(err(await shop.checkout.advance(session.id)), M.ValidationError)
    assert isinstance(
        err(await shop.checkout.advance(session.id, email="not-an-email")), M.ValidationError
    )
    ok(await shop.checkout.advance(session.id, email="buyer@example.com"))
    assert isinstance(err(await shop.checkout.advance(session.id)), M.ValidationError)


async def test_stale_checkout_version_conflicts(shop: SelfHostedProvider) -> None:
    session = ok(await shop.checkout.create((await filled_cart(shop)).id))
    ok(await shop.checkout.advance(session.id, email="buyer@example.com"))

    error = err(
        await shop.checkout.advance(
            session.id, expected_version=session.version, shipping_address=ADDRESS
        )
    )

    assert isinstance(error, M.ConflictError)
    assert error.current_version == session.version + 1


async def test_double_submitted_advance_keeps_the_recorded_intent(
    shop: SelfHostedProvider, processor: FakeProcessor
) -> None:
    session = ok(await shop.checkout.create((await filled_cart(shop)).id))
    ok(await shop.checkout.advance(session.id, email="buyer@example.com"))
    ok(await shop.checkout.advance(session.id, shipping_address=ADDRESS))

    results = await asyncio.gather(
        shop.checkout.advance(session.id),
        shop.checkout.advance(session.id),
    )

    winners = [r for r in results if isinstance(r, Ok)]
    losers = [err(r) for r in results if isinstance(r, Error)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], (M.ConflictError, M.ProviderPermanentError))

    # Both attempts share one intent key; the loser must not cancel it
    assert list(processor.intents) == ["pi_1"]
    assert processor.intents["pi_1"]["status"] != "canceled"
    assert ok(await shop.checkout.get_status(session.id)).payment_reference == "pi_1"

    order = ok(await shop.checkout.complete(session.id, idempotency_key="k1"))
    assert order.financial_status is M.FinancialStatus.PAID
    assert processor.charges == 1


async def test_live_checkout_locks_its_cart(shop: SelfHostedProvider) -> None:
    cart = await filled_cart(shop)
    ok(await shop.checkout.create(cart.id))
    tee = await variant_of(shop, "tee")

    assert isinstance(err(await shop.checkout.create(cart.id)), M.ConflictError)
    assert isinstance(err(await shop.cart.add_line(cart.id, tee, 1)), M.ConflictError)


async def test_empty_cart_cannot_check_out(shop: SelfHostedProvider) -> None:
    cart = ok(await shop.cart.create())
    assert isinstance(err(await shop.checkout.create(cart.id)), M.ValidationError)


async def test_discount_usage_is_reserved_at_payment(shop: SelfHostedProvider) -> None:
    await add_discount(shop, "ONCE", amount=500, usage_limit=1)
    await payable(shop, await filled_cart(shop, "ONCE"))

    other = ok(await shop.cart.create())
    tee = await variant_of(shop, "tee")
    ok(await shop.cart.add_line(other.id, tee, 1))

    assert isinstance(err(await shop.discounts.apply(other.id, "ONCE")), M.ValidationError)


# ═══════════════════════════════════════════════════════════════════════════════
# Expiry
# ═══════════════════════════════════════════════════════════════════════════════


async def test_session_expires_lazily_and_unlocks_cart(shop: SelfHostedProvider, clock: FakeClock) -> None:
    cart = await filled_cart(shop)
    session = ok(await shop.checkout.create(cart.id))

    clock.advance(minutes=31)

    assert ok(await shop.checkout.get_status(session.id)).status is M.CheckoutStatus.EXPIRED
    closed = err(await shop.checkout.get_target(session.id))
    assert isinstance(closed, M.CheckoutClosedError)
    assert closed.recovery is M.Recovery.NEW_CHECKOUT
    tee = await variant_of(shop, "tee")
    assert ok(await shop.cart.add_line(cart.id, tee, 1)).item_count == 4
    assert ok(await shop.checkout.create(cart.id)).status is M.CheckoutStatus.DRAFT


async def test_cart_write_after_ttl_releases_the_lock(
    shop: SelfHostedProvider, clock: FakeClock, processor: FakeProcessor
) -> None:
    cart = await filled_cart(shop)
    session = await payable(shop, cart)
    tee = await variant_of(shop, "tee")

    clock.advance(minutes=31)

    # No checkout read in between: the cart write itself settles the session
    assert ok(await shop.cart.add_line(cart.id, tee, 1)).item_count == 4
    assert ok(await shop.checkout.get_status(session.id)).status is M.CheckoutStatus.EXPIRED
    assert processor.intents["pi_1"]["status"] == "canceled"


async def test_cart_stays_locked_while_payment_is_processing(
    shop: SelfHostedProvider, clock: FakeClock, processor: FakeProcessor
) -> None:
    cart = await filled_cart(shop)
    session = await payable(shop, cart)
    processor.hold = True
    clock.advance(minutes=25)
    err(await shop.checkout.complete(session.id, idempotency_key="k1"))
    tee = await variant_of(shop, "tee")

    # Past the session TTL but inside the confirm timeout of the dispatch
    clock.advance(minutes=6)

    assert isinstance(err(await shop.cart.add_line(cart.id, tee, 1)), M.ConflictError)
    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.PAYMENT_PROCESSING


async def test_sweep_expires_and_cancels_open_intents(
    shop: SelfHostedProvider, clock: FakeClock, processor: FakeProcessor
) -> None:
    await add_discount(shop, "ONCE", amount=500, usage_limit=1)
    session = await payable(shop, await filled_cart(shop, "ONCE"))

    clock.advance(minutes=31)

    assert ok(await shop.checkout.expire_stale()) == 1
    assert processor.intents["pi_1"]["status"] == "canceled"
    assert ok(await shop.checkout.get_status(session.id)).status is M.CheckoutStatus.EXPIRED
    assert isinstance(
        err(await shop.checkout.complete(session.id, idempotency_key="k1")), M.CheckoutClosedError
    )

    # The reservation went back with the session
    assert ok(await shop.discounts.validate("ONCE")).usage_count == 0


async def test_overdue_session_paid_out_of_band_completes(
    shop: SelfHostedProvider, clock: FakeClock, processor: FakeProcessor
) -> None:
    session = await payable(shop, await filled_cart(shop))
    processor.intents["pi_1"]["status"] = "succeeded"

    clock.advance(minutes=31)

    status = ok(await shop.checkout.get_status(session.id))
    assert status.status is M.CheckoutStatus.COMPLETED
    assert ok(await shop.orders.get(status.order_id or "")).financial_status is M.FinancialStatus.PAID


# ═══════════════════════════════════════════════════════════════════════════════
# Orders
# ═══════════════════════════════════════════════════════════════════════════════


async def paid_order(shop: SelfHostedProvider) -> M.Order:
    session = await payable(shop, await filled_cart(shop))
    return ok(await shop.checkout.complete(session.id, idempotency_key="k1"))


async def test_partial_then_full_refund(shop: SelfHostedProvider) -> None:
    order = await paid_order(shop)

    order = ok(await shop.orders.refund(order.id, amount=M.Money(1000, "USD"), idempotency_key="r1"))
    assert order.financial_status is M.FinancialStatus.PARTIALLY_REFUNDED
    assert order.refundable == M.Money(3000, "USD")

    # Replaying the key does not refund twice
    order = ok(await shop.orders.refund(order.id, amount=M.Money(1000, "USD"), idempotency_key="r1"))
    assert order.refundable == M.Money(3000, "USD")

    order = ok(await shop.orders.refund(order.id, idempotency_key="r2"))
    assert order.financial_status is M.FinancialStatus.REFUNDED
    assert order.refundable == M.Money(0, "USD")


async def test_refund_rejects_key_reuse_and_overdraw(shop: SelfHostedProvider) -> None:
    order = await paid_order(shop)
    ok(await shop.orders.refund(order.id, amount=M.Money(1000, "USD"), idempotency_key="r1"))

    reused = err(await shop.orders.refund(order.id, amount=M.Money(500, "USD"), idempotency_key="r1"))
    too_much = err(await shop.orders.refund(order.id, amount=M.Money(5000, "USD"), idempotency_key="r2"))

    assert isinstance(reused, M.ValidationError)
    assert isinstance(too_much, M.ValidationError)


async def test_cancel_refunds_a_paid_order(shop: SelfHostedProvider) -> None:
    order = await paid_order(shop)

    cancelled = ok(await shop.orders.cancel(order.id, reason="customer"))

    assert cancelled.is_cancelled
    assert cancelled.cancel_reason == "customer"
    assert cancelled.financial_status is M.FinancialStatus.REFUNDED
    # Cancelling twice is a no-op
    assert ok(await shop.orders.cancel(order.id)).cancelled_at == cancelled.cancelled_at


async def test_orders_page(shop: SelfHostedProvider) -> None:
    order = await paid_order(shop)

    page = ok(await shop.orders.list(first=10))

    assert [o.id for o in page.items] == [order.id]
    assert isinstance(err(await shop.orders.get("missing")), M.NotFoundError)


# ═══════════════════════════════════════════════════════════════════════════════
# Customers and subscriptions
# ═══════════════════════════════════════════════════════════════════════════════


async def test_customers_are_unique_by_email(shop: SelfHostedProvider) -> None:
    created = ok(await shop.customers.create(M.CustomerInput(email="Ada@Example.com", first_name="Ada")))

    assert created.email == "ada@example.com"
    assert ok(await shop.customers.get_by_email("ADA@example.com")).id == created.id
    assert isinstance(
        err(await shop.customers.create(M.CustomerInput(email="ada@example.com"))), M.ConflictError
    )


async def test_subscription_lifecycle(shop: SelfHostedProvider, clock: FakeClock) -> None:
    await shop.importer.products([product("coffee", price=1800)])
    coffee = await variant_of(shop, "coffee")
    customer = ok(await shop.customers.create(M.CustomerInput(email="ada@example.com")))

    sub = ok(await shop.subscriptions.create(customer.id, coffee, quantity=2))
    assert sub.status is M.SubscriptionStatus.ACTIVE
    assert sub.next_billing_at is not None and sub.next_billing_at.month == 4

    sub = ok(await shop.subscriptions.pause(sub.id))
    assert sub.status is M.SubscriptionStatus.PAUSED
    sub = ok(await shop.subscriptions.resume(sub.id))
    assert sub.status is M.SubscriptionStatus.ACTIVE

    sub = ok(await shop.subscriptions.cancel(sub.id))
    assert sub.status is M.SubscriptionStatus.CANCELLED
    assert sub.next_billing_at is None
    assert isinstance(err(await shop.subscriptions.resume(sub.id)), M.ProviderPermanentError)
