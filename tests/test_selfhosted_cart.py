import asyncio

from kungfu import Error

from commerceflex import model as M
from commerceflex.selfhosted import SelfHostedProvider

from conftest import add_discount, err, ok, product, variant_of


async def stock(shop: SelfHostedProvider) -> tuple[str, str]:
    await shop.importer.products([product("tee", price=1000), product("mug", price=1500)])
    return await variant_of(shop, "tee"), await variant_of(shop, "mug")


async def test_totals_follow_lines(shop: SelfHostedProvider) -> None:
    tee, mug = await stock(shop)
    cart = ok(await shop.cart.create())
    cart = ok(await shop.cart.add_line(cart.id, tee, 1, expected_version=cart.version))
    cart = ok(await shop.cart.add_line(cart.id, mug, 2, expected_version=cart.version))

    assert cart.subtotal == M.Money(4000, "USD")
    assert cart.total == M.Money(4000, "USD")
    assert [line.title for line in cart.lines] == ["Tee", "Mug"]

    mug_line = next(line for line in cart.lines if line.variant_id == mug)
    cart = ok(await shop.cart.update_line(cart.id, mug_line.id, 1))
    assert cart.subtotal == M.Money(2500, "USD")

    cart = ok(await shop.cart.remove_line(cart.id, mug_line.id))
    assert cart.subtotal == M.Money(1000, "USD")
    assert len(cart.lines) == 1


async def test_adding_same_variant_merges_lines(shop: SelfHostedProvider) -> None:
    tee, _ = await stock(shop)
    cart = ok(await shop.cart.create())
    ok(await shop.cart.add_line(cart.id, tee, 1))
    cart = ok(await shop.cart.add_line(cart.id, tee, 2))

    assert len(cart.lines) == 1
    assert cart.lines[0].quantity == 3


async def test_percentage_code(shop: SelfHostedProvider) -> None:
    tee, mug = await stock(shop)
    await add_discount(shop, "SAVE10", percentage="10")
    cart = ok(await shop.cart.create())
    ok(await shop.cart.add_line(cart.id, tee, 1))
    cart = ok(await shop.cart.add_line(cart.id, mug, 2))

    cart = ok(await shop.discounts.apply(cart.id, "save10"))

    assert cart.discount_codes == ("SAVE10",)
    assert cart.total_discount == M.Money(400, "USD")
    assert cart.total == M.Money(3600, "USD")

    cart = ok(await shop.discounts.remove(cart.id, "SAVE10"))
    assert cart.total == M.Money(4000, "USD")


async def test_unknown_or_ineligible_code_is_rejected(shop: SelfHostedProvider) -> None:
    tee, _ = await stock(shop)
    await add_discount(shop, "BIGSPEND", amount=500, minimum_subtotal=10_000)
    cart = ok(await shop.cart.create())
    cart = ok(await shop.cart.add_line(cart.id, tee, 1))

    assert isinstance(err(await shop.discounts.apply(cart.id, "NOPE")), M.ValidationError)
    assert isinstance(err(await shop.discounts.apply(cart.id, "BIGSPEND")), M.ValidationError)
    assert isinstance(err(await shop.discounts.validate("NOPE")), M.NotFoundError)

    # A failed apply leaves the cart untouched
    assert ok(await shop.cart.get(cart.id)).version == cart.version


async def test_stale_version_conflicts(shop: SelfHostedProvider) -> None:
    tee, mug = await stock(shop)
    cart = ok(await shop.cart.create())
    fresh = ok(await shop.cart.add_line(cart.id, tee, 1, expected_version=cart.version))

    error = err(await shop.cart.add_line(cart.id, mug, 1, expected_version=cart.version))

    assert isinstance(error, M.ConflictError)
    assert error.current_version == fresh.version
    assert ok(await shop.cart.get(cart.id)).subtotal == M.Money(1000, "USD")


async def test_concurrent_writers_on_same_version(shop: SelfHostedProvider) -> None:
    tee, mug = await stock(shop)
    cart = ok(await shop.cart.create())

    results = await asyncio.gather(
        shop.cart.add_line(cart.id, tee, 1, expected_version=cart.version),
        shop.cart.add_line(cart.id, mug, 1, expected_version=cart.version),
    )

    errors = [r for r in results if isinstance(r, Error)]
    assert len(errors) == 1
    assert isinstance(err(errors[0]), M.ConflictError)


async def test_concurrent_code_applies_keep_both_codes(shop: SelfHostedProvider) -> None:
    tee, _ = await stock(shop)
    await add_discount(shop, "SAVE10", percentage="10")
    await add_discount(shop, "FIVE", amount=500)
    cart = ok(await shop.cart.create())
    ok(await shop.cart.add_line(cart.id, tee, 2))

    for result in await asyncio.gather(
        shop.discounts.apply(cart.id, "SAVE10"),
        shop.discounts.apply(cart.id, "FIVE"),
    ):
        ok(result)

    assert set(ok(await shop.cart.get(cart.id)).discount_codes) == {"SAVE10", "FIVE"}


async def test_removing_a_code_that_is_not_applied(shop: SelfHostedProvider) -> None:
    tee, _ = await stock(shop)
    await add_discount(shop, "SAVE10", percentage="10")
    cart = ok(await shop.cart.create())
    cart = ok(await shop.cart.add_line(cart.id, tee, 1))

    assert isinstance(err(await shop.discounts.remove(cart.id, "SAVE10")), M.NotFoundError)
    assert ok(await shop.cart.get(cart.id)).version == cart.version


async def test_quantity_limits(shop: SelfHostedProvider) -> None:
    await shop.importer.products([product("rare", inventory=2)])
    rare = await variant_of(shop, "rare")
    cart = ok(await shop.cart.create())

    assert isinstance(err(await shop.cart.add_line(cart.id, rare, 0)), M.ValidationError)
    assert isinstance(err(await shop.cart.add_line(cart.id, rare, 3)), M.ProviderPermanentError)
    assert isinstance(err(await shop.cart.add_line(cart.id, "missing", 1)), M.NotFoundError)


async def test_unknown_cart(shop: SelfHostedProvider) -> None:
    assert isinstance(err(await shop.cart.get("nope")), M.NotFoundError)


async def test_frozen_tenant_rejects_writes_but_serves_reads(shop: SelfHostedProvider) -> None:
    tee, _ = await stock(shop)
    cart = ok(await shop.cart.create())
    await shop._ctx.gate.freeze(shop.tenant_id)

    error = err(await shop.cart.add_line(cart.id, tee, 1))

    assert isinstance(error, M.ProviderTransientError)
    assert error.status_code == 503
    assert ok(await shop.cart.get(cart.id)).lines == ()


async def test_catalog_listing_pages(shop: SelfHostedProvider) -> None:
    await shop.importer.products([product(f"item-{n}") for n in range(5)])

    first = ok(await shop.catalog.list(first=2))
    second = ok(await shop.catalog.list(first=2, after=first.next_cursor))
    third = ok(await shop.catalog.list(first=2, after=second.next_cursor))

    assert first.total == 5
    handles = [p.handle for page in (first, second, third) for p in page.items]
    assert sorted(handles) == [f"item-{n}" for n in range(5)]
    assert third.next_cursor is None
