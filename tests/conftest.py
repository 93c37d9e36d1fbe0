"""
Shared fixtures: a controllable clock, ``httpx.MockTransport`` fakes for the
card processor and the managed platform, and providers wired to them.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from kungfu import Result, Ok, Error

from commerceflex import model as M
from commerceflex.managed import ManagedProvider
from commerceflex.provider import NO_RETRY
from commerceflex.registry import ProviderFactory, ProviderRegistry, StaticConfigSource, StaticFlags
from commerceflex.selfhosted import Database, HttpProcessor, Options, SelfHostedProvider
from commerceflex.selfhosted._tables import DiscountRow

TENANT = "acme"
STORE_DOMAIN = "acme.platform.test"
PROCESSOR_URL = "https://processor.test/v1"
CURRENT_SECRET = "whsec_current"
PREVIOUS_SECRET = "whsec_previous"
MANAGED_SECRET = "shpss_managed"


# ═══════════════════════════════════════════════════════════════════════════════
# Result helpers
# ═══════════════════════════════════════════════════════════════════════════════


def ok[T](result: Result[T, Any]) -> T:
    match result:
        case Ok(value):
            return value
        case Error(e):
            pytest.fail(f"expected Ok, got Error({e!r})")


def err[E](result: Result[Any, E]) -> E:
    match result:
        case Ok(value):
            pytest.fail(f"expected Error, got Ok({value!r})")
        case Error(e):
            return e


# ═══════════════════════════════════════════════════════════════════════════════
# Clock
# ═══════════════════════════════════════════════════════════════════════════════


class FakeClock:
    def __init__(self, now: datetime = datetime(2026, 3, 2, 12, 0)) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)

    def unix(self) -> int:
        return int(self.now.replace(tzinfo=UTC).timestamp())


# ═══════════════════════════════════════════════════════════════════════════════
# Card processor
# ═══════════════════════════════════════════════════════════════════════════════


class FakeProcessor:
    """
    Payment intents in memory. A repeated ``Idempotency-Key`` replays the
    first response, like the real processor.
    """

    def __init__(self) -> None:
        self.intents: dict[str, dict[str, Any]] = {}
        self.replies: dict[str, dict[str, Any]] = {}
        self.charges = 0
        self.confirms = 0
        self.decline = False
        # Confirms leave the intent processing, like a slow bank
        self.hold = False
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        key = request.headers.get("Idempotency-Key")
        if key is not None and key in self.replies:
            return httpx.Response(200, json=self.replies[key])

        body = json.loads(request.content) if request.content else {}
        parts = request.url.path.removeprefix("/v1").strip("/").split("/")
        match request.method, parts:
            case "POST", ["payment_intents"]:
                intent_id = f"pi_{len(self.intents) + 1}"
                reply = {
                    "id": intent_id,
                    "amount": body["amount"],
                    "currency": body["currency"],
                    "status": "requires_confirmation",
                    "client_secret": f"{intent_id}_secret",
                }
                self.intents[intent_id] = reply
            case "POST", ["payment_intents", intent_id, "confirm"]:
                reply = self._confirm(intent_id)
            case "POST", ["payment_intents", intent_id, "cancel"]:
                self.intents[intent_id]["status"] = "canceled"
                reply = self.intents[intent_id]
            case "GET", ["payment_intents", intent_id] if intent_id in self.intents:
                reply = self.intents[intent_id]
            case "POST", ["refunds"]:
                reply = {"id": f"re_{uuid.uuid4().hex[:8]}", "amount": body["amount"], "status": "succeeded"}
            case _:
                return httpx.Response(404, json={"error": {"message": "No such resource"}})

        reply = dict(reply)
        if key is not None:
            self.replies[key] = reply
        return httpx.Response(200, json=reply)

    def _confirm(self, intent_id: str) -> dict[str, Any]:
        self.confirms += 1
        intent = self.intents[intent_id]
        if self.decline:
            intent["status"] = "requires_payment_method"
            intent["last_payment_error"] = {
                "message": "Your card was declined.",
                "decline_code": "generic_decline",
            }
        elif self.hold:
            intent["status"] = "processing"
        elif intent["status"] != "succeeded":
            self.charges += 1
            intent["status"] = "succeeded"
        return intent

    def event(self, event_id: str, kind: str, obj: dict[str, Any]) -> bytes:
        return json.dumps({"id": event_id, "type": kind, "data": {"object": obj}}).encode()


# ═══════════════════════════════════════════════════════════════════════════════
# Managed platform
# ═══════════════════════════════════════════════════════════════════════════════


def _money(amount: str) -> dict[str, str]:
    return {"amount": amount, "currency_code": "USD"}


def platform_product(n: int, *, variants: int = 2, price: str = "10.00") -> dict[str, Any]:
    return {
        "id": f"gid-p{n}",
        "handle": f"product-{n}",
        "title": f"Product {n}",
        "status": "active",
        "variants": [
            {
                "id": f"gid-v{n}-{i}",
                "title": f"Size {i}",
                "sku": f"SKU-{n}-{i}",
                "price": _money(price),
                "inventory_quantity": 5,
                "position": i,
            }
            for i in range(1, variants + 1)
        ],
        "created_at": "2025-11-01T09:00:00Z",
        "updated_at": "2026-02-01T09:00:00Z",
    }


def platform_customer(n: int) -> dict[str, Any]:
    return {
        "id": f"gid-c{n}",
        "email": f"Buyer{n}@Example.com",
        "first_name": "Ada",
        "last_name": f"Buyer{n}",
        "addresses": [{"address1": f"{n} Main St", "city": "Springfield", "zip": "12345", "country_code": "US"}],
    }


def platform_order(n: int) -> dict[str, Any]:
    return {
        "id": f"gid-o{n}",
        "name": f"#10{n:02d}",
        "currency_code": "USD",
        "email": f"buyer{n}@example.com",
        "customer_id": f"gid-c{n}",
        "line_items": [
            {
                "id": f"gid-li{n}",
                "product_id": "gid-p1",
                "variant_id": "gid-v1-1",
                "title": "Product 1 - Size 1",
                "quantity": 2,
                "original_unit_price": _money("10.00"),
                "total_discount": _money("2.00"),
                "sku": "SKU-1-1",
            }
        ],
        "subtotal_price": _money("20.00"),
        "total_discounts": _money("2.00"),
        "total_shipping_price": _money("5.00"),
        "total_tax": _money("1.50"),
        "total_price": _money("24.50"),
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": "2026-01-15T10:00:00Z",
        "updated_at": "2026-01-15T10:05:00Z",
    }


class FakePlatform:
    """
    Storefront and admin endpoints over in-memory records. ``page_info`` is
    the offset of the page, as a string.
    """

    def __init__(self) -> None:
        self.products: list[dict[str, Any]] = []
        self.customers: list[dict[str, Any]] = []
        self.orders: list[dict[str, Any]] = []
        self.outage = False
        self.fail_page: str | None = None
        self.requests: list[str] = []
        self.product_pages: list[str | None] = []
        self.transport = httpx.MockTransport(self.handle)

    def seed(self, products: int = 0, customers: int = 0, orders: int = 0) -> None:
        self.products = [platform_product(n) for n in range(1, products + 1)]
        self.customers = [platform_customer(n) for n in range(1, customers + 1)]
        self.orders = [platform_order(n) for n in range(1, orders + 1)]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/2024-10")
        params = request.url.params
        self.requests.append(path)
        if self.outage:
            return httpx.Response(503, json={"errors": "Service unavailable"})

        match path.strip("/").split("/"):
            case ["products"] if "handle" in params:
                found = [p for p in self.products if p["handle"] == params["handle"]]
                return httpx.Response(200, json={"products": found})
            case ["products"]:
                self.product_pages.append(params.get("page_info"))
                return self._page("products", self.products, params)
            case ["products", product_id]:
                for item in self.products:
                    if item["id"] == product_id:
                        return httpx.Response(200, json={"product": item})
            case ["admin", "customers"]:
                return self._page("customers", self.customers, params)
            case ["admin", "orders"]:
                return self._page("orders", self.orders, params)
        return httpx.Response(404, json={"errors": "Not Found"})

    def _page(self, name: str, items: list[dict[str, Any]], params: httpx.QueryParams) -> httpx.Response:
        page_info = params.get("page_info")
        if page_info is not None and page_info == self.fail_page:
            return httpx.Response(503, json={"errors": "Service unavailable"})
        start = int(page_info or 0)
        end = start + int(params.get("limit", 50))
        return httpx.Response(
            200,
            json={
                name: items[start:end],
                "next_page_info": str(end) if end < len(items) else None,
                "count": len(items),
            },
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Catalog fixtures for the self-hosted backend
# ═══════════════════════════════════════════════════════════════════════════════


def product(
    handle: str,
    *,
    price: int = 1000,
    inventory: int | None = 10,
    sku: str | None = None,
) -> M.Product:
    """A one-variant product keyed by ``src-<handle>`` as if it came from a source."""
    return M.Product(
        id=f"src-{handle}",
        handle=handle,
        title=handle.replace("-", " ").title(),
        variants=(
            M.Variant(
                id=f"src-{handle}-v1",
                product_id=f"src-{handle}",
                title="Default Title",
                price=M.Money(price, "USD"),
                sku=sku or handle.upper(),
                inventory=inventory,
            ),
        ),
    )


async def variant_of(shop: SelfHostedProvider, handle: str) -> str:
    found = ok(await shop.catalog.get_by_handle(handle))
    return found.variants[0].id


async def add_discount(
    shop: SelfHostedProvider,
    code: str,
    *,
    percentage: str | None = None,
    amount: int | None = None,
    usage_limit: int | None = None,
    minimum_subtotal: int | None = None,
) -> None:
    async with shop.database.sessions() as session, session.begin():
        session.add(
            DiscountRow(
                id=str(uuid.uuid4()),
                tenant_id=shop.tenant_id,
                code=code,
                kind="percentage" if percentage is not None else "fixed_amount",
                percentage=percentage,
                amount=amount,
                currency="USD" if amount is not None else None,
                minimum_subtotal=minimum_subtotal,
                usage_count=0,
                usage_limit=usage_limit,
            )
        )


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


def tenant_config(tmp_path: Path, **extra: Any) -> dict[str, Any]:
    return {
        "managed": {
            "store_domain": STORE_DOMAIN,
            "storefront_token": "sf_token",
            "admin_token": "admin_token",
            "webhook_secret": MANAGED_SECRET,
        },
        "self_hosted": {
            "database_url": sqlite_url(tmp_path / "acme.db"),
            "processor_url": PROCESSOR_URL,
            "processor_key": "sk_test",
            "webhook_secrets": [CURRENT_SECRET, PREVIOUS_SECRET],
            "create_schema": True,
        },
        **extra,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
async def shop(tmp_path: Path, clock: FakeClock, processor: FakeProcessor) -> AsyncIterator[SelfHostedProvider]:
    provider = SelfHostedProvider(
        TENANT,
        database=Database(sqlite_url(tmp_path / "shop.db")),
        processor=HttpProcessor(PROCESSOR_URL, "sk_test", transport=processor.transport),
        webhook_secrets=[CURRENT_SECRET, PREVIOUS_SECRET],
        options=Options(currency="USD"),
        clock=clock,
        retry=NO_RETRY,
    )
    await provider.create_all()
    yield provider
    await provider.aclose()


@pytest.fixture
async def managed(clock: FakeClock, platform: FakePlatform) -> AsyncIterator[ManagedProvider]:
    provider = ManagedProvider(
        TENANT,
        store_domain=STORE_DOMAIN,
        storefront_token="sf_token",
        admin_token="admin_token",
        webhook_secret=MANAGED_SECRET,
        clock=clock,
        retry=NO_RETRY,
        transport=platform.transport,
    )
    yield provider
    await provider.aclose()


@pytest.fixture
async def registry(
    tmp_path: Path, clock: FakeClock, platform: FakePlatform, processor: FakeProcessor
) -> AsyncIterator[ProviderRegistry]:
    registry = ProviderRegistry(
        StaticConfigSource({TENANT: tenant_config(tmp_path)}),
        StaticFlags(clock=clock),
        factory=ProviderFactory(
            clock=clock,
            retry=NO_RETRY,
            managed_transport=platform.transport,
            processor_transport=processor.transport,
        ),
    )
    yield registry
    await registry.shutdown()
