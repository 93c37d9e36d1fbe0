"""
Self-hosted provider: local SQL storage plus a card processor.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta

from commerceflex._types import Clock, utcnow
from commerceflex.idempotency import SQLAlchemyStore
from commerceflex.provider import Capability, ProviderKind, RetryPolicy, WriteGate
from commerceflex.selfhosted._cart import Carts
from commerceflex.selfhosted._catalog import Catalog
from commerceflex.selfhosted._checkout import Checkout
from commerceflex.selfhosted._context import Context, Options
from commerceflex.selfhosted._customers import Customers
from commerceflex.selfhosted._database import Database
from commerceflex.selfhosted._discounts import Discounts
from commerceflex.selfhosted._importer import Importer
from commerceflex.selfhosted._orders import Orders
from commerceflex.selfhosted._processor import CardProcessor
from commerceflex.selfhosted._subscriptions import Subscriptions
from commerceflex.selfhosted._tables import LedgerRow
from commerceflex.selfhosted._webhooks import ProcessorWebhooks
from commerceflex.webhooks._signatures import ProcessorVerifier

logger = logging.getLogger(__name__)

CAPABILITIES = frozenset(
    {
        Capability.CATALOG_SEARCH,
        Capability.EMBEDDED_CHECKOUT,
        Capability.PARTIAL_REFUNDS,
        Capability.ORDER_CANCEL,
        Capability.CUSTOMER_ACCOUNTS,
        Capability.DISCOUNT_CODES,
        Capability.SUBSCRIPTIONS,
        Capability.INVENTORY_TRACKING,
    }
)


class SelfHostedProvider:
    """
    Example:
        shop = SelfHostedProvider(
            "acme",
            database=Database("sqlite+aiosqlite:///acme.db"),
            processor=HttpProcessor("https://api.processor.test/v1", key),
            webhook_secrets=["whsec_current", "whsec_previous"],
        )
        await shop.create_all()
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        database: Database,
        processor: CardProcessor,
        webhook_secrets: Sequence[str],
        options: Options = Options(),
        gate: WriteGate | None = None,
        clock: Clock = utcnow,
        retry: RetryPolicy = RetryPolicy(),
        signature_tolerance: timedelta = timedelta(seconds=300),
    ) -> None:
        ctx = Context(
            tenant_id=tenant_id,
            db=database,
            processor=processor,
            options=options,
            gate=gate if gate is not None else WriteGate(),
            clock=clock,
            ledger=SQLAlchemyStore(
                database.sessions, LedgerRow, dialect=database.dialect, clock=clock
            ),
            retry=retry,
        )
        self._ctx = ctx
        self._catalog = Catalog(ctx)
        self._checkout = Checkout(ctx)
        self._cart = Carts(ctx, sweep=self._checkout.sweep_cart)
        self._orders = Orders(ctx)
        self._customers = Customers(ctx)
        self._discounts = Discounts(ctx, self._cart)
        self._subscriptions = Subscriptions(ctx)
        self._webhooks = ProcessorWebhooks(
            ctx,
            self._checkout,
            self._orders,
            ProcessorVerifier(tuple(webhook_secrets), tolerance=signature_tolerance, clock=clock),
        )
        self.importer = Importer(ctx)

    @property
    def tenant_id(self) -> str:
        return self._ctx.tenant_id

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.SELF_HOSTED

    @property
    def capabilities(self) -> frozenset[Capability]:
        return CAPABILITIES

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def cart(self) -> Carts:
        return self._cart

    @property
    def checkout(self) -> Checkout:
        return self._checkout

    @property
    def orders(self) -> Orders:
        return self._orders

    @property
    def customers(self) -> Customers:
        return self._customers

    @property
    def discounts(self) -> Discounts:
        return self._discounts

    @property
    def webhooks(self) -> ProcessorWebhooks:
        return self._webhooks

    @property
    def subscriptions(self) -> Subscriptions:
        return self._subscriptions

    @property
    def database(self) -> Database:
        return self._ctx.db

    @property
    def ledger(self) -> SQLAlchemyStore:
        return self._ctx.ledger

    def supports(self, capability: Capability) -> bool:
        return capability in CAPABILITIES

    async def create_all(self) -> None:
        await self._ctx.db.create_all()

    async def aclose(self) -> None:
        logger.info("Closing self-hosted provider for %s", self.tenant_id)
        try:
            await self._ctx.processor.aclose()
        finally:
            await self._ctx.db.dispose()

    def __repr__(self) -> str:
        return f"SelfHostedProvider(tenant_id={self.tenant_id!r})"


__all__ = ("SelfHostedProvider", "CAPABILITIES")
