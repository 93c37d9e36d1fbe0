"""
Managed provider: a remote hosted commerce platform.
"""

from __future__ import annotations

import logging

import httpx

from commerceflex._types import Clock, utcnow
from commerceflex.managed._admin import Customers, Orders
from commerceflex.managed._cart import Carts, Discounts
from commerceflex.managed._catalog import Catalog
from commerceflex.managed._checkout import Checkout
from commerceflex.managed._client import Context, ManagedClient
from commerceflex.managed._webhooks import ManagedWebhooks
from commerceflex.model import ConfigurationError
from commerceflex.provider import Capability, ProviderKind, RetryPolicy, WriteGate
from commerceflex.webhooks._signatures import ManagedVerifier

logger = logging.getLogger(__name__)

CAPABILITIES = frozenset(
    {
        Capability.CATALOG_SEARCH,
        Capability.HOSTED_CHECKOUT,
        Capability.PARTIAL_REFUNDS,
        Capability.ORDER_CANCEL,
        Capability.CUSTOMER_ACCOUNTS,
        Capability.DISCOUNT_CODES,
        Capability.INVENTORY_TRACKING,
    }
)


class ManagedProvider:
    """
    Example:
        shop = ManagedProvider(
            "acme",
            store_domain="acme.platform.test",
            storefront_token=public_token,
            admin_token=admin_token,
            webhook_secret=secret,
        )
        match await shop.catalog.get_by_handle("mug"):
            case Ok(product): ...
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        store_domain: str,
        storefront_token: str,
        webhook_secret: str,
        admin_token: str | None = None,
        api_version: str = "2024-10",
        timeout: float = 10.0,
        gate: WriteGate | None = None,
        clock: Clock = utcnow,
        retry: RetryPolicy = RetryPolicy(),
        cache_size: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not webhook_secret:
            raise ConfigurationError("Managed backend requires a webhook secret", tenant_id=tenant_id)
        client = ManagedClient(
            store_domain,
            storefront_token,
            admin_token=admin_token,
            api_version=api_version,
            timeout=timeout,
            transport=transport,
        )
        ctx = Context(
            tenant_id=tenant_id,
            client=client,
            gate=gate if gate is not None else WriteGate(),
            retry=retry,
            clock=clock,
        )
        self._ctx = ctx
        self._catalog = Catalog(ctx, cache_size=cache_size)
        self._cart = Carts(ctx)
        self._checkout = Checkout(ctx, self._cart)
        self._orders = Orders(ctx)
        self._customers = Customers(ctx)
        self._discounts = Discounts(ctx, self._cart)
        self._webhooks = ManagedWebhooks(
            tenant_id, ManagedVerifier(webhook_secret, clock=clock), self._catalog
        )

    @property
    def tenant_id(self) -> str:
        return self._ctx.tenant_id

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.MANAGED

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
    def webhooks(self) -> ManagedWebhooks:
        return self._webhooks

    @property
    def subscriptions(self) -> None:
        return None

    def supports(self, capability: Capability) -> bool:
        return capability in CAPABILITIES

    async def aclose(self) -> None:
        logger.info("Closing managed provider for %s", self.tenant_id)
        await self._ctx.client.aclose()

    def __repr__(self) -> str:
        return f"ManagedProvider(tenant_id={self.tenant_id!r}, store={self._ctx.client.store_domain!r})"


__all__ = ("ManagedProvider", "CAPABILITIES")
