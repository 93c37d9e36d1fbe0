"""
Adapter construction from a tenant configuration record.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta

import httpx
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from commerceflex._types import Clock, utcnow
from commerceflex.managed import ManagedProvider
from commerceflex.model import ConfigurationError
from commerceflex.provider import Provider, ProviderKind, RetryPolicy, WriteGate
from commerceflex.registry._config import ManagedSettings, SelfHostedSettings, TenantConfig
from commerceflex.selfhosted import Database, HttpProcessor, SelfHostedProvider

logger = logging.getLogger(__name__)

type Factory = Callable[[TenantConfig, ProviderKind, WriteGate], Awaitable[Provider]]


@dataclass(frozen=True, slots=True)
class ProviderFactory:
    """
    Builds the adapter for ``kind`` from the matching configuration section.

    Transports are injectable so tests can put ``httpx.MockTransport``
    fakes behind both backends.
    """

    clock: Clock = utcnow
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    managed_transport: httpx.AsyncBaseTransport | None = None
    processor_transport: httpx.AsyncBaseTransport | None = None

    async def __call__(
        self, config: TenantConfig, kind: ProviderKind, gate: WriteGate
    ) -> Provider:
        match config.settings_for(kind):
            case ManagedSettings() as settings:
                return self._managed(config.tenant_id, settings, gate)
            case SelfHostedSettings() as settings:
                return await self._self_hosted(config.tenant_id, settings, gate)
        raise ConfigurationError(f"No adapter for {kind.value}", tenant_id=config.tenant_id)

    def _managed(self, tenant_id: str, settings: ManagedSettings, gate: WriteGate) -> Provider:
        return ManagedProvider(
            tenant_id,
            store_domain=settings.store_domain,
            storefront_token=settings.storefront_token,
            admin_token=settings.admin_token,
            webhook_secret=settings.webhook_secret,
            api_version=settings.api_version,
            timeout=settings.timeout,
            gate=gate,
            clock=self.clock,
            retry=self.retry,
            cache_size=settings.cache_size,
            transport=self.managed_transport,
        )

    async def _self_hosted(
        self, tenant_id: str, settings: SelfHostedSettings, gate: WriteGate
    ) -> Provider:
        try:
            database = Database(settings.database_url)
        except ArgumentError as e:
            raise ConfigurationError(
                f"Invalid database URL for tenant {tenant_id}: {e}", tenant_id=tenant_id
            ) from None

        provider = SelfHostedProvider(
            tenant_id,
            database=database,
            processor=HttpProcessor(
                settings.processor_url,
                settings.processor_key,
                timeout=settings.timeout,
                transport=self.processor_transport,
            ),
            webhook_secrets=settings.webhook_secrets,
            options=settings.options(),
            gate=gate,
            clock=self.clock,
            retry=self.retry,
            signature_tolerance=timedelta(seconds=settings.signature_tolerance_seconds),
        )
        if settings.create_schema:
            try:
                await provider.create_all()
            except SQLAlchemyError as e:
                await provider.aclose()
                raise ConfigurationError(
                    f"Cannot prepare schema for tenant {tenant_id}: {e}", tenant_id=tenant_id
                ) from None
        return provider


__all__ = ("Factory", "ProviderFactory")
