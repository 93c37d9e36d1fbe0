"""
Tenant configuration.

One record per tenant: an optional explicit provider override and the
credentials for each backend the tenant can run on. Records are pydantic
models so a source can hand over raw mappings (a JSON column, a secrets
manager document) and get them validated in one place.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Literal, Protocol

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from commerceflex.model import ConfigurationError
from commerceflex.provider import ProviderKind
from commerceflex.selfhosted import Options

logger = logging.getLogger(__name__)


class ManagedSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    store_domain: str = Field(min_length=1)
    storefront_token: str = Field(min_length=1, repr=False)
    admin_token: str | None = Field(default=None, repr=False)
    webhook_secret: str = Field(min_length=1, repr=False)
    api_version: str = "2024-10"
    timeout: float = Field(default=10.0, gt=0)
    cache_size: int = Field(default=500, ge=1)


class SelfHostedSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    database_url: str = Field(min_length=1, repr=False)
    processor_url: str = Field(min_length=1)
    processor_key: str = Field(min_length=1, repr=False)
    # Current secret first; the previous one stays accepted during rotation
    webhook_secrets: tuple[str, ...] = Field(min_length=1, max_length=2, repr=False)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    checkout_ttl_minutes: int = Field(default=30, ge=1)
    confirm_timeout_minutes: int = Field(default=15, ge=1)
    completion_wait_seconds: float = Field(default=60.0, gt=0)
    shipping_flat: int = Field(default=0, ge=0)
    free_shipping_over: int | None = Field(default=None, ge=0)
    tax_bps: int = Field(default=0, ge=0, le=10_000)
    timeout: float = Field(default=10.0, gt=0)
    signature_tolerance_seconds: int = Field(default=300, ge=1)
    create_schema: bool = False

    def options(self) -> Options:
        return Options(
            currency=self.currency,
            checkout_ttl=timedelta(minutes=self.checkout_ttl_minutes),
            shipping_flat=self.shipping_flat,
            free_shipping_over=self.free_shipping_over,
            tax_bps=self.tax_bps,
            confirm_timeout=timedelta(minutes=self.confirm_timeout_minutes),
            completion_wait=timedelta(seconds=self.completion_wait_seconds),
        )


class TenantConfig(BaseModel):
    """
    Example:
        config = TenantConfig.parse("acme", {
            "managed": {"store_domain": "acme.platform.test", ...},
            "self_hosted": {"database_url": "sqlite+aiosqlite:///acme.db", ...},
        })
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tenant_id: str = Field(min_length=1)
    provider_override: Literal["managed", "self_hosted"] | None = None
    managed: ManagedSettings | None = None
    self_hosted: SelfHostedSettings | None = None

    @classmethod
    def parse(cls, tenant_id: str, data: Mapping[str, Any]) -> TenantConfig:
        try:
            return cls.model_validate({**data, "tenant_id": tenant_id})
        except pydantic.ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ConfigurationError(
                f"Invalid configuration for tenant {tenant_id}: {fields}", tenant_id=tenant_id
            ) from None

    @property
    def override(self) -> ProviderKind | None:
        return ProviderKind.parse(self.provider_override)

    def settings_for(self, kind: ProviderKind) -> ManagedSettings | SelfHostedSettings:
        section = self.managed if kind is ProviderKind.MANAGED else self.self_hosted
        if section is None:
            raise ConfigurationError(
                f"Tenant {self.tenant_id} has no {kind.value} credentials", tenant_id=self.tenant_id
            )
        return section

    def config_hash(self, kind: ProviderKind) -> str:
        """Changes whenever anything the adapter for ``kind`` is built from changes."""
        section = self.settings_for(kind)
        digest = hashlib.sha256(f"{kind.value}:{section.model_dump_json()}".encode())
        return digest.hexdigest()[:16]


# ═══════════════════════════════════════════════════════════════════════════════
# Sources
# ═══════════════════════════════════════════════════════════════════════════════


class TenantConfigSource(Protocol):
    async def get(self, tenant_id: str) -> TenantConfig | None: ...

    async def set_override(self, tenant_id: str, kind: ProviderKind | None) -> None: ...


class StaticConfigSource:
    """In-memory configuration records."""

    def __init__(self, configs: Mapping[str, TenantConfig | Mapping[str, Any]] | None = None) -> None:
        self._configs: dict[str, TenantConfig] = {}
        for tenant_id, config in (configs or {}).items():
            self.put(config if isinstance(config, TenantConfig) else TenantConfig.parse(tenant_id, config))

    def put(self, config: TenantConfig) -> None:
        self._configs[config.tenant_id] = config

    def remove(self, tenant_id: str) -> None:
        self._configs.pop(tenant_id, None)

    async def get(self, tenant_id: str) -> TenantConfig | None:
        return self._configs.get(tenant_id)

    async def set_override(self, tenant_id: str, kind: ProviderKind | None) -> None:
        config = self._configs.get(tenant_id)
        if config is None:
            raise ConfigurationError(f"Unknown tenant {tenant_id}", tenant_id=tenant_id)
        value = kind.value if kind is not None else None
        self._configs[tenant_id] = config.model_copy(update={"provider_override": value})
        logger.info("Provider override for %s set to %s", tenant_id, value)


__all__ = (
    "ManagedSettings",
    "SelfHostedSettings",
    "TenantConfig",
    "TenantConfigSource",
    "StaticConfigSource",
)
