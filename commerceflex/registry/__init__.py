"""
Registry — which backend a tenant runs on, and the adapter for it.

    from commerceflex import registry as R

    registry = R.ProviderRegistry(
        R.StaticConfigSource({"acme": {"managed": {...}, "self_hosted": {...}}}),
        R.StaticFlags({R.PROVIDER_FLAG: "managed"}),
    )

    match await registry.resolve("acme"):
        case Ok(shop): ...
        case Error(R.ConfigurationError()): ...  # fix credentials; other tenants unaffected
"""

from commerceflex.model import ConfigurationError
from commerceflex.registry._config import (
    ManagedSettings,
    SelfHostedSettings,
    TenantConfig,
    TenantConfigSource,
    StaticConfigSource,
)
from commerceflex.registry._flags import (
    PROVIDER_FLAG,
    FlagEvaluator,
    FlagOverride,
    StaticFlags,
)
from commerceflex.registry._factory import Factory, ProviderFactory
from commerceflex.registry._registry import ProviderRegistry

__all__ = (
    "ConfigurationError",
    "ManagedSettings",
    "SelfHostedSettings",
    "TenantConfig",
    "TenantConfigSource",
    "StaticConfigSource",
    "PROVIDER_FLAG",
    "FlagEvaluator",
    "FlagOverride",
    "StaticFlags",
    "Factory",
    "ProviderFactory",
    "ProviderRegistry",
)
