"""
Provider registry: tenant → adapter.

    resolve(tenant)
        │
        ├─ config record ──▶ override? ──▶ flag "commerce-provider" ──▶ managed
        │
        ├─ key = tenant:kind:config-hash
        │
        ├─ cached ───────────────────────────▶ adapter
        ├─ construction in flight ──▶ await ──▶ adapter
        └─ build ──▶ cache (LRU) ─────────────▶ adapter

A new config hash for a tenant retires the old adapter; retired and
evicted adapters are closed once the last lease on them is released.
This is the only place that decides which backend a tenant runs on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from kungfu import Result, Ok, Error

from commerceflex.cache import LocalTier
from commerceflex.model import (
    CommerceError,
    ConfigurationError,
    NotFoundError,
    ProviderTransientError,
)
from commerceflex.provider import Provider, ProviderKind, WriteGate
from commerceflex.registry._config import TenantConfig, TenantConfigSource
from commerceflex.registry._factory import Factory, ProviderFactory
from commerceflex.registry._flags import PROVIDER_FLAG, FlagEvaluator

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class _Entry:
    tenant_id: str
    key: str
    provider: Provider
    leases: int = 0
    retired: bool = False
    closed: bool = False


class ProviderRegistry:
    """
    Example:
        registry = ProviderRegistry(StaticConfigSource(configs), StaticFlags())

        async with registry.lease("acme") as shop:
            cart = await shop.cart.create()

        registry.invalidate("acme")   # configuration changed
        await registry.shutdown()
    """

    def __init__(
        self,
        configs: TenantConfigSource,
        flags: FlagEvaluator,
        *,
        factory: Factory | None = None,
        max_size: int = 256,
        gate: WriteGate | None = None,
        flag_key: str = PROVIDER_FLAG,
    ) -> None:
        self._configs = configs
        self._flags = flags
        self._factory: Factory = factory if factory is not None else ProviderFactory()
        self._flag_key = flag_key
        self.gate = gate if gate is not None else WriteGate()

        self._tier = LocalTier[_Entry](max_size=max_size, on_evict=self._evicted)
        self._inflight: dict[str, asyncio.Task[_Entry]] = {}
        self._current: dict[tuple[str, ProviderKind], str] = {}
        self._closing: set[asyncio.Task[None]] = set()
        self._active_leases = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._accepting = True

    # ─── selection ────────────────────────────────────────────────────────────

    async def config(self, tenant_id: str) -> TenantConfig:
        config = await self._configs.get(tenant_id)
        if config is None:
            raise NotFoundError(f"Unknown tenant {tenant_id}", entity="tenant", id=tenant_id)
        return config

    async def select(self, tenant_id: str, config: TenantConfig | None = None) -> ProviderKind:
        """Override from the config record, then the flag, then managed."""
        config = config if config is not None else await self.config(tenant_id)
        if config.override is not None:
            return config.override
        variant = await self._flags.evaluate(self._flag_key, tenant_id)
        kind = ProviderKind.parse(variant)
        if variant is not None and kind is None:
            logger.warning("Unknown %s variant %r for %s", self._flag_key, variant, tenant_id)
        return kind if kind is not None else ProviderKind.MANAGED

    async def set_override(self, tenant_id: str, kind: ProviderKind | None) -> None:
        await self._configs.set_override(tenant_id, kind)

    # ─── resolution ───────────────────────────────────────────────────────────

    async def resolve(self, tenant_id: str) -> Result[Provider, CommerceError]:
        match await self._entry(tenant_id, None):
            case Ok(entry):
                return Ok(entry.provider)
            case Error(e):
                return Error(e)

    async def provider_for(
        self, tenant_id: str, kind: ProviderKind
    ) -> Result[Provider, CommerceError]:
        """The tenant's adapter for ``kind`` regardless of its current selection."""
        match await self._entry(tenant_id, kind):
            case Ok(entry):
                return Ok(entry.provider)
            case Error(e):
                return Error(e)

    @asynccontextmanager
    async def lease(
        self, tenant_id: str, kind: ProviderKind | None = None
    ) -> AsyncIterator[Provider]:
        """
        Resolve and hold the adapter for the duration of the block; it is
        not closed underneath the caller even if it is retired meanwhile.
        Without ``kind`` the tenant's current selection is leased.
        """
        match await self._entry(tenant_id, kind):
            case Ok(entry):
                pass
            case Error(e):
                raise e

        entry.leases += 1
        self._active_leases += 1
        self._idle.clear()
        try:
            yield entry.provider
        finally:
            entry.leases -= 1
            self._active_leases -= 1
            if self._active_leases == 0:
                self._idle.set()
            if entry.retired and entry.leases == 0:
                self._close_later(entry)

    async def _entry(
        self, tenant_id: str, kind: ProviderKind | None
    ) -> Result[_Entry, CommerceError]:
        if not self._accepting:
            return Error(ProviderTransientError("Registry is shutting down", status_code=503))
        try:
            config = await self.config(tenant_id)
            kind = kind if kind is not None else await self.select(tenant_id, config)
            key = f"{tenant_id}:{kind.value}:{config.config_hash(kind)}"
        except CommerceError as e:
            logger.warning("Cannot resolve provider for %s: %s", tenant_id, e)
            return Error(e)

        cached = await self._tier.get(key)
        if cached is not None:
            return Ok(cached)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._build(config, kind, key))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._finished(key, done))
        try:
            # Shielded so a cancelled caller does not abort a shared construction
            return Ok(await asyncio.shield(task))
        except CommerceError as e:
            return Error(e)

    def _finished(self, key: str, task: asyncio.Task[_Entry]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _build(self, config: TenantConfig, kind: ProviderKind, key: str) -> _Entry:
        tenant_id = config.tenant_id
        logger.info("Building %s provider for %s", kind.value, tenant_id)
        try:
            provider = await self._factory(config, kind, self.gate)
        except CommerceError as e:
            logger.warning("Provider construction failed for %s: %s", tenant_id, e)
            raise
        except Exception as e:
            logger.exception("Provider construction crashed for %s", tenant_id)
            raise ConfigurationError(
                f"Cannot build {kind.value} provider for {tenant_id}: {e}", tenant_id=tenant_id
            ) from e

        if not self._accepting:
            await provider.aclose()
            raise ProviderTransientError("Registry is shutting down", status_code=503)

        entry = _Entry(tenant_id=tenant_id, key=key, provider=provider)
        previous = self._current.get((tenant_id, kind))
        self._current[(tenant_id, kind)] = key
        if previous is not None and previous != key:
            logger.info("Configuration of %s changed; retiring %s", tenant_id, previous)
            await self._tier.delete(previous)
        await self._tier.set(key, entry)
        return entry

    # ─── lifecycle ────────────────────────────────────────────────────────────

    async def invalidate(self, tenant_id: str) -> int:
        """Drop every cached adapter of the tenant; the next resolve rebuilds."""
        dropped = 0
        for (tenant, kind), key in list(self._current.items()):
            if tenant != tenant_id:
                continue
            del self._current[(tenant, kind)]
            if await self._tier.delete(key):
                dropped += 1
        if dropped:
            logger.info("Invalidated %d provider(s) for %s", dropped, tenant_id)
        return dropped

    async def freeze(self, tenant_id: str, *, timeout: float = 30.0) -> None:
        """Stop new writes for the tenant and wait for running ones to finish."""
        await self.gate.freeze(tenant_id, timeout=timeout)

    def thaw(self, tenant_id: str) -> None:
        self.gate.thaw(tenant_id)

    def is_frozen(self, tenant_id: str) -> bool:
        return self.gate.is_frozen(tenant_id)

    async def shutdown(self) -> None:
        """Stop accepting, let constructions and leases finish, close everything."""
        self._accepting = False
        pending = list(self._inflight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._tier.clear()
        await self._idle.wait()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("Provider registry shut down")

    def __len__(self) -> int:
        return len(self._tier)

    def cached(self, tenant_id: str) -> list[Provider]:
        return [
            entry.provider
            for key in self._tier.keys()
            if (entry := self._tier.peek(key)) is not None and entry.tenant_id == tenant_id
        ]

    # ─── retirement ───────────────────────────────────────────────────────────

    def _evicted(self, key: str, entry: _Entry) -> None:
        entry.retired = True
        current = (entry.tenant_id, entry.provider.kind)
        if self._current.get(current) == key:
            del self._current[current]
        if entry.leases == 0:
            self._close_later(entry)
        else:
            logger.debug("Adapter %s retired with %d lease(s) open", key, entry.leases)

    def _close_later(self, entry: _Entry) -> None:
        if entry.closed:
            return
        entry.closed = True
        task = asyncio.get_running_loop().create_task(self._close(entry))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close(self, entry: _Entry) -> None:
        try:
            await entry.provider.aclose()
        except Exception:
            logger.exception("Closing adapter %s failed", entry.key)
        else:
            logger.info("Closed adapter %s", entry.key)


__all__ = ("ProviderRegistry",)
