import asyncio
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from commerceflex import model as M
from commerceflex.managed import ManagedProvider
from commerceflex.provider import ProviderKind, WriteGate, writes
from commerceflex.registry import (
    PROVIDER_FLAG,
    ProviderRegistry,
    StaticConfigSource,
    StaticFlags,
    TenantConfig,
)
from commerceflex.selfhosted import SelfHostedProvider

from conftest import TENANT, FakeClock, err, ok, tenant_config


class FakeAdapter:
    def __init__(self, tenant_id: str, kind: ProviderKind, config: TenantConfig) -> None:
        self.tenant_id = tenant_id
        self.kind = kind
        self.config = config
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


class CountingFactory:
    def __init__(self) -> None:
        self.built: list[FakeAdapter] = []
        self.gates: list[WriteGate] = []
        self.crash_for: set[str] = set()

    async def __call__(self, config: TenantConfig, kind: ProviderKind, gate: WriteGate) -> Any:
        # Yield so concurrent resolves pile up behind one construction
        await asyncio.sleep(0.01)
        if config.tenant_id in self.crash_for:
            raise RuntimeError("driver exploded")
        adapter = FakeAdapter(config.tenant_id, kind, config)
        self.built.append(adapter)
        self.gates.append(gate)
        return adapter


async def settle() -> None:
    """Let background close tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


def with_token(tmp_path: Path, tenant_id: str, token: str) -> TenantConfig:
    data = tenant_config(tmp_path)
    data["managed"] = {**data["managed"], "storefront_token": token}
    return TenantConfig.parse(tenant_id, data)


@pytest.fixture
def factory() -> CountingFactory:
    return CountingFactory()


@pytest.fixture
def source(tmp_path: Path) -> StaticConfigSource:
    return StaticConfigSource({TENANT: tenant_config(tmp_path), "globex": tenant_config(tmp_path)})


@pytest.fixture
def flags(clock: FakeClock) -> StaticFlags:
    return StaticFlags(clock=clock)


@pytest.fixture
async def fake_registry(source: StaticConfigSource, flags: StaticFlags, factory: CountingFactory) -> Any:
    registry = ProviderRegistry(source, flags, factory=factory)
    yield registry
    await registry.shutdown()


# ═══════════════════════════════════════════════════════════════════════════════
# Construction
# ═══════════════════════════════════════════════════════════════════════════════


async def test_concurrent_resolves_build_once(fake_registry: ProviderRegistry, factory: CountingFactory) -> None:
    results = await asyncio.gather(*(fake_registry.resolve(TENANT) for _ in range(50)))

    adapters = {id(ok(r)) for r in results}
    assert len(factory.built) == 1
    assert adapters == {id(factory.built[0])}
    assert len(fake_registry) == 1


async def test_adapter_shares_the_registry_gate(fake_registry: ProviderRegistry, factory: CountingFactory) -> None:
    ok(await fake_registry.resolve(TENANT))
    assert factory.gates[0] is fake_registry.gate

    await fake_registry.freeze(TENANT)
    assert fake_registry.is_frozen(TENANT)
    assert fake_registry.gate.is_frozen(TENANT)
    fake_registry.thaw(TENANT)
    assert not fake_registry.is_frozen(TENANT)


async def test_construction_failure_is_isolated(fake_registry: ProviderRegistry, factory: CountingFactory) -> None:
    factory.crash_for.add("globex")

    error = err(await fake_registry.resolve("globex"))

    assert isinstance(error, M.ConfigurationError)
    assert error.tenant_id == "globex"
    ok(await fake_registry.resolve(TENANT))


async def test_unknown_tenant(fake_registry: ProviderRegistry) -> None:
    assert isinstance(err(await fake_registry.resolve("ghost")), M.NotFoundError)
    with pytest.raises(M.NotFoundError):
        async with fake_registry.lease("ghost"):
            pass


async def test_missing_backend_section(tmp_path: Path, flags: StaticFlags, factory: CountingFactory) -> None:
    data = tenant_config(tmp_path)
    del data["self_hosted"]
    registry = ProviderRegistry(StaticConfigSource({TENANT: data}), flags, factory=factory)

    error = err(await registry.provider_for(TENANT, ProviderKind.SELF_HOSTED))

    assert isinstance(error, M.ConfigurationError)
    await registry.shutdown()


def test_invalid_config_is_a_configuration_error(tmp_path: Path) -> None:
    data = tenant_config(tmp_path)
    data["managed"] = {**data["managed"], "store_domain": ""}
    with pytest.raises(M.ConfigurationError):
        StaticConfigSource({TENANT: data})


# ═══════════════════════════════════════════════════════════════════════════════
# Write gate
# ═══════════════════════════════════════════════════════════════════════════════


class Writer:
    """Smallest adapter shape ``writes`` needs."""

    def __init__(self, gate: WriteGate) -> None:
        self._ctx = SimpleNamespace(writing=lambda: gate.writing(TENANT))
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    @writes
    async def save(self, value: str) -> str:
        self.started.set()
        await self.release.wait()
        return value


async def test_freeze_waits_for_writes_in_flight() -> None:
    gate = WriteGate()
    writer = Writer(gate)
    saving = asyncio.create_task(writer.save("cart"))
    await writer.started.wait()
    assert gate.in_flight(TENANT) == 1

    freezing = asyncio.create_task(gate.freeze(TENANT))
    await asyncio.sleep(0.01)

    assert not freezing.done()
    assert gate.is_frozen(TENANT)
    with pytest.raises(M.ProviderTransientError):
        await Writer(gate).save("late")

    writer.release.set()
    await freezing
    assert await saving == "cart"
    assert gate.in_flight(TENANT) == 0


async def test_freeze_gives_up_when_writes_do_not_drain() -> None:
    gate = WriteGate()
    writer = Writer(gate)
    saving = asyncio.create_task(writer.save("cart"))
    await writer.started.wait()

    with pytest.raises(M.ProviderTransientError):
        await gate.freeze(TENANT, timeout=0.02)

    # Writes stay open so the cutover can be retried later
    assert not gate.is_frozen(TENANT)
    writer.release.set()
    await saving


async def test_freeze_counts_writes_per_tenant() -> None:
    gate = WriteGate()
    writer = Writer(gate)
    saving = asyncio.create_task(writer.save("cart"))
    await writer.started.wait()

    await asyncio.wait_for(gate.freeze("globex"), timeout=1)

    assert gate.is_frozen("globex")
    assert not gate.is_frozen(TENANT)
    writer.release.set()
    await saving


# ═══════════════════════════════════════════════════════════════════════════════
# Selection
# ═══════════════════════════════════════════════════════════════════════════════


async def test_selection_order(fake_registry: ProviderRegistry, flags: StaticFlags) -> None:
    assert await fake_registry.select(TENANT) is ProviderKind.MANAGED

    flags.override(PROVIDER_FLAG, TENANT, "self_hosted")
    assert await fake_registry.select(TENANT) is ProviderKind.SELF_HOSTED
    assert await fake_registry.select("globex") is ProviderKind.MANAGED

    await fake_registry.set_override(TENANT, ProviderKind.MANAGED)
    assert await fake_registry.select(TENANT) is ProviderKind.MANAGED

    await fake_registry.set_override(TENANT, None)
    assert await fake_registry.select(TENANT) is ProviderKind.SELF_HOSTED


async def test_expired_or_unknown_flag_values_fall_back_to_managed(
    fake_registry: ProviderRegistry, flags: StaticFlags, clock: FakeClock
) -> None:
    flags.override(PROVIDER_FLAG, TENANT, "self_hosted", expires_at=clock.now - timedelta(minutes=1))
    assert await fake_registry.select(TENANT) is ProviderKind.MANAGED

    flags.override(PROVIDER_FLAG, TENANT, "mainframe")
    assert await fake_registry.select(TENANT) is ProviderKind.MANAGED


async def test_resolve_follows_selection(fake_registry: ProviderRegistry, flags: StaticFlags) -> None:
    managed = ok(await fake_registry.resolve(TENANT))
    flags.override(PROVIDER_FLAG, TENANT, "self_hosted")
    hosted = ok(await fake_registry.resolve(TENANT))

    assert managed.kind is ProviderKind.MANAGED
    assert hosted.kind is ProviderKind.SELF_HOSTED
    # Both stay cached; each kind has its own key
    assert len(fake_registry.cached(TENANT)) == 2

    explicit = ok(await fake_registry.provider_for(TENANT, ProviderKind.MANAGED))
    assert explicit is managed


# ═══════════════════════════════════════════════════════════════════════════════
# Retirement
# ═══════════════════════════════════════════════════════════════════════════════


async def test_config_change_retires_old_adapter(
    tmp_path: Path, fake_registry: ProviderRegistry, source: StaticConfigSource
) -> None:
    old = ok(await fake_registry.resolve(TENANT))

    source.put(with_token(tmp_path, TENANT, "rotated"))
    new = ok(await fake_registry.resolve(TENANT))
    await settle()

    assert new is not old
    assert old.closed  # type: ignore[attr-defined]
    assert not new.closed  # type: ignore[attr-defined]
    assert fake_registry.cached(TENANT) == [new]


async def test_leased_adapter_closes_after_release(
    tmp_path: Path, fake_registry: ProviderRegistry, source: StaticConfigSource
) -> None:
    async with fake_registry.lease(TENANT) as leased:
        source.put(with_token(tmp_path, TENANT, "rotated"))
        ok(await fake_registry.resolve(TENANT))
        await settle()
        assert not leased.closed  # type: ignore[attr-defined]

    await settle()
    assert leased.closed  # type: ignore[attr-defined]


async def test_lru_eviction_closes_adapters(source: StaticConfigSource, flags: StaticFlags, factory: CountingFactory) -> None:
    registry = ProviderRegistry(source, flags, factory=factory, max_size=1)

    first = ok(await registry.resolve(TENANT))
    second = ok(await registry.resolve("globex"))
    await settle()

    assert first.closed  # type: ignore[attr-defined]
    assert not second.closed  # type: ignore[attr-defined]
    assert len(registry) == 1

    # Evicted tenants are rebuilt on demand
    again = ok(await registry.resolve(TENANT))
    assert again is not first
    await registry.shutdown()


async def test_invalidate_forces_rebuild(fake_registry: ProviderRegistry, factory: CountingFactory) -> None:
    first = ok(await fake_registry.resolve(TENANT))

    assert await fake_registry.invalidate(TENANT) == 1
    assert await fake_registry.invalidate(TENANT) == 0
    second = ok(await fake_registry.resolve(TENANT))
    await settle()

    assert second is not first
    assert first.closed  # type: ignore[attr-defined]
    assert len(factory.built) == 2


async def test_shutdown_closes_everything_and_refuses_work(
    source: StaticConfigSource, flags: StaticFlags, factory: CountingFactory
) -> None:
    registry = ProviderRegistry(source, flags, factory=factory)
    ok(await registry.resolve(TENANT))
    ok(await registry.resolve("globex"))

    await registry.shutdown()

    assert all(adapter.closed for adapter in factory.built)
    error = err(await registry.resolve(TENANT))
    assert isinstance(error, M.ProviderTransientError)


# ═══════════════════════════════════════════════════════════════════════════════
# Real adapters
# ═══════════════════════════════════════════════════════════════════════════════


async def test_builds_real_adapters(registry: ProviderRegistry) -> None:
    managed = ok(await registry.resolve(TENANT))
    assert isinstance(managed, ManagedProvider)

    await registry.set_override(TENANT, ProviderKind.SELF_HOSTED)
    hosted = ok(await registry.resolve(TENANT))

    assert isinstance(hosted, SelfHostedProvider)
    # create_schema ran, so the store is usable right away
    ok(await hosted.cart.create())
