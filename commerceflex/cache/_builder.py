"""
Cache builder — fluent API.

Two read modes:

- read-through (default): tiers first, fetch on miss.
- origin-first (``stale_if``): always fetch, refresh the tiers on success,
  and serve the last cached value when the fetch fails with an error the
  predicate accepts. Catalog reads use this so a flaky backend degrades
  to slightly old data instead of an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from collections.abc import Awaitable, Callable

from kungfu import LazyCoroResult, Result, Ok, Error

from commerceflex.cache._types import Tier, CacheResult

logger = logging.getLogger(__name__)

type KeyFn[K] = Callable[[K], str]
type Fetch[K, T, E] = Callable[[K], Awaitable[Result[T, E]]]


# ═══════════════════════════════════════════════════════════════════════════════
# Cache Builder
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class Cache[K, T, E]:
    """
    Example:
        products = (
            C.cache(lambda pid: f"product:{pid}", fetch_product)
            .tier(C.LocalTier(max_size=500))
            .stale_if(lambda e: e.retryable)
            .build()
        )
    """

    _key_fn: KeyFn[K]
    _fetch: Fetch[K, T, E]
    _tiers: tuple[Tier[T], ...] = ()
    _stale_if: Callable[[E], bool] | None = None

    def tier(self, t: Tier[T]) -> Cache[K, T, E]:
        return replace(self, _tiers=(*self._tiers, t))

    def stale_if(self, predicate: Callable[[E], bool]) -> Cache[K, T, E]:
        """Switch to origin-first with stale fallback on matching errors."""
        return replace(self, _stale_if=predicate)

    def build(self) -> CacheExecutor[K, T, E]:
        return CacheExecutor(
            key_fn=self._key_fn,
            tiers=self._tiers,
            fetch=self._fetch,
            stale_if=self._stale_if,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Cache Executor
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class CacheExecutor[K, T, E]:
    key_fn: KeyFn[K]
    tiers: tuple[Tier[T], ...]
    fetch: Fetch[K, T, E]
    stale_if: Callable[[E], bool] | None

    def get(self, key: K) -> LazyCoroResult[CacheResult[T], E]:
        cache_key = self.key_fn(key)

        async def execute() -> Result[CacheResult[T], E]:
            if self.stale_if is None:
                cached = await self._lookup(cache_key)
                if cached is not None:
                    return Ok(cached)

            match await self.fetch(key):
                case Ok(value):
                    await self._store(cache_key, value)
                    return Ok(CacheResult(value=value, hit=False, tier=None))
                case Error(e):
                    if self.stale_if is not None and self.stale_if(e):
                        cached = await self._lookup(cache_key)
                        if cached is not None:
                            logger.warning("Serving stale %s after origin failure: %s", cache_key, e)
                            return Ok(replace(cached, stale=True))
                    return Error(e)

        return LazyCoroResult(execute)

    async def put(self, key: K, value: T) -> None:
        await self._store(self.key_fn(key), value)

    async def invalidate(self, key: K) -> bool:
        cache_key = self.key_fn(key)
        deleted = False
        for t in self.tiers:
            if await t.delete(cache_key):
                deleted = True
        return deleted

    async def invalidate_pattern(self, pattern: str) -> int:
        total = 0
        for t in self.tiers:
            total += await t.delete_pattern(pattern)
        return total

    async def _lookup(self, cache_key: str) -> CacheResult[T] | None:
        for t in self.tiers:
            value = await t.get(cache_key)
            if value is not None:
                return CacheResult(value=value, hit=True, tier=t.name)
        return None

    async def _store(self, cache_key: str, value: T) -> None:
        for t in self.tiers:
            await t.set(cache_key, value)


def cache[K, T, E](key: KeyFn[K], fetch: Fetch[K, T, E]) -> Cache[K, T, E]:
    return Cache(_key_fn=key, _fetch=fetch)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = ("Cache", "CacheExecutor", "cache")
