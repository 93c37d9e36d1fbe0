"""
Cache types.
"""

from __future__ import annotations

import fnmatch
from collections import OrderedDict
from dataclasses import dataclass
from typing import Protocol
from collections.abc import Callable

# ═══════════════════════════════════════════════════════════════════════════════
# Tier Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class Tier[T](Protocol):
    """
    Cache tier protocol.

    Implement this for shared backends; LocalTier covers one process.
    """

    @property
    def name(self) -> str: ...

    async def get(self, key: str) -> T | None:
        """Returns None on miss."""
        ...

    async def set(self, key: str, value: T) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_pattern(self, pattern: str) -> int: ...


# ═══════════════════════════════════════════════════════════════════════════════
# Local Tier — In-Memory LRU
# ═══════════════════════════════════════════════════════════════════════════════


type EvictFn[T] = Callable[[str, T], None]


class LocalTier[T]:
    """
    In-memory LRU cache tier.

    ``on_evict`` is called for every value that leaves the tier: LRU
    eviction, replacement, delete and clear. Owners of resources (adapters
    holding HTTP clients or engines) release them there.

    Example:
        tier = LocalTier[Provider](max_size=256, on_evict=retire)
    """

    def __init__(self, max_size: int = 1000, on_evict: EvictFn[T] | None = None) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._on_evict = on_evict
        self._cache: OrderedDict[str, T] = OrderedDict()

    @property
    def name(self) -> str:
        return "local"

    def peek(self, key: str) -> T | None:
        """Read without touching recency."""
        return self._cache.get(key)

    async def get(self, key: str) -> T | None:
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]
        return None

    async def set(self, key: str, value: T) -> None:
        previous = self._cache.pop(key, None)
        if previous is not None and previous is not value:
            self._evicted(key, previous)
        elif previous is None and len(self._cache) >= self._max_size:
            oldest, dropped = self._cache.popitem(last=False)
            self._evicted(oldest, dropped)
        self._cache[key] = value

    async def delete(self, key: str) -> bool:
        value = self._cache.pop(key, None)
        if value is None:
            return False
        self._evicted(key, value)
        return True

    async def delete_pattern(self, pattern: str) -> int:
        doomed = [k for k in self._cache if fnmatch.fnmatch(k, pattern)]
        for key in doomed:
            self._evicted(key, self._cache.pop(key))
        return len(doomed)

    async def clear(self) -> int:
        count = len(self._cache)
        while self._cache:
            key, value = self._cache.popitem(last=False)
            self._evicted(key, value)
        return count

    def keys(self) -> list[str]:
        return list(self._cache)

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def _evicted(self, key: str, value: T) -> None:
        if self._on_evict is not None:
            self._on_evict(key, value)


# ═══════════════════════════════════════════════════════════════════════════════
# Cache Result
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CacheResult[T]:
    """
    Value plus where it came from.

    ``stale`` is True when the origin failed and a previously cached value
    was served instead.
    """

    value: T
    hit: bool
    tier: str | None
    stale: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Tier",
    "LocalTier",
    "EvictFn",
    "CacheResult",
)
