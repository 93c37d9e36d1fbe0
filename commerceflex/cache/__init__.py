"""
Cache — in-process tiers with read-through or origin-first reads.

    from commerceflex import cache as C

    catalog = (
        C.cache(lambda pid: f"product:{pid}", fetch_product)
        .tier(C.LocalTier(max_size=500))
        .stale_if(lambda e: e.retryable)
        .build()
    )
    result = await catalog.get(product_id)
"""

from commerceflex.cache._types import (
    Tier,
    LocalTier,
    EvictFn,
    CacheResult,
)
from commerceflex.cache._builder import (
    Cache,
    CacheExecutor,
    cache,
)

__all__ = (
    "Tier",
    "LocalTier",
    "EvictFn",
    "CacheResult",
    "Cache",
    "CacheExecutor",
    "cache",
)
