"""
Verification gate: record counts plus a field-level diff of a random
sample, source against destination.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from commerceflex._types import Clock, utcnow
from commerceflex.migration._sync import ENTITIES, listers, unwrap
from commerceflex.model import Customer, Order, Product
from commerceflex.provider import Provider
from commerceflex.selfhosted import Importer

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EntityCount:
    source: int
    destination: int

    @property
    def matches(self) -> bool:
        return self.source == self.destination


@dataclass(frozen=True, slots=True)
class VerificationReport:
    counts: dict[str, EntityCount]
    sampled: int
    mismatches: tuple[str, ...]
    checked_at: datetime
    seed: int = 0
    sample_size: int = 0

    @property
    def passed(self) -> bool:
        return not self.mismatches and all(c.matches for c in self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "counts": {
                entity: {"source": c.source, "destination": c.destination}
                for entity, c in self.counts.items()
            },
            "sampled": self.sampled,
            "sample_size": self.sample_size,
            "seed": self.seed,
            "mismatches": list(self.mismatches),
            "checked_at": self.checked_at.isoformat(),
        }


# ─── field diffs ──────────────────────────────────────────────────────────────


def diff_product(source: Product, dest: Product) -> list[str]:
    found: list[str] = []
    ref = f"product {source.id}"
    if source.title != dest.title:
        found.append(f"{ref}: title {source.title!r} != {dest.title!r}")
    if source.handle != dest.handle:
        found.append(f"{ref}: handle {source.handle!r} != {dest.handle!r}")
    if len(source.variants) != len(dest.variants):
        found.append(f"{ref}: {len(source.variants)} variants != {len(dest.variants)}")
    by_external = {v.external_id: v for v in dest.variants}
    for variant in source.variants:
        copy = by_external.get(variant.id)
        if copy is None:
            found.append(f"{ref}: variant {variant.id} missing")
            continue
        if variant.sku != copy.sku:
            found.append(f"{ref}: variant {variant.id} sku {variant.sku!r} != {copy.sku!r}")
        if variant.price != copy.price:
            found.append(f"{ref}: variant {variant.id} price {variant.price} != {copy.price}")
    return found


def diff_customer(source: Customer, dest: Customer) -> list[str]:
    found: list[str] = []
    ref = f"customer {source.id}"
    if source.email.strip().lower() != dest.email:
        found.append(f"{ref}: email {source.email!r} != {dest.email!r}")
    if source.first_name != dest.first_name:
        found.append(f"{ref}: first name {source.first_name!r} != {dest.first_name!r}")
    if source.last_name != dest.last_name:
        found.append(f"{ref}: last name {source.last_name!r} != {dest.last_name!r}")
    return found


def diff_order(source: Order, dest: Order) -> list[str]:
    found: list[str] = []
    ref = f"order {source.id}"
    if source.currency != dest.currency:
        found.append(f"{ref}: currency {source.currency} != {dest.currency}")
        return found
    for name in ("subtotal", "discount", "shipping", "tax", "total"):
        a, b = getattr(source, name), getattr(dest, name)
        if a != b:
            found.append(f"{ref}: {name} {a} != {b}")
    if len(source.line_items) != len(dest.line_items):
        found.append(f"{ref}: {len(source.line_items)} lines != {len(dest.line_items)}")
    if source.financial_status is not dest.financial_status:
        found.append(
            f"{ref}: financial status {source.financial_status.value} != {dest.financial_status.value}"
        )
    return found


# ─── verifier ─────────────────────────────────────────────────────────────────


class Verifier:
    """
    Walks every source page once, counting and reservoir-sampling with a
    seeded generator, so the same seed samples the same records.
    """

    def __init__(
        self,
        source: Provider,
        importer: Importer,
        *,
        sample_size: int = 25,
        seed: int = 0,
        page_size: int = 100,
        clock: Clock = utcnow,
    ) -> None:
        self._source = source
        self._importer = importer
        self._sample_size = sample_size
        self._seed = seed
        self._page_size = page_size
        self._clock = clock

    async def _scan(self, entity: str, rng: random.Random) -> tuple[int, list[Any]]:
        list_page = listers(self._source)[entity]
        sample: list[Any] = []
        seen = 0
        cursor: str | None = None
        while True:
            page = unwrap(await list_page(first=self._page_size, after=cursor))
            for item in page.items:
                seen += 1
                if len(sample) < self._sample_size:
                    sample.append(item)
                else:
                    slot = rng.randrange(seen)
                    if slot < self._sample_size:
                        sample[slot] = item
            cursor = page.next_cursor
            if cursor is None:
                return seen, sample

    async def _diff(self, entity: str, item: Any) -> list[str]:
        match entity:
            case "products":
                copy = await self._importer.product_by_external(item.id)
                return diff_product(item, copy) if copy else [f"product {item.id} missing"]
            case "customers":
                copy = await self._importer.customer_by_external(item.id)
                return diff_customer(item, copy) if copy else [f"customer {item.id} missing"]
            case "orders":
                copy = await self._importer.order_by_external(item.id)
                return diff_order(item, copy) if copy else [f"order {item.id} missing"]
        raise ValueError(f"Unknown entity {entity}")

    async def run(self) -> VerificationReport:
        rng = random.Random(self._seed)
        destination = await self._importer.counts()
        counts: dict[str, EntityCount] = {}
        mismatches: list[str] = []
        sampled = 0

        for entity in ENTITIES:
            seen, sample = await self._scan(entity, rng)
            counts[entity] = EntityCount(seen, destination.get(entity, 0))
            if not counts[entity].matches:
                mismatches.append(
                    f"{entity}: {seen} in source, {counts[entity].destination} in destination"
                )
            for item in sample:
                mismatches.extend(await self._diff(entity, item))
            sampled += len(sample)

        report = VerificationReport(
            counts=counts,
            sampled=sampled,
            mismatches=tuple(mismatches),
            checked_at=self._clock(),
            seed=self._seed,
            sample_size=self._sample_size,
        )
        if report.passed:
            logger.info("Verification passed: %d records sampled", sampled)
        else:
            logger.warning("Verification found %d mismatch(es)", len(report.mismatches))
        return report


__all__ = (
    "EntityCount",
    "VerificationReport",
    "diff_product",
    "diff_customer",
    "diff_order",
    "Verifier",
)
