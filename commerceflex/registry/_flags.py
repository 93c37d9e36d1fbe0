"""
Feature-flag evaluation contract and an in-memory implementation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from commerceflex._types import Clock, utcnow

PROVIDER_FLAG = "commerce-provider"


class FlagEvaluator(Protocol):
    async def evaluate(self, flag_key: str, tenant_id: str) -> str | None: ...


@dataclass(frozen=True, slots=True)
class FlagOverride:
    value: str
    expires_at: datetime | None = None
    reason: str | None = None

    def active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


class StaticFlags:
    """
    Per-tenant overrides before the flag's default variant. Expired
    overrides are ignored.

    Example:
        flags = StaticFlags({PROVIDER_FLAG: "managed"})
        flags.override(PROVIDER_FLAG, "acme", "self_hosted")
    """

    def __init__(self, defaults: Mapping[str, str] | None = None, *, clock: Clock = utcnow) -> None:
        self._defaults = dict(defaults or {})
        self._overrides: dict[tuple[str, str], FlagOverride] = {}
        self._clock = clock

    def set_default(self, flag_key: str, value: str | None) -> None:
        if value is None:
            self._defaults.pop(flag_key, None)
        else:
            self._defaults[flag_key] = value

    def override(
        self,
        flag_key: str,
        tenant_id: str,
        value: str,
        *,
        expires_at: datetime | None = None,
        reason: str | None = None,
    ) -> None:
        self._overrides[(flag_key, tenant_id)] = FlagOverride(value, expires_at, reason)

    def clear(self, flag_key: str, tenant_id: str) -> None:
        self._overrides.pop((flag_key, tenant_id), None)

    async def evaluate(self, flag_key: str, tenant_id: str) -> str | None:
        found = self._overrides.get((flag_key, tenant_id))
        if found is not None and found.active(self._clock()):
            return found.value
        return self._defaults.get(flag_key)


__all__ = ("PROVIDER_FLAG", "FlagEvaluator", "FlagOverride", "StaticFlags")
