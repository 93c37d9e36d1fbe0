"""
Process-wide settings from ``COMMERCEFLEX_*`` environment variables.

Per-tenant credentials live in ``registry.TenantConfig``; this only holds
what is shared by the whole process.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from commerceflex.model import ConfigurationError
from commerceflex.provider import RetryPolicy
from commerceflex.registry import PROVIDER_FLAG

PREFIX = "COMMERCEFLEX_"


def _int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{PREFIX}{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{PREFIX}{name} must be at least {minimum}")
    return value


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Example:
        settings = Settings.from_env()
        settings.configure_logging()
        registry = ProviderRegistry(
            configs, flags, max_size=settings.registry_size, flag_key=settings.flag_key
        )
    """

    flag_key: str = PROVIDER_FLAG
    registry_size: int = 256
    webhook_retention_hours: int = 72
    ledger_url: str = "sqlite+aiosqlite:///webhooks.db"
    retry_attempts: int = 3
    log_level: str = "INFO"
    migration_page_size: int = 100
    migration_sample_size: int = 25
    migration_seed: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        log_level = env.get(PREFIX + "LOG_LEVEL", cls.log_level).upper()
        if log_level not in logging.getLevelNamesMapping():
            raise ConfigurationError(f"{PREFIX}LOG_LEVEL: unknown level {log_level!r}")
        return cls(
            flag_key=env.get(PREFIX + "FLAG_KEY") or PROVIDER_FLAG,
            registry_size=_int(env, "REGISTRY_SIZE", cls.registry_size, minimum=1),
            webhook_retention_hours=_int(
                env, "WEBHOOK_RETENTION_HOURS", cls.webhook_retention_hours, minimum=1
            ),
            ledger_url=env.get(PREFIX + "LEDGER_URL") or cls.ledger_url,
            retry_attempts=_int(env, "RETRY_ATTEMPTS", cls.retry_attempts, minimum=1),
            log_level=log_level,
            migration_page_size=_int(env, "MIGRATION_PAGE_SIZE", cls.migration_page_size, minimum=1),
            migration_sample_size=_int(env, "MIGRATION_SAMPLE_SIZE", cls.migration_sample_size),
            migration_seed=_int(env, "MIGRATION_SEED", cls.migration_seed),
        )

    @property
    def webhook_retention(self) -> timedelta:
        return timedelta(hours=self.webhook_retention_hours)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.retry_attempts)

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=self.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


__all__ = ("PREFIX", "Settings")
