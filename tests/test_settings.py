from datetime import timedelta

import pytest

from commerceflex.model import ConfigurationError
from commerceflex.registry import PROVIDER_FLAG
from commerceflex.settings import Settings


def test_defaults_without_environment() -> None:
    settings = Settings.from_env({})

    assert settings == Settings()
    assert settings.flag_key == PROVIDER_FLAG
    assert settings.webhook_retention == timedelta(hours=72)
    assert settings.retry_policy().attempts == 3


def test_reads_prefixed_variables() -> None:
    settings = Settings.from_env(
        {
            "COMMERCEFLEX_FLAG_KEY": "backend-rollout",
            "COMMERCEFLEX_REGISTRY_SIZE": "16",
            "COMMERCEFLEX_WEBHOOK_RETENTION_HOURS": "24",
            "COMMERCEFLEX_LOG_LEVEL": "debug",
            "COMMERCEFLEX_MIGRATION_SEED": "42",
            "REGISTRY_SIZE": "999",
        }
    )

    assert settings.flag_key == "backend-rollout"
    assert settings.registry_size == 16
    assert settings.webhook_retention == timedelta(hours=24)
    assert settings.log_level == "DEBUG"
    assert settings.migration_seed == 42


def test_blank_values_fall_back_to_defaults() -> None:
    settings = Settings.from_env({"COMMERCEFLEX_REGISTRY_SIZE": "", "COMMERCEFLEX_FLAG_KEY": ""})

    assert settings.registry_size == 256
    assert settings.flag_key == PROVIDER_FLAG


@pytest.mark.parametrize(
    "env",
    [
        {"COMMERCEFLEX_REGISTRY_SIZE": "lots"},
        {"COMMERCEFLEX_REGISTRY_SIZE": "0"},
        {"COMMERCEFLEX_RETRY_ATTEMPTS": "-1"},
        {"COMMERCEFLEX_LOG_LEVEL": "chatty"},
    ],
)
def test_invalid_values(env: dict[str, str]) -> None:
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)
