"""Tests for environment-driven configuration."""

import dataclasses
from decimal import Decimal

import pytest

from intl_payments.config import EngineConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "INTL_PAY_SETTLEMENT_CURRENCY",
        "INTL_PAY_MERCHANT_COUNTRY",
        "INTL_PAY_MAX_RETRIES",
        "INTL_PAY_BATCH_SIZE",
        "INTL_PAY_CONVERSION_FEE_RATE",
        "INTL_PAY_VIES_ENABLED",
        "INTL_PAY_RATE_PROVIDER",
        "INTL_PAY_RATE_CACHE_TTL",
        "INTL_PAY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = EngineConfig.from_env()
    assert config == EngineConfig()
    assert config.settlement_currency == "USD"
    assert config.max_retries == 2
    assert config.batch_size == 10
    assert config.conversion_fee_rate == Decimal("0.005")
    assert config.vies_enabled is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("INTL_PAY_SETTLEMENT_CURRENCY", "eur")
    monkeypatch.setenv("INTL_PAY_MERCHANT_COUNTRY", "de")
    monkeypatch.setenv("INTL_PAY_MAX_RETRIES", "4")
    monkeypatch.setenv("INTL_PAY_CONVERSION_FEE_RATE", "0.01")
    monkeypatch.setenv("INTL_PAY_VIES_ENABLED", "no")
    monkeypatch.setenv("INTL_PAY_RATE_PROVIDER", "ECB")
    monkeypatch.setenv("INTL_PAY_RATE_CACHE_TTL", "60")
    monkeypatch.setenv("INTL_PAY_LOG_LEVEL", "debug")

    config = EngineConfig.from_env()
    assert config.settlement_currency == "EUR"
    assert config.merchant_country == "DE"
    assert config.max_retries == 4
    assert config.conversion_fee_rate == Decimal("0.01")
    assert config.vies_enabled is False
    assert config.rate_provider == "ecb"
    assert config.rate_cache_ttl == 60.0
    assert config.log_level == "DEBUG"


def test_malformed_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("INTL_PAY_BATCH_SIZE", "ten")
    monkeypatch.setenv("INTL_PAY_RATE_CACHE_TTL", "soon")
    config = EngineConfig.from_env()
    assert config.batch_size == 10
    assert config.rate_cache_ttl == 300


def test_config_is_frozen():
    config = EngineConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.batch_size = 1  # type: ignore[misc]
