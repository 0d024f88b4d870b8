"""
Engine configuration.

Values come from ``INTL_PAY_*`` environment variables, falling back to the
defaults below. Amount thresholds are in minor units.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal


def _bool(val: str) -> bool:
    return val.strip().lower() in ("1", "true", "yes")


def _int(val: str | None, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


def _float(val: str | None, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings shared by all components."""

    settlement_currency: str = "USD"
    merchant_country: str = "US"

    # Cache lifetimes (seconds)
    rate_cache_ttl: float = 5 * 60
    tax_rate_cache_ttl: float = 60 * 60
    vat_cache_ttl: float = 24 * 60 * 60
    kyc_cache_ttl: float = 24 * 60 * 60
    sanctions_cache_ttl: float = 24 * 60 * 60

    # External calls
    external_timeout: float = 10.0
    max_retries: int = 2
    retry_backoff: float = 0.5
    retry_backoff_max: float = 5.0

    # Orchestration
    batch_size: int = 10
    max_payment_amount: int = 100_000_000

    # KYC / AML
    high_value_threshold: int = 1_000_000
    medium_value_threshold: int = 500_000
    manual_review_threshold: int = 50
    suspicious_risk_threshold: int = 70

    # Currency
    conversion_fee_rate: Decimal = Decimal("0.005")
    rate_provider: str = "static"  # static, ecb
    ecb_url: str = (
        "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"
    )

    # VAT registry
    vies_enabled: bool = True
    vies_url: str = (
        "https://ec.europa.eu/taxation_customs/vies/services/checkVatService"
    )

    # Audit / reporting
    audit_queue_size: int = 1000
    report_dir: str = "reports"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        env = os.getenv
        defaults = cls()
        return cls(
            settlement_currency=env(
                "INTL_PAY_SETTLEMENT_CURRENCY", defaults.settlement_currency
            ).upper(),
            merchant_country=env(
                "INTL_PAY_MERCHANT_COUNTRY", defaults.merchant_country
            ).upper(),
            rate_cache_ttl=_float(
                env("INTL_PAY_RATE_CACHE_TTL"), defaults.rate_cache_ttl
            ),
            tax_rate_cache_ttl=_float(
                env("INTL_PAY_TAX_RATE_CACHE_TTL"), defaults.tax_rate_cache_ttl
            ),
            vat_cache_ttl=_float(
                env("INTL_PAY_VAT_CACHE_TTL"), defaults.vat_cache_ttl
            ),
            kyc_cache_ttl=_float(
                env("INTL_PAY_KYC_CACHE_TTL"), defaults.kyc_cache_ttl
            ),
            sanctions_cache_ttl=_float(
                env("INTL_PAY_SANCTIONS_CACHE_TTL"), defaults.sanctions_cache_ttl
            ),
            external_timeout=_float(
                env("INTL_PAY_EXTERNAL_TIMEOUT"), defaults.external_timeout
            ),
            max_retries=_int(env("INTL_PAY_MAX_RETRIES"), defaults.max_retries),
            retry_backoff=_float(
                env("INTL_PAY_RETRY_BACKOFF"), defaults.retry_backoff
            ),
            retry_backoff_max=_float(
                env("INTL_PAY_RETRY_BACKOFF_MAX"), defaults.retry_backoff_max
            ),
            batch_size=_int(env("INTL_PAY_BATCH_SIZE"), defaults.batch_size),
            max_payment_amount=_int(
                env("INTL_PAY_MAX_PAYMENT_AMOUNT"), defaults.max_payment_amount
            ),
            high_value_threshold=_int(
                env("INTL_PAY_HIGH_VALUE_THRESHOLD"),
                defaults.high_value_threshold,
            ),
            medium_value_threshold=_int(
                env("INTL_PAY_MEDIUM_VALUE_THRESHOLD"),
                defaults.medium_value_threshold,
            ),
            manual_review_threshold=_int(
                env("INTL_PAY_MANUAL_REVIEW_THRESHOLD"),
                defaults.manual_review_threshold,
            ),
            suspicious_risk_threshold=_int(
                env("INTL_PAY_SUSPICIOUS_RISK_THRESHOLD"),
                defaults.suspicious_risk_threshold,
            ),
            conversion_fee_rate=Decimal(
                env("INTL_PAY_CONVERSION_FEE_RATE")
                or str(defaults.conversion_fee_rate)
            ),
            rate_provider=env(
                "INTL_PAY_RATE_PROVIDER", defaults.rate_provider
            ).lower(),
            ecb_url=env("INTL_PAY_ECB_URL", defaults.ecb_url),
            vies_enabled=_bool(env("INTL_PAY_VIES_ENABLED", "true")),
            vies_url=env("INTL_PAY_VIES_URL", defaults.vies_url),
            audit_queue_size=_int(
                env("INTL_PAY_AUDIT_QUEUE_SIZE"), defaults.audit_queue_size
            ),
            report_dir=env("INTL_PAY_REPORT_DIR", defaults.report_dir),
            log_level=env("INTL_PAY_LOG_LEVEL", defaults.log_level).upper(),
        )
