"""
Default wiring for the payment engine.

The only module that chooses concrete rate sources, registries and
collaborators. Callers that bring their own gateway, persistence or customer
directory pass them in; anything omitted gets the in-memory implementation.
"""

from __future__ import annotations

import logging
from typing import Optional

from intl_payments.collaborators import (
    CustomerDirectory,
    InMemoryCustomerDirectory,
    InMemoryPersistence,
    PaymentGateway,
    PersistenceStore,
    SandboxGateway,
)
from intl_payments.compliance import ComplianceMonitor
from intl_payments.config import EngineConfig
from intl_payments.currency import (
    CurrencyConverter,
    EcbRateSource,
    ExchangeRateSource,
    ProviderChain,
    StaticRateSource,
)
from intl_payments.orchestrator import PaymentOrchestrator
from intl_payments.rates import ReferenceTaxData
from intl_payments.tax import TaxComplianceEngine
from intl_payments.vat import VatValidator, ViesClient

logger = logging.getLogger(__name__)


def build_rate_source(config: EngineConfig) -> ExchangeRateSource:
    """``ecb`` chains the live ECB feed in front of the static table."""
    if config.rate_provider == "ecb":
        return ProviderChain(
            [
                EcbRateSource(config.ecb_url, timeout=config.external_timeout),
                StaticRateSource(),
            ]
        )
    return StaticRateSource()


def build_orchestrator(
    config: Optional[EngineConfig] = None,
    gateway: Optional[PaymentGateway] = None,
    persistence: Optional[PersistenceStore] = None,
    directory: Optional[CustomerDirectory] = None,
) -> PaymentOrchestrator:
    """Create a fully wired ``PaymentOrchestrator``."""
    config = config or EngineConfig.from_env()
    persistence = persistence or InMemoryPersistence()

    converter = CurrencyConverter(build_rate_source(config), config)
    registry = (
        ViesClient(config.vies_url, timeout=config.external_timeout)
        if config.vies_enabled
        else None
    )
    tax_engine = TaxComplianceEngine(
        data_source=ReferenceTaxData(),
        vat_validator=VatValidator(registry, config),
        persistence=persistence,
        config=config,
    )
    compliance = ComplianceMonitor(
        directory=directory or InMemoryCustomerDirectory(),
        persistence=persistence,
        config=config,
    )

    logger.info(
        "Payment engine wired: settlement=%s merchant=%s rates=%s",
        config.settlement_currency,
        config.merchant_country,
        config.rate_provider,
    )
    return PaymentOrchestrator(
        converter=converter,
        tax_engine=tax_engine,
        compliance=compliance,
        gateway=gateway or SandboxGateway(),
        persistence=persistence,
        config=config,
    )


__all__ = ["build_orchestrator", "build_rate_source"]
