"""Shared fixtures for the payment engine tests."""

from datetime import datetime, timedelta, timezone

import pytest

from intl_payments.collaborators import (
    CustomerRecord,
    InMemoryCustomerDirectory,
    InMemoryPersistence,
)
from intl_payments.config import EngineConfig

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> EngineConfig:
    return EngineConfig(
        retry_backoff=0,
        vies_enabled=False,
        report_dir=str(tmp_path / "reports"),
    )


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def directory() -> InMemoryCustomerDirectory:
    created = NOW - timedelta(days=30)
    return InMemoryCustomerDirectory(
        [
            CustomerRecord("cus_de", "DE", "verified", gdpr_consent=True,
                           gdpr_consent_date=created, created_at=created),
            CustomerRecord("cus_nl", "NL", "verified", gdpr_consent=True,
                           gdpr_consent_date=created, created_at=created),
            CustomerRecord("cus_gb", "GB", "verified", created_at=created),
            CustomerRecord("cus_us", "US", "verified", created_at=created),
            CustomerRecord("cus_ir", "IR", "verified", created_at=created),
            CustomerRecord("cus_fr_biz", "FR", "verified", customer_type="business",
                           vat_number="FR12345678901", gdpr_consent=True,
                           created_at=created),
            CustomerRecord("cus_pending", "DE", "pending", created_at=created),
            CustomerRecord("cus_pending_biz", "DE", "pending", customer_type="business",
                           created_at=created),
            CustomerRecord("cus_rejected", "DE", "rejected", created_at=created),
            CustomerRecord("cus_no_consent", "DE", "verified", created_at=created),
            CustomerRecord("cus_expired", "DE", "verified", gdpr_consent=True,
                           created_at=NOW - timedelta(days=3000)),
        ]
    )
