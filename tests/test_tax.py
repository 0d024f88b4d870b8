"""Tests for the TaxComplianceEngine (determination, exemptions, invoices)."""

from datetime import date
from decimal import Decimal

import pytest

from intl_payments.collaborators import InMemoryPersistence
from intl_payments.errors import (
    PersistenceError,
    TaxServiceUnavailableError,
    ValidationError,
)
from intl_payments.rates import (
    RateType,
    ReferenceTaxData,
    TaxJurisdiction,
    TaxRate,
    TaxSystem,
)
from intl_payments.tax import (
    Address,
    CustomerTaxInfo,
    MerchantTaxInfo,
    TaxComplianceEngine,
    TaxInvoiceData,
    TaxLineItem,
)
from intl_payments.vat import VatValidator


class CountingData(ReferenceTaxData):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.rate_calls = 0

    async def get_rates(self, code, product_category):
        self.rate_calls += 1
        return await super().get_rates(code, product_category)


class BrokenData:
    async def get_jurisdiction(self, code):
        raise RuntimeError("tax database offline")

    async def get_rates(self, code, product_category):
        raise RuntimeError("tax database offline")


class BrokenInvoiceStore(InMemoryPersistence):
    async def store_invoice(self, invoice):
        raise RuntimeError("disk full")


@pytest.fixture
def engine(config, persistence, clock) -> TaxComplianceEngine:
    return TaxComplianceEngine(
        vat_validator=VatValidator(None, config, clock=clock),
        persistence=persistence,
        config=config,
        clock=clock,
        today=lambda: date(2024, 6, 15),
    )


def _invoice(country="DE", reverse_charge=False, line_items=None, invoice_date=date(2024, 3, 1)):
    items = [
        TaxLineItem("Annual subscription", 1, 10000, 0.19, 1900, 11900, "digital_services")
    ] if line_items is None else line_items
    return TaxInvoiceData(
        transaction_id="int_abc123",
        customer=CustomerTaxInfo("Anna Schmidt", Address(country, "Hauptstr. 1", "Berlin", "10115")),
        merchant=MerchantTaxInfo("Example Inc", Address("US", "1 Main St", "Austin", "78701")),
        line_items=items,
        total_amount=11900,
        total_tax_amount=1900,
        currency="eur",
        invoice_date=invoice_date,
        reverse_charge=reverse_charge,
    )


# ── VAT ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_german_consumer_vat(engine):
    result = await engine.calculate_tax({"amount": 10000, "customer_country": "DE"})
    assert result.tax_amount == 1900
    assert result.tax_rate == pytest.approx(0.19)
    assert result.jurisdiction == "DE"
    assert result.tax_type == "vat"
    assert result.reverse_charge is False
    assert result.moss_eligible is True
    assert result.cross_border is True
    assert result.applicable_rules == ["vat_calculation", "product_category_standard"]


@pytest.mark.asyncio
async def test_vat_rounds_half_up(engine):
    # 10870 * 0.19 = 2065.3 ; 1250 * 0.23 = 287.5
    assert (await engine.calculate_tax({"amount": 10870, "customer_country": "DE"})).tax_amount == 2065
    assert (await engine.calculate_tax({"amount": 1250, "customer_country": "IE"})).tax_amount == 288


@pytest.mark.asyncio
async def test_uk_vat_not_moss_eligible(engine):
    result = await engine.calculate_tax({"amount": 5000, "customer_country": "GB"})
    assert result.tax_amount == 1000
    assert result.moss_eligible is False


@pytest.mark.asyncio
async def test_gst(engine):
    result = await engine.calculate_tax({"amount": 10000, "customer_country": "AU"})
    assert result.tax_amount == 1000
    assert result.tax_type == "gst"
    assert "gst_calculation" in result.applicable_rules


@pytest.mark.asyncio
async def test_calculation_is_deterministic(engine):
    request = {"amount": 4321, "customer_country": "FR", "product_category": "digital_services"}
    assert await engine.calculate_tax(request) == await engine.calculate_tax(request)


@pytest.mark.asyncio
async def test_digital_services_rule(engine):
    result = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "FR", "product_category": "digital_services"}
    )
    assert result.digital_services is True
    assert "digital_services" in result.applicable_rules
    assert result.tax_amount == 2000


# ── Reverse charge ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reverse_charge_for_eu_b2b(engine):
    result = await engine.calculate_tax(
        {
            "amount": 10000,
            "customer_country": "FR",
            "customer_type": "business",
            "vat_number": "FR12345678901",
            "merchant_country": "DE",
        }
    )
    assert result.reverse_charge is True
    assert result.tax_amount == 0
    assert result.tax_rate == pytest.approx(0.20)
    assert "reverse_charge" in result.applicable_rules


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"customer_type": "individual"},
        {"vat_number": None},
        {"vat_number": "FR123"},
        {"merchant_country": "FR"},
        {"merchant_country": "US"},
    ],
    ids=["consumer", "no-vat-number", "invalid-vat-number", "domestic", "non-eu-merchant"],
)
async def test_reverse_charge_not_applied(engine, overrides):
    request = {
        "amount": 10000,
        "customer_country": "FR",
        "customer_type": "business",
        "vat_number": "FR12345678901",
        "merchant_country": "DE",
        **overrides,
    }
    result = await engine.calculate_tax(request)
    assert result.reverse_charge is False
    assert result.tax_amount == 2000


@pytest.mark.asyncio
async def test_no_reverse_charge_outside_eu(engine):
    result = await engine.calculate_tax(
        {
            "amount": 10000,
            "customer_country": "GB",
            "customer_type": "business",
            "vat_number": "GB123456789",
            "merchant_country": "DE",
        }
    )
    assert result.reverse_charge is False
    assert result.tax_amount == 2000


@pytest.mark.asyncio
async def test_merchant_country_defaults_to_config(engine):
    # Default merchant is US, so an EU B2B sale is taxed normally.
    result = await engine.calculate_tax(
        {
            "amount": 10000,
            "customer_country": "FR",
            "customer_type": "business",
            "vat_number": "FR12345678901",
        }
    )
    assert result.reverse_charge is False


# ── US sales tax ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_us_state_sales_tax(engine):
    result = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "US", "customer_state": "ca"}
    )
    assert result.jurisdiction == "US-CA"
    assert result.tax_type == "sales_tax"
    assert result.tax_amount == 725
    assert result.cross_border is False


@pytest.mark.asyncio
@pytest.mark.parametrize("state", ["OR", "DE", "MT", "NH"])
async def test_no_sales_tax_states_exempt(engine, state):
    result = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "US", "customer_state": state}
    )
    assert result.tax_amount == 0
    assert result.exemption_reason == "No sales tax nexus"
    assert "tax_exemption" in result.applicable_rules


@pytest.mark.asyncio
async def test_state_outside_declared_nexus_exempt(engine):
    result = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "US", "customer_state": "CA", "tax_nexus": ["ny", "TX"]}
    )
    assert result.tax_amount == 0
    assert result.exemption_reason == "No sales tax nexus"


@pytest.mark.asyncio
async def test_state_inside_declared_nexus_taxed(engine):
    result = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "US", "customer_state": "TX", "tax_nexus": ["TX"]}
    )
    assert result.tax_amount == 625


@pytest.mark.asyncio
async def test_us_without_state_uses_country_level(engine):
    result = await engine.calculate_tax({"amount": 10000, "customer_country": "US"})
    assert result.jurisdiction == "US"
    assert result.tax_amount == 0
    assert result.exemption_reason is None


# ── No tax / exemptions ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unknown_country_has_no_tax(engine):
    result = await engine.calculate_tax({"amount": 10000, "customer_country": "JP"})
    assert result.tax_amount == 0
    assert result.tax_type == "none"
    assert result.exemption_reason == "No tax jurisdiction found"
    assert result.applicable_rules == ["no_tax"]


@pytest.mark.asyncio
async def test_category_without_rate_has_no_tax(engine):
    result = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "DE", "product_category": "books"}
    )
    assert result.tax_amount == 0
    assert result.exemption_reason == "No applicable tax rate found"


@pytest.mark.asyncio
async def test_below_digital_services_threshold(config, clock):
    norway = TaxJurisdiction("NO", "Norway", "country", TaxSystem.VAT, Decimal("0.25"), "NOK",
                             threshold_amount=500_000)
    data = ReferenceTaxData([norway], [TaxRate("NO", "digital_services", Decimal("0.25"))])
    engine = TaxComplianceEngine(data_source=data, config=config, clock=clock)

    below = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "NO", "product_category": "digital_services"}
    )
    above = await engine.calculate_tax(
        {"amount": 600_000, "customer_country": "NO", "product_category": "digital_services"}
    )
    assert below.tax_amount == 0
    assert below.exemption_reason == "Below digital services threshold"
    assert above.tax_amount == 150_000


@pytest.mark.asyncio
async def test_fixed_rate_tax(config, clock):
    levy = TaxJurisdiction("XF", "Fixed levy", "country", TaxSystem.VAT, Decimal("0"), "EUR")
    data = ReferenceTaxData(
        [levy], [TaxRate("XF", "standard", Decimal("2.50"), rate_type=RateType.FIXED)]
    )
    engine = TaxComplianceEngine(data_source=data, config=config, clock=clock)
    result = await engine.calculate_tax({"amount": 10000, "customer_country": "XF"})
    assert result.tax_amount == 250

    # quoted in the currency of the taxed amount, not the jurisdiction's
    in_yen = await engine.calculate_tax(
        {"amount": 10000, "customer_country": "XF", "currency": "JPY"}
    )
    assert in_yen.tax_amount == 3


@pytest.mark.asyncio
async def test_rate_selected_by_date(config, clock):
    before = TaxComplianceEngine(config=config, clock=clock, today=lambda: date(2023, 6, 1))
    after = TaxComplianceEngine(config=config, clock=clock, today=lambda: date(2024, 6, 1))
    request = {"amount": 10000, "customer_country": "CH"}
    assert (await before.calculate_tax(request)).tax_amount == 770
    assert (await after.calculate_tax(request)).tax_amount == 810


@pytest.mark.asyncio
async def test_invalid_request_rejected(engine):
    with pytest.raises(ValidationError):
        await engine.calculate_tax({"amount": 0, "customer_country": "DE"})
    with pytest.raises(ValidationError):
        await engine.calculate_tax({"amount": 100, "customer_country": "DEU"})


# ── Rate caching and failures ───────────────────────────────────────


@pytest.mark.asyncio
async def test_rates_cached_per_jurisdiction_and_category(config, clock):
    data = CountingData()
    engine = TaxComplianceEngine(data_source=data, config=config, clock=clock)
    await engine.calculate_tax({"amount": 100, "customer_country": "DE"})
    await engine.calculate_tax({"amount": 200, "customer_country": "DE"})
    assert data.rate_calls == 1

    clock.advance(config.tax_rate_cache_ttl + 1)
    await engine.calculate_tax({"amount": 300, "customer_country": "DE"})
    assert data.rate_calls == 2


@pytest.mark.asyncio
async def test_missing_rate_is_not_cached(config, clock):
    data = CountingData()
    engine = TaxComplianceEngine(data_source=data, config=config, clock=clock)
    await engine.calculate_tax({"amount": 100, "customer_country": "DE", "product_category": "books"})
    await engine.calculate_tax({"amount": 100, "customer_country": "DE", "product_category": "books"})
    assert data.rate_calls == 2


@pytest.mark.asyncio
async def test_data_source_failure_is_service_unavailable(config, clock):
    engine = TaxComplianceEngine(data_source=BrokenData(), config=config, clock=clock)
    with pytest.raises(TaxServiceUnavailableError):
        await engine.calculate_tax({"amount": 100, "customer_country": "DE"})


@pytest.mark.asyncio
async def test_cache_maintenance(engine, clock, config):
    await engine.calculate_tax({"amount": 100, "customer_country": "DE"})
    await engine.validate_vat_number("DE123456789")
    stats = engine.cache_stats()
    assert [s.name for s in stats] == ["tax_rates", "vat_validation"]
    clock.advance(config.vat_cache_ttl + 1)
    assert engine.clear_expired_cache() == 2


# ── Invoices ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_invoice_numbers_are_sequential(engine, persistence):
    first = await engine.generate_tax_invoice(_invoice())
    second = await engine.generate_tax_invoice(_invoice())
    assert first == "INV-2024-DE-00001"
    assert second == "INV-2024-DE-00002"
    assert len(persistence.invoices) == 2


@pytest.mark.asyncio
async def test_invoice_sequence_per_country_and_year(engine):
    assert await engine.generate_tax_invoice(_invoice("FR")) == "INV-2024-FR-00001"
    assert await engine.generate_tax_invoice(_invoice("DE")) == "INV-2024-DE-00001"
    assert (
        await engine.generate_tax_invoice(_invoice("DE", invoice_date=date(2025, 1, 2)))
        == "INV-2025-DE-00001"
    )


@pytest.mark.asyncio
async def test_invoice_document_contents(engine, persistence):
    await engine.generate_tax_invoice(_invoice())
    doc = persistence.invoices[0]
    assert doc["subtotal"] == 10000
    assert doc["total_tax_amount"] == 1900
    assert doc["currency"] == "EUR"
    assert doc["invoice_date"] == "2024-03-01"
    assert doc["customer"]["address"]["country"] == "DE"
    assert "notes" not in doc


@pytest.mark.asyncio
async def test_reverse_charge_invoice_carries_note(engine, persistence):
    await engine.generate_tax_invoice(_invoice("FR", reverse_charge=True))
    assert "Reverse charge" in persistence.invoices[0]["notes"]


@pytest.mark.asyncio
async def test_invoice_without_line_items_rejected(engine, persistence):
    with pytest.raises(ValidationError) as exc_info:
        await engine.generate_tax_invoice(_invoice(line_items=[]))
    assert exc_info.value.errors[0]["field"] == "line_items"
    assert persistence.invoices == []


@pytest.mark.asyncio
async def test_invoice_store_failure(config, clock):
    engine = TaxComplianceEngine(persistence=BrokenInvoiceStore(), config=config, clock=clock)
    with pytest.raises(PersistenceError):
        await engine.generate_tax_invoice(_invoice())
