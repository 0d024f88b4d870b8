"""Tests for VAT number normalization, format checks and the VAT validator."""

import asyncio

import httpx
import pytest

from intl_payments.config import EngineConfig
from intl_payments.errors import VatRegistryUnavailableError
from intl_payments.vat import (
    RegistryResult,
    VatValidator,
    ViesClient,
    check_format,
    normalize_vat_number,
    parse_vies_response,
)

VIES_VALID = """<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <checkVatResponse xmlns="urn:ec.europa.eu:taxud:vies:services:checkVat:types">
      <countryCode>DE</countryCode>
      <vatNumber>123456789</vatNumber>
      <requestDate>2024-05-10+02:00</requestDate>
      <valid>true</valid>
      <name>ACME GMBH</name>
      <address>---</address>
    </checkVatResponse>
  </soap:Body>
</soap:Envelope>
"""

VIES_INVALID = VIES_VALID.replace("<valid>true</valid>", "<valid>false</valid>").replace(
    "<name>ACME GMBH</name>", "<name>---</name>"
)

VIES_FAULT = """<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <soap:Fault>
      <faultcode>soap:Server</faultcode>
      <faultstring>MS_UNAVAILABLE</faultstring>
    </soap:Fault>
  </soap:Body>
</soap:Envelope>
"""


class FakeRegistry:
    def __init__(self, result=None, exc=None) -> None:
        self.result = result or RegistryResult(valid=True, company_name="ACME GmbH")
        self.exc = exc
        self.calls = []

    async def check(self, country, vat_number):
        self.calls.append((country, vat_number))
        if self.exc is not None:
            raise self.exc
        return self.result


@pytest.fixture
def registry_config() -> EngineConfig:
    return EngineConfig(retry_backoff=0, vies_enabled=True)


# ── Normalization and format ────────────────────────────────────────


def test_normalize_strips_separators():
    assert normalize_vat_number("de 123-456.789") == "DE123456789"


@pytest.mark.parametrize(
    "number,country",
    [
        ("DE123456789", "DE"),
        ("123456789", "DE"),
        ("FR12345678901", "FR"),
        ("GB123456789", "GB"),
        ("NL123456789B01", "NL"),
        ("ATU12345678", "AT"),
        ("CA123456789RT0001", "CA"),
    ],
)
def test_valid_formats(number, country):
    assert check_format(number, country) is True


@pytest.mark.parametrize(
    "number,country",
    [
        ("DE12345678", "DE"),
        ("NL123456789", "NL"),
        ("AT12345678", "AT"),
        ("PL1234567890", "PL"),  # no known pattern
    ],
)
def test_invalid_formats(number, country):
    assert check_format(number, country) is False


# ── Validator without registry ──────────────────────────────────────


@pytest.mark.asyncio
async def test_format_validation_without_registry(config, clock):
    validator = VatValidator(None, config, clock=clock)
    result = await validator.validate("DE 123 456 789")
    assert result.valid is True
    assert result.country == "DE"
    assert result.vat_number == "DE123456789"
    assert result.source == "local-format"


@pytest.mark.asyncio
async def test_length_out_of_bounds_is_invalid(config, clock):
    validator = VatValidator(None, config, clock=clock)
    short = await validator.validate("DE12", "DE")
    long = await validator.validate("DE1234567890123456", "DE")
    assert short.valid is False
    assert long.valid is False


@pytest.mark.asyncio
async def test_second_lookup_served_from_cache(config, clock):
    validator = VatValidator(None, config, clock=clock)
    await validator.validate("DE123456789")
    again = await validator.validate("DE123456789")
    assert again.source == "cache"
    assert again.valid is True


# ── Validator with registry ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_eu_number_checked_against_registry(registry_config, clock):
    registry = FakeRegistry()
    validator = VatValidator(registry, registry_config, clock=clock)
    result = await validator.validate("DE123456789")
    assert result.source == "registry"
    assert result.company_name == "ACME GmbH"
    assert registry.calls == [("DE", "DE123456789")]


@pytest.mark.asyncio
async def test_registry_answer_cached_for_a_day(registry_config, clock):
    registry = FakeRegistry()
    validator = VatValidator(registry, registry_config, clock=clock)

    await validator.validate("DE123456789")
    cached = await validator.validate("DE123456789")
    assert cached.source == "cache"
    assert len(registry.calls) == 1

    clock.advance(registry_config.vat_cache_ttl + 1)
    fresh = await validator.validate("DE123456789")
    assert fresh.source == "registry"
    assert len(registry.calls) == 2


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_registry_call(registry_config, clock):
    registry = FakeRegistry()
    validator = VatValidator(registry, registry_config, clock=clock)

    results = await asyncio.gather(
        validator.validate("DE123456789"), validator.validate("DE 123 456 789")
    )

    assert len(registry.calls) == 1
    assert sorted(r.source for r in results) == ["cache", "registry"]
    assert all(r.valid for r in results)


@pytest.mark.asyncio
async def test_registry_can_reject_well_formed_number(registry_config, clock):
    registry = FakeRegistry(result=RegistryResult(valid=False))
    validator = VatValidator(registry, registry_config, clock=clock)
    result = await validator.validate("DE123456789")
    assert result.valid is False
    assert result.source == "registry"


@pytest.mark.asyncio
async def test_registry_outage_falls_back_to_format(registry_config, clock):
    registry = FakeRegistry(exc=VatRegistryUnavailableError("MS_UNAVAILABLE"))
    validator = VatValidator(registry, registry_config, clock=clock)
    result = await validator.validate("DE123456789")
    assert result.valid is True
    assert result.source == "local-format"
    assert len(registry.calls) == registry_config.max_retries + 1


@pytest.mark.asyncio
async def test_non_eu_number_never_hits_registry(registry_config, clock):
    registry = FakeRegistry()
    validator = VatValidator(registry, registry_config, clock=clock)
    result = await validator.validate("GB123456789")
    assert result.valid is True
    assert result.source == "local-format"
    assert registry.calls == []


@pytest.mark.asyncio
async def test_registry_disabled_by_config(clock):
    registry = FakeRegistry()
    validator = VatValidator(registry, EngineConfig(vies_enabled=False), clock=clock)
    await validator.validate("DE123456789")
    assert registry.calls == []


# ── VIES protocol ───────────────────────────────────────────────────


def test_parse_vies_valid_response():
    result = parse_vies_response(VIES_VALID)
    assert result.valid is True
    assert result.company_name == "ACME GMBH"


def test_parse_vies_placeholder_name():
    result = parse_vies_response(VIES_INVALID)
    assert result.valid is False
    assert result.company_name is None


def test_parse_vies_fault_raises():
    with pytest.raises(VatRegistryUnavailableError, match="MS_UNAVAILABLE"):
        parse_vies_response(VIES_FAULT)


def test_parse_vies_malformed_raises():
    with pytest.raises(VatRegistryUnavailableError):
        parse_vies_response("<broken")


@pytest.mark.asyncio
async def test_vies_client_posts_number_without_prefix():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content.decode()
        return httpx.Response(200, text=VIES_VALID)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        vies = ViesClient("https://vies.test/checkVatService", client=client)
        result = await vies.check("DE", "DE123456789")

    assert result.valid is True
    assert "<urn:countryCode>DE</urn:countryCode>" in seen["body"]
    assert "<urn:vatNumber>123456789</urn:vatNumber>" in seen["body"]


@pytest.mark.asyncio
async def test_vies_client_fault_on_http_500():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text=VIES_FAULT)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        vies = ViesClient("https://vies.test/checkVatService", client=client)
        with pytest.raises(VatRegistryUnavailableError, match="MS_UNAVAILABLE"):
            await vies.check("DE", "DE123456789")


@pytest.mark.asyncio
async def test_vies_client_bare_server_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        vies = ViesClient("https://vies.test/checkVatService", client=client)
        with pytest.raises(VatRegistryUnavailableError, match="HTTP 502"):
            await vies.check("DE", "DE123456789")
