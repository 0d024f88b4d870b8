"""Tests for currency metadata, rate sources and the CurrencyConverter."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from intl_payments.currency import (
    CurrencyConverter,
    EcbRateSource,
    ExchangeRate,
    ProviderChain,
    StaticRateSource,
    format_amount,
    is_supported,
    parse_ecb_xml,
    supported_currencies,
)
from intl_payments.errors import ConversionError, RateUnavailableError, ValidationError

ECB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<gesmes:Envelope xmlns:gesmes="http://www.gesmes.org/xml/2002-08-01"
    xmlns="http://www.ecb.int/vocabulary/2002-08-01/eurofxref">
  <gesmes:subject>Reference rates</gesmes:subject>
  <Cube>
    <Cube time="2024-05-10">
      <Cube currency="USD" rate="1.0783"/>
      <Cube currency="JPY" rate="167.83"/>
      <Cube currency="GBP" rate="0.8600"/>
    </Cube>
  </Cube>
</gesmes:Envelope>
"""


class CountingSource:
    """Static rates that count lookups and can be made to fail."""

    name = "counting"

    def __init__(self, failures: int = 0, exc: Exception = None) -> None:
        self.calls = 0
        self.failures = failures
        self.exc = exc or RateUnavailableError("provider busy")
        self._static = StaticRateSource()

    async def get_rate(self, base, target):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        quote = await self._static.get_rate(base, target)
        return ExchangeRate(base, target, quote.rate, self.name, quote.as_of)


class FailingSource:
    def __init__(self, name: str) -> None:
        self.name = name
        self.calls = 0

    async def get_rate(self, base, target):
        self.calls += 1
        raise RateUnavailableError(f"{self.name} down")


@pytest.fixture
def converter(config) -> CurrencyConverter:
    return CurrencyConverter(StaticRateSource(), config)


# ── Currency metadata ───────────────────────────────────────────────


def test_ten_supported_currencies():
    codes = {c.code for c in supported_currencies()}
    assert codes == {"USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CHF", "SEK", "NOK", "DKK"}


def test_is_supported_is_case_insensitive():
    assert is_supported("eur")
    assert not is_supported("XYZ")


def test_format_amount_two_decimals():
    assert format_amount(1050, "EUR") == "€10.50"
    assert format_amount(123456, "USD") == "$1,234.56"


def test_format_amount_zero_decimal_currency():
    assert format_amount(1500, "JPY") == "¥1,500"


# ── Conversion ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_identity_conversion(converter):
    result = await converter.convert(1000, "USD", "USD")
    assert result.converted_amount == 1000
    assert result.exchange_rate == Decimal("1")
    assert result.fees == 0
    assert result.provider == "none"


@pytest.mark.asyncio
async def test_usd_to_eur(converter):
    result = await converter.convert(10000, "USD", "EUR")
    assert result.exchange_rate == Decimal("0.92")
    assert result.converted_amount == 9200
    assert result.fees == 46  # 0.5%
    assert result.provider == "static"


@pytest.mark.asyncio
async def test_eur_to_usd_rounds_half_up(converter):
    result = await converter.convert(10000, "EUR", "USD")
    # 10000 * 1.08695652 = 10869.5652
    assert result.converted_amount == 10870
    assert result.fees == 54  # 54.35


@pytest.mark.asyncio
async def test_conversion_into_zero_decimal_currency(converter):
    # $10.00 -> 1495 yen
    result = await converter.convert(1000, "USD", "JPY")
    assert result.converted_amount == 1495


@pytest.mark.asyncio
async def test_conversion_out_of_zero_decimal_currency(converter):
    result = await converter.convert(1495, "JPY", "USD")
    assert result.converted_amount == 1000


@pytest.mark.asyncio
async def test_conversion_is_deterministic(converter):
    first = await converter.convert(12345, "GBP", "EUR")
    second = await converter.convert(12345, "GBP", "EUR")
    assert first.converted_amount == second.converted_amount
    assert first.exchange_rate == second.exchange_rate


@pytest.mark.asyncio
async def test_currency_codes_are_normalized(converter):
    result = await converter.convert(10000, "usd", " eur ")
    assert result.converted_amount == 9200


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "100"])
async def test_invalid_amount_rejected(converter, amount):
    with pytest.raises(ValidationError):
        await converter.convert(amount, "USD", "EUR")


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["US", "EURO", "", "12A", None])
async def test_invalid_currency_code_rejected(converter, code):
    with pytest.raises(ValidationError):
        await converter.convert(100, code, "EUR")


@pytest.mark.asyncio
async def test_unknown_currency_pair_is_conversion_error(converter):
    with pytest.raises(ConversionError):
        await converter.convert(100, "XYZ", "USD")


# ── Rate caching and retries ────────────────────────────────────────


@pytest.mark.asyncio
async def test_rate_cached_until_ttl(config, clock):
    source = CountingSource()
    converter = CurrencyConverter(source, config, clock=clock)

    await converter.convert(100, "USD", "EUR")
    await converter.convert(200, "USD", "EUR")
    assert source.calls == 1

    clock.advance(config.rate_cache_ttl + 1)
    await converter.convert(300, "USD", "EUR")
    assert source.calls == 2


@pytest.mark.asyncio
async def test_pairs_cached_independently(config, clock):
    source = CountingSource()
    converter = CurrencyConverter(source, config, clock=clock)
    await converter.convert(100, "USD", "EUR")
    await converter.convert(100, "EUR", "USD")
    assert source.calls == 2


@pytest.mark.asyncio
async def test_concurrent_conversions_fetch_rate_once(config, clock):
    source = CountingSource()
    converter = CurrencyConverter(source, config, clock=clock)
    results = await asyncio.gather(
        *(converter.convert(1000, "GBP", "USD") for _ in range(5))
    )
    assert source.calls == 1
    assert len({r.converted_amount for r in results}) == 1


@pytest.mark.asyncio
async def test_transient_rate_failure_retried(config, clock):
    source = CountingSource(failures=2)
    converter = CurrencyConverter(source, config, clock=clock)
    result = await converter.convert(10000, "USD", "EUR")
    assert result.converted_amount == 9200
    assert source.calls == 3


@pytest.mark.asyncio
async def test_exhausted_rate_retries_become_conversion_error(config, clock):
    source = CountingSource(failures=10)
    converter = CurrencyConverter(source, config, clock=clock)
    with pytest.raises(ConversionError):
        await converter.convert(10000, "USD", "EUR")
    assert source.calls == config.max_retries + 1
    assert converter.cache_stats().total_entries == 0


@pytest.mark.asyncio
async def test_exchange_rate_carries_validity_window(config, clock):
    converter = CurrencyConverter(StaticRateSource(), config, clock=clock)
    rate = await converter.get_exchange_rate("USD", "EUR")
    assert rate.valid_until is not None
    assert rate.valid_until > rate.as_of


@pytest.mark.asyncio
async def test_clear_expired_cache(config, clock):
    converter = CurrencyConverter(StaticRateSource(), config, clock=clock)
    await converter.convert(100, "USD", "EUR")
    await converter.convert(100, "USD", "GBP")
    clock.advance(config.rate_cache_ttl + 1)
    assert converter.clear_expired_cache() == 2


# ── Provider chain ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_chain_falls_back_to_next_provider():
    primary = FailingSource("primary")
    chain = ProviderChain([primary, StaticRateSource()])
    rate = await chain.get_rate("USD", "EUR")
    assert rate.provider == "static"
    assert chain.failures["primary"] == 1


@pytest.mark.asyncio
async def test_chain_skips_provider_after_repeated_failures():
    primary = FailingSource("primary")
    chain = ProviderChain([primary, StaticRateSource()], max_failures=2)
    for _ in range(4):
        await chain.get_rate("USD", "EUR")
    assert primary.calls == 2

    chain.reset()
    await chain.get_rate("USD", "EUR")
    assert primary.calls == 3


@pytest.mark.asyncio
async def test_chain_raises_when_all_providers_fail():
    chain = ProviderChain([FailingSource("a"), FailingSource("b")])
    with pytest.raises(RateUnavailableError):
        await chain.get_rate("USD", "EUR")


def test_chain_requires_a_source():
    with pytest.raises(ValueError):
        ProviderChain([])


# ── ECB feed ────────────────────────────────────────────────────────


def test_parse_ecb_xml():
    table, published = parse_ecb_xml(ECB_XML)
    assert table["EUR"] == Decimal("1")
    assert table["USD"] == Decimal("1.0783")
    assert published == datetime(2024, 5, 10, tzinfo=timezone.utc)


def test_parse_ecb_xml_malformed():
    with pytest.raises(RateUnavailableError):
        parse_ecb_xml("<not xml")


def test_parse_ecb_xml_without_rates():
    with pytest.raises(RateUnavailableError):
        parse_ecb_xml('<Envelope xmlns="http://www.ecb.int/vocabulary/2002-08-01/eurofxref"/>')


@pytest.mark.asyncio
async def test_ecb_source_fetches_and_crosses_rates():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=ECB_XML)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = EcbRateSource("https://ecb.test/daily.xml", client=client)
        direct = await source.get_rate("EUR", "USD")
        crossed = await source.get_rate("USD", "GBP")

    assert direct.rate == Decimal("1.07830000")
    assert direct.provider == "ecb"
    assert direct.as_of == datetime(2024, 5, 10, tzinfo=timezone.utc)
    assert crossed.rate == (Decimal("0.8600") / Decimal("1.0783")).quantize(Decimal("0.00000001"))


@pytest.mark.asyncio
async def test_ecb_server_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = EcbRateSource("https://ecb.test/daily.xml", client=client)
        with pytest.raises(RateUnavailableError):
            await source.get_rate("EUR", "USD")


@pytest.mark.asyncio
async def test_ecb_client_error_raises_http_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="gone")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = EcbRateSource("https://ecb.test/daily.xml", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await source.get_rate("EUR", "USD")


@pytest.mark.asyncio
async def test_ecb_unquoted_currency_is_conversion_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=ECB_XML)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = EcbRateSource("https://ecb.test/daily.xml", client=client)
        with pytest.raises(ConversionError):
            await source.get_rate("EUR", "CHF")
