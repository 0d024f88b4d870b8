"""
Currency conversion for international payments.

Handles:
- Currency metadata (symbols, minor-unit exponents) and display formatting
- Exchange rate sources: a static offline table and the ECB daily feed
- Provider fallback with per-provider failure counting
- Conversion in minor units with a fixed conversion fee
- Short-lived per-pair rate caching
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Protocol

import httpx

from intl_payments.cache import CacheStats, TTLCache
from intl_payments.config import EngineConfig
from intl_payments.errors import (
    ConversionError,
    RateUnavailableError,
    ValidationError,
)
from intl_payments.resilience import call_external

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    name: str
    symbol: str
    decimal_places: int = 2


@dataclass(frozen=True)
class ExchangeRate:
    """A quoted rate: 1 unit of ``base`` buys ``rate`` units of ``target``."""

    base: str
    target: str
    rate: Decimal
    provider: str
    as_of: datetime
    valid_until: Optional[datetime] = None


@dataclass(frozen=True)
class ConversionResult:
    original_amount: int
    converted_amount: int
    exchange_rate: Decimal
    fees: int
    provider: str
    as_of: datetime


SUPPORTED_CURRENCIES: dict[str, CurrencyInfo] = {
    c.code: c
    for c in [
        CurrencyInfo("USD", "US Dollar", "$"),
        CurrencyInfo("EUR", "Euro", "€"),
        CurrencyInfo("GBP", "British Pound", "£"),
        CurrencyInfo("CAD", "Canadian Dollar", "C$"),
        CurrencyInfo("AUD", "Australian Dollar", "A$"),
        CurrencyInfo("JPY", "Japanese Yen", "¥", decimal_places=0),
        CurrencyInfo("CHF", "Swiss Franc", "CHF "),
        CurrencyInfo("SEK", "Swedish Krona", "kr "),
        CurrencyInfo("NOK", "Norwegian Krone", "kr "),
        CurrencyInfo("DKK", "Danish Krone", "kr "),
    ]
}

_RATE_PRECISION = Decimal("0.00000001")


def round_half_up(value: Decimal) -> int:
    """Round a minor-unit Decimal to a whole number, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def currency_info(code: str) -> Optional[CurrencyInfo]:
    return SUPPORTED_CURRENCIES.get(code.upper())


def is_supported(code: str) -> bool:
    return code.upper() in SUPPORTED_CURRENCIES


def supported_currencies() -> list[CurrencyInfo]:
    return list(SUPPORTED_CURRENCIES.values())


def decimal_places(code: str) -> int:
    info = currency_info(code)
    return info.decimal_places if info else 2


def format_amount(amount: int, currency: str) -> str:
    """Render a minor-unit amount for display, e.g. ``format_amount(1050, "EUR")`` -> ``€10.50``."""
    info = currency_info(currency)
    places = info.decimal_places if info else 2
    symbol = info.symbol if info else f"{currency.upper()} "
    major = Decimal(amount).scaleb(-places)
    return f"{symbol}{major:,.{places}f}"


# ---------------------------------------------------------------------------
# Rate sources
# ---------------------------------------------------------------------------


class ExchangeRateSource(Protocol):
    name: str

    async def get_rate(self, base: str, target: str) -> ExchangeRate:
        ...


# Units of each currency per 1 USD.
_STATIC_USD_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "CAD": Decimal("1.36"),
    "AUD": Decimal("1.52"),
    "JPY": Decimal("149.50"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.40"),
    "NOK": Decimal("10.60"),
    "DKK": Decimal("6.87"),
}


def _cross_rate(
    table: dict[str, Decimal], base: str, target: str
) -> Optional[Decimal]:
    if base not in table or target not in table:
        return None
    return (table[target] / table[base]).quantize(_RATE_PRECISION)


class StaticRateSource:
    """Fixed USD-based rate table. Used offline and in tests."""

    name = "static"

    def __init__(self, usd_rates: Optional[dict[str, Decimal]] = None) -> None:
        self.usd_rates = dict(usd_rates or _STATIC_USD_RATES)

    async def get_rate(self, base: str, target: str) -> ExchangeRate:
        rate = _cross_rate(self.usd_rates, base, target)
        if rate is None:
            raise ConversionError(f"No exchange rate for {base}/{target}")
        return ExchangeRate(
            base=base,
            target=target,
            rate=rate,
            provider=self.name,
            as_of=datetime.now(timezone.utc),
        )


_ECB_NS = "{http://www.ecb.int/vocabulary/2002-08-01/eurofxref}"


def parse_ecb_xml(payload: str) -> tuple[dict[str, Decimal], Optional[datetime]]:
    """
    Parse the ECB ``eurofxref-daily.xml`` document.

    Returns the EUR-based rate table (EUR itself included at 1) and the
    publication date, if present.
    """
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise RateUnavailableError(f"Malformed ECB rate feed: {exc}") from exc

    table: dict[str, Decimal] = {"EUR": Decimal("1")}
    published: Optional[datetime] = None
    for cube in root.iter(f"{_ECB_NS}Cube"):
        if "time" in cube.attrib:
            published = datetime.fromisoformat(cube.attrib["time"]).replace(
                tzinfo=timezone.utc
            )
        currency = cube.attrib.get("currency")
        rate = cube.attrib.get("rate")
        if currency and rate:
            table[currency.upper()] = Decimal(rate)

    if len(table) == 1:
        raise RateUnavailableError("ECB rate feed contained no rates")
    return table, published


class EcbRateSource:
    """
    European Central Bank daily reference rates.

    The ECB quotes every currency against EUR; other pairs are crossed
    through EUR.
    """

    name = "ecb"

    def __init__(
        self,
        url: str = EngineConfig.ecb_url,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._client = client
        self._timeout = timeout

    async def _fetch(self) -> str:
        if self._client is not None:
            response = await self._client.get(self.url)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self.url)
        if response.status_code >= 500:
            raise RateUnavailableError(
                f"ECB feed returned HTTP {response.status_code}"
            )
        response.raise_for_status()
        return response.text

    async def get_rate(self, base: str, target: str) -> ExchangeRate:
        table, published = parse_ecb_xml(await self._fetch())
        rate = _cross_rate(table, base, target)
        if rate is None:
            raise ConversionError(f"ECB does not quote {base}/{target}")
        return ExchangeRate(
            base=base,
            target=target,
            rate=rate,
            provider=self.name,
            as_of=published or datetime.now(timezone.utc),
        )


class ProviderChain:
    """
    Ordered fallback across several rate sources.

    A provider that fails ``max_failures`` times in a row is skipped until
    ``reset()``; a success clears its failure count.
    """

    name = "chain"

    def __init__(
        self, sources: list[ExchangeRateSource], max_failures: int = 3
    ) -> None:
        if not sources:
            raise ValueError("ProviderChain needs at least one source")
        self.sources = sources
        self.max_failures = max_failures
        self.failures: dict[str, int] = {s.name: 0 for s in sources}

    def reset(self) -> None:
        for name in self.failures:
            self.failures[name] = 0

    async def get_rate(self, base: str, target: str) -> ExchangeRate:
        errors: list[str] = []
        for source in self.sources:
            if self.failures[source.name] >= self.max_failures:
                errors.append(f"{source.name}: skipped")
                continue
            try:
                rate = await source.get_rate(base, target)
            except Exception as exc:
                self.failures[source.name] += 1
                logger.warning(
                    "Rate provider %s failed for %s/%s: %s",
                    source.name,
                    base,
                    target,
                    exc,
                )
                errors.append(f"{source.name}: {exc}")
                continue
            self.failures[source.name] = 0
            return rate

        raise RateUnavailableError(
            f"All rate providers failed for {base}/{target} ({'; '.join(errors)})"
        )


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------


def _normalize_code(code: object, field_name: str) -> str:
    if not isinstance(code, str) or len(code.strip()) != 3 or not code.strip().isalpha():
        raise ValidationError(
            f"{field_name} must be a 3-letter currency code",
            [{"field": field_name, "message": "invalid currency code", "type": "value_error"}],
        )
    return code.strip().upper()


class CurrencyConverter:
    """
    Converts minor-unit amounts between currencies.

    Rates are cached per (base, target) pair for ``config.rate_cache_ttl``
    seconds. A missing rate is fatal: there is no fallback to stale rates.
    """

    def __init__(
        self,
        rate_source: Optional[ExchangeRateSource] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.rate_source = rate_source or StaticRateSource()
        cache_kwargs = {"clock": clock} if clock else {}
        self._rates: TTLCache[ExchangeRate] = TTLCache(
            self.config.rate_cache_ttl, name="exchange_rates", **cache_kwargs
        )

    async def get_exchange_rate(self, base: str, target: str) -> ExchangeRate:
        base = _normalize_code(base, "from_currency")
        target = _normalize_code(target, "to_currency")

        async def _load() -> ExchangeRate:
            quote = await call_external(
                f"exchange_rate {base}/{target}",
                lambda: self.rate_source.get_rate(base, target),
                self.config,
            )
            return ExchangeRate(
                base=quote.base,
                target=quote.target,
                rate=quote.rate,
                provider=quote.provider,
                as_of=quote.as_of,
                valid_until=datetime.now(timezone.utc)
                + timedelta(seconds=self.config.rate_cache_ttl),
            )

        return await self._rates.get_or_load((base, target), _load)

    async def convert(
        self, amount: int, from_currency: str, to_currency: str
    ) -> ConversionResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                "amount must be a positive integer in minor units",
                [{"field": "amount", "message": "must be > 0", "type": "value_error"}],
            )
        source = _normalize_code(from_currency, "from_currency")
        target = _normalize_code(to_currency, "to_currency")

        if source == target:
            return ConversionResult(
                original_amount=amount,
                converted_amount=amount,
                exchange_rate=Decimal("1"),
                fees=0,
                provider="none",
                as_of=datetime.now(timezone.utc),
            )

        try:
            quote = await self.get_exchange_rate(source, target)
        except ConversionError:
            raise
        except Exception as exc:
            raise ConversionError(
                f"Currency conversion failed for {source}/{target}: {exc}"
            ) from exc

        exponent = decimal_places(target) - decimal_places(source)
        converted = round_half_up(
            Decimal(amount) * quote.rate * Decimal(10) ** exponent
        )
        if converted <= 0:
            raise ConversionError(
                f"{amount} {source} is below the smallest unit of {target}"
            )
        fees = round_half_up(Decimal(converted) * self.config.conversion_fee_rate)

        return ConversionResult(
            original_amount=amount,
            converted_amount=converted,
            exchange_rate=quote.rate,
            fees=fees,
            provider=quote.provider,
            as_of=quote.as_of,
        )

    def supported_currencies(self) -> list[CurrencyInfo]:
        return supported_currencies()

    def format_amount(self, amount: int, currency: str) -> str:
        return format_amount(amount, currency)

    def clear_expired_cache(self) -> int:
        return self._rates.clear_expired()

    def cache_stats(self) -> CacheStats:
        return self._rates.stats()
