"""
VAT number validation.

EU numbers are checked against the VIES registry (SOAP over HTTP); other
countries, and EU numbers whenever the registry cannot answer, fall back to
a per-country format check. Results are cached for a day per
(number, country).
"""

from __future__ import annotations

import dataclasses
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import httpx

from intl_payments.cache import CacheStats, TTLCache
from intl_payments.config import EngineConfig
from intl_payments.errors import VatRegistryUnavailableError
from intl_payments.rates import is_eu
from intl_payments.resilience import call_external

logger = logging.getLogger(__name__)

VAT_PATTERNS: dict[str, re.Pattern[str]] = {
    "GB": re.compile(r"^GB\d{9}(\d{3})?$"),
    "DE": re.compile(r"^DE\d{9}$"),
    "FR": re.compile(r"^FR[A-Z0-9]{2}\d{9}$"),
    "IT": re.compile(r"^IT\d{11}$"),
    "ES": re.compile(r"^ES[A-Z0-9]\d{7}[A-Z0-9]$"),
    "NL": re.compile(r"^NL\d{9}B\d{2}$"),
    "BE": re.compile(r"^BE0\d{9}$"),
    "AT": re.compile(r"^ATU\d{8}$"),
    "CA": re.compile(r"^CA\d{9}(RT|RC)\d{4}$"),
    "AU": re.compile(r"^AU\d{11}$"),
}

MIN_VAT_LENGTH = 8
MAX_VAT_LENGTH = 15

_STRIP = re.compile(r"[\s\-.]")


def normalize_vat_number(vat_number: str) -> str:
    """Strip spaces, dashes and dots and uppercase."""
    return _STRIP.sub("", vat_number).upper()


def country_prefix(vat_number: str) -> Optional[str]:
    match = re.match(r"^([A-Z]{2})", vat_number)
    return match.group(1) if match else None


def _with_prefix(vat_number: str, country: str) -> str:
    return vat_number if vat_number.startswith(country) else f"{country}{vat_number}"


def check_format(vat_number: str, country: str) -> bool:
    """Local format check. Countries without a known pattern never validate."""
    pattern = VAT_PATTERNS.get(country)
    if pattern is None:
        return False
    return bool(pattern.match(_with_prefix(vat_number, country)))


@dataclass(frozen=True)
class VatValidationResult:
    valid: bool
    country: str
    vat_number: str
    checked_at: datetime
    source: str  # registry, local-format, cache
    company_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistryResult:
    valid: bool
    company_name: Optional[str] = None


class VatRegistry(Protocol):
    async def check(self, country: str, vat_number: str) -> RegistryResult:
        ...


_SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
_VIES_NS = "urn:ec.europa.eu:taxud:vies:services:checkVat:types"

_ENVELOPE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    f'<soapenv:Envelope xmlns:soapenv="{_SOAP_NS}" xmlns:urn="{_VIES_NS}">'
    "<soapenv:Header/>"
    "<soapenv:Body>"
    "<urn:checkVat>"
    "<urn:countryCode>{country}</urn:countryCode>"
    "<urn:vatNumber>{number}</urn:vatNumber>"
    "</urn:checkVat>"
    "</soapenv:Body>"
    "</soapenv:Envelope>"
)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_vies_response(payload: str) -> RegistryResult:
    """Parse a VIES ``checkVatResponse`` envelope; SOAP faults raise."""
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise VatRegistryUnavailableError(f"Malformed VIES response: {exc}") from exc

    fields: dict[str, str] = {}
    for element in root.iter():
        name = _local_name(element.tag)
        if name == "Fault":
            fault = element.findtext("faultstring") or "unknown fault"
            raise VatRegistryUnavailableError(f"VIES fault: {fault}")
        if name in ("valid", "name") and element.text is not None:
            fields[name] = element.text.strip()

    if "valid" not in fields:
        raise VatRegistryUnavailableError("VIES response has no <valid> element")

    company = fields.get("name")
    return RegistryResult(
        valid=fields["valid"].lower() == "true",
        company_name=company if company and company != "---" else None,
    )


class ViesClient:
    """EU VIES ``checkVatService`` client."""

    def __init__(
        self,
        url: str = EngineConfig.vies_url,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._client = client
        self._timeout = timeout

    async def _post(self, body: str) -> httpx.Response:
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": ""}
        if self._client is not None:
            return await self._client.post(self.url, content=body, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self.url, content=body, headers=headers)

    async def check(self, country: str, vat_number: str) -> RegistryResult:
        number = vat_number[2:] if vat_number.startswith(country) else vat_number
        response = await self._post(_ENVELOPE.format(country=country, number=number))
        # VIES reports faults (MS_UNAVAILABLE, TIMEOUT, ...) as HTTP 500 with a SOAP body.
        if response.status_code >= 500 and "Fault" not in response.text:
            raise VatRegistryUnavailableError(
                f"VIES returned HTTP {response.status_code}"
            )
        if response.status_code < 500:
            response.raise_for_status()
        return parse_vies_response(response.text)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class VatValidator:
    """
    Validates VAT numbers with a registry-first, format-fallback policy.

    ``registry`` is consulted for EU countries only; pass ``None`` to run
    format checks everywhere.
    """

    def __init__(
        self,
        registry: Optional[VatRegistry] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.registry = registry
        cache_kwargs = {"clock": clock} if clock else {}
        self._cache: TTLCache[VatValidationResult] = TTLCache(
            self.config.vat_cache_ttl, name="vat_validation", **cache_kwargs
        )

    async def validate(
        self, vat_number: str, country: Optional[str] = None
    ) -> VatValidationResult:
        number = normalize_vat_number(vat_number or "")
        country = (country or country_prefix(number) or "").upper()
        key = (number, country)

        cached = self._cache.get(key)
        if cached is not None:
            return dataclasses.replace(cached, source="cache")

        checked = False

        async def check() -> VatValidationResult:
            nonlocal checked
            checked = True
            return await self._check(number, country)

        result = await self._cache.get_or_load(key, check)
        # Served by another caller's check or an entry stored meanwhile.
        return result if checked else dataclasses.replace(result, source="cache")

    async def _check(self, number: str, country: str) -> VatValidationResult:
        now = datetime.now(timezone.utc)
        if not (MIN_VAT_LENGTH <= len(number) <= MAX_VAT_LENGTH):
            return VatValidationResult(
                valid=False,
                country=country,
                vat_number=number,
                checked_at=now,
                source="local-format",
            )

        if is_eu(country) and self.registry is not None and self.config.vies_enabled:
            try:
                answer = await call_external(
                    f"vat_registry {country}",
                    lambda: self.registry.check(country, number),
                    self.config,
                )
            except Exception as exc:
                logger.warning(
                    "VAT registry unavailable for %s (%s); using format check",
                    country,
                    exc,
                )
            else:
                return VatValidationResult(
                    valid=answer.valid,
                    country=country,
                    vat_number=number,
                    checked_at=now,
                    source="registry",
                    company_name=answer.company_name,
                )

        return VatValidationResult(
            valid=check_format(number, country),
            country=country,
            vat_number=number,
            checked_at=now,
            source="local-format",
        )

    def clear_expired_cache(self) -> int:
        return self._cache.clear_expired()

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()
