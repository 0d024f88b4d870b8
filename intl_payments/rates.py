"""
Tax jurisdiction and tax rate reference data.

Covers the EU-27 plus GB, CH, CA, AU at country level and the 50 US states
plus DC as ``US-<STATE>`` sales-tax jurisdictions. Rates are keyed by
(jurisdiction, product category) and carry effective date ranges so that
rate changes can be loaded ahead of time.

Sources: national tax authority publications, EU VAT rate tables, state
revenue department base rates.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Protocol


class TaxSystem(Enum):
    VAT = "vat"
    GST = "gst"
    SALES_TAX = "sales_tax"


class RateType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"  # flat charge in major units of the taxed amount's currency


@dataclass(frozen=True)
class TaxJurisdiction:
    code: str  # ISO 3166 alpha-2, or "US-<STATE>"
    name: str
    jurisdiction_type: str  # country, state
    tax_system: TaxSystem
    default_rate: Decimal
    currency: str
    threshold_amount: Optional[int] = None  # digital services threshold, minor units
    moss_eligible: bool = False
    reverse_charge_applicable: bool = False
    registration_required: bool = True


@dataclass(frozen=True)
class TaxRate:
    jurisdiction_code: str
    product_category: str
    rate: Decimal
    rate_type: RateType = RateType.PERCENTAGE
    effective_from: date = date(2020, 1, 1)
    effective_until: Optional[date] = None  # exclusive
    description: str = ""

    def is_effective(self, on: date) -> bool:
        if on < self.effective_from:
            return False
        return self.effective_until is None or on < self.effective_until


class TaxDataSource(Protocol):
    async def get_jurisdiction(self, code: str) -> Optional[TaxJurisdiction]:
        ...

    async def get_rates(self, code: str, product_category: str) -> list[TaxRate]:
        ...


EU_COUNTRIES: frozenset[str] = frozenset(
    [
        "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR",
        "DE", "GR", "HU", "IE", "IT", "LV", "LT", "LU", "MT", "NL",
        "PL", "PT", "RO", "SK", "SI", "ES", "SE",
    ]
)

DIGITAL_CATEGORIES: frozenset[str] = frozenset(
    [
        "digital_services",
        "software",
        "streaming",
        "downloads",
        "saas",
        "digital_content",
    ]
)

NO_SALES_TAX_STATES: frozenset[str] = frozenset(["DE", "MT", "NH", "OR"])

# Economic nexus thresholds (annual sales, USD). Zero means the state levies
# no general sales tax, so remote sellers never establish nexus.
US_NEXUS_THRESHOLDS: dict[str, int] = {
    "AL": 250_000, "AK": 100_000, "AZ": 200_000, "AR": 100_000,
    "CA": 500_000, "CO": 100_000, "CT": 250_000, "DE": 0,
    "DC": 100_000, "FL": 100_000, "GA": 100_000, "HI": 100_000,
    "ID": 100_000, "IL": 100_000, "IN": 100_000, "IA": 100_000,
    "KS": 100_000, "KY": 100_000, "LA": 100_000, "ME": 100_000,
    "MD": 100_000, "MA": 100_000, "MI": 100_000, "MN": 100_000,
    "MS": 250_000, "MO": 100_000, "MT": 0, "NE": 100_000,
    "NV": 100_000, "NH": 0, "NJ": 100_000, "NM": 100_000,
    "NY": 500_000, "NC": 100_000, "ND": 100_000, "OH": 100_000,
    "OK": 100_000, "OR": 0, "PA": 100_000, "RI": 100_000,
    "SC": 100_000, "SD": 100_000, "TN": 100_000, "TX": 500_000,
    "UT": 100_000, "VT": 100_000, "VA": 100_000, "WA": 100_000,
    "WV": 100_000, "WI": 100_000, "WY": 100_000,
}


def is_eu(country: Optional[str]) -> bool:
    return bool(country) and country.upper() in EU_COUNTRIES


def is_digital_category(category: Optional[str]) -> bool:
    return (category or "standard") in DIGITAL_CATEGORIES


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

# code: (name, system, standard rate, currency)
_COUNTRIES: dict[str, tuple[str, TaxSystem, str, str]] = {
    "US": ("United States", TaxSystem.SALES_TAX, "0", "USD"),
    "GB": ("United Kingdom", TaxSystem.VAT, "0.20", "GBP"),
    "CH": ("Switzerland", TaxSystem.VAT, "0.081", "CHF"),
    "CA": ("Canada", TaxSystem.GST, "0.05", "CAD"),
    "AU": ("Australia", TaxSystem.GST, "0.10", "AUD"),
    "AT": ("Austria", TaxSystem.VAT, "0.20", "EUR"),
    "BE": ("Belgium", TaxSystem.VAT, "0.21", "EUR"),
    "BG": ("Bulgaria", TaxSystem.VAT, "0.20", "BGN"),
    "HR": ("Croatia", TaxSystem.VAT, "0.25", "EUR"),
    "CY": ("Cyprus", TaxSystem.VAT, "0.19", "EUR"),
    "CZ": ("Czechia", TaxSystem.VAT, "0.21", "CZK"),
    "DK": ("Denmark", TaxSystem.VAT, "0.25", "DKK"),
    "EE": ("Estonia", TaxSystem.VAT, "0.22", "EUR"),
    "FI": ("Finland", TaxSystem.VAT, "0.24", "EUR"),
    "FR": ("France", TaxSystem.VAT, "0.20", "EUR"),
    "DE": ("Germany", TaxSystem.VAT, "0.19", "EUR"),
    "GR": ("Greece", TaxSystem.VAT, "0.24", "EUR"),
    "HU": ("Hungary", TaxSystem.VAT, "0.27", "HUF"),
    "IE": ("Ireland", TaxSystem.VAT, "0.23", "EUR"),
    "IT": ("Italy", TaxSystem.VAT, "0.22", "EUR"),
    "LV": ("Latvia", TaxSystem.VAT, "0.21", "EUR"),
    "LT": ("Lithuania", TaxSystem.VAT, "0.21", "EUR"),
    "LU": ("Luxembourg", TaxSystem.VAT, "0.17", "EUR"),
    "MT": ("Malta", TaxSystem.VAT, "0.18", "EUR"),
    "NL": ("Netherlands", TaxSystem.VAT, "0.21", "EUR"),
    "PL": ("Poland", TaxSystem.VAT, "0.23", "PLN"),
    "PT": ("Portugal", TaxSystem.VAT, "0.23", "EUR"),
    "RO": ("Romania", TaxSystem.VAT, "0.19", "RON"),
    "SK": ("Slovakia", TaxSystem.VAT, "0.20", "EUR"),
    "SI": ("Slovenia", TaxSystem.VAT, "0.22", "EUR"),
    "ES": ("Spain", TaxSystem.VAT, "0.21", "EUR"),
    "SE": ("Sweden", TaxSystem.VAT, "0.25", "SEK"),
}

# Base state sales tax rates (no local surcharges).
_US_STATES: dict[str, tuple[str, str]] = {
    "AL": ("Alabama", "0.04"), "AK": ("Alaska", "0"),
    "AZ": ("Arizona", "0.056"), "AR": ("Arkansas", "0.065"),
    "CA": ("California", "0.0725"), "CO": ("Colorado", "0.029"),
    "CT": ("Connecticut", "0.0635"), "DE": ("Delaware", "0"),
    "DC": ("District of Columbia", "0.06"), "FL": ("Florida", "0.06"),
    "GA": ("Georgia", "0.04"), "HI": ("Hawaii", "0.04"),
    "ID": ("Idaho", "0.06"), "IL": ("Illinois", "0.0625"),
    "IN": ("Indiana", "0.07"), "IA": ("Iowa", "0.06"),
    "KS": ("Kansas", "0.065"), "KY": ("Kentucky", "0.06"),
    "LA": ("Louisiana", "0.0445"), "ME": ("Maine", "0.055"),
    "MD": ("Maryland", "0.06"), "MA": ("Massachusetts", "0.0625"),
    "MI": ("Michigan", "0.06"), "MN": ("Minnesota", "0.06875"),
    "MS": ("Mississippi", "0.07"), "MO": ("Missouri", "0.04225"),
    "MT": ("Montana", "0"), "NE": ("Nebraska", "0.055"),
    "NV": ("Nevada", "0.0685"), "NH": ("New Hampshire", "0"),
    "NJ": ("New Jersey", "0.06625"), "NM": ("New Mexico", "0.04875"),
    "NY": ("New York", "0.04"), "NC": ("North Carolina", "0.0475"),
    "ND": ("North Dakota", "0.05"), "OH": ("Ohio", "0.0575"),
    "OK": ("Oklahoma", "0.045"), "OR": ("Oregon", "0"),
    "PA": ("Pennsylvania", "0.06"), "RI": ("Rhode Island", "0.07"),
    "SC": ("South Carolina", "0.06"), "SD": ("South Dakota", "0.042"),
    "TN": ("Tennessee", "0.07"), "TX": ("Texas", "0.0625"),
    "UT": ("Utah", "0.0485"), "VT": ("Vermont", "0.06"),
    "VA": ("Virginia", "0.043"), "WA": ("Washington", "0.065"),
    "WV": ("West Virginia", "0.06"), "WI": ("Wisconsin", "0.05"),
    "WY": ("Wyoming", "0.04"),
}

_SEED_CATEGORIES = ("standard", "digital_services")


def default_jurisdictions() -> list[TaxJurisdiction]:
    jurisdictions: list[TaxJurisdiction] = []
    for code, (name, system, rate, currency) in _COUNTRIES.items():
        eu = code in EU_COUNTRIES
        jurisdictions.append(
            TaxJurisdiction(
                code=code,
                name=name,
                jurisdiction_type="country",
                tax_system=system,
                default_rate=Decimal(rate),
                currency=currency,
                moss_eligible=eu,
                reverse_charge_applicable=eu,
                registration_required=code != "US",
            )
        )
    for state, (name, rate) in _US_STATES.items():
        jurisdictions.append(
            TaxJurisdiction(
                code=f"US-{state}",
                name=name,
                jurisdiction_type="state",
                tax_system=TaxSystem.SALES_TAX,
                default_rate=Decimal(rate),
                currency="USD",
                registration_required=state not in NO_SALES_TAX_STATES,
            )
        )
    return jurisdictions


def default_rates(jurisdictions: Iterable[TaxJurisdiction]) -> list[TaxRate]:
    rates: list[TaxRate] = []
    for j in jurisdictions:
        if j.code == "CH":
            continue
        for category in _SEED_CATEGORIES:
            rates.append(
                TaxRate(
                    jurisdiction_code=j.code,
                    product_category=category,
                    rate=j.default_rate,
                    description=f"{j.name} {j.tax_system.value} ({category})",
                )
            )
    # Swiss standard rate rose from 7.7% to 8.1% on 2024-01-01.
    for category in _SEED_CATEGORIES:
        rates.append(
            TaxRate("CH", category, Decimal("0.077"),
                    effective_until=date(2024, 1, 1),
                    description=f"Switzerland vat ({category})")
        )
        rates.append(
            TaxRate("CH", category, Decimal("0.081"),
                    effective_from=date(2024, 1, 1),
                    description=f"Switzerland vat ({category})")
        )
    return rates


def select_effective_rate(
    rates: Iterable[TaxRate], on: Optional[date] = None
) -> Optional[TaxRate]:
    """Pick the in-force rate with the latest ``effective_from``."""
    on = on or date.today()
    in_force = [r for r in rates if r.is_effective(on)]
    if not in_force:
        return None
    return max(in_force, key=lambda r: r.effective_from)


def _check_no_overlap(rates: list[TaxRate]) -> None:
    ordered = sorted(rates, key=lambda r: r.effective_from)
    for prev, nxt in zip(ordered, ordered[1:]):
        if prev.effective_until is None or prev.effective_until > nxt.effective_from:
            raise ValueError(
                f"Overlapping tax rates for {prev.jurisdiction_code}/"
                f"{prev.product_category}: {prev.effective_from} and "
                f"{nxt.effective_from}"
            )


class ReferenceTaxData:
    """
    In-memory tax reference data implementing ``TaxDataSource``.

    Provides lookup by jurisdiction code and by (jurisdiction, category).
    """

    def __init__(
        self,
        jurisdictions: Optional[list[TaxJurisdiction]] = None,
        rates: Optional[list[TaxRate]] = None,
    ) -> None:
        if jurisdictions is None:
            jurisdictions = default_jurisdictions()
        if rates is None:
            rates = default_rates(jurisdictions)
        self._jurisdictions: dict[str, TaxJurisdiction] = {
            j.code: j for j in jurisdictions
        }
        self._rates: dict[tuple[str, str], list[TaxRate]] = {}
        for rate in rates:
            key = (rate.jurisdiction_code, rate.product_category)
            self._rates.setdefault(key, []).append(rate)
        for group in self._rates.values():
            _check_no_overlap(group)

    @property
    def jurisdiction_count(self) -> int:
        return len(self._jurisdictions)

    def list_jurisdictions(self) -> list[TaxJurisdiction]:
        return sorted(self._jurisdictions.values(), key=lambda j: j.code)

    async def get_jurisdiction(self, code: str) -> Optional[TaxJurisdiction]:
        return self._jurisdictions.get(code.upper())

    async def get_rates(self, code: str, product_category: str) -> list[TaxRate]:
        return list(self._rates.get((code.upper(), product_category), []))
