"""Regional payment method registry (bank debits and local bank transfers)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from intl_payments.rates import EU_COUNTRIES


@dataclass(frozen=True)
class RegionalPaymentMethod:
    code: str
    name: str
    regions: frozenset[str]
    currencies: frozenset[str]
    processing_time: str
    requires_mandate: bool = False

    def serves(self, country: str) -> bool:
        return country.upper() in self.regions

    def accepts(self, currency: str) -> bool:
        return currency.upper() in self.currencies


def _method(
    code: str,
    name: str,
    regions: list[str] | frozenset[str],
    currencies: list[str],
    processing_time: str,
    requires_mandate: bool = False,
) -> RegionalPaymentMethod:
    return RegionalPaymentMethod(
        code=code,
        name=name,
        regions=frozenset(regions),
        currencies=frozenset(currencies),
        processing_time=processing_time,
        requires_mandate=requires_mandate,
    )


REGIONAL_PAYMENT_METHODS: dict[str, RegionalPaymentMethod] = {
    m.code: m
    for m in [
        _method("sepa_debit", "SEPA Direct Debit", EU_COUNTRIES, ["EUR"],
                "2-5 business days", requires_mandate=True),
        _method("ideal", "iDEAL", ["NL"], ["EUR"], "Instant"),
        _method("sofort", "SOFORT", ["AT", "BE", "DE", "IT", "NL", "ES"], ["EUR"], "Instant"),
        _method("bancontact", "Bancontact", ["BE"], ["EUR"], "Instant"),
        _method("giropay", "giropay", ["DE"], ["EUR"], "Instant"),
        _method("eps", "EPS", ["AT"], ["EUR"], "Instant"),
        _method("acss_debit", "Pre-authorized debit (ACSS)", ["CA"], ["CAD"],
                "2-7 business days", requires_mandate=True),
        _method("au_becs_debit", "BECS Direct Debit", ["AU"], ["AUD"],
                "2-3 business days", requires_mandate=True),
        _method("bacs_debit", "Bacs Direct Debit", ["GB"], ["GBP"],
                "3 business days", requires_mandate=True),
    ]
}


def get_payment_method(code: str) -> Optional[RegionalPaymentMethod]:
    return REGIONAL_PAYMENT_METHODS.get(code.lower())


def methods_for(country: str, currency: Optional[str] = None) -> list[RegionalPaymentMethod]:
    """Methods available to a customer country, optionally filtered by currency."""
    return [
        m
        for m in REGIONAL_PAYMENT_METHODS.values()
        if m.serves(country) and (currency is None or m.accepts(currency))
    ]
