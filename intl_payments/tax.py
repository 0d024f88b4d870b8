"""
International tax determination and invoicing.

Handles:
- Jurisdiction resolution (US state first, then country)
- Effective-dated rate lookup per product category
- B2B reverse charge between EU member states
- Digital services threshold and US no-nexus exemptions
- MOSS eligibility flags
- Tax invoice numbering and document assembly
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from intl_payments.cache import CacheStats, TTLCache
from intl_payments.collaborators import InMemoryPersistence, PersistenceStore
from intl_payments.config import EngineConfig
from intl_payments.currency import decimal_places, round_half_up
from intl_payments.errors import (
    PersistenceError,
    TaxServiceUnavailableError,
    ValidationError,
)
from intl_payments.rates import (
    NO_SALES_TAX_STATES,
    US_NEXUS_THRESHOLDS,
    RateType,
    ReferenceTaxData,
    TaxDataSource,
    TaxJurisdiction,
    TaxRate,
    TaxSystem,
    is_digital_category,
    is_eu,
    select_effective_rate,
)
from intl_payments.resilience import call_external
from intl_payments.vat import VatValidationResult, VatValidator

logger = logging.getLogger(__name__)


class TaxCalculationRequest(BaseModel):
    amount: int = Field(gt=0)
    # Currency of ``amount``; fixed charges are quoted in it.
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    customer_country: str = Field(min_length=2, max_length=2)
    customer_state: Optional[str] = None
    vat_number: Optional[str] = None
    customer_type: Literal["individual", "business"] = "individual"
    product_category: str = "standard"
    tax_nexus: Optional[list[str]] = None
    merchant_country: Optional[str] = Field(default=None, min_length=2, max_length=2)

    @field_validator("currency", "customer_country", "customer_state", "merchant_country")
    @classmethod
    def _upper(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @field_validator("tax_nexus")
    @classmethod
    def _upper_states(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return [s.upper() for s in value] if value is not None else None


@dataclass
class TaxCalculationResult:
    """Result of a tax determination for a single sale."""

    tax_amount: int
    tax_rate: float
    jurisdiction: str
    tax_type: str
    reverse_charge: bool
    moss_eligible: bool
    taxable_amount: int
    applicable_rules: list[str] = field(default_factory=list)
    exemption_reason: Optional[str] = None
    cross_border: bool = False
    digital_services: bool = False
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Invoice data
# ---------------------------------------------------------------------------


@dataclass
class Address:
    country: str
    line1: str = ""
    city: str = ""
    postal_code: str = ""
    state: Optional[str] = None


@dataclass
class CustomerTaxInfo:
    name: str
    address: Address
    vat_number: Optional[str] = None
    customer_type: str = "individual"


@dataclass
class MerchantTaxInfo:
    name: str
    address: Address
    vat_number: Optional[str] = None
    tax_registrations: list[str] = field(default_factory=list)


@dataclass
class TaxLineItem:
    description: str
    quantity: int
    unit_price: int
    tax_rate: float
    tax_amount: int
    total_amount: int
    product_category: str = "standard"


@dataclass
class TaxInvoiceData:
    transaction_id: str
    customer: CustomerTaxInfo
    merchant: MerchantTaxInfo
    line_items: list[TaxLineItem]
    total_amount: int
    total_tax_amount: int
    currency: str
    invoice_date: date = field(default_factory=date.today)
    due_date: Optional[date] = None
    reverse_charge: bool = False


def _parse_request(
    request: Union[TaxCalculationRequest, dict[str, Any]]
) -> TaxCalculationRequest:
    if isinstance(request, TaxCalculationRequest):
        return request
    try:
        return TaxCalculationRequest.model_validate(request)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "tax calculation") from exc


class TaxComplianceEngine:
    """
    Determines tax for international sales.

    Rates are cached per (jurisdiction, category) for an hour. VAT numbers
    are validated through the engine's own ``VatValidator``.
    """

    def __init__(
        self,
        data_source: Optional[TaxDataSource] = None,
        vat_validator: Optional[VatValidator] = None,
        persistence: Optional[PersistenceStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.config = config or EngineConfig()
        self.data_source = data_source or ReferenceTaxData()
        self.vat_validator = vat_validator or VatValidator(
            config=self.config, clock=clock
        )
        self.persistence = persistence or InMemoryPersistence()
        self._today = today
        cache_kwargs = {"clock": clock} if clock else {}
        self._rates: TTLCache[Optional[TaxRate]] = TTLCache(
            self.config.tax_rate_cache_ttl, name="tax_rates", **cache_kwargs
        )

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def get_tax_jurisdiction(
        self, country: str, state: Optional[str] = None
    ) -> Optional[TaxJurisdiction]:
        country = country.upper()
        try:
            if state and country == "US":
                found = await call_external(
                    "tax_jurisdiction",
                    lambda: self.data_source.get_jurisdiction(f"US-{state.upper()}"),
                    self.config,
                )
                if found is not None:
                    return found
            return await call_external(
                "tax_jurisdiction",
                lambda: self.data_source.get_jurisdiction(country),
                self.config,
            )
        except Exception as exc:
            raise TaxServiceUnavailableError(
                f"Tax jurisdiction lookup failed for {country}: {exc}"
            ) from exc

    async def get_applicable_tax_rate(
        self, jurisdiction: TaxJurisdiction, product_category: str
    ) -> Optional[TaxRate]:
        async def _load() -> Optional[TaxRate]:
            rates = await call_external(
                "tax_rates",
                lambda: self.data_source.get_rates(jurisdiction.code, product_category),
                self.config,
            )
            return select_effective_rate(rates, self._today())

        try:
            return await self._rates.get_or_load(
                (jurisdiction.code, product_category),
                _load,
                should_cache=lambda rate: rate is not None,
            )
        except Exception as exc:
            raise TaxServiceUnavailableError(
                f"Tax rate lookup failed for {jurisdiction.code}/"
                f"{product_category}: {exc}"
            ) from exc

    async def validate_vat_number(
        self, vat_number: str, country: Optional[str] = None
    ) -> VatValidationResult:
        return await self.vat_validator.validate(vat_number, country)

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    async def calculate_tax(
        self, request: Union[TaxCalculationRequest, dict[str, Any]]
    ) -> TaxCalculationResult:
        req = _parse_request(request)
        category = req.product_category or "standard"

        jurisdiction = await self.get_tax_jurisdiction(
            req.customer_country, req.customer_state
        )
        if jurisdiction is None:
            return self._no_tax(req, "No tax jurisdiction found")

        rate = await self.get_applicable_tax_rate(jurisdiction, category)
        if rate is None:
            return self._no_tax(req, "No applicable tax rate found")

        reverse_charge = await self._reverse_charge_applies(req, jurisdiction)
        result = self._compute(req, jurisdiction, rate, reverse_charge)

        exemption = self._exemption_reason(req, jurisdiction)
        if exemption:
            return replace(
                result,
                tax_amount=0,
                exemption_reason=exemption,
                applicable_rules=[*result.applicable_rules, "tax_exemption"],
            )
        return result

    def _merchant_country(self, req: TaxCalculationRequest) -> str:
        return req.merchant_country or self.config.merchant_country

    async def _reverse_charge_applies(
        self, req: TaxCalculationRequest, jurisdiction: TaxJurisdiction
    ) -> bool:
        merchant = self._merchant_country(req)
        if not (
            jurisdiction.reverse_charge_applicable
            and req.customer_type == "business"
            and req.vat_number
            and is_eu(req.customer_country)
            and is_eu(merchant)
            and req.customer_country != merchant
        ):
            return False
        validation = await self.vat_validator.validate(
            req.vat_number, req.customer_country
        )
        return validation.valid

    def _compute(
        self,
        req: TaxCalculationRequest,
        jurisdiction: TaxJurisdiction,
        rate: TaxRate,
        reverse_charge: bool,
    ) -> TaxCalculationResult:
        category = req.product_category or "standard"
        tax_amount = 0
        if not reverse_charge:
            if rate.rate_type is RateType.PERCENTAGE:
                tax_amount = round_half_up(Decimal(req.amount) * rate.rate)
            else:
                currency = req.currency or jurisdiction.currency
                tax_amount = round_half_up(
                    rate.rate * Decimal(10) ** decimal_places(currency)
                )

        rules = [
            f"{jurisdiction.tax_system.value}_calculation",
            f"product_category_{category}",
        ]
        if reverse_charge:
            rules.append("reverse_charge")
        digital = is_digital_category(category)
        if digital:
            rules.append("digital_services")

        return TaxCalculationResult(
            tax_amount=tax_amount,
            tax_rate=float(rate.rate),
            jurisdiction=jurisdiction.code,
            tax_type=jurisdiction.tax_system.value,
            reverse_charge=reverse_charge,
            moss_eligible=jurisdiction.moss_eligible and is_eu(req.customer_country),
            taxable_amount=req.amount,
            applicable_rules=rules,
            cross_border=req.customer_country != self._merchant_country(req),
            digital_services=digital,
        )

    def _exemption_reason(
        self, req: TaxCalculationRequest, jurisdiction: TaxJurisdiction
    ) -> Optional[str]:
        if (
            jurisdiction.threshold_amount
            and is_digital_category(req.product_category)
            and req.amount < jurisdiction.threshold_amount
        ):
            return "Below digital services threshold"

        if (
            jurisdiction.tax_system is TaxSystem.SALES_TAX
            and req.customer_country == "US"
            and req.customer_state
        ):
            state = req.customer_state
            if state in NO_SALES_TAX_STATES or US_NEXUS_THRESHOLDS.get(state) == 0:
                return "No sales tax nexus"
            if req.tax_nexus is not None and state not in req.tax_nexus:
                return "No sales tax nexus"
        return None

    def _no_tax(self, req: TaxCalculationRequest, reason: str) -> TaxCalculationResult:
        logger.info("No tax for %s: %s", req.customer_country, reason)
        return TaxCalculationResult(
            tax_amount=0,
            tax_rate=0.0,
            jurisdiction=req.customer_country,
            tax_type="none",
            reverse_charge=False,
            moss_eligible=False,
            taxable_amount=req.amount,
            applicable_rules=["no_tax"],
            exemption_reason=reason,
            cross_border=req.customer_country != self._merchant_country(req),
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def generate_tax_invoice(self, data: TaxInvoiceData) -> str:
        """Number, assemble and store a tax invoice. Returns the invoice number."""
        self._validate_invoice(data)
        country = data.customer.address.country.upper()
        year = data.invoice_date.year

        try:
            sequence = await self.persistence.next_invoice_sequence(year, country)
        except Exception as exc:
            raise PersistenceError(f"Could not allocate invoice number: {exc}") from exc

        invoice_number = f"INV-{year}-{country}-{sequence:05d}"
        document = self._invoice_document(data, invoice_number)

        try:
            await self.persistence.store_invoice(document)
        except Exception as exc:
            raise PersistenceError(
                f"Failed to store invoice {invoice_number}: {exc}"
            ) from exc

        logger.info(
            "Tax invoice %s generated for transaction %s",
            invoice_number,
            data.transaction_id,
        )
        return invoice_number

    @staticmethod
    def _validate_invoice(data: TaxInvoiceData) -> None:
        errors: list[dict[str, Any]] = []
        if not data.customer.name:
            errors.append({"field": "customer.name", "message": "Customer name is required"})
        if not data.customer.address.country:
            errors.append(
                {"field": "customer.address.country", "message": "Customer country is required"}
            )
        if not data.line_items:
            errors.append(
                {"field": "line_items", "message": "At least one line item is required"}
            )
        if data.total_amount <= 0:
            errors.append(
                {"field": "total_amount", "message": "Total amount must be positive"}
            )
        if errors:
            raise ValidationError(
                "; ".join(e["message"] for e in errors),
                [{**e, "type": "value_error"} for e in errors],
            )

    @staticmethod
    def _invoice_document(data: TaxInvoiceData, invoice_number: str) -> dict[str, Any]:
        document: dict[str, Any] = {
            "invoice_number": invoice_number,
            "invoice_date": data.invoice_date.isoformat(),
            "due_date": data.due_date.isoformat() if data.due_date else None,
            "transaction_id": data.transaction_id,
            "customer": asdict(data.customer),
            "merchant": asdict(data.merchant),
            "line_items": [asdict(item) for item in data.line_items],
            "subtotal": data.total_amount - data.total_tax_amount,
            "total_tax_amount": data.total_tax_amount,
            "total_amount": data.total_amount,
            "currency": data.currency.upper(),
            "reverse_charge": data.reverse_charge,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if data.reverse_charge:
            document["notes"] = (
                "Reverse charge: VAT to be accounted for by the recipient "
                "(Article 196, Council Directive 2006/112/EC)"
            )
        return document

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def clear_expired_cache(self) -> int:
        return self._rates.clear_expired() + self.vat_validator.clear_expired_cache()

    def cache_stats(self) -> list[CacheStats]:
        return [self._rates.stats(), self.vat_validator.cache_stats()]
