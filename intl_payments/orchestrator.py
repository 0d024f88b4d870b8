"""
International payment orchestration.

Runs each payment through validation, compliance gating, currency
conversion, tax determination, gateway capture and record keeping, and
exposes regional payment methods, batch processing and volume metrics.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

import httpx
import pandas as pd

from intl_payments.audit import ComplianceEvent, ComplianceStatus
from intl_payments.collaborators import (
    GatewayCaptureResult,
    InMemoryPersistence,
    PaymentGateway,
    PersistenceStore,
    SandboxGateway,
)
from intl_payments.compliance import ComplianceMonitor, ComplianceReportResult
from intl_payments.config import EngineConfig
from intl_payments.currency import (
    ConversionResult,
    CurrencyConverter,
    CurrencyInfo,
    is_supported,
    supported_currencies,
)
from intl_payments.errors import (
    ComplianceBlockedError,
    ConversionError,
    PaymentGatewayError,
    TaxServiceUnavailableError,
    UnsupportedCurrencyError,
    UnsupportedPaymentMethodError,
    ValidationError,
)
from intl_payments.models import (
    InternationalPaymentRequest,
    PaymentProcessingResult,
    RegionalPaymentRequest,
    TransactionState,
    TransactionStateMachine,
    parse_request,
)
from intl_payments.payment_methods import (
    REGIONAL_PAYMENT_METHODS,
    RegionalPaymentMethod,
    get_payment_method,
)
from intl_payments.rates import is_eu
from intl_payments.resilience import call_external
from intl_payments.tax import TaxCalculationRequest, TaxCalculationResult, TaxComplianceEngine

logger = logging.getLogger(__name__)

WARN_HIGH_RISK = "High risk score - manual review required"
WARN_PEP = "Politically exposed person - enhanced due diligence required"
WARN_GDPR = "GDPR consent missing or invalid"
WARN_TAX_DEGRADED = "Tax calculation failed - manual review required"
WARN_PERSIST_FAILED = "Transaction record could not be stored - reconciliation required"
WARN_AUDIT_QUEUED = "Compliance audit event queued for retry"

# Capture is only retried when the request may never have reached the gateway.
_CAPTURE_RETRYABLE: tuple[type[BaseException], ...] = (
    ConnectionError,
    httpx.TransportError,
)

_PERIODS: dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "quarter": timedelta(days=91),
    "year": timedelta(days=365),
}

_GROUP_COLUMNS: dict[str, str] = {
    "currency": "original_currency",
    "country": "customer_country",
    "payment_method": "payment_method",
}


@dataclass(frozen=True)
class InternationalMetrics:
    period: str
    start: datetime
    end: datetime
    settlement_currency: str
    total_volume: int
    transaction_count: int
    average_amount: float
    manual_review_count: int
    group_by: str
    breakdown: tuple[dict[str, Any], ...] = ()


@dataclass
class _ComplianceOutcome:
    requires_manual_review: bool
    gdpr_compliant: Optional[bool]
    risk_score: int
    warnings: list[str]


class PaymentOrchestrator:
    """
    Entry point for international and regional payments.

    Collaborators are injected; nothing is shared at module level.
    """

    def __init__(
        self,
        converter: CurrencyConverter,
        tax_engine: TaxComplianceEngine,
        compliance: ComplianceMonitor,
        gateway: Optional[PaymentGateway] = None,
        persistence: Optional[PersistenceStore] = None,
        config: Optional[EngineConfig] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.config = config or EngineConfig()
        self.converter = converter
        self.tax_engine = tax_engine
        self.compliance = compliance
        self.gateway = gateway or SandboxGateway()
        self.persistence = persistence or InMemoryPersistence()
        self._now = now
        self._settling: set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Single payment
    # ------------------------------------------------------------------

    async def process_international_payment(
        self, data: Union[InternationalPaymentRequest, dict[str, Any]]
    ) -> PaymentProcessingResult:
        machine = TransactionStateMachine()
        request = self._validate(data, InternationalPaymentRequest, machine)
        return await self._process(request, machine)

    def _validate(
        self,
        data: Any,
        model: type[InternationalPaymentRequest],
        machine: TransactionStateMachine,
    ) -> Any:
        try:
            request = parse_request(model, data)
            if request.amount > self.config.max_payment_amount:
                raise ValidationError(
                    f"Amount {request.amount} exceeds maximum limit "
                    f"{self.config.max_payment_amount}",
                    [{"field": "amount", "message": "exceeds maximum limit", "type": "value_error"}],
                )
            if not is_supported(request.currency):
                raise UnsupportedCurrencyError(request.currency)
        except (ValidationError, UnsupportedCurrencyError):
            machine.advance(TransactionState.FAILED)
            raise
        return request

    async def _process(
        self,
        request: InternationalPaymentRequest,
        machine: TransactionStateMachine,
        method: Optional[RegionalPaymentMethod] = None,
    ) -> PaymentProcessingResult:
        transaction_id = f"int_{uuid.uuid4().hex[:20]}"

        machine.advance(TransactionState.COMPLIANCE_CHECKING)
        outcome = await self._compliance_gate(request, machine)
        warnings = list(outcome.warnings)
        manual_review = outcome.requires_manual_review

        machine.advance(TransactionState.CONVERTING)
        try:
            conversion = await self.converter.convert(
                request.amount, request.currency, self.config.settlement_currency
            )
        except ConversionError:
            machine.advance(TransactionState.FAILED)
            logger.warning("Conversion failed for %s", transaction_id)
            raise

        machine.advance(TransactionState.TAXING)
        tax: Optional[TaxCalculationResult]
        try:
            tax = await self.tax_engine.calculate_tax(
                TaxCalculationRequest(
                    amount=conversion.converted_amount,
                    currency=self.config.settlement_currency,
                    customer_country=request.customer_country,
                    customer_state=request.customer_state,
                    vat_number=request.vat_number,
                    customer_type=request.customer_type,
                    product_category=request.product_category,
                    tax_nexus=request.tax_nexus,
                    merchant_country=self.config.merchant_country,
                )
            )
        except TaxServiceUnavailableError as exc:
            logger.warning(
                "Tax service unavailable for %s, capturing for manual review: %s",
                transaction_id,
                exc,
            )
            tax = None
            manual_review = True
            warnings.append(WARN_TAX_DEGRADED)

        if tax is None:
            settlement_amount = request.amount
            settlement_currency = request.currency
            exchange_rate = 1.0
            rate_provider: Optional[str] = None
            rate_as_of: Optional[datetime] = None
            conversion_fee = 0
        else:
            settlement_amount = conversion.converted_amount
            settlement_currency = self.config.settlement_currency
            exchange_rate = float(conversion.exchange_rate)
            rate_provider = conversion.provider
            rate_as_of = conversion.as_of
            conversion_fee = conversion.fees
            warnings.extend(tax.warnings)
        tax_amount = tax.tax_amount if tax else 0

        pending = PaymentProcessingResult(
            success=True,
            transaction_id=transaction_id,
            original_amount=request.amount,
            original_currency=request.currency,
            settlement_amount=settlement_amount,
            settlement_currency=settlement_currency,
            state=TransactionState.PERSISTED,
            exchange_rate=exchange_rate,
            rate_provider=rate_provider,
            rate_as_of=rate_as_of,
            conversion_fee=conversion_fee,
            tax_amount=tax_amount,
            tax_rate=tax.tax_rate if tax else 0.0,
            tax_type=tax.tax_type if tax else None,
            jurisdiction=tax.jurisdiction if tax else request.customer_country,
            reverse_charge=tax.reverse_charge if tax else False,
            moss_eligible=tax.moss_eligible if tax else False,
            gdpr_compliant=outcome.gdpr_compliant,
            compliance_status="manual_review" if manual_review else "approved",
            requires_manual_review=manual_review,
            payment_method=method.code if method else None,
            payment_method_name=method.name if method else None,
            processing_time=method.processing_time if method else None,
            metadata=dict(request.metadata),
        )

        # From here on the payment is no longer cancellable: a caller going
        # away must not leave a capture without its record.
        machine.advance(TransactionState.CAPTURING)
        settle = asyncio.ensure_future(
            self._settle(
                request,
                machine,
                pending,
                conversion=conversion if tax else None,
                tax=tax,
            )
        )
        self._settling.add(settle)
        settle.add_done_callback(self._settling.discard)
        result = await asyncio.shield(settle)
        return dataclasses.replace(result, warnings=tuple(warnings) + result.warnings)

    async def _settle(
        self,
        request: InternationalPaymentRequest,
        machine: TransactionStateMachine,
        pending: PaymentProcessingResult,
        conversion: Optional[ConversionResult],
        tax: Optional[TaxCalculationResult],
    ) -> PaymentProcessingResult:
        """Capture the charge and keep its records; runs to completion once started."""
        capture = await self._capture(
            request,
            machine,
            transaction_id=pending.transaction_id,
            amount=pending.total_charged,
            currency=pending.settlement_currency,
            conversion=conversion,
            tax=tax,
        )
        result = dataclasses.replace(
            pending,
            gateway_transaction_id=capture.gateway_transaction_id,
            gateway_status=capture.status,
        )
        post_warnings = await self._record(request, result)
        machine.advance(TransactionState.PERSISTED)
        return dataclasses.replace(result, warnings=tuple(post_warnings))

    async def _compliance_gate(
        self, request: InternationalPaymentRequest, machine: TransactionStateMachine
    ) -> _ComplianceOutcome:
        sanctions = await self.compliance.check_sanctions_list(
            request.customer_id,
            request.customer_country,
            customer_name=request.customer_name,
            business_name=request.business_name,
        )
        if sanctions.match:
            machine.advance(TransactionState.BLOCKED)
            logger.warning(
                "Payment for %s blocked by sanctions screening (%s)",
                request.customer_id,
                sanctions.sanctions_list,
            )
            raise ComplianceBlockedError(
                ComplianceBlockedError.SANCTIONS,
                "Transaction blocked due to sanctions screening",
                risk_score=sanctions.risk_score,
            )

        kyc = await self.compliance.perform_kyc_check(
            request.customer_id,
            request.amount,
            request.customer_country,
            document_type=request.document_type,
            document_number=request.document_number,
            customer_type=request.customer_type,
        )
        if not kyc.passed:
            machine.advance(TransactionState.BLOCKED)
            reasons = ", ".join(kyc.failure_reasons)
            logger.warning("Payment for %s blocked by KYC: %s", request.customer_id, reasons)
            raise ComplianceBlockedError(
                ComplianceBlockedError.KYC,
                f"KYC verification failed: {reasons}",
                risk_score=kyc.risk_score,
            )

        warnings: list[str] = []
        manual_review = kyc.requires_manual_review
        if kyc.risk_score > self.config.manual_review_threshold:
            manual_review = True
            warnings.append(WARN_HIGH_RISK)
        if sanctions.pep_flag:
            manual_review = True
            warnings.append(WARN_PEP)

        gdpr_compliant: Optional[bool] = None
        if is_eu(request.customer_country):
            gdpr = await self.compliance.validate_gdpr_compliance(
                request.customer_id,
                consent_given=request.gdpr_consent,
                data_processing_purpose=request.data_processing_purpose,
            )
            gdpr_compliant = gdpr.compliant
            if not gdpr.compliant:
                warnings.append(WARN_GDPR)

        return _ComplianceOutcome(
            requires_manual_review=manual_review,
            gdpr_compliant=gdpr_compliant,
            risk_score=max(kyc.risk_score, sanctions.risk_score),
            warnings=warnings,
        )

    async def _capture(
        self,
        request: InternationalPaymentRequest,
        machine: TransactionStateMachine,
        transaction_id: str,
        amount: int,
        currency: str,
        conversion: Optional[ConversionResult],
        tax: Optional[TaxCalculationResult],
    ) -> GatewayCaptureResult:
        metadata = {
            "idempotency_key": transaction_id,
            "transaction_id": transaction_id,
            "original_amount": str(request.amount),
            "original_currency": request.currency,
            "exchange_rate": str(conversion.exchange_rate) if conversion else "1",
            "rate_provider": conversion.provider if conversion else "",
            "tax_amount": str(tax.tax_amount if tax else 0),
            "tax_jurisdiction": tax.jurisdiction if tax else "",
            "reverse_charge": str(bool(tax and tax.reverse_charge)).lower(),
        }
        try:
            return await call_external(
                "gateway_capture",
                lambda: self.gateway.capture(
                    amount,
                    currency,
                    request.customer_id,
                    request.payment_method_id,
                    metadata,
                ),
                self.config,
                retryable=_CAPTURE_RETRYABLE,
            )
        except PaymentGatewayError:
            machine.advance(TransactionState.FAILED)
            raise
        except Exception as exc:
            machine.advance(TransactionState.FAILED)
            raise PaymentGatewayError(f"Payment capture failed: {exc}") from exc

    async def _record(
        self, request: InternationalPaymentRequest, result: PaymentProcessingResult
    ) -> list[str]:
        warnings: list[str] = []
        record = {
            "transaction_id": result.transaction_id,
            "customer_id": request.customer_id,
            "customer_country": request.customer_country,
            "original_amount": result.original_amount,
            "original_currency": result.original_currency,
            "settlement_amount": result.settlement_amount,
            "settlement_currency": result.settlement_currency,
            "exchange_rate": result.exchange_rate,
            "rate_provider": result.rate_provider,
            "rate_as_of": result.rate_as_of,
            "conversion_fee": result.conversion_fee,
            "tax_amount": result.tax_amount,
            "tax_rate": result.tax_rate,
            "tax_type": result.tax_type,
            "tax_jurisdiction": result.jurisdiction,
            "reverse_charge": result.reverse_charge,
            "moss_eligible": result.moss_eligible,
            "payment_method": result.payment_method,
            "requires_manual_review": result.requires_manual_review,
            "gateway_transaction_id": result.gateway_transaction_id,
            "status": "succeeded",
            "created_at": self._now(),
        }
        try:
            await self.persistence.store_transaction(record)
        except Exception as exc:
            logger.warning(
                "Captured payment %s not stored: %s", result.transaction_id, exc
            )
            warnings.append(WARN_PERSIST_FAILED)

        written = await self.compliance.log_compliance_event(
            ComplianceEvent(
                event_type="international_payment_processed",
                entity_type="transaction",
                entity_id=result.transaction_id,
                rule="international_payment_processing",
                status=(
                    ComplianceStatus.MANUAL_REVIEW
                    if result.requires_manual_review
                    else ComplianceStatus.PASSED
                ),
                details={
                    "currency": result.original_currency,
                    "country": request.customer_country,
                    "amount": result.original_amount,
                    "tax_amount": result.tax_amount,
                    "exchange_rate": result.exchange_rate,
                    "rate_provider": result.rate_provider,
                },
                external_reference=result.gateway_transaction_id,
                timestamp=self._now(),
            )
        )
        if not written:
            warnings.append(WARN_AUDIT_QUEUED)
        return warnings

    # ------------------------------------------------------------------
    # Regional payment methods
    # ------------------------------------------------------------------

    async def process_regional_payment(
        self, data: Union[RegionalPaymentRequest, dict[str, Any]]
    ) -> PaymentProcessingResult:
        machine = TransactionStateMachine()
        request: RegionalPaymentRequest = self._validate(data, RegionalPaymentRequest, machine)

        method = get_payment_method(request.payment_method)
        if method is None:
            raise UnsupportedPaymentMethodError(
                f"Unsupported payment method: {request.payment_method}"
            )
        if not method.serves(request.customer_country):
            raise UnsupportedPaymentMethodError(
                f"Payment method {method.code} not available in {request.customer_country}"
            )
        if not method.accepts(request.currency):
            raise UnsupportedPaymentMethodError(
                f"Payment method {method.code} does not support currency {request.currency}"
            )
        if method.requires_mandate and not request.mandate_id:
            raise ValidationError(
                f"Mandate required for payment method {method.code}",
                [{"field": "mandate_id", "message": "required", "type": "missing"}],
            )

        result = await self._process(request, machine, method=method)
        if request.mandate_id:
            result = dataclasses.replace(
                result, metadata={**result.metadata, "mandate_id": request.mandate_id}
            )
        return result

    def supported_payment_methods(self) -> dict[str, RegionalPaymentMethod]:
        return dict(REGIONAL_PAYMENT_METHODS)

    def supported_currencies(self) -> list[CurrencyInfo]:
        return supported_currencies()

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def batch_process_payments(
        self, items: list[Union[InternationalPaymentRequest, dict[str, Any]]]
    ) -> list[PaymentProcessingResult]:
        """
        Process payments in chunks of ``config.batch_size``.

        Every item yields exactly one result in input order; a failing item
        becomes a failed result instead of raising.
        """
        results: list[PaymentProcessingResult] = []
        size = max(1, self.config.batch_size)
        for start in range(0, len(items), size):
            chunk = items[start:start + size]
            results.extend(
                await asyncio.gather(*(self._process_isolated(item) for item in chunk))
            )
        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("Batch finished with %d of %d payments failed", failed, len(results))
        return results

    async def _process_isolated(self, item: Any) -> PaymentProcessingResult:
        try:
            if _field(item, "payment_method"):
                return await self.process_regional_payment(item)
            return await self.process_international_payment(item)
        except Exception as exc:
            logger.warning("Batch item for %s failed: %s", _field(item, "customer_id"), exc)
            return self._failed_result(item, exc)

    def _failed_result(self, item: Any, exc: Exception) -> PaymentProcessingResult:
        amount = _field(item, "amount")
        currency = _field(item, "currency")
        blocked = isinstance(exc, ComplianceBlockedError)
        return PaymentProcessingResult(
            success=False,
            transaction_id="",
            original_amount=amount if isinstance(amount, int) else 0,
            original_currency=str(currency or "").upper(),
            settlement_amount=0,
            settlement_currency=self.config.settlement_currency,
            state=TransactionState.BLOCKED if blocked else TransactionState.FAILED,
            jurisdiction=str(_field(item, "customer_country") or "").upper() or None,
            compliance_status="blocked" if blocked else "failed",
            error=str(exc) or exc.__class__.__name__,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_international_metrics(
        self,
        period: str = "month",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "currency",
    ) -> InternationalMetrics:
        if period not in _PERIODS:
            raise ValidationError(f"Unknown period: {period}")
        if group_by not in _GROUP_COLUMNS:
            raise ValidationError(f"Cannot group metrics by {group_by}")
        end = end or self._now()
        start = start or end - _PERIODS[period]

        records = await self.persistence.list_transactions(start, end)
        settlement = self.config.settlement_currency
        frame = pd.DataFrame(
            records,
            columns=[
                "original_currency",
                "customer_country",
                "payment_method",
                "settlement_amount",
                "settlement_currency",
                "requires_manual_review",
            ],
        )
        # Volumes are only comparable in the settlement currency.
        settled = frame[frame["settlement_currency"] == settlement]
        volume = int(settled["settlement_amount"].sum()) if not settled.empty else 0

        breakdown: list[dict[str, Any]] = []
        column = _GROUP_COLUMNS[group_by]
        if not frame.empty:
            grouped = (
                frame.assign(
                    group=frame[column].fillna("none"),
                    volume=frame["settlement_amount"].where(
                        frame["settlement_currency"] == settlement, 0
                    ),
                )
                .groupby("group")
                .agg(transaction_count=("group", "size"), volume=("volume", "sum"))
                .reset_index()
                .sort_values("volume", ascending=False)
            )
            breakdown = [
                {
                    "group": row.group,
                    "transaction_count": int(row.transaction_count),
                    "volume": int(row.volume),
                }
                for row in grouped.itertuples(index=False)
            ]

        return InternationalMetrics(
            period=period,
            start=start,
            end=end,
            settlement_currency=settlement,
            total_volume=volume,
            transaction_count=len(frame),
            average_amount=round(volume / len(settled), 2) if len(settled) else 0.0,
            manual_review_count=int(frame["requires_manual_review"].fillna(False).astype(bool).sum()),
            group_by=group_by,
            breakdown=tuple(breakdown),
        )

    async def generate_compliance_report(
        self,
        report_type: str,
        period_start: datetime,
        period_end: datetime,
        jurisdiction: Optional[str] = None,
    ) -> ComplianceReportResult:
        return await self.compliance.generate_compliance_report(
            report_type, period_start, period_end, jurisdiction
        )


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)
