"""
Regulatory compliance checks for international customers.

Handles:
- KYC risk scoring (country, value bands, identity, documents, business)
- Sanctions and PEP screening
- GDPR lawful-basis and retention checks
- Compliance audit events
- Regulatory report generation (VAT return, MOSS, AML, GDPR)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pandas as pd

from intl_payments.audit import AuditLogger, ComplianceEvent, ComplianceStatus
from intl_payments.cache import CacheStats, TTLCache
from intl_payments.collaborators import (
    CustomerDirectory,
    CustomerRecord,
    InMemoryCustomerDirectory,
    InMemoryPersistence,
    PersistenceStore,
)
from intl_payments.config import EngineConfig
from intl_payments.errors import PersistenceError, ValidationError
from intl_payments.report_generator import ReportGenerator
from intl_payments.resilience import call_external
from intl_payments.screening import (
    COUNTRY_LIST_NAME,
    SanctionsList,
    has_pep_indicator,
    is_high_risk_country,
)

logger = logging.getLogger(__name__)

# Purposes with a legal basis other than consent (GDPR Art. 6(1)(b), (c), (f)).
LAWFUL_PURPOSES: frozenset[str] = frozenset(
    [
        "payment_processing",
        "contract_performance",
        "fraud_prevention",
        "legal_compliance",
    ]
)

DEFAULT_RETENTION_DAYS = 2555  # 7 years

REPORT_TYPES: frozenset[str] = frozenset(
    ["vat_return", "moss_report", "aml_suspicious_activity", "gdpr_compliance"]
)

_TRANSACTION_COLUMNS = [
    "transaction_id",
    "settlement_amount",
    "tax_amount",
    "tax_jurisdiction",
    "moss_eligible",
]
_EVENT_COLUMNS = ["event_type", "entity_id", "status", "risk_score", "created_at"]


@dataclass(frozen=True)
class DocumentVerification:
    document_type: str
    document_valid: bool
    confidence_score: int


@dataclass(frozen=True)
class KycCheckResult:
    passed: bool
    risk_score: int
    requires_manual_review: bool
    checks: tuple[str, ...] = ()
    failure_reasons: tuple[str, ...] = ()
    document_verification: Optional[DocumentVerification] = None


@dataclass(frozen=True)
class SanctionsCheckResult:
    match: bool
    risk_score: int
    matched_entity: Optional[str] = None
    sanctions_list: Optional[str] = None
    pep_flag: bool = False

    @property
    def confidence(self) -> int:
        return self.risk_score


@dataclass(frozen=True)
class GdprComplianceResult:
    compliant: bool
    data_processing_legal: bool
    retention_compliant: bool
    consent_date: Optional[datetime] = None
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComplianceReportResult:
    report_id: str
    report_type: str
    total_transactions: int
    total_amount: int
    total_tax_collected: int
    suspicious_activities: int
    gdpr_issues: int
    file_path: str
    generated_at: datetime
    format: str = "json"
    jurisdiction: Optional[str] = None


def _require(value: Any, field_name: str, ok: bool) -> None:
    if not ok:
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            [{"field": field_name, "message": "invalid value", "type": "value_error"}],
        )


def _verify_document(document_type: str, document_number: str) -> DocumentVerification:
    valid = len(document_number) >= 8 and document_number.isalnum() and document_number.isascii()
    return DocumentVerification(
        document_type=document_type,
        document_valid=valid,
        confidence_score=85 if valid else 0,
    )


class ComplianceMonitor:
    """
    KYC, sanctions and GDPR checks with a shared audit trail.

    KYC results are cached per (customer, amount) and sanctions results per
    (customer, country), both for ``config.kyc_cache_ttl`` /
    ``config.sanctions_cache_ttl`` seconds. GDPR checks always read current
    consent.
    """

    def __init__(
        self,
        directory: Optional[CustomerDirectory] = None,
        persistence: Optional[PersistenceStore] = None,
        audit: Optional[AuditLogger] = None,
        sanctions_list: Optional[SanctionsList] = None,
        report_generator: Optional[ReportGenerator] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.config = config or EngineConfig()
        self.directory = directory or InMemoryCustomerDirectory()
        self.persistence = persistence or InMemoryPersistence()
        self.audit = audit or AuditLogger(self.persistence, self.config)
        self.sanctions_list = sanctions_list or SanctionsList()
        self._report_generator = report_generator
        self._now = now
        cache_kwargs = {"clock": clock} if clock else {}
        self._kyc: TTLCache[KycCheckResult] = TTLCache(
            self.config.kyc_cache_ttl, name="kyc", **cache_kwargs
        )
        self._sanctions: TTLCache[SanctionsCheckResult] = TTLCache(
            self.config.sanctions_cache_ttl, name="sanctions", **cache_kwargs
        )

    @property
    def report_generator(self) -> ReportGenerator:
        if self._report_generator is None:
            self._report_generator = ReportGenerator(self.config.report_dir)
        return self._report_generator

    async def _lookup_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        return await call_external(
            "customer_directory",
            lambda: self.directory.get_customer(customer_id),
            self.config,
        )

    # ------------------------------------------------------------------
    # KYC
    # ------------------------------------------------------------------

    async def perform_kyc_check(
        self,
        customer_id: str,
        amount: int,
        country: str,
        document_type: Optional[str] = None,
        document_number: Optional[str] = None,
        customer_type: str = "individual",
    ) -> KycCheckResult:
        _require(customer_id, "customer_id", bool(customer_id))
        _require(amount, "amount", isinstance(amount, int) and amount > 0)
        _require(country, "country", isinstance(country, str) and len(country) == 2)
        _require(customer_type, "customer_type", customer_type in ("individual", "business"))
        country = country.upper()

        return await self._kyc.get_or_load(
            (customer_id, amount),
            lambda: self._score_kyc(
                customer_id, amount, country, document_type, document_number, customer_type
            ),
        )

    async def _score_kyc(
        self,
        customer_id: str,
        amount: int,
        country: str,
        document_type: Optional[str],
        document_number: Optional[str],
        customer_type: str,
    ) -> KycCheckResult:
        score = 0
        checks: list[str] = []
        failures: list[str] = []
        manual_review = False

        if is_high_risk_country(country):
            score += 30
            checks.append("high_risk_country")
            manual_review = True

        if amount > self.config.high_value_threshold:
            score += 25
            checks.append("high_value_transaction")
            manual_review = True
        elif amount > self.config.medium_value_threshold:
            score += 15
            checks.append("medium_value_transaction")

        try:
            customer = await self._lookup_customer(customer_id)
        except Exception as exc:
            logger.warning("Identity lookup failed for %s: %s", customer_id, exc)
            score += 20
            checks.append("verification_error")
        else:
            if customer is None:
                score += 100
                checks.append("customer_not_found")
                failures.append("Customer not found")
            else:
                if customer.compliance_status == "verified":
                    score -= 15
                    checks.append("previously_verified")
                elif customer.compliance_status == "rejected":
                    score += 50
                    checks.append("previously_rejected")
                    failures.append("Customer previously rejected")
                if customer_type == "business" and not customer.vat_number:
                    score += 10
                    checks.append("missing_vat_number")
                checks.append("identity_verification")

        document: Optional[DocumentVerification] = None
        if document_type and document_number:
            document = _verify_document(document_type, document_number)
            if document.document_valid:
                score -= 10
                checks.append("document_verified")
            else:
                score += 20
                checks.append("document_invalid")
                failures.append("Document verification failed")

        if customer_type == "business":
            score += 5
            checks.append("business_entity_check")

        score = max(0, min(score, 100))
        if score > self.config.manual_review_threshold or failures:
            manual_review = True

        result = KycCheckResult(
            passed=not failures,
            risk_score=score,
            requires_manual_review=manual_review,
            checks=tuple(checks),
            failure_reasons=tuple(failures),
            document_verification=document,
        )

        await self.log_compliance_event(
            ComplianceEvent(
                event_type="kyc_check",
                entity_type="customer",
                entity_id=customer_id,
                rule="kyc_verification",
                status=ComplianceStatus.PASSED if result.passed else ComplianceStatus.FAILED,
                details={
                    "checks": list(result.checks),
                    "amount": amount,
                    "country": country,
                    "requires_manual_review": manual_review,
                },
                risk_score=score,
                timestamp=self._now(),
            )
        )
        return result

    # ------------------------------------------------------------------
    # Sanctions / PEP
    # ------------------------------------------------------------------

    async def check_sanctions_list(
        self,
        customer_id: str,
        country: str,
        customer_name: Optional[str] = None,
        business_name: Optional[str] = None,
    ) -> SanctionsCheckResult:
        _require(customer_id, "customer_id", bool(customer_id))
        _require(country, "country", isinstance(country, str) and len(country) == 2)
        country = country.upper()

        return await self._sanctions.get_or_load(
            (customer_id, country),
            lambda: self._screen(customer_id, country, customer_name, business_name),
        )

    async def _screen(
        self,
        customer_id: str,
        country: str,
        customer_name: Optional[str],
        business_name: Optional[str],
    ) -> SanctionsCheckResult:
        result = SanctionsCheckResult(match=False, risk_score=0)

        if is_high_risk_country(country):
            result = SanctionsCheckResult(
                match=True,
                risk_score=100,
                matched_entity=f"High-risk country: {country}",
                sanctions_list=COUNTRY_LIST_NAME,
            )
        else:
            for name in (customer_name, business_name):
                hit = self.sanctions_list.match(name)
                if hit is not None:
                    result = SanctionsCheckResult(
                        match=True,
                        risk_score=hit.confidence,
                        matched_entity=hit.matched_entity,
                        sanctions_list=hit.list_name,
                    )
                    break

        if not result.match and has_pep_indicator(customer_name):
            result = SanctionsCheckResult(
                match=False,
                risk_score=max(result.risk_score, 60),
                pep_flag=True,
            )

        await self.log_compliance_event(
            ComplianceEvent(
                event_type="sanctions_check",
                entity_type="customer",
                entity_id=customer_id,
                rule="sanctions_screening",
                status=ComplianceStatus.FAILED if result.match else ComplianceStatus.PASSED,
                details={
                    "country": country,
                    "matched_entity": result.matched_entity,
                    "sanctions_list": result.sanctions_list,
                    "pep_flag": result.pep_flag,
                },
                risk_score=result.risk_score,
                timestamp=self._now(),
            )
        )
        return result

    # ------------------------------------------------------------------
    # GDPR
    # ------------------------------------------------------------------

    async def validate_gdpr_compliance(
        self,
        customer_id: str,
        consent_given: Optional[bool] = None,
        data_processing_purpose: str = "payment_processing",
        retention_period_days: int = DEFAULT_RETENTION_DAYS,
    ) -> GdprComplianceResult:
        """
        Check the lawful basis and retention for processing a customer's data.

        ``consent_given=False`` at request time overrides a stored consent.
        """
        _require(customer_id, "customer_id", bool(customer_id))
        _require(
            retention_period_days,
            "retention_period_days",
            isinstance(retention_period_days, int) and retention_period_days > 0,
        )

        try:
            customer = await self._lookup_customer(customer_id)
        except Exception as exc:
            logger.warning("Consent lookup failed for %s: %s", customer_id, exc)
            customer = None

        has_consent = bool(customer and customer.gdpr_consent) and consent_given is not False
        lawful = has_consent or data_processing_purpose in LAWFUL_PURPOSES

        retention_ok = False
        if customer is not None:
            age = self._now() - customer.created_at
            retention_ok = age.days <= retention_period_days

        issues: list[str] = []
        if not lawful:
            issues.append("Missing GDPR consent and no other lawful basis for processing")
        if not retention_ok:
            issues.append("Data retention period exceeded")

        result = GdprComplianceResult(
            compliant=lawful and retention_ok,
            data_processing_legal=lawful,
            retention_compliant=retention_ok,
            consent_date=customer.gdpr_consent_date if has_consent and customer else None,
            issues=tuple(issues),
        )

        await self.log_compliance_event(
            ComplianceEvent(
                event_type="gdpr_compliance_check",
                entity_type="customer",
                entity_id=customer_id,
                rule="gdpr_compliance",
                status=ComplianceStatus.PASSED if result.compliant else ComplianceStatus.FAILED,
                details={
                    "consent_given": has_consent,
                    "data_processing_purpose": data_processing_purpose,
                    "issues": issues,
                },
                timestamp=self._now(),
            )
        )
        return result

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def log_compliance_event(self, event: ComplianceEvent) -> bool:
        """Append to the audit trail. Returns False when the write was queued."""
        return await self.audit.log(event)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def generate_compliance_report(
        self,
        report_type: str,
        period_start: datetime,
        period_end: datetime,
        jurisdiction: Optional[str] = None,
    ) -> ComplianceReportResult:
        _require(report_type, "report_type", report_type in REPORT_TYPES)
        _require(period_end, "period_end", period_start <= period_end)

        try:
            transactions = await self.persistence.list_transactions(period_start, period_end)
            events = await self.persistence.list_compliance_events(period_start, period_end)
        except Exception as exc:
            raise PersistenceError(f"Could not read report data: {exc}") from exc

        txns = pd.DataFrame(transactions, columns=_TRANSACTION_COLUMNS)
        if jurisdiction:
            txns = txns[txns["tax_jurisdiction"] == jurisdiction.upper()]
        if report_type == "moss_report":
            txns = txns[txns["moss_eligible"].fillna(False).astype(bool)]

        log = pd.DataFrame(events, columns=_EVENT_COLUMNS)
        scores = pd.to_numeric(log["risk_score"], errors="coerce")
        suspicious_mask = (scores > self.config.suspicious_risk_threshold) | log[
            "event_type"
        ].astype(str).str.contains("aml", na=False)
        suspicious = log[suspicious_mask]
        gdpr_failed = log[
            (log["event_type"] == "gdpr_compliance_check") & (log["status"] == "failed")
        ]

        total_amount = int(txns["settlement_amount"].fillna(0).sum())
        total_tax = int(txns["tax_amount"].fillna(0).sum())

        breakdown: list[dict[str, Any]] = []
        if not txns.empty:
            grouped = (
                txns.fillna({"settlement_amount": 0, "tax_amount": 0})
                .groupby("tax_jurisdiction", dropna=False)
                .agg(
                    transaction_count=("transaction_id", "count"),
                    settlement_amount=("settlement_amount", "sum"),
                    tax_amount=("tax_amount", "sum"),
                )
                .reset_index()
            )
            breakdown = [
                {
                    "jurisdiction": row.tax_jurisdiction if isinstance(row.tax_jurisdiction, str) else "unknown",
                    "transaction_count": int(row.transaction_count),
                    "settlement_amount": int(row.settlement_amount),
                    "tax_amount": int(row.tax_amount),
                }
                for row in grouped.itertuples(index=False)
            ]

        suspicious_rows = [
            {
                "event_type": row.event_type,
                "entity_id": row.entity_id,
                "status": row.status,
                "risk_score": None if pd.isna(score) else int(score),
                "created_at": row.created_at,
            }
            for row, score in zip(
                suspicious.itertuples(index=False), scores[suspicious_mask]
            )
        ]

        report_id = f"report_{uuid.uuid4().hex[:12]}"
        generated_at = self._now()
        report = self.report_generator.compliance_report(
            report_id=report_id,
            report_type=report_type,
            period_start=period_start,
            period_end=period_end,
            jurisdiction=jurisdiction,
            summary={
                "total_transactions": len(txns),
                "total_amount": total_amount,
                "total_tax_collected": total_tax,
                "suspicious_activities": len(suspicious_rows),
                "gdpr_issues": len(gdpr_failed),
            },
            jurisdiction_breakdown=breakdown,
            suspicious_activities=suspicious_rows,
            generated_at=generated_at,
        )
        filename = f"{report_id}.json"
        self.report_generator.to_json(report, filename=filename)
        file_path = str(self.report_generator.output_dir / filename)

        result = ComplianceReportResult(
            report_id=report_id,
            report_type=report_type,
            total_transactions=len(txns),
            total_amount=total_amount,
            total_tax_collected=total_tax,
            suspicious_activities=len(suspicious_rows),
            gdpr_issues=len(gdpr_failed),
            file_path=file_path,
            generated_at=generated_at,
            jurisdiction=jurisdiction,
        )

        try:
            await self.persistence.store_report(
                {
                    "report_id": report_id,
                    "report_type": report_type,
                    "jurisdiction": jurisdiction,
                    "period_start": period_start.date().isoformat(),
                    "period_end": period_end.date().isoformat(),
                    "total_transactions": result.total_transactions,
                    "total_amount": total_amount,
                    "total_tax_collected": total_tax,
                    "file_path": file_path,
                    "file_format": result.format,
                    "created_at": generated_at,
                }
            )
        except Exception as exc:
            raise PersistenceError(f"Could not store report {report_id}: {exc}") from exc

        logger.info(
            "Generated %s report %s (%d transactions)",
            report_type,
            report_id,
            result.total_transactions,
        )
        return result

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def clear_expired_cache(self) -> int:
        return self._kyc.clear_expired() + self._sanctions.clear_expired()

    def cache_stats(self) -> list[CacheStats]:
        return [self._kyc.stats(), self._sanctions.stats()]
