"""
International Payment Compliance Engine
=======================================

Currency conversion, cross-border tax determination and regulatory
screening for payments taken from customers in many countries.

Modules:
    currency        - Exchange rates, conversion and currency formatting
    rates           - Tax jurisdictions and effective-dated tax rates
    vat             - VAT number validation (VIES registry + format rules)
    tax             - VAT/GST/sales tax calculation and tax invoices
    screening       - Sanctions lists and PEP indicators
    compliance      - KYC, sanctions, GDPR checks and regulatory reports
    audit           - Compliance event trail with retry queue
    orchestrator    - End-to-end payment pipeline, batches and metrics
    payment_methods - Regional payment method catalogue
    report_generator- Report assembly with JSON/CSV export
    cli             - Command-line interface
"""

__version__ = "1.0.0"
__author__ = "Taofik Bishi"

from intl_payments.compliance import ComplianceMonitor
from intl_payments.config import EngineConfig
from intl_payments.currency import CurrencyConverter
from intl_payments.factory import build_orchestrator
from intl_payments.orchestrator import PaymentOrchestrator
from intl_payments.report_generator import ReportGenerator
from intl_payments.tax import TaxComplianceEngine

__all__ = [
    "ComplianceMonitor",
    "CurrencyConverter",
    "EngineConfig",
    "PaymentOrchestrator",
    "ReportGenerator",
    "TaxComplianceEngine",
    "build_orchestrator",
]
