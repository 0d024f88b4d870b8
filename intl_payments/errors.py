"""
Exception taxonomy for the payment compliance engine.

Errors raised before payment capture propagate to the caller. Errors that
happen after a successful capture (persistence, audit) are caught by the
orchestrator and reported as warnings on the result.
"""

from __future__ import annotations

from typing import Any, Optional


class PaymentEngineError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(PaymentEngineError):
    """Malformed input, rejected before any external call. Never retried."""

    def __init__(
        self, message: str, errors: Optional[list[dict[str, Any]]] = None
    ) -> None:
        super().__init__(message)
        self.errors: list[dict[str, Any]] = errors or []

    @classmethod
    def from_pydantic(cls, exc: Any, model_name: str = "") -> "ValidationError":
        """Build a structured error from a ``pydantic.ValidationError``."""
        errors = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        fields = ", ".join(e["field"] for e in errors) or "input"
        label = f"{model_name} " if model_name else ""
        return cls(f"Invalid {label}input: {fields}", errors)


class UnsupportedCurrencyError(PaymentEngineError):
    def __init__(self, currency: str) -> None:
        super().__init__(f"Unsupported currency: {currency}")
        self.currency = currency


class UnsupportedPaymentMethodError(PaymentEngineError):
    pass


class ComplianceBlockedError(PaymentEngineError):
    """Sanctions match or failed KYC. No payment capture is attempted."""

    SANCTIONS = "sanctions_screening"
    KYC = "kyc_failed"

    def __init__(
        self, reason_code: str, message: str, risk_score: int = 0
    ) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.risk_score = risk_score


class ConversionError(PaymentEngineError):
    """No exchange rate could be obtained. Fatal to the transaction."""


class TaxServiceUnavailableError(PaymentEngineError):
    """Tax reference data could not be read. Triggers manual review."""


class PaymentGatewayError(PaymentEngineError):
    def __init__(self, message: str, decline_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.decline_code = decline_code


class PersistenceError(PaymentEngineError):
    pass


class AuditLogError(PaymentEngineError):
    pass


class TransientError(PaymentEngineError):
    """Marker for failures worth retrying (upstream busy, timeouts)."""


class RateUnavailableError(TransientError):
    """A rate provider could not answer for a currency pair."""


class VatRegistryUnavailableError(TransientError):
    """The VAT registry is down or answered with a service fault."""
