"""
Payment request models and processing results.

Requests are validated once at the boundary (pydantic); results are
immutable records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from intl_payments.errors import ValidationError


class InternationalPaymentRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    customer_id: str = Field(min_length=1)
    amount: int = Field(gt=0)  # upper limit comes from EngineConfig
    currency: str = Field(min_length=3, max_length=3)
    customer_country: str = Field(min_length=2, max_length=2)
    customer_state: Optional[str] = Field(default=None, max_length=10)
    payment_method_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)
    vat_number: Optional[str] = Field(default=None, max_length=50)
    customer_type: Literal["individual", "business"] = "individual"
    product_category: str = "standard"
    tax_nexus: Optional[list[str]] = None
    gdpr_consent: bool = False
    customer_name: Optional[str] = None
    business_name: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    data_processing_purpose: str = "payment_processing"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency", "customer_country", "customer_state")
    @classmethod
    def _upper(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class RegionalPaymentRequest(InternationalPaymentRequest):
    payment_method: str = Field(min_length=1)
    mandate_id: Optional[str] = None
    bank_id: Optional[str] = None
    iban: Optional[str] = None

    @field_validator("payment_method")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()


M = TypeVar("M", bound=BaseModel)


def parse_request(model: type[M], data: Union[M, dict[str, Any]]) -> M:
    """Validate ``data`` into ``model``; pydantic errors become ``ValidationError``."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, model.__name__) from exc


# ---------------------------------------------------------------------------
# Transaction state
# ---------------------------------------------------------------------------


class TransactionState(Enum):
    VALIDATING = "validating"
    COMPLIANCE_CHECKING = "compliance_checking"
    CONVERTING = "converting"
    TAXING = "taxing"
    CAPTURING = "capturing"
    PERSISTED = "persisted"
    BLOCKED = "blocked"
    FAILED = "failed"


_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.VALIDATING: frozenset(
        [TransactionState.COMPLIANCE_CHECKING, TransactionState.FAILED]
    ),
    TransactionState.COMPLIANCE_CHECKING: frozenset(
        [TransactionState.CONVERTING, TransactionState.BLOCKED]
    ),
    TransactionState.CONVERTING: frozenset(
        [TransactionState.TAXING, TransactionState.FAILED]
    ),
    TransactionState.TAXING: frozenset([TransactionState.CAPTURING]),
    TransactionState.CAPTURING: frozenset(
        [TransactionState.PERSISTED, TransactionState.FAILED]
    ),
    TransactionState.PERSISTED: frozenset(),
    TransactionState.BLOCKED: frozenset(),
    TransactionState.FAILED: frozenset(),
}


class TransactionStateMachine:
    """Tracks one transaction through the pipeline."""

    def __init__(self) -> None:
        self.state = TransactionState.VALIDATING
        self.history: list[TransactionState] = [self.state]

    def advance(self, to: TransactionState) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal transaction state change {self.state.value} -> {to.value}"
            )
        self.state = to
        self.history.append(to)

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentProcessingResult:
    success: bool
    transaction_id: str
    original_amount: int
    original_currency: str
    settlement_amount: int
    settlement_currency: str
    state: TransactionState
    exchange_rate: float = 1.0
    rate_provider: Optional[str] = None
    rate_as_of: Optional[datetime] = None
    conversion_fee: int = 0
    tax_amount: int = 0
    tax_rate: float = 0.0
    tax_type: Optional[str] = None
    jurisdiction: Optional[str] = None
    reverse_charge: bool = False
    moss_eligible: bool = False
    gdpr_compliant: Optional[bool] = None
    compliance_status: str = "pending"  # approved, manual_review, blocked, failed
    requires_manual_review: bool = False
    payment_method: Optional[str] = None
    payment_method_name: Optional[str] = None
    processing_time: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    gateway_status: Optional[str] = None
    warnings: tuple[str, ...] = ()
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_charged(self) -> int:
        return self.settlement_amount + self.tax_amount
