"""
Collaborator interfaces and in-memory implementations.

The engine treats the payment gateway, persistence layer and customer
directory as opaque services reached through the protocols below. The
in-memory classes back the CLI and the test suite; production deployments
supply their own implementations.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from intl_payments.errors import PaymentGatewayError


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayCaptureResult:
    gateway_transaction_id: str
    status: str


class PaymentGateway(Protocol):
    async def capture(
        self,
        amount: int,
        currency: str,
        customer_ref: str,
        payment_method_ref: Optional[str],
        metadata: dict[str, str],
    ) -> GatewayCaptureResult:
        ...


class SandboxGateway:
    """
    Gateway that approves every capture locally.

    Captures are idempotent on ``metadata["idempotency_key"]``: repeating a
    key returns the original capture.
    """

    def __init__(self, decline_customers: Optional[set[str]] = None) -> None:
        self.decline_customers = decline_customers or set()
        self.captures: list[dict[str, Any]] = []
        self._by_key: dict[str, GatewayCaptureResult] = {}

    async def capture(
        self,
        amount: int,
        currency: str,
        customer_ref: str,
        payment_method_ref: Optional[str],
        metadata: dict[str, str],
    ) -> GatewayCaptureResult:
        key = metadata.get("idempotency_key")
        if key and key in self._by_key:
            return self._by_key[key]
        if customer_ref in self.decline_customers:
            raise PaymentGatewayError(
                f"Card declined for customer {customer_ref}",
                decline_code="card_declined",
            )
        result = GatewayCaptureResult(
            gateway_transaction_id=f"gw_{uuid.uuid4().hex[:16]}",
            status="succeeded",
        )
        self.captures.append(
            {
                "amount": amount,
                "currency": currency,
                "customer_ref": customer_ref,
                "payment_method_ref": payment_method_ref,
                "metadata": dict(metadata),
                "gateway_transaction_id": result.gateway_transaction_id,
            }
        )
        if key:
            self._by_key[key] = result
        return result


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceStore(Protocol):
    async def store_transaction(self, record: dict[str, Any]) -> None:
        ...

    async def store_invoice(self, invoice: dict[str, Any]) -> None:
        ...

    async def store_compliance_event(self, record: dict[str, Any]) -> None:
        ...

    async def store_report(self, record: dict[str, Any]) -> None:
        ...

    async def next_invoice_sequence(self, year: int, country: str) -> int:
        ...

    async def list_transactions(
        self, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        ...

    async def list_compliance_events(
        self, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        ...


def _in_period(record: dict[str, Any], start: datetime, end: datetime) -> bool:
    created = record.get("created_at")
    if isinstance(created, str):
        created = datetime.fromisoformat(created)
    return created is not None and start <= created <= end


class InMemoryPersistence:
    """Append-only in-process store."""

    def __init__(self) -> None:
        self.transactions: list[dict[str, Any]] = []
        self.invoices: list[dict[str, Any]] = []
        self.compliance_events: list[dict[str, Any]] = []
        self.reports: list[dict[str, Any]] = []
        self._sequences: dict[tuple[int, str], int] = defaultdict(int)
        self._lock = asyncio.Lock()

    async def store_transaction(self, record: dict[str, Any]) -> None:
        self.transactions.append(dict(record))

    async def store_invoice(self, invoice: dict[str, Any]) -> None:
        self.invoices.append(dict(invoice))

    async def store_compliance_event(self, record: dict[str, Any]) -> None:
        self.compliance_events.append(dict(record))

    async def store_report(self, record: dict[str, Any]) -> None:
        self.reports.append(dict(record))

    async def next_invoice_sequence(self, year: int, country: str) -> int:
        async with self._lock:
            self._sequences[(year, country)] += 1
            return self._sequences[(year, country)]

    async def list_transactions(
        self, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        return [t for t in self.transactions if _in_period(t, start, end)]

    async def list_compliance_events(
        self, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        return [e for e in self.compliance_events if _in_period(e, start, end)]


# ---------------------------------------------------------------------------
# Customer directory
# ---------------------------------------------------------------------------


@dataclass
class CustomerRecord:
    """Compliance-relevant view of a customer profile."""

    customer_id: str
    country: str
    compliance_status: str = "pending"  # pending, verified, rejected
    customer_type: str = "individual"
    vat_number: Optional[str] = None
    gdpr_consent: bool = False
    gdpr_consent_date: Optional[datetime] = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class CustomerDirectory(Protocol):
    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        ...


class InMemoryCustomerDirectory:
    def __init__(self, customers: Optional[list[CustomerRecord]] = None) -> None:
        self._customers: dict[str, CustomerRecord] = {
            c.customer_id: c for c in (customers or [])
        }

    def add(self, customer: CustomerRecord) -> None:
        self._customers[customer.customer_id] = customer

    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        return self._customers.get(customer_id)
