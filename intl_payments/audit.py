"""
Append-only compliance audit trail.

Writes never block the payment flow: a failed write is logged, counted and
parked in a bounded queue that ``flush_pending()`` retries later.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from intl_payments.collaborators import PersistenceStore
from intl_payments.config import EngineConfig
from intl_payments.errors import AuditLogError

logger = logging.getLogger(__name__)


class ComplianceStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class ComplianceEvent:
    event_type: str  # kyc_check, sanctions_check, gdpr_compliance_check, ...
    entity_type: str  # customer, transaction
    entity_id: str
    rule: str
    status: ComplianceStatus
    details: dict[str, Any] = field(default_factory=dict)
    risk_score: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    external_reference: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        """Row for the compliance audit log."""
        return {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "compliance_rule": self.rule,
            "status": self.status.value,
            "details": dict(self.details),
            "risk_score": self.risk_score,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "external_reference": self.external_reference,
            "created_at": self.timestamp,
        }


class AuditLogger:
    """Best-effort writer in front of the persistence collaborator."""

    def __init__(
        self, sink: PersistenceStore, config: Optional[EngineConfig] = None
    ) -> None:
        self.sink = sink
        self.config = config or EngineConfig()
        self.failed_writes = 0
        self.dropped_events = 0
        self._pending: deque[ComplianceEvent] = deque(
            maxlen=self.config.audit_queue_size
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _write(self, event: ComplianceEvent) -> None:
        try:
            await self.sink.store_compliance_event(event.to_record())
        except Exception as exc:
            raise AuditLogError(
                f"Could not write {event.event_type} for {event.entity_id}: {exc}"
            ) from exc

    def _park(self, event: ComplianceEvent) -> None:
        if len(self._pending) == self._pending.maxlen:
            self.dropped_events += 1
        self._pending.append(event)

    async def log(self, event: ComplianceEvent) -> bool:
        """Write one event. Returns False when it had to be queued."""
        try:
            await self._write(event)
        except AuditLogError as exc:
            self.failed_writes += 1
            self._park(event)
            logger.error("Audit write failed (%d queued): %s", len(self._pending), exc)
            return False
        return True

    async def flush_pending(self) -> int:
        """Retry queued events in order. Returns how many were written."""
        written = 0
        for _ in range(len(self._pending)):
            event = self._pending.popleft()
            try:
                await self._write(event)
            except AuditLogError as exc:
                self._pending.appendleft(event)
                logger.error("Audit flush stopped with %d pending: %s", len(self._pending), exc)
                break
            written += 1
        return written
