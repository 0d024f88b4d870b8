"""Tests for the compliance audit trail."""

import pytest

from intl_payments.audit import AuditLogger, ComplianceEvent, ComplianceStatus
from intl_payments.collaborators import InMemoryPersistence
from intl_payments.config import EngineConfig

from conftest import NOW


class FlakySink(InMemoryPersistence):
    def __init__(self) -> None:
        super().__init__()
        self.down = True

    async def store_compliance_event(self, record):
        if self.down:
            raise ConnectionError("audit store unreachable")
        await super().store_compliance_event(record)


def _event(entity_id: str = "cus_1") -> ComplianceEvent:
    return ComplianceEvent(
        event_type="kyc_check",
        entity_type="customer",
        entity_id=entity_id,
        rule="kyc_verification",
        status=ComplianceStatus.PASSED,
        details={"amount": 1000},
        risk_score=10,
        timestamp=NOW,
    )


def test_event_record_layout():
    record = _event().to_record()
    assert record["compliance_rule"] == "kyc_verification"
    assert record["status"] == "passed"
    assert record["created_at"] == NOW
    assert record["risk_score"] == 10
    assert record["details"] == {"amount": 1000}


@pytest.mark.asyncio
async def test_successful_write(persistence):
    audit = AuditLogger(persistence)
    assert await audit.log(_event()) is True
    assert len(persistence.compliance_events) == 1
    assert audit.pending_count == 0


@pytest.mark.asyncio
async def test_failed_write_is_queued_not_raised():
    sink = FlakySink()
    audit = AuditLogger(sink)
    assert await audit.log(_event()) is False
    assert audit.failed_writes == 1
    assert audit.pending_count == 1
    assert sink.compliance_events == []


@pytest.mark.asyncio
async def test_flush_writes_queued_events_in_order():
    sink = FlakySink()
    audit = AuditLogger(sink)
    await audit.log(_event("a"))
    await audit.log(_event("b"))

    sink.down = False
    assert await audit.flush_pending() == 2
    assert [e["entity_id"] for e in sink.compliance_events] == ["a", "b"]
    assert audit.pending_count == 0


@pytest.mark.asyncio
async def test_flush_stops_while_sink_still_down():
    sink = FlakySink()
    audit = AuditLogger(sink)
    await audit.log(_event("a"))
    await audit.log(_event("b"))
    assert await audit.flush_pending() == 0
    assert audit.pending_count == 2


@pytest.mark.asyncio
async def test_queue_is_bounded():
    sink = FlakySink()
    audit = AuditLogger(sink, EngineConfig(audit_queue_size=2))
    for name in ["a", "b", "c"]:
        await audit.log(_event(name))
    assert audit.pending_count == 2
    assert audit.dropped_events == 1

    sink.down = False
    await audit.flush_pending()
    assert [e["entity_id"] for e in sink.compliance_events] == ["b", "c"]
