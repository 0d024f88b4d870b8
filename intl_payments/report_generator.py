"""
Regulatory and operational report generator.

Produces:
- Compliance reports (VAT return, MOSS, AML suspicious activity, GDPR)
- International payment metrics summaries
- Transaction detail exports
- CSV and JSON export, console text rendering
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class _ReportEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, date and Enum values."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def _to_serializable(obj: Any) -> Any:
    """Recursively convert Decimal/date/Enum values for serialization."""
    if isinstance(obj, dict):
        return {k: _to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_serializable(i) for i in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


def _cell(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class ReportGenerator:
    """
    Builds report dicts and writes them as JSON, CSV or console text.

    Amounts in reports are minor units of the settlement currency.
    """

    def __init__(self, output_dir: Optional[str] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir else Path("reports")
        self.output_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Compliance report
    # ------------------------------------------------------------------

    def compliance_report(
        self,
        report_id: str,
        report_type: str,
        period_start: datetime,
        period_end: datetime,
        summary: dict[str, Any],
        jurisdiction: Optional[str] = None,
        jurisdiction_breakdown: Optional[list[dict[str, Any]]] = None,
        suspicious_activities: Optional[list[dict[str, Any]]] = None,
        generated_at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Assemble a regulatory report suitable for display or export."""
        return {
            "report_id": report_id,
            "report_type": report_type,
            "jurisdiction": jurisdiction,
            "period": f"{period_start.date().isoformat()} to {period_end.date().isoformat()}",
            "generated_date": (generated_at or datetime.now(timezone.utc)).isoformat(),
            "summary": summary,
            "jurisdiction_breakdown": jurisdiction_breakdown or [],
            "suspicious_activities": suspicious_activities or [],
        }

    # ------------------------------------------------------------------
    # Metrics report
    # ------------------------------------------------------------------

    def metrics_report(
        self,
        period: str,
        summary: dict[str, Any],
        breakdown: list[dict[str, Any]],
        group_by: str,
    ) -> dict[str, Any]:
        return {
            "report_type": "international_metrics",
            "period": period,
            "generated_date": date.today().isoformat(),
            "summary": summary,
            "group_by": group_by,
            "breakdown": breakdown,
        }

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------

    def to_json(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
    ) -> str:
        """Export a report to JSON. Returns the JSON string."""
        json_str = json.dumps(_to_serializable(report), indent=2, cls=_ReportEncoder)

        if filename:
            path = self.output_dir / filename
            path.write_text(json_str, encoding="utf-8")

        return json_str

    def to_csv(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
        section: str = "jurisdiction_breakdown",
    ) -> str:
        """
        Export a report section to CSV. Returns the CSV string.

        ``section`` names the list or dict in the report to write as rows.
        """
        data = report.get(section, [])
        if not data:
            return ""

        output = io.StringIO()

        if isinstance(data, list) and isinstance(data[0], dict):
            writer = csv.DictWriter(output, fieldnames=list(data[0].keys()))
            writer.writeheader()
            for row in data:
                writer.writerow({k: _cell(v) for k, v in row.items()})
        elif isinstance(data, dict):
            writer = csv.writer(output)
            writer.writerow(["key", "value"])
            for k, v in data.items():
                writer.writerow([k, _cell(v)])

        csv_str = output.getvalue()

        if filename:
            path = self.output_dir / filename
            path.write_text(csv_str, encoding="utf-8")

        return csv_str

    def export_transactions(
        self,
        transactions: list[dict[str, Any]],
        filename: str = "transactions.csv",
    ) -> str:
        """Export stored transaction records to CSV."""
        output = io.StringIO()
        fieldnames = [
            "transaction_id",
            "customer_id",
            "original_amount",
            "original_currency",
            "settlement_amount",
            "settlement_currency",
            "exchange_rate",
            "rate_provider",
            "tax_amount",
            "tax_jurisdiction",
            "reverse_charge",
            "requires_manual_review",
            "created_at",
        ]
        writer = csv.DictWriter(output, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for record in transactions:
            writer.writerow({k: _cell(record.get(k, "")) for k in fieldnames})

        csv_str = output.getvalue()
        path = self.output_dir / filename
        path.write_text(csv_str, encoding="utf-8")
        return csv_str

    # ------------------------------------------------------------------
    # Console-formatted text output
    # ------------------------------------------------------------------

    def format_text(self, report: dict[str, Any]) -> str:
        """Format a report as human-readable text for console output."""
        lines: list[str] = []
        report_type = report.get("report_type", "report").replace("_", " ").title()
        lines.append(f"{'=' * 60}")
        lines.append(f"  {report_type}")
        lines.append(f"  Generated: {report.get('generated_date', '')}")
        if report.get("period"):
            lines.append(f"  Period: {report['period']}")
        if report.get("jurisdiction"):
            lines.append(f"  Jurisdiction: {report['jurisdiction']}")
        lines.append(f"{'=' * 60}")
        lines.append("")

        summary = report.get("summary", {})
        if summary:
            lines.append("SUMMARY")
            lines.append("-" * 40)
            for key, value in summary.items():
                label = key.replace("_", " ").title()
                if isinstance(value, (float, Decimal)) and "rate" in key:
                    lines.append(f"  {label}: {float(value):.2%}")
                elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
                    lines.append(f"  {label}: {value:,}")
                else:
                    lines.append(f"  {label}: {value}")
            lines.append("")

        breakdown = report.get("jurisdiction_breakdown") or report.get("breakdown", [])
        if breakdown:
            lines.append("BREAKDOWN")
            lines.append("-" * 40)
            for row in breakdown:
                key = row.get("jurisdiction", row.get("group", "??"))
                volume = row.get("settlement_amount", row.get("volume", 0))
                tax = row.get("tax_amount", 0)
                count = row.get("transaction_count", row.get("count", ""))
                lines.append(
                    f"  {key}: {volume:>14,} volume | {tax:>12,} tax | {count} txns"
                )
            lines.append("")

        suspicious = report.get("suspicious_activities", [])
        if suspicious:
            lines.append("SUSPICIOUS ACTIVITY")
            lines.append("-" * 40)
            for s in suspicious:
                lines.append(
                    f"  [{s.get('risk_score', '')}] {s.get('event_type', '')} "
                    f"{s.get('entity_id', '')}: {s.get('status', '')}"
                )
            lines.append("")

        return "\n".join(lines)
