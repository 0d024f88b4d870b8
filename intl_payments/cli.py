"""
Command-line interface for the international payment compliance engine.

Provides subcommands for tax determination, currency conversion, VAT number
checks, sanctions screening, regional payment methods, sandbox payment runs
and regulatory reports. Payments run against the in-memory collaborators.
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import dataclasses
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from intl_payments.collaborators import CustomerRecord, InMemoryCustomerDirectory
from intl_payments.compliance import REPORT_TYPES, ComplianceMonitor
from intl_payments.config import EngineConfig
from intl_payments.currency import CurrencyConverter, format_amount
from intl_payments.errors import PaymentEngineError
from intl_payments.factory import build_orchestrator, build_rate_source
from intl_payments.logging_config import setup_logging
from intl_payments.models import PaymentProcessingResult
from intl_payments.orchestrator import PaymentOrchestrator
from intl_payments.payment_methods import REGIONAL_PAYMENT_METHODS, methods_for
from intl_payments.report_generator import ReportGenerator
from intl_payments.tax import TaxComplianceEngine
from intl_payments.vat import VatValidator, ViesClient

console = Console()

_BOOL_TRUE = ("1", "true", "yes", "y")


def _load_payments_csv(path: str) -> list[dict[str, Any]]:
    """
    Load payment requests from a CSV file.

    Required columns: customer_id, amount, currency, customer_country.
    Optional: customer_state, customer_type, vat_number, product_category,
    customer_name, business_name, payment_method, mandate_id, gdpr_consent,
    compliance_status.
    """
    csv_path = Path(path)
    if not csv_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)

    payments: list[dict[str, Any]] = []
    with open(csv_path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        for i, row in enumerate(reader):
            try:
                payment: dict[str, Any] = {
                    k: v.strip() for k, v in row.items() if v is not None and v.strip()
                }
                payment["amount"] = int(payment["amount"])
                payment["gdpr_consent"] = (
                    payment.get("gdpr_consent", "").lower() in _BOOL_TRUE
                )
                missing = [
                    col
                    for col in ("customer_id", "currency", "customer_country")
                    if col not in payment
                ]
                if missing:
                    raise KeyError(", ".join(missing))
                payments.append(payment)
            except (KeyError, ValueError) as e:
                console.print(f"[yellow]Skipping row {i + 1}: {e}[/yellow]")
    return payments


def _sandbox_directory(payments: list[dict[str, Any]]) -> InMemoryCustomerDirectory:
    directory = InMemoryCustomerDirectory()
    for p in payments:
        directory.add(
            CustomerRecord(
                customer_id=p["customer_id"],
                country=p["customer_country"].upper(),
                compliance_status=p.pop("compliance_status", "pending"),
                customer_type=p.get("customer_type", "individual"),
                vat_number=p.get("vat_number"),
                gdpr_consent=p["gdpr_consent"],
            )
        )
    return directory


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except PaymentEngineError as e:
        console.print(f"[red]{e.__class__.__name__}: {e}[/red]")
        sys.exit(1)


# -----------------------------------------------------------------------
# Subcommand: tax
# -----------------------------------------------------------------------


def cmd_tax(args: argparse.Namespace) -> None:
    """Determine tax for a single sale."""
    config = EngineConfig.from_env()
    engine = TaxComplianceEngine(
        vat_validator=VatValidator(ViesClient(config.vies_url) if args.vies else None, config),
        config=config,
    )
    result = _run(
        engine.calculate_tax(
            {
                "amount": args.amount,
                "customer_country": args.country,
                "customer_state": args.state,
                "vat_number": args.vat_number,
                "customer_type": args.customer_type,
                "product_category": args.category,
                "merchant_country": args.merchant_country,
            }
        )
    )

    table = Table(title="Tax Determination", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Jurisdiction", result.jurisdiction)
    table.add_row("Tax type", result.tax_type)
    table.add_row("Taxable amount", f"{result.taxable_amount:,}")
    table.add_row("Tax rate", f"{result.tax_rate:.2%}")
    table.add_row("Tax amount", f"[bold]{result.tax_amount:,}[/bold]")
    table.add_row("Reverse charge", "Y" if result.reverse_charge else "")
    table.add_row("MOSS eligible", "Y" if result.moss_eligible else "")
    table.add_row("Exemption", result.exemption_reason or "-")
    table.add_row("Rules", ", ".join(result.applicable_rules))
    console.print(table)


# -----------------------------------------------------------------------
# Subcommand: convert
# -----------------------------------------------------------------------


def cmd_convert(args: argparse.Namespace) -> None:
    """Convert an amount between currencies."""
    config = EngineConfig.from_env()
    converter = CurrencyConverter(build_rate_source(config), config)
    result = _run(converter.convert(args.amount, args.from_currency, args.to_currency))

    console.print(
        Panel(
            f"[bold]{format_amount(result.original_amount, args.from_currency)}[/bold]"
            f" -> [bold]{format_amount(result.converted_amount, args.to_currency)}[/bold]\n"
            f"Rate: {result.exchange_rate} ({result.provider}, "
            f"{result.as_of:%Y-%m-%d %H:%M})\n"
            f"Conversion fee: {format_amount(result.fees, args.to_currency)}",
            title="Currency Conversion",
            border_style="green",
        )
    )


# -----------------------------------------------------------------------
# Subcommand: vat
# -----------------------------------------------------------------------


def cmd_vat(args: argparse.Namespace) -> None:
    """Validate a VAT number."""
    config = EngineConfig.from_env()
    registry = ViesClient(config.vies_url) if args.vies else None
    result = _run(VatValidator(registry, config).validate(args.number, args.country))

    style = "green" if result.valid else "red"
    console.print(
        Panel(
            f"[bold]{result.vat_number}[/bold] ({result.country or '??'})\n"
            f"Valid: [{style}]{result.valid}[/{style}]\n"
            f"Company: {result.company_name or '-'}\n"
            f"Source: {result.source}",
            title="VAT Validation",
            border_style=style,
        )
    )


# -----------------------------------------------------------------------
# Subcommand: screen
# -----------------------------------------------------------------------


def cmd_screen(args: argparse.Namespace) -> None:
    """Screen a customer against sanctions lists and PEP indicators."""
    monitor = ComplianceMonitor()
    result = _run(
        monitor.check_sanctions_list(
            args.customer_id,
            args.country,
            customer_name=args.name,
            business_name=args.business,
        )
    )

    if result.match:
        body = (
            f"[bold red]MATCH[/bold red] ({result.sanctions_list})\n"
            f"Entity: {result.matched_entity}\n"
            f"Risk score: {result.risk_score}"
        )
        border = "red"
    else:
        body = f"[green]No match[/green]\nRisk score: {result.risk_score}"
        if result.pep_flag:
            body += "\n[yellow]PEP indicator - enhanced due diligence[/yellow]"
        border = "yellow" if result.pep_flag else "green"
    console.print(Panel(body, title="Sanctions Screening", border_style=border))


# -----------------------------------------------------------------------
# Subcommand: methods
# -----------------------------------------------------------------------


def cmd_methods(args: argparse.Namespace) -> None:
    """List regional payment methods."""
    if args.country:
        methods = methods_for(args.country, args.currency)
    else:
        methods = list(REGIONAL_PAYMENT_METHODS.values())

    table = Table(title="Regional Payment Methods", box=box.ROUNDED)
    table.add_column("Code", style="bold")
    table.add_column("Name")
    table.add_column("Currencies")
    table.add_column("Regions")
    table.add_column("Processing")
    table.add_column("Mandate", justify="center")
    for m in methods:
        regions = sorted(m.regions)
        table.add_row(
            m.code,
            m.name,
            ", ".join(sorted(m.currencies)),
            ", ".join(regions) if len(regions) <= 6 else f"{len(regions)} countries",
            m.processing_time,
            "Y" if m.requires_mandate else "",
        )
    console.print(table)


# -----------------------------------------------------------------------
# Subcommand: pay
# -----------------------------------------------------------------------


def _payment_table(results: list[PaymentProcessingResult]) -> Table:
    table = Table(title="Payment Results", box=box.ROUNDED, show_lines=True)
    table.add_column("#", style="dim")
    table.add_column("Status")
    table.add_column("Original", justify="right")
    table.add_column("Settlement", justify="right")
    table.add_column("Tax", justify="right", style="bold")
    table.add_column("Jurisdiction")
    table.add_column("Notes")

    for i, r in enumerate(results, start=1):
        if not r.success:
            status = f"[red]{r.state.value}[/red]"
            notes = r.error or ""
        elif r.requires_manual_review:
            status = "[yellow]review[/yellow]"
            notes = "; ".join(r.warnings)
        else:
            status = "[green]ok[/green]"
            notes = "; ".join(r.warnings)
        table.add_row(
            str(i),
            status,
            format_amount(r.original_amount, r.original_currency or "USD"),
            format_amount(r.settlement_amount, r.settlement_currency) if r.success else "-",
            format_amount(r.tax_amount, r.settlement_currency) if r.success else "-",
            r.jurisdiction or "-",
            notes,
        )
    return table


async def _run_payments(
    orchestrator: PaymentOrchestrator, payments: list[dict[str, Any]]
) -> list[PaymentProcessingResult]:
    return await orchestrator.batch_process_payments(payments)


def cmd_pay(args: argparse.Namespace) -> None:
    """Run a CSV of payments through the sandbox pipeline."""
    payments = _load_payments_csv(args.file)
    config = EngineConfig.from_env()
    if args.output_dir:
        config = dataclasses.replace(config, report_dir=args.output_dir)
    orchestrator = build_orchestrator(config, directory=_sandbox_directory(payments))
    results = _run(_run_payments(orchestrator, payments))

    console.print(_payment_table(results))
    ok = sum(1 for r in results if r.success)
    review = sum(1 for r in results if r.success and r.requires_manual_review)
    console.print(
        Panel(
            f"[bold]Processed:[/bold] {len(results)}\n"
            f"[bold]Succeeded:[/bold] {ok}\n"
            f"[bold]Manual review:[/bold] {review}\n"
            f"[bold]Failed/blocked:[/bold] {len(results) - ok}",
            title="Batch Summary",
            border_style="green" if ok == len(results) else "yellow",
        )
    )

    if args.export_csv:
        rg = ReportGenerator(config.report_dir)
        records = orchestrator.persistence.transactions  # type: ignore[attr-defined]
        rg.export_transactions(records, args.export_csv)
        console.print(f"[green]Transactions exported to {args.export_csv}[/green]")


# -----------------------------------------------------------------------
# Subcommand: report
# -----------------------------------------------------------------------


async def _run_report(
    orchestrator: PaymentOrchestrator,
    payments: list[dict[str, Any]],
    report_type: str,
    jurisdiction: Optional[str],
    group_by: str,
) -> tuple[Any, Any]:
    await orchestrator.batch_process_payments(payments)
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=1)
    report = await orchestrator.generate_compliance_report(
        report_type, start, end, jurisdiction
    )
    metrics = await orchestrator.get_international_metrics(
        "day", start, end, group_by=group_by
    )
    return report, metrics


def cmd_report(args: argparse.Namespace) -> None:
    """Process a CSV of payments and generate a regulatory report."""
    payments = _load_payments_csv(args.file)
    config = EngineConfig.from_env()
    if args.output_dir:
        config = dataclasses.replace(config, report_dir=args.output_dir)
    orchestrator = build_orchestrator(config, directory=_sandbox_directory(payments))
    report, metrics = _run(
        _run_report(orchestrator, payments, args.type, args.jurisdiction, args.group_by)
    )

    console.print(
        Panel(
            f"[bold]Report:[/bold] {report.report_id} ({report.report_type})\n"
            f"[bold]Transactions:[/bold] {report.total_transactions}\n"
            f"[bold]Total amount:[/bold] {format_amount(report.total_amount, config.settlement_currency)}\n"
            f"[bold]Tax collected:[/bold] {format_amount(report.total_tax_collected, config.settlement_currency)}\n"
            f"[bold]Suspicious activities:[/bold] {report.suspicious_activities}\n"
            f"[bold]GDPR issues:[/bold] {report.gdpr_issues}\n"
            f"[bold]File:[/bold] {report.file_path}",
            title="Compliance Report",
            border_style="green",
        )
    )

    rg = ReportGenerator(config.report_dir)
    metrics_report = rg.metrics_report(
        metrics.period,
        {
            "transaction_count": metrics.transaction_count,
            "total_volume": metrics.total_volume,
            "average_amount": metrics.average_amount,
            "manual_review_count": metrics.manual_review_count,
        },
        list(metrics.breakdown),
        metrics.group_by,
    )
    console.print(rg.format_text(metrics_report), markup=False)
    if args.export_csv:
        rg.to_csv(metrics_report, args.export_csv, section="breakdown")
        console.print(f"[green]Metrics exported to {args.export_csv}[/green]")


# -----------------------------------------------------------------------
# Argument parser
# -----------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intl-pay",
        description="International Payment Compliance Engine - currency conversion, cross-border tax and regulatory screening",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # tax
    tax_p = subparsers.add_parser("tax", help="Determine tax for a sale")
    tax_p.add_argument("--amount", type=int, required=True, help="Amount in minor units")
    tax_p.add_argument("--country", required=True, help="Customer country (ISO alpha-2)")
    tax_p.add_argument("--state", help="US state code")
    tax_p.add_argument("--vat-number", help="Customer VAT number")
    tax_p.add_argument(
        "--customer-type", choices=["individual", "business"], default="individual"
    )
    tax_p.add_argument("--category", default="standard", help="Product category")
    tax_p.add_argument("--merchant-country", help="Supplier country (default from config)")
    tax_p.add_argument("--vies", action="store_true", help="Check EU numbers against VIES")
    tax_p.set_defaults(func=cmd_tax)

    # convert
    conv_p = subparsers.add_parser("convert", help="Convert between currencies")
    conv_p.add_argument("--amount", type=int, required=True, help="Amount in minor units")
    conv_p.add_argument("--from", dest="from_currency", required=True)
    conv_p.add_argument("--to", dest="to_currency", required=True)
    conv_p.set_defaults(func=cmd_convert)

    # vat
    vat_p = subparsers.add_parser("vat", help="Validate a VAT number")
    vat_p.add_argument("number", help="VAT number")
    vat_p.add_argument("--country", help="Country code (defaults to the number prefix)")
    vat_p.add_argument("--vies", action="store_true", help="Check EU numbers against VIES")
    vat_p.set_defaults(func=cmd_vat)

    # screen
    screen_p = subparsers.add_parser("screen", help="Sanctions and PEP screening")
    screen_p.add_argument("--customer-id", default="cli-screen")
    screen_p.add_argument("--country", required=True)
    screen_p.add_argument("--name", help="Customer name")
    screen_p.add_argument("--business", help="Business name")
    screen_p.set_defaults(func=cmd_screen)

    # methods
    methods_p = subparsers.add_parser("methods", help="List regional payment methods")
    methods_p.add_argument("--country", help="Filter by customer country")
    methods_p.add_argument("--currency", help="Filter by currency")
    methods_p.set_defaults(func=cmd_methods)

    # pay
    pay_p = subparsers.add_parser("pay", help="Process a CSV of payments (sandbox)")
    pay_p.add_argument("--file", "-f", required=True, help="CSV file with payments")
    pay_p.add_argument("--export-csv", help="Export transaction records to CSV")
    pay_p.add_argument("--output-dir", help="Output directory")
    pay_p.set_defaults(func=cmd_pay)

    # report
    report_p = subparsers.add_parser("report", help="Generate a regulatory report")
    report_p.add_argument("--file", "-f", required=True, help="CSV file with payments")
    report_p.add_argument("--type", choices=sorted(REPORT_TYPES), default="vat_return")
    report_p.add_argument("--jurisdiction", help="Restrict to one tax jurisdiction")
    report_p.add_argument(
        "--group-by", choices=["currency", "country", "payment_method"], default="currency"
    )
    report_p.add_argument("--export-csv", help="Export metrics breakdown to CSV")
    report_p.add_argument("--output-dir", help="Output directory")
    report_p.set_defaults(func=cmd_report)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging(args.log_level or EngineConfig.from_env().log_level)
    args.func(args)
