#!/usr/bin/env python3
"""
Quick Start Example
===================

Runs a EUR payment from a German customer through the payment pipeline
and prints the conversion, tax and compliance outcome.

Usage:
    python examples/quick_start.py
"""

import asyncio

from intl_payments import EngineConfig, build_orchestrator
from intl_payments.collaborators import CustomerRecord, InMemoryCustomerDirectory
from intl_payments.currency import format_amount


async def main() -> None:
    # Register the customer so KYC can find them
    directory = InMemoryCustomerDirectory()
    directory.add(
        CustomerRecord(
            customer_id="cus_demo_de",
            country="DE",
            compliance_status="verified",
            gdpr_consent=True,
        )
    )
    orchestrator = build_orchestrator(
        EngineConfig(vies_enabled=False), directory=directory
    )

    # 100.00 EUR from a consumer in Germany
    result = await orchestrator.process_international_payment(
        {
            "customer_id": "cus_demo_de",
            "amount": 10000,
            "currency": "EUR",
            "customer_country": "DE",
            "customer_name": "Anna Schmidt",
        }
    )

    print(f"Transaction:    {result.transaction_id}")
    print(f"Charged:        {format_amount(result.original_amount, result.original_currency)}")
    print(f"Settlement:     {format_amount(result.settlement_amount, result.settlement_currency)}")
    print(f"Exchange Rate:  {result.exchange_rate} ({result.rate_provider})")
    print(f"Conversion Fee: {format_amount(result.conversion_fee, result.settlement_currency)}")
    print(f"Jurisdiction:   {result.jurisdiction} ({result.tax_type})")
    print(f"Tax Rate:       {result.tax_rate:.2%}")
    print(f"Tax:            {format_amount(result.tax_amount, result.settlement_currency)}")
    print(f"Compliance:     {result.compliance_status}")

    if result.warnings:
        print(f"Warnings:       {', '.join(result.warnings)}")

    # B2B sale to a French business with a VAT number: reverse charge
    print("\n--- Reverse Charge ---")
    tax = await orchestrator.tax_engine.calculate_tax(
        {
            "amount": 10000,
            "customer_country": "FR",
            "customer_type": "business",
            "vat_number": "FR12345678901",
            "merchant_country": "DE",
        }
    )
    print(f"Jurisdiction:   {tax.jurisdiction}")
    print(f"Reverse Charge: {tax.reverse_charge}")
    print(f"Tax:            {tax.tax_amount}")
    print(f"Rules:          {', '.join(tax.applicable_rules)}")


if __name__ == "__main__":
    asyncio.run(main())
