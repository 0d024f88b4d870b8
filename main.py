#!/usr/bin/env python3
"""
International Payment Compliance Engine - Entry Point

Converts cross-border payments into the settlement currency, determines
VAT/GST/sales tax, screens customers (KYC, sanctions, GDPR) and produces
regulatory reports.

Usage:
    python main.py tax --amount 10000 --country DE
    python main.py tax --amount 10000 --country FR --customer-type business --vat-number FR12345678901
    python main.py convert --amount 10000 --from EUR --to USD
    python main.py vat DE123456789
    python main.py screen --country GB --name "Jane Doe"
    python main.py methods --country NL
    python main.py pay --file data/sample_payments.csv
    python main.py report --file data/sample_payments.csv --type vat_return
"""

from intl_payments.cli import main

if __name__ == "__main__":
    main()
