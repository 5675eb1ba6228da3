#!/usr/bin/env python3
"""
Read-only ledger snapshot: per-user summary and ledger totals by reason.
"""

import argparse
import os
import sys

# Add the project root to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import SessionLocal
from services.ledger_report import build_ledger_report
from utils.lites import format_lky

COLUMNS = ("id", "telegram_id", "username", "balance_lky", "deposits", "withdrawals", "tips_in", "tips_out")


def print_report(include_empty: bool) -> None:
    session = SessionLocal()
    try:
        report = build_ledger_report(session)
    finally:
        session.close()

    rows = [summary.as_row() for summary in report.users if include_empty or summary.balance_lites]
    widths = {column: max([len(column)] + [len(row[column]) for row in rows]) for column in COLUMNS}

    print("  ".join(column.ljust(widths[column]) for column in COLUMNS))
    for row in rows:
        print("  ".join(row[column].ljust(widths[column]) for column in COLUMNS))

    print(f"\n📊 Ledger by reason")
    for reason, total in report.reason_totals.items():
        print(f"   {reason:<14} {format_lky(total)}")
    print(f"\n💰 Total user balances: {format_lky(report.total_balance_lites)} LKY")


def main():
    parser = argparse.ArgumentParser(description="Print a per-user ledger summary")
    parser.add_argument("--all", action="store_true", help="Include users with a zero balance")
    args = parser.parse_args()
    print_report(include_empty=args.all)


if __name__ == "__main__":
    main()
