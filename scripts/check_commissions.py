#!/usr/bin/env python3
"""
Check commissions for a payment.

Displays the commission and pass-up breakdown of one payment from the database.

Usage:
    python scripts/check_commissions.py --payment-id 123
    python scripts/check_commissions.py --last  # Check last payment
"""

import sys
import os
import argparse
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.account import Account
from models.payment_event import PaymentEvent
from models.ledger_entry import LedgerEntry, LedgerKind
from models.skip_record import SkipRecord
from commission_system.services.reversal_service import reversed_entry_ids

import logging

logging.basicConfig(level=logging.WARNING)


def main():
    """Check commissions."""
    parser = argparse.ArgumentParser(description='Check commissions for payment')
    parser.add_argument('--payment-id', type=int, help='Payment ID to check')
    parser.add_argument('--last', action='store_true', help='Check last payment')
    args = parser.parse_args()

    Config.initialize_from_env()
    session = get_session()

    try:
        # Find payment
        if args.last:
            payment = session.query(PaymentEvent).order_by(
                PaymentEvent.paymentID.desc()
            ).first()
        elif args.payment_id:
            payment = session.get(PaymentEvent, args.payment_id)
        else:
            print("❌ Specify --payment-id or --last")
            return

        if not payment:
            print("❌ Payment not found")
            return

        payer = session.get(Account, payment.accountID)

        print("\n" + "=" * 80)
        print("COMMISSION CHECK")
        print("=" * 80)
        print(f"\nPayment ID: {payment.paymentID}")
        print(f"Payer: {payer.displayName if payer else '?'} (ID: {payment.accountID})")
        print(f"Structure: {payment.structure}")
        print(f"Amount: {payment.amount} {payment.currency} -> {payment.normalizedAmount} KZT")
        print(f"Paid at: {payment.paidAt}")
        print(f"Status: {payment.status}{' [EXEMPT]' if payment.isExempt else ''}")

        entries = session.query(LedgerEntry).filter(
            LedgerEntry.paymentID == payment.paymentID,
            LedgerEntry.kind == LedgerKind.COMMISSION.value
        ).order_by(LedgerEntry.level).all()
        skips = session.query(SkipRecord).filter_by(
            paymentID=payment.paymentID
        ).order_by(SkipRecord.level).all()

        if not entries and not skips:
            print("\n❌ No commissions or skips found for this payment")
            return

        reversed_ids = reversed_entry_ids(session, [e.entryID for e in entries])

        print(f"\n{len(entries)} commission(s), {len(skips)} skip(s):")
        print("-" * 80)

        total_paid = Decimal("0")
        total_forgone = Decimal("0")

        for entry in entries:
            account = session.get(Account, entry.accountID)
            active_marker = "✅" if account and account.isActive else "❌"
            reversed_marker = " [REVERSED]" if entry.entryID in reversed_ids else ""
            name = account.displayName if account else f"#{entry.accountID}"

            print(
                f"Level {entry.level:2}: {name:20} {active_marker} "
                f"{float(entry.amount):10.2f} ({entry.status:9}){reversed_marker}"
            )
            if entry.status != "failed" and entry.entryID not in reversed_ids:
                total_paid += Decimal(entry.amount)

        for skip in skips:
            print(
                f"Level {skip.level:2}: #{skip.accountID:<19} ⏭  "
                f"{float(skip.forgoneAmount or 0):10.2f} (skip: {skip.reason})"
            )
            total_forgone += Decimal(skip.forgoneAmount or 0)

        print("-" * 80)
        print(f"\nTotal live:     {float(total_paid):.2f}")
        print(f"Total pass-up:  {float(total_forgone):.2f}")

        # Detailed breakdown
        print("\n" + "=" * 80)
        print("DETAILED BREAKDOWN")
        print("=" * 80)

        for entry in entries:
            record = entry.provenanceRecord
            print(f"\nEntry {entry.entryID} (account {entry.accountID}, L{entry.level}):")
            print(f"  Status: {entry.status}")
            print(f"  Frozen until: {entry.frozenUntil or 'N/A'}")
            if record is not None:
                print(f"  Rule version: {getattr(record, 'ruleVersion', 'N/A')}")
                print(f"  Percent: {getattr(record, 'percent', 'N/A')}")
                print(f"  Origin: {getattr(record, 'origin', 'N/A')}")
            if entry.failureReason:
                print(f"  Failure: {entry.failureReason}")

        for skip in skips:
            if skip.referralsRequired:
                print(
                    f"\nSkip L{skip.level} -> {skip.accountID}: "
                    f"{skip.referralsPresent}/{skip.referralsRequired} referrals"
                )

        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


if __name__ == "__main__":
    main()
