#!/usr/bin/env python3
"""
Display sponsor structure tree.

Shows the account hierarchy with status indicators.

Usage:
    python scripts/show_tree.py --root-id ACCOUNT_ID [--max-depth DEPTH]
    python scripts/show_tree.py --stats
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func

from config import Config
from core.db import get_session
from models.account import Account
from commission_system.utils.chain_walker import ChainWalker
from commission_system.services.eligibility_service import EligibilityService
from commission_system.utils.time_machine import timeMachine

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def print_tree(root_account, max_depth=None):
    """Print ASCII tree of the structure."""
    session = get_session()
    try:
        eligibility = EligibilityService(session)
        now = timeMachine.now

        def print_account(account, prefix="", is_last=True, depth=0, seen=None):
            seen = seen if seen is not None else set()
            if max_depth and depth > max_depth:
                return
            if account.accountID in seen:
                print(f"{prefix}⚠️ cycle at {account.accountID}")
                return
            seen.add(account.accountID)

            connector = "└─ " if is_last else "├─ "
            status_marker = {"active": "✅", "banned": "⛔", "deleted": "🗑"}.get(account.status, "?")
            sub_marker = "A" if eligibility.hasSubscriptionAt(account.accountID, now) else "-"
            act_marker = "B" if eligibility.isActivatedInMonth(account.accountID, now.year, now.month) else "-"
            balance_display = f"{account.balanceAvailable}" if account.balanceAvailable else ""

            print(
                f"{prefix}{connector}{account.displayName} (ID:{account.accountID}) "
                f"{status_marker} [{sub_marker}{act_marker}] refs={account.directReferrals} {balance_display}"
            )

            children = session.query(Account).filter(
                Account.sponsorID == account.accountID
            ).order_by(Account.accountID).all()

            for i, child in enumerate(children):
                is_last_child = (i == len(children) - 1)
                new_prefix = prefix + ("    " if is_last else "│   ")
                print_account(child, new_prefix, is_last_child, depth + 1, seen)

        print("\n" + "=" * 80)
        print("SPONSOR STRUCTURE TREE")
        print("=" * 80)
        print("\nLegend:")
        print("  ✅ = Active  ⛔ = Banned  🗑 = Deleted")
        print("  [A.] = Structure A subscription active now")
        print("  [.B] = Structure B activated this month")
        print("  refs = Direct referrals")
        print("\n" + "=" * 80 + "\n")
        print_account(root_account)
        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


def print_statistics():
    """Print database statistics."""
    session = get_session()
    try:
        total = session.query(Account).count()
        if not total:
            print("No accounts")
            return

        print("\n" + "=" * 80)
        print("DATABASE STATISTICS")
        print("=" * 80 + "\n")

        print(f"Total accounts: {total}")
        status_counts = session.query(
            Account.status,
            func.count(Account.accountID)
        ).group_by(Account.status).all()

        for status, count in status_counts:
            print(f"  {status:12} {count:5} ({count/total*100:.1f}%)")

        walker = ChainWalker(session)
        orphans = walker.find_orphans()
        cycles = walker.find_cycles()
        roots = session.query(Account).filter(Account.sponsorID.is_(None)).count()

        print(f"\nRoots (no sponsor): {roots}")
        print(f"Orphans:            {len(orphans)}")
        print(f"Cycles:             {len(cycles)}")

        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Display sponsor structure tree')
    parser.add_argument('--root-id', type=int,
                        help='Account ID of the tree root')
    parser.add_argument('--max-depth', type=int,
                        help='Maximum depth to display')
    parser.add_argument('--stats', action='store_true',
                        help='Show statistics only')
    args = parser.parse_args()

    # Initialize config
    Config.initialize_from_env()

    if args.stats:
        print_statistics()
        return

    if not args.root_id:
        print("❌ Specify --root-id or --stats")
        return

    session = get_session()
    try:
        root = session.get(Account, args.root_id)
        if not root:
            print(f"❌ Account {args.root_id} not found!")
            return

        print_tree(root, args.max_depth)
        print_statistics()

    finally:
        session.close()


if __name__ == "__main__":
    main()
