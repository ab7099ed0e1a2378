#!/usr/bin/env python3
"""
Commission admin console.

Runs audits, violation fixes and batch backfill/recalculation through
CommissionEngine. Every committing command needs the preview token
printed by its dry run.

Usage:
    python scripts/commission_admin.py --admin 1 audit unlock
    python scripts/commission_admin.py --admin 1 fix marketing            # dry run
    python scripts/commission_admin.py --admin 1 fix marketing --commit --token TOKEN
    python scripts/commission_admin.py --admin 1 backfill --beneficiary 42
    python scripts/commission_admin.py --admin 1 recalculate --commit --token TOKEN
    python scripts/commission_admin.py release
"""

import sys
import os
import argparse
import asyncio
import json

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from commission_system.engine import CommissionEngine
from commission_system.errors import CommissionError

import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

AUDITS = {
    "balance": "auditBalanceIntegrity",
    "unlock": "auditUnlockViolations",
    "marketing": "auditMarketingFreeViolations",
    "early-unlock": "auditEarlyUnlockViolations",
    "graph": "auditGraphIntegrity",
}

FIXES = {
    "unlock": "fixUnlockViolations",
    "marketing": "fixMarketingFreeViolations",
    "early-unlock": "fixEarlyUnlockViolations",
}


def print_result(title, result):
    print("\n" + "=" * 80)
    print(title)
    print("=" * 80)
    print(json.dumps(result, indent=2, default=str))
    print("=" * 80 + "\n")


async def run(args):
    session = get_session()
    try:
        engine = CommissionEngine(session)

        if args.command == "audit":
            method = getattr(engine, AUDITS[args.kind])
            result = await method(args.admin)
            print_result(f"AUDIT: {args.kind}", result)

        elif args.command == "fix":
            method = getattr(engine, FIXES[args.kind])
            result = await method(not args.commit, args.admin, args.token)
            print_result(f"FIX: {args.kind} ({'commit' if args.commit else 'dry run'})", result)

        elif args.command in ("backfill", "recalculate"):
            scope = args.beneficiary if args.beneficiary else "all"
            method = engine.backfillMissingCommissions if args.command == "backfill" \
                else engine.recalculateCommissions
            result = await method(scope, dryRun=not args.commit, admin=args.admin,
                                  previewToken=args.token, resume=args.resume)
            print_result(f"{args.command.upper()} ({'commit' if args.commit else 'dry run'})", result)

        elif args.command == "release":
            result = await engine.releaseMatured()
            print_result("RELEASE MATURED", result)

    except CommissionError as e:
        print(f"❌ {type(e).__name__}: {e}")
        return 1
    finally:
        session.close()
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Commission admin console')
    parser.add_argument('--admin', type=int, help='Acting admin account ID')
    sub = parser.add_subparsers(dest='command', required=True)

    audit = sub.add_parser('audit', help='Run a read-only audit')
    audit.add_argument('kind', choices=sorted(AUDITS))

    fix = sub.add_parser('fix', help='Reverse violating commissions')
    fix.add_argument('kind', choices=sorted(FIXES))
    fix.add_argument('--commit', action='store_true', help='Apply instead of dry run')
    fix.add_argument('--token', help='Preview token from the dry run')

    for name in ('backfill', 'recalculate'):
        batch = sub.add_parser(name, help=f'{name.capitalize()} commissions')
        batch.add_argument('--beneficiary', type=int, help='Limit to one beneficiary account')
        batch.add_argument('--commit', action='store_true', help='Apply instead of dry run')
        batch.add_argument('--token', help='Preview token from the dry run')
        batch.add_argument('--resume', action='store_true', help='Continue the last unfinished job')

    sub.add_parser('release', help='Release matured frozen entries')

    args = parser.parse_args()

    Config.initialize_from_env()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
