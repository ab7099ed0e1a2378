# commission_system/services/report_service.py
"""
Read-only reports: per-level structure statistics and per-account
commission audit.
"""
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.account import Account
from models.payment_event import PaymentEvent
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.skip_record import SkipRecord
from models.reversal_link import ReversalLink
from models.commission_rule import Structure, MAX_DEPTH
from commission_system.config.rules import load_rule_set
from commission_system.errors import AccountNotFoundError
from commission_system.services.reversal_service import reversed_entry_ids
from commission_system.utils.chain_walker import ChainWalker
from commission_system.utils.money import to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class ReportService:
    """Statistics over commissions and pass-ups."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)

    async def structureStats(
            self,
            structure,
            dateFrom: Optional[datetime] = None,
            dateTo: Optional[datetime] = None
    ) -> Dict:
        """
        Per-level totals for payments made in [dateFrom, dateTo).

        Reversed and failed commissions are left out.
        """
        structure = Structure(structure)
        depth = MAX_DEPTH[structure]
        reversedIds = select(ReversalLink.sourceEntryID)

        entryQuery = self.session.query(
            LedgerEntry.level,
            LedgerEntry.status,
            func.count(LedgerEntry.entryID),
            func.coalesce(func.sum(LedgerEntry.amount), 0)
        ).join(
            PaymentEvent, PaymentEvent.paymentID == LedgerEntry.paymentID
        ).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.structure == structure.value,
            LedgerEntry.status != LedgerStatus.FAILED.value,
            ~LedgerEntry.entryID.in_(reversedIds)
        )

        # a skip later paid by a backfill is no longer forgone
        paidLater = select(LedgerEntry.entryID).where(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.paymentID == SkipRecord.paymentID,
            LedgerEntry.accountID == SkipRecord.accountID,
            LedgerEntry.level == SkipRecord.level,
            LedgerEntry.structure == SkipRecord.structure,
            LedgerEntry.status != LedgerStatus.FAILED.value,
            ~LedgerEntry.entryID.in_(reversedIds)
        ).exists()

        skipQuery = self.session.query(
            SkipRecord.level,
            func.count(SkipRecord.skipID),
            func.coalesce(func.sum(SkipRecord.forgoneAmount), 0)
        ).join(
            PaymentEvent, PaymentEvent.paymentID == SkipRecord.paymentID
        ).filter(
            SkipRecord.structure == structure.value,
            ~paidLater
        )

        if dateFrom is not None:
            entryQuery = entryQuery.filter(PaymentEvent.paidAt >= dateFrom)
            skipQuery = skipQuery.filter(PaymentEvent.paidAt >= dateFrom)
        if dateTo is not None:
            entryQuery = entryQuery.filter(PaymentEvent.paidAt < dateTo)
            skipQuery = skipQuery.filter(PaymentEvent.paidAt < dateTo)

        levels = {
            level: {
                "level": level,
                "entries": 0,
                "frozenAmount": ZERO,
                "availableAmount": ZERO,
                "passUpCount": 0,
                "passUpAmount": ZERO,
            }
            for level in range(1, depth + 1)
        }

        for level, status, count, amount in entryQuery.group_by(LedgerEntry.level, LedgerEntry.status).all():
            row = levels.get(level)
            if row is None:
                continue
            row["entries"] += count
            if status == LedgerStatus.FROZEN.value:
                row["frozenAmount"] += to_money(amount)
            elif status == LedgerStatus.COMPLETED.value:
                row["availableAmount"] += to_money(amount)

        for level, count, amount in skipQuery.group_by(SkipRecord.level).all():
            row = levels.get(level)
            if row is None:
                continue
            row["passUpCount"] = count
            row["passUpAmount"] = to_money(amount)

        rows = [levels[level] for level in sorted(levels)]
        totals = {
            "entries": sum(r["entries"] for r in rows),
            "frozenAmount": sum((r["frozenAmount"] for r in rows), ZERO),
            "availableAmount": sum((r["availableAmount"] for r in rows), ZERO),
            "passUpCount": sum(r["passUpCount"] for r in rows),
            "passUpAmount": sum((r["passUpAmount"] for r in rows), ZERO),
        }

        return {
            "structure": structure.value,
            "dateFrom": dateFrom,
            "dateTo": dateTo,
            "levels": rows,
            "totals": totals,
        }

    async def accountCommissionAudit(self, accountId: int, structure=None) -> List[Dict]:
        """
        Every downline payment the account could earn from, with expected
        vs received commission and the reason when nothing was paid.
        """
        account = self.session.get(Account, accountId)
        if not account:
            raise AccountNotFoundError(f"Account {accountId} not found")

        downline = self.walker.downline_levels(account, MAX_DEPTH[Structure.B])
        if not downline:
            return []

        query = self.session.query(PaymentEvent).filter(
            PaymentEvent.accountID.in_(list(downline.keys()))
        )
        if structure is not None:
            query = query.filter(PaymentEvent.structure == Structure(structure).value)
        payments = query.order_by(PaymentEvent.paidAt, PaymentEvent.paymentID).all()

        paymentIds = [p.paymentID for p in payments]
        if not paymentIds:
            return []

        received = defaultdict(lambda: ZERO)
        statuses = defaultdict(list)
        entries = self.session.query(LedgerEntry).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.accountID == accountId,
            LedgerEntry.paymentID.in_(paymentIds)
        ).all()
        reversedIds = reversed_entry_ids(self.session, [e.entryID for e in entries])
        for entry in entries:
            if entry.status == LedgerStatus.FAILED.value:
                statuses[entry.paymentID].append("failed")
                continue
            if entry.entryID in reversedIds:
                statuses[entry.paymentID].append("reversed")
                continue
            received[entry.paymentID] += Decimal(entry.amount)
            statuses[entry.paymentID].append(entry.status)

        skips = {
            skip.paymentID: skip
            for skip in self.session.query(SkipRecord).filter(
                SkipRecord.accountID == accountId,
                SkipRecord.paymentID.in_(paymentIds)
            ).all()
        }

        rows = []
        for payment in payments:
            level = downline[payment.accountID]
            if level > MAX_DEPTH[Structure(payment.structure)]:
                continue

            ruleSet = load_rule_set(self.session, payment.paidAt)
            levelRule = ruleSet.levels.get(Structure(payment.structure), {}).get(level)
            expected = to_money(Decimal(payment.normalizedAmount) * levelRule.percent) if levelRule else ZERO

            skip = skips.get(payment.paymentID)
            reason = None
            if received[payment.paymentID] == ZERO:
                if skip is not None:
                    reason = skip.reason
                elif payment.isRejected:
                    reason = "payment_rejected"
                elif "reversed" in statuses[payment.paymentID]:
                    reason = "reversed"
                elif not statuses[payment.paymentID]:
                    reason = "missing"

            rows.append({
                "paymentId": payment.paymentID,
                "payerId": payment.accountID,
                "structure": payment.structure,
                "level": level,
                "paidAt": payment.paidAt,
                "amount": to_money(payment.normalizedAmount),
                "isExempt": payment.isExempt,
                "expected": expected,
                "received": to_money(received[payment.paymentID]),
                "statuses": statuses[payment.paymentID],
                "reason": reason,
            })

        return rows
