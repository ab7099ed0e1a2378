# commission_system/services/audit_service.py
"""
Violation auditor - read-only sweeps over the ledger.

Sweeps never write. Entries already neutralized by a reversal and
failed entries are not reported.
"""
from collections import defaultdict
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models.account import Account
from models.payment_event import PaymentEvent
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.reversal_link import ReversalLink
from commission_system.config.rules import load_rule_set
from commission_system.utils.chain_walker import ChainWalker
from commission_system.utils.money import to_money
from commission_system.utils.referral_counter import ReferralCounter
from commission_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class AuditService:
    """Balance, unlock, marketing, early-unlock and graph sweeps."""

    def __init__(self, session: Session):
        self.session = session
        self.referrals = ReferralCounter(session)
        self.walker = ChainWalker(session)

    def _liveCommissions(self):
        """Non-failed commission entries that were not reversed."""
        reversed_ids = select(ReversalLink.sourceEntryID)
        return self.session.query(LedgerEntry).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.status != LedgerStatus.FAILED.value,
            ~LedgerEntry.entryID.in_(reversed_ids)
        )

    # ═══════════════════════════════════════════════════════════════════════
    # BALANCE INTEGRITY
    # ═══════════════════════════════════════════════════════════════════════

    async def auditBalanceIntegrity(self) -> List[Dict]:
        """
        Compare the cached Account.balanceAvailable with the ledger.

        Findings: mismatching cache or negative computed balance.
        """
        computed = dict(
            self.session.query(
                LedgerEntry.accountID,
                func.coalesce(func.sum(LedgerEntry.amount), 0)
            ).filter(
                LedgerEntry.status == LedgerStatus.COMPLETED.value
            ).group_by(LedgerEntry.accountID).all()
        )

        findings = []
        for accountId, stored in self.session.query(Account.accountID, Account.balanceAvailable).order_by(
                Account.accountID
        ).all():
            computedAvailable = to_money(computed.get(accountId, 0))
            storedAvailable = to_money(stored or 0)
            diff = storedAvailable - computedAvailable

            if diff != 0 or computedAvailable < 0:
                findings.append({
                    "accountId": accountId,
                    "computedAvailable": computedAvailable,
                    "storedAvailable": storedAvailable,
                    "diff": diff,
                    "negative": computedAvailable < 0,
                })

        if findings:
            logger.warning(f"Balance integrity: {len(findings)} accounts flagged")
        else:
            logger.info("Balance integrity: no findings")
        return findings

    # ═══════════════════════════════════════════════════════════════════════
    # UNLOCK VIOLATIONS (today's referral count)
    # ═══════════════════════════════════════════════════════════════════════

    async def auditUnlockViolations(self) -> List[Dict]:
        """Commissions at level > 1 whose beneficiary fails the unlock threshold today."""
        now = timeMachine.now
        ruleSet = load_rule_set(self.session, now)

        entries = self._liveCommissions().filter(LedgerEntry.level > 1).order_by(LedgerEntry.entryID).all()

        groups = defaultdict(list)
        for entry in entries:
            groups[(entry.accountID, entry.level, entry.structure)].append(entry)

        findings = []
        for (accountId, level, structure), group in sorted(groups.items()):
            required = ruleSet.rule(structure, level).unlockReferrals
            if required <= 0:
                continue

            present = self.referrals.countAt(accountId, now)
            if present >= required:
                continue

            findings.append({
                "accountId": accountId,
                "level": level,
                "structure": structure,
                "referralsPresent": present,
                "referralsRequired": required,
                "violatingEntryIds": [e.entryID for e in group],
                "amount": to_money(sum((Decimal(e.amount) for e in group), Decimal("0"))),
            })

        logger.info(f"Unlock audit: {len(findings)} findings")
        return findings

    # ═══════════════════════════════════════════════════════════════════════
    # MARKETING-FREE VIOLATIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def auditMarketingFreeViolations(self) -> List[Dict]:
        """Commissions generated by payments that are (now) exempt."""
        entries = self._liveCommissions().join(
            PaymentEvent, PaymentEvent.paymentID == LedgerEntry.paymentID
        ).filter(PaymentEvent.isExempt == True).order_by(LedgerEntry.entryID).all()

        findings = [
            {
                "entryId": entry.entryID,
                "beneficiaryId": entry.accountID,
                "paymentId": entry.paymentID,
                "level": entry.level,
                "structure": entry.structure,
                "amount": to_money(entry.amount),
            }
            for entry in entries
        ]

        logger.info(f"Marketing-free audit: {len(findings)} findings")
        return findings

    # ═══════════════════════════════════════════════════════════════════════
    # EARLY-UNLOCK VIOLATIONS (referral count at payment time)
    # ═══════════════════════════════════════════════════════════════════════

    async def auditEarlyUnlockViolations(self, lookbackDays: Optional[int] = None) -> List[Dict]:
        """
        Commissions whose beneficiary did not meet the threshold when the
        payment was made, even if today's count satisfies it.

        Args:
            lookbackDays: Only payments within this many days (None = config default)
        """
        if lookbackDays is None:
            lookbackDays = int(Config.get(Config.EARLY_UNLOCK_LOOKBACK_DAYS, 90))

        since = timeMachine.now - timedelta(days=lookbackDays)

        rows = self._liveCommissions().join(
            PaymentEvent, PaymentEvent.paymentID == LedgerEntry.paymentID
        ).filter(
            LedgerEntry.level > 1,
            PaymentEvent.paidAt >= since
        ).add_columns(PaymentEvent.paidAt).order_by(LedgerEntry.entryID).all()

        findings = []
        ruleSets = {}
        for entry, paidAt in rows:
            ruleSet = ruleSets.get(paidAt)
            if ruleSet is None:
                ruleSet = ruleSets[paidAt] = load_rule_set(self.session, paidAt)

            required = ruleSet.rule(entry.structure, entry.level).unlockReferrals
            if required <= 0:
                continue

            atPayment = self.referrals.countAt(entry.accountID, paidAt)
            if atPayment >= required:
                continue

            findings.append({
                "entryId": entry.entryID,
                "beneficiaryId": entry.accountID,
                "paymentId": entry.paymentID,
                "level": entry.level,
                "structure": entry.structure,
                "paidAt": paidAt,
                "referralsAtPaymentTime": atPayment,
                "referralsNow": self.referrals.countNow(entry.accountID),
                "referralsRequired": required,
                "amount": to_money(entry.amount),
            })

        logger.info(f"Early-unlock audit ({lookbackDays}d): {len(findings)} findings")
        return findings

    # ═══════════════════════════════════════════════════════════════════════
    # SPONSOR GRAPH INTEGRITY
    # ═══════════════════════════════════════════════════════════════════════

    async def auditGraphIntegrity(self) -> Dict:
        """Dangling sponsor references, sponsor cycles and stale referral counters."""
        actual = dict(
            self.session.query(Account.sponsorID, func.count(Account.accountID)).filter(
                Account.sponsorID.isnot(None)
            ).group_by(Account.sponsorID).all()
        )

        stale = []
        for accountId, cached in self.session.query(Account.accountID, Account.directReferrals).order_by(
                Account.accountID
        ).all():
            real = actual.get(accountId, 0)
            if (cached or 0) != real:
                stale.append({"accountId": accountId, "cached": cached or 0, "actual": real})

        result = {
            "orphans": self.walker.find_orphans(),
            "cycles": self.walker.find_cycles(),
            "staleCounters": stale,
        }

        if stale:
            logger.warning(f"Graph integrity: {len(stale)} stale referral counters")
        return result
