# commission_system/services/commission_service.py
"""
Commission distributor - turns a confirmed payment into ledger entries.

Walks the payer's sponsor chain from the direct sponsor (level 1) up to
the structure depth. Every level is resolved as of the payment time:
eligible levels get a frozen commission, ineligible levels a SkipRecord.
Forgone amounts are not passed up, only counted.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Union
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.account import Account
from models.payment_event import PaymentEvent
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.skip_record import SkipRecord, SkipReason
from models.provenance import CommissionProvenance, to_payload
from commission_system.config.rules import RuleSet, load_rule_set
from commission_system.errors import CommissionConfigError, PaymentNotFoundError
from commission_system.services.eligibility_service import EligibilityService, StagedEntries
from commission_system.utils.chain_walker import ChainWalker
from commission_system.utils.money import to_money

logger = logging.getLogger(__name__)


@dataclass
class Decision:
    """Resolver outcome for one (payment, beneficiary, level, structure) tuple."""
    paymentId: int
    beneficiaryId: int
    level: int
    structure: str
    eligible: bool
    amount: Decimal  # commission if eligible, forgone pass-up otherwise
    percent: Decimal
    ruleVersion: str
    reason: Optional[SkipReason] = None
    referralsPresent: Optional[int] = None
    referralsRequired: Optional[int] = None
    duplicate: bool = False

    @property
    def key(self):
        return self.paymentId, self.beneficiaryId, self.level, self.structure


class CommissionService:
    """Service for distributing commissions of confirmed payments."""

    def __init__(self, session: Session):
        self.session = session
        self.eligibility = EligibilityService(session)
        self.walker = ChainWalker(session)

    async def distribute(self, paymentId: int) -> List[Union[LedgerEntry, SkipRecord]]:
        """
        Distribute commissions for a payment.

        Idempotent: tuples that already carry a live commission are
        reported as already handled and nothing new is written.

        Returns:
            Entries and skip records written by this call

        Raises:
            PaymentNotFoundError: unknown payment
            CommissionConfigError: rules of the structure missing or invalid
        """
        payment = self.session.get(PaymentEvent, paymentId)
        if not payment:
            raise PaymentNotFoundError(f"Payment {paymentId} not found")

        if payment.isRejected:
            logger.info(f"Payment {paymentId} is rejected, nothing to distribute")
            return []

        ruleSet = self.loadRules(payment)
        decisions = self.decide(payment, ruleSet)

        written = []
        for decision in decisions:
            if decision.eligible:
                entry = self.writeCommission(payment, decision, ruleSet, origin="distribution")
                if entry is not None:
                    written.append(entry)
            elif decision.duplicate or self.eligibility.hasLiveCommission(*decision.key):
                logger.debug(
                    f"Payment {paymentId} L{decision.level} -> {decision.beneficiaryId}: already handled"
                )
            else:
                skip = self.writeSkip(payment, decision)
                if skip is not None:
                    written.append(skip)

        commissions = [w for w in written if isinstance(w, LedgerEntry)]
        logger.info(
            f"Distributed payment {paymentId} ({payment.structure}): "
            f"{len(commissions)} commissions, {len(written) - len(commissions)} skips, "
            f"total {sum((Decimal(c.amount) for c in commissions), Decimal('0'))}"
        )
        return written

    def loadRules(self, payment: PaymentEvent) -> RuleSet:
        """Rules effective at the payment time, validated for its structure."""
        ruleSet = load_rule_set(self.session, payment.paidAt)
        try:
            ruleSet.validate(payment.structure)
        except CommissionConfigError as e:
            logger.critical(
                f"Commission rules invalid for structure {payment.structure} "
                f"(payment {payment.paymentID}): {e}",
                exc_info=True
            )
            raise
        return ruleSet

    def decide(
            self,
            payment: PaymentEvent,
            ruleSet: RuleSet,
            staged: Optional[StagedEntries] = None,
            beneficiaryId: Optional[int] = None
    ) -> List[Decision]:
        """
        Resolve every level of the payer's chain as of the payment time.

        Shared by live distribution and batch planning. Eligible tuples are
        added to staged when given.

        Args:
            beneficiaryId: Only decide the level(s) held by this account
        """
        payer = self.session.get(Account, payment.accountID)
        if payer is None:
            logger.warning(f"Payer {payment.accountID} of payment {payment.paymentID} not found")
            return []

        maxDepth = ruleSet.maxDepth(payment.structure)
        base = Decimal(payment.normalizedAmount)
        decisions = []

        def visit(beneficiary, level):
            if beneficiaryId is not None and beneficiary.accountID != beneficiaryId:
                return True

            levelRule = ruleSet.rule(payment.structure, level)
            amount = to_money(base * levelRule.percent)

            resolution = self.eligibility.resolve(
                beneficiary,
                level,
                payment.structure,
                payment.paidAt,
                ruleSet,
                payment=payment,
                staged=staged
            )

            decisions.append(Decision(
                paymentId=payment.paymentID,
                beneficiaryId=beneficiary.accountID,
                level=level,
                structure=payment.structure,
                eligible=resolution.eligible,
                amount=amount,
                percent=levelRule.percent,
                ruleVersion=ruleSet.version,
                reason=resolution.reason,
                referralsPresent=resolution.referralsPresent,
                referralsRequired=resolution.referralsRequired,
                duplicate=resolution.duplicate
            ))

            if resolution.eligible and staged is not None:
                staged.add(payment, beneficiary.accountID, level, payment.structure)
            return True

        self.walker.walk_upline(payer, visit, maxDepth)
        return decisions

    def writeCommission(
            self,
            payment: PaymentEvent,
            decision: Decision,
            ruleSet: RuleSet,
            origin: str
    ) -> Optional[LedgerEntry]:
        """
        Optimistic write of a frozen commission inside a savepoint.

        Returns:
            The entry, or None when the tuple was already handled
        """
        try:
            with self.session.begin_nested():
                entry = LedgerEntry(
                    accountID=decision.beneficiaryId,
                    kind=LedgerKind.COMMISSION.value,
                    amount=decision.amount,
                    structure=decision.structure,
                    level=decision.level,
                    status=LedgerStatus.FROZEN.value,
                    frozenUntil=payment.paidAt + timedelta(days=ruleSet.holdPeriodDays),
                    paymentID=payment.paymentID,
                    provenance=to_payload(CommissionProvenance(
                        payerID=payment.accountID,
                        ruleVersion=decision.ruleVersion,
                        percent=decision.percent,
                        baseAmount=Decimal(payment.normalizedAmount),
                        origin=origin
                    ))
                )
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            logger.debug(f"Commission {decision.key} already exists, already handled")
            return None

        logger.debug(
            f"Commission {entry.entryID}: payment={payment.paymentID} L{decision.level} "
            f"-> {decision.beneficiaryId} amount={decision.amount} frozen until {entry.frozenUntil}"
        )
        return entry

    def writeSkip(self, payment: PaymentEvent, decision: Decision) -> Optional[SkipRecord]:
        """Record a pass-up. Returns None when the skip was recorded before."""
        try:
            with self.session.begin_nested():
                skip = SkipRecord(
                    paymentID=payment.paymentID,
                    accountID=decision.beneficiaryId,
                    structure=decision.structure,
                    level=decision.level,
                    reason=decision.reason.value,
                    forgoneAmount=decision.amount,
                    referralsPresent=decision.referralsPresent,
                    referralsRequired=decision.referralsRequired,
                    ruleVersion=decision.ruleVersion
                )
                self.session.add(skip)
                self.session.flush()
        except IntegrityError:
            logger.debug(f"Skip {decision.key} already recorded")
            return None

        logger.debug(
            f"Skip: payment={payment.paymentID} L{decision.level} -> {decision.beneficiaryId} "
            f"reason={decision.reason.value} forgone={decision.amount}"
        )
        return skip
