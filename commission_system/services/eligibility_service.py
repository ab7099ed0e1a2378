# commission_system/services/eligibility_service.py
"""
Eligibility resolver - decides whether a commission may be paid.

resolve() is read-only and can be evaluated live (asOf = now) or
historically (asOf = a past instant). Denials are returned as a reason
code, never raised.

Check order (first failing check wins):
    marketing_free_access   exempt payments never pay, checked first
    not_activated           never enrolled at asOf, banned or deleted
    no_active_subscription  A: no subscription window covers asOf
    no_payment_this_month   B: not activated in the month of asOf
    too_deep                level beyond the structure depth
    level_not_unlocked      direct referrals at asOf below threshold
    sponsor_inactive        not activated in the month of the payment
    already_received_before commission for the tuple already exists

Exemption comes before every account check, so an exempt payment
records marketing_free_access at each level of its chain even where a
sponsor would have failed for another reason.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Set, Tuple, Dict, List

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from models.account import Account
from models.payment_event import PaymentEvent
from models.monthly_activation import MonthlyActivation
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.skip_record import SkipReason
from models.commission_rule import Structure
from commission_system.config.rules import RuleSet
from commission_system.utils.referral_counter import ReferralCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Outcome of an eligibility check."""
    eligible: bool
    reason: Optional[SkipReason] = None
    referralsPresent: Optional[int] = None
    referralsRequired: Optional[int] = None
    # True when a live commission for the very same tuple exists
    duplicate: bool = False

    @classmethod
    def ok(cls, referralsPresent=None, referralsRequired=None) -> "Resolution":
        return cls(True, None, referralsPresent, referralsRequired)

    @classmethod
    def deny(cls, reason: SkipReason, **kwargs) -> "Resolution":
        return cls(False, reason, **kwargs)


class StagedEntries:
    """
    Commissions decided in the current run but not yet written.

    Lets a batch plan see its own earlier decisions the same way the
    committing run sees its earlier writes.
    """

    def __init__(self):
        self._tuples: Set[Tuple[int, int, int, str]] = set()
        self._partners: Dict[Tuple[int, int, int, str], List[Tuple[datetime, int]]] = {}

    def add(self, payment: PaymentEvent, beneficiaryId: int, level: int, structure: str):
        structure = Structure(structure).value
        self._tuples.add((payment.paymentID, beneficiaryId, level, structure))
        self._partners.setdefault(
            (payment.accountID, beneficiaryId, level, structure), []
        ).append((payment.paidAt, payment.paymentID))

    def hasTuple(self, paymentId: int, beneficiaryId: int, level: int, structure: str) -> bool:
        return (paymentId, beneficiaryId, level, Structure(structure).value) in self._tuples

    def hasEarlierFromPartner(self, payment: PaymentEvent, beneficiaryId: int, level: int, structure: str) -> bool:
        key = (payment.accountID, beneficiaryId, level, Structure(structure).value)
        current = (payment.paidAt, payment.paymentID)
        return any(staged < current for staged in self._partners.get(key, []))

    def __len__(self):
        return len(self._tuples)


class EligibilityService:
    """Point-in-time eligibility resolver."""

    def __init__(self, session: Session):
        self.session = session
        self.referrals = ReferralCounter(session)

    def resolve(
            self,
            beneficiary: Optional[Account],
            level: int,
            structure,
            asOf: datetime,
            ruleSet: RuleSet,
            payment: Optional[PaymentEvent] = None,
            staged: Optional[StagedEntries] = None,
            excludeEntryId: Optional[int] = None
    ) -> Resolution:
        """
        Decide whether beneficiary may earn from level of structure at asOf.

        Args:
            beneficiary: Would-be recipient (None = account no longer exists)
            level: Sponsor-chain hops between payer and beneficiary
            structure: Structure A or B
            asOf: Instant the check is evaluated at
            ruleSet: Rules in force at asOf
            payment: Originating payment (exemption, sponsor month, duplicates)
            staged: Decisions of the running batch not yet written
            excludeEntryId: Existing entry to ignore in the duplicate check
                (re-validation of that entry)
        """
        structure = Structure(structure)

        if payment is not None and payment.isExempt:
            return Resolution.deny(SkipReason.MARKETING_FREE_ACCESS)

        if beneficiary is None or not beneficiary.isActive:
            return Resolution.deny(SkipReason.NOT_ACTIVATED)

        if not self.wasEverEnrolled(beneficiary.accountID, structure, asOf):
            return Resolution.deny(SkipReason.NOT_ACTIVATED)

        if structure == Structure.A:
            if not self.hasSubscriptionAt(beneficiary.accountID, asOf):
                return Resolution.deny(SkipReason.NO_ACTIVE_SUBSCRIPTION)
        else:
            if not self.isActivatedInMonth(beneficiary.accountID, asOf.year, asOf.month):
                return Resolution.deny(SkipReason.NO_PAYMENT_THIS_MONTH)

        if level < 1 or level > ruleSet.maxDepth(structure):
            return Resolution.deny(SkipReason.TOO_DEEP)

        unlocked, present, required = self.checkUnlock(beneficiary.accountID, level, structure, asOf, ruleSet)
        if not unlocked:
            return Resolution.deny(
                SkipReason.LEVEL_NOT_UNLOCKED,
                referralsPresent=present,
                referralsRequired=required
            )

        if ruleSet.requiresSponsorActivation(structure):
            moment = payment.paidAt if payment is not None else asOf
            if not self.isActivatedInMonth(beneficiary.accountID, moment.year, moment.month):
                return Resolution.deny(SkipReason.SPONSOR_INACTIVE)

        if payment is not None:
            if self.hasLiveCommission(payment.paymentID, beneficiary.accountID, level, structure, excludeEntryId) \
                    or (staged is not None and staged.hasTuple(payment.paymentID, beneficiary.accountID, level, structure)):
                return Resolution.deny(SkipReason.ALREADY_RECEIVED_BEFORE, duplicate=True)

            if ruleSet.isOneTimePerPartner(structure):
                if self._hasEarlierPartnerCommission(payment, beneficiary.accountID, level, structure, excludeEntryId) \
                        or (staged is not None and staged.hasEarlierFromPartner(payment, beneficiary.accountID, level, structure)):
                    return Resolution.deny(SkipReason.ALREADY_RECEIVED_BEFORE)

        return Resolution.ok(present, required)

    # ═══════════════════════════════════════════════════════════════════════
    # INDIVIDUAL CHECKS
    # ═══════════════════════════════════════════════════════════════════════

    def checkUnlock(
            self,
            accountId: int,
            level: int,
            structure,
            asOf: datetime,
            ruleSet: RuleSet
    ) -> Tuple[bool, int, int]:
        """
        Referral-count unlock check with the count measured at asOf.

        Returns:
            (unlocked, referralsPresent, referralsRequired)
        """
        required = ruleSet.rule(structure, level).unlockReferrals
        if required <= 0:
            return True, self.referrals.countAt(accountId, asOf), 0

        present = self.referrals.countAt(accountId, asOf)
        return present >= required, present, required

    def wasEverEnrolled(self, accountId: int, structure, asOf: datetime) -> bool:
        """A: any valid subscription payment by asOf. B: any activated month by asOf."""
        structure = Structure(structure)

        if structure == Structure.A:
            return self.session.query(PaymentEvent.paymentID).filter(
                PaymentEvent.accountID == accountId,
                PaymentEvent.structure == Structure.A.value,
                PaymentEvent.status != "rejected",
                PaymentEvent.paidAt <= asOf
            ).first() is not None

        return self.session.query(MonthlyActivation.activationID).filter(
            MonthlyActivation.accountID == accountId,
            MonthlyActivation.isActivated == True,
            or_(
                MonthlyActivation.year < asOf.year,
                and_(MonthlyActivation.year == asOf.year, MonthlyActivation.month <= asOf.month)
            )
        ).first() is not None

    def hasSubscriptionAt(self, accountId: int, asOf: datetime) -> bool:
        """Some non-rejected A payment window covers asOf."""
        return self.session.query(PaymentEvent.paymentID).filter(
            PaymentEvent.accountID == accountId,
            PaymentEvent.structure == Structure.A.value,
            PaymentEvent.status != "rejected",
            PaymentEvent.validFrom <= asOf,
            PaymentEvent.validUntil > asOf
        ).first() is not None

    def isActivatedInMonth(self, accountId: int, year: int, month: int) -> bool:
        activation = self.session.query(MonthlyActivation).filter_by(
            accountID=accountId,
            year=year,
            month=month
        ).first()
        return bool(activation and activation.isActivated)

    def hasLiveCommission(self, paymentId, accountId, level, structure, excludeEntryId=None) -> bool:
        query = self.session.query(LedgerEntry.entryID).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.status != LedgerStatus.FAILED.value,
            LedgerEntry.paymentID == paymentId,
            LedgerEntry.accountID == accountId,
            LedgerEntry.level == level,
            LedgerEntry.structure == Structure(structure).value
        )
        if excludeEntryId is not None:
            query = query.filter(LedgerEntry.entryID != excludeEntryId)
        return query.first() is not None

    def _hasEarlierPartnerCommission(self, payment, accountId, level, structure, excludeEntryId=None) -> bool:
        """Live commission for the same beneficiary/level from an earlier payment of the same payer."""
        query = self.session.query(LedgerEntry.entryID).join(
            PaymentEvent, PaymentEvent.paymentID == LedgerEntry.paymentID
        ).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.status != LedgerStatus.FAILED.value,
            LedgerEntry.accountID == accountId,
            LedgerEntry.level == level,
            LedgerEntry.structure == Structure(structure).value,
            PaymentEvent.accountID == payment.accountID,
            PaymentEvent.paymentID != payment.paymentID,
            or_(
                PaymentEvent.paidAt < payment.paidAt,
                and_(PaymentEvent.paidAt == payment.paidAt, PaymentEvent.paymentID < payment.paymentID)
            )
        )
        if excludeEntryId is not None:
            query = query.filter(LedgerEntry.entryID != excludeEntryId)
        return query.first() is not None
