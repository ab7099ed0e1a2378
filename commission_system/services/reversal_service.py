# commission_system/services/reversal_service.py
"""
Reversal engine - neutralizes ledger entries with compensating adjustments.

Originals are never deleted or edited. For each (beneficiary, status)
group of sources one adjustment is written with the exact negative of
the group total and the same status, so frozen money is offset in the
frozen bucket and completed money in the available bucket. Every source
gets a ReversalLink; the unique sourceEntryID makes a second reversal of
the same entry impossible.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.reversal_link import ReversalLink
from models.provenance import ReversalProvenance, to_payload
from commission_system.errors import AlreadyReversedError, ValidationError
from commission_system.utils.money import to_money

logger = logging.getLogger(__name__)

REVERSIBLE_KINDS = (LedgerKind.COMMISSION.value, LedgerKind.BONUS.value, LedgerKind.PURCHASE.value)
REVERSIBLE_STATUSES = (LedgerStatus.FROZEN.value, LedgerStatus.COMPLETED.value)


def reversed_entry_ids(session: Session, entryIds: Optional[Iterable[int]] = None) -> Set[int]:
    """IDs of entries already neutralized by a reversal."""
    query = session.query(ReversalLink.sourceEntryID)
    if entryIds is not None:
        entryIds = list(entryIds)
        if not entryIds:
            return set()
        query = query.filter(ReversalLink.sourceEntryID.in_(entryIds))
    return {row[0] for row in query.all()}


class ReversalService:
    """Writes compensating adjustments."""

    def __init__(self, session: Session):
        self.session = session

    async def reverseEntries(
            self,
            entries: List[LedgerEntry],
            reason: str,
            adminId: Optional[int],
            trigger: str = "manual"
    ) -> List[LedgerEntry]:
        """
        Neutralize entries.

        Args:
            entries: Source entries (commission, bonus or purchase; frozen or completed)
            reason: Mandatory human-readable reason
            adminId: Admin responsible (None for system triggers)
            trigger: What asked for the reversal (manual, fix_unlock, ...)

        Returns:
            Adjustment entries written

        Raises:
            ValidationError: empty reason, or entry not reversible
            AlreadyReversedError: some entry was reversed before
        """
        if not reason or not reason.strip():
            raise ValidationError("Reversal reason is required")

        if not entries:
            return []

        for entry in entries:
            if entry.kind not in REVERSIBLE_KINDS:
                raise ValidationError(f"Entry {entry.entryID} of kind {entry.kind} cannot be reversed")
            if entry.status not in REVERSIBLE_STATUSES:
                raise ValidationError(
                    f"Entry {entry.entryID} is {entry.status}; only frozen or completed entries are reversed"
                )

        already = reversed_entry_ids(self.session, [e.entryID for e in entries])
        if already:
            raise AlreadyReversedError(f"Entries already reversed: {sorted(already)}")

        groups: Dict[tuple, List[LedgerEntry]] = defaultdict(list)
        for entry in sorted(entries, key=lambda e: e.entryID):
            groups[(entry.accountID, entry.status)].append(entry)

        adjustments = []
        for (accountId, status), sources in sorted(groups.items()):
            adjustments.append(self._writeAdjustment(accountId, status, sources, reason.strip(), adminId, trigger))

        total = sum((Decimal(e.amount) for e in entries), Decimal("0"))
        logger.info(
            f"Reversed {len(entries)} entries ({total}) with {len(adjustments)} adjustments, "
            f"trigger={trigger}, admin={adminId}"
        )
        return adjustments

    def _writeAdjustment(self, accountId, status, sources, reason, adminId, trigger) -> LedgerEntry:
        total = sum((Decimal(source.amount) for source in sources), Decimal("0"))
        sourceIds = [source.entryID for source in sources]

        frozenUntil = None
        if status == LedgerStatus.FROZEN.value:
            holds = [s.frozenUntil for s in sources if s.frozenUntil is not None]
            frozenUntil = max(holds) if holds else None

        try:
            with self.session.begin_nested():
                adjustment = LedgerEntry(
                    accountID=accountId,
                    kind=LedgerKind.ADJUSTMENT.value,
                    amount=to_money(-total),
                    status=status,
                    frozenUntil=frozenUntil,
                    sourceEntryID=sourceIds[0],
                    paymentID=sources[0].paymentID if len({s.paymentID for s in sources}) == 1 else None,
                    provenance=to_payload(ReversalProvenance(
                        reason=reason,
                        adminID=adminId,
                        sourceEntryIDs=sourceIds,
                        trigger=trigger
                    )),
                    createdBy=adminId
                )
                self.session.add(adjustment)
                self.session.flush()

                for sourceId in sourceIds:
                    self.session.add(ReversalLink(
                        sourceEntryID=sourceId,
                        adjustmentEntryID=adjustment.entryID,
                        createdBy=adminId
                    ))
                self.session.flush()
        except IntegrityError:
            raise AlreadyReversedError(f"Entries already reversed: {sourceIds}")

        logger.debug(
            f"Adjustment {adjustment.entryID}: account={accountId}, amount={adjustment.amount}, "
            f"status={status}, sources={sourceIds}"
        )
        return adjustment

    def collectCommissions(
            self,
            beneficiaryIds: Optional[List[int]] = None,
            structure: Optional[str] = None,
            paymentId: Optional[int] = None,
            entryIds: Optional[List[int]] = None
    ):
        """
        Live commission entries of a scope, split by reversal state.

        Returns:
            (reversible entries, entries already reversed)
        """
        query = self.session.query(LedgerEntry).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.status.in_(REVERSIBLE_STATUSES)
        )
        if beneficiaryIds:
            query = query.filter(LedgerEntry.accountID.in_(beneficiaryIds))
        if structure:
            query = query.filter(LedgerEntry.structure == structure)
        if paymentId is not None:
            query = query.filter(LedgerEntry.paymentID == paymentId)
        if entryIds:
            query = query.filter(LedgerEntry.entryID.in_(entryIds))

        entries = query.order_by(LedgerEntry.entryID).all()
        done = reversed_entry_ids(self.session, [e.entryID for e in entries])

        reversible = [e for e in entries if e.entryID not in done]
        already = [e for e in entries if e.entryID in done]
        return reversible, already
