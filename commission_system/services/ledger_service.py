# commission_system/services/ledger_service.py
"""
Ledger service - balances, entry lifecycle, manual money operations.

Balance (derived from the ledger, never stored authoritatively):
    available = SUM(completed entries)
    frozen    = SUM(frozen earning entries)          withdrawals/purchases excluded
    pending   = SUM(pending entries)
    withdrawn = -SUM(completed withdrawal entries)
    spendable = available + SUM(open withdrawals/purchases)
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy import func, case
from sqlalchemy.orm import Session

from models.account import Account
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus, OUTFLOW_KINDS
from models.reversal_link import ReversalLink
from models.provenance import (
    to_payload, ManualAdjustmentProvenance, BonusProvenance, WithdrawalProvenance
)
from commission_system.errors import (
    AccountNotFoundError, InsufficientBalanceError, ValidationError
)
from commission_system.utils.money import to_money
from commission_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class LedgerService:
    """Read-side balance projection and ledger write helpers."""

    def __init__(self, session: Session):
        self.session = session

    # ═══════════════════════════════════════════════════════════════════════
    # BALANCE
    # ═══════════════════════════════════════════════════════════════════════

    def computeBalance(self, accountId: int) -> Dict[str, Decimal]:
        """Balance buckets of one account, straight from the ledger."""
        amount = LedgerEntry.amount
        status = LedgerEntry.status
        isOutflow = LedgerEntry.kind.in_(OUTFLOW_KINDS)

        row = self.session.query(
            func.coalesce(func.sum(case((status == LedgerStatus.COMPLETED.value, amount), else_=0)), 0),
            func.coalesce(func.sum(case(
                ((status == LedgerStatus.FROZEN.value) & ~isOutflow, amount), else_=0
            )), 0),
            func.coalesce(func.sum(case((status == LedgerStatus.PENDING.value, amount), else_=0)), 0),
            func.coalesce(func.sum(case(
                ((status == LedgerStatus.COMPLETED.value)
                 & (LedgerEntry.kind == LedgerKind.WITHDRAWAL.value), amount), else_=0
            )), 0),
            func.coalesce(func.sum(case(
                (status.in_([LedgerStatus.PENDING.value, LedgerStatus.FROZEN.value]) & isOutflow, amount),
                else_=0
            )), 0),
        ).filter(LedgerEntry.accountID == accountId).one()

        available, frozen, pending, withdrawn, openOutflows = (to_money(value) for value in row)

        return {
            "available": available,
            "frozen": frozen,
            "pending": pending,
            "withdrawn": -withdrawn,
            "spendable": available + openOutflows,
        }

    async def getBalance(self, accountId: int) -> Dict[str, Decimal]:
        if not self.session.get(Account, accountId):
            raise AccountNotFoundError(f"Account {accountId} not found")
        return self.computeBalance(accountId)

    # ═══════════════════════════════════════════════════════════════════════
    # ENTRY LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    def addEntry(
            self,
            accountId: int,
            kind: LedgerKind,
            amount,
            status: LedgerStatus,
            provenance=None,
            **fields
    ) -> LedgerEntry:
        """Append an entry and flush it."""
        entry = LedgerEntry(
            accountID=accountId,
            kind=LedgerKind(kind).value,
            amount=to_money(amount),
            status=LedgerStatus(status).value,
            provenance=to_payload(provenance) if provenance is not None else None,
            **fields
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def holdUntil(self, start: datetime, holdDays: int) -> datetime:
        return start + timedelta(days=holdDays)

    async def releaseMatured(self, now: Optional[datetime] = None) -> Dict:
        """
        Move matured frozen entries to completed.

        Entries neutralized by a reversal are released together with their
        adjustment, so the pair never shows up half-released.
        """
        now = now or timeMachine.now

        matured = self.session.query(LedgerEntry).filter(
            LedgerEntry.status == LedgerStatus.FROZEN.value,
            LedgerEntry.frozenUntil.isnot(None),
            LedgerEntry.frozenUntil <= now
        ).order_by(LedgerEntry.entryID).all()

        if not matured:
            return {"released": 0, "amount": ZERO}

        maturedIds = [entry.entryID for entry in matured]
        linkedSources = {
            row[0] for row in self.session.query(ReversalLink.sourceEntryID).filter(
                ReversalLink.sourceEntryID.in_(maturedIds)
            ).all()
        }

        released = 0
        amount = ZERO

        for entry in matured:
            if entry.entryID in linkedSources:
                continue

            group = [entry]
            if entry.kind == LedgerKind.ADJUSTMENT.value:
                sources = self.session.query(LedgerEntry).join(
                    ReversalLink, ReversalLink.sourceEntryID == LedgerEntry.entryID
                ).filter(ReversalLink.adjustmentEntryID == entry.entryID).all()

                pending_sources = [
                    source for source in sources
                    if source.status == LedgerStatus.FROZEN.value
                    and (source.frozenUntil is None or source.frozenUntil > now)
                ]
                if pending_sources:
                    logger.debug(f"Adjustment {entry.entryID} waits for {len(pending_sources)} sources")
                    continue

                group = [s for s in sources if s.status == LedgerStatus.FROZEN.value] + [entry]

            for member in group:
                member.transitionTo(LedgerStatus.COMPLETED)
                released += 1
                amount += Decimal(member.amount)

        self.session.flush()

        logger.info(f"Released {released} matured entries, net amount {amount}")
        return {"released": released, "amount": to_money(amount)}

    def failEntry(self, entry: LedgerEntry, reason: str) -> LedgerEntry:
        """Invalidate a pending or frozen entry."""
        entry.transitionTo(LedgerStatus.FAILED, reason)
        self.session.flush()
        logger.info(f"Entry {entry.entryID} failed: {reason}")
        return entry

    # ═══════════════════════════════════════════════════════════════════════
    # MANUAL MONEY OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def adjustBalance(self, accountId: int, signedAmount, reason: str, adminId: int) -> Dict:
        """
        Write a completed manual adjustment.

        Raises:
            ValidationError: empty reason or zero amount
            InsufficientBalanceError: available balance would go negative
        """
        if not reason or not reason.strip():
            raise ValidationError("Adjustment reason is required")

        amount = to_money(signedAmount)
        if amount == ZERO:
            raise ValidationError("Adjustment amount must not be zero")

        if not self.session.get(Account, accountId):
            raise AccountNotFoundError(f"Account {accountId} not found")

        balance = self.computeBalance(accountId)
        if balance["available"] + amount < ZERO:
            raise InsufficientBalanceError(
                f"Adjustment {amount} would make available balance of account "
                f"{accountId} negative ({balance['available']})"
            )

        entry = self.addEntry(
            accountId,
            LedgerKind.ADJUSTMENT,
            amount,
            LedgerStatus.COMPLETED,
            provenance=ManualAdjustmentProvenance(reason=reason.strip(), adminID=adminId),
            createdBy=adminId
        )

        newBalance = self.computeBalance(accountId)["available"]
        logger.info(
            f"Manual adjustment {entry.entryID}: account={accountId}, amount={amount}, "
            f"admin={adminId}, newBalance={newBalance}"
        )
        return {"entryId": entry.entryID, "newBalance": newBalance}

    async def grantBonus(self, accountId: int, amount, reason: str, adminId: Optional[int] = None) -> LedgerEntry:
        if not reason or not reason.strip():
            raise ValidationError("Bonus reason is required")

        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Bonus amount must be positive")

        if not self.session.get(Account, accountId):
            raise AccountNotFoundError(f"Account {accountId} not found")

        entry = self.addEntry(
            accountId,
            LedgerKind.BONUS,
            amount,
            LedgerStatus.COMPLETED,
            provenance=BonusProvenance(reason=reason.strip(), adminID=adminId),
            createdBy=adminId
        )
        logger.info(f"Bonus {entry.entryID} granted: account={accountId}, amount={amount}")
        return entry

    # ═══════════════════════════════════════════════════════════════════════
    # WITHDRAWALS
    # ═══════════════════════════════════════════════════════════════════════

    async def requestWithdrawal(
            self,
            accountId: int,
            amount,
            method: Optional[str] = None,
            destination: Optional[str] = None
    ) -> LedgerEntry:
        """Open a pending withdrawal against the spendable balance."""
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Withdrawal amount must be positive")

        account = self.session.get(Account, accountId)
        if not account:
            raise AccountNotFoundError(f"Account {accountId} not found")
        if not account.isActive:
            raise ValidationError(f"Account {accountId} is {account.status}")

        balance = self.computeBalance(accountId)
        if balance["spendable"] < amount:
            raise InsufficientBalanceError(
                f"Withdrawal {amount} exceeds spendable balance {balance['spendable']}"
            )

        entry = self.addEntry(
            accountId,
            LedgerKind.WITHDRAWAL,
            -amount,
            LedgerStatus.PENDING,
            provenance=WithdrawalProvenance(requestedBy=accountId, method=method, destination=destination),
            createdBy=accountId
        )
        logger.info(f"Withdrawal {entry.entryID} requested: account={accountId}, amount={amount}")
        return entry

    def _getWithdrawal(self, entryId: int) -> LedgerEntry:
        entry = self.session.get(LedgerEntry, entryId)
        if not entry or entry.kind != LedgerKind.WITHDRAWAL.value:
            raise ValidationError(f"Withdrawal {entryId} not found")
        return entry

    async def approveWithdrawal(self, entryId: int, adminId: int) -> LedgerEntry:
        entry = self._getWithdrawal(entryId)
        entry.transitionTo(LedgerStatus.FROZEN)
        self.session.flush()
        logger.info(f"Withdrawal {entryId} approved by admin {adminId}")
        return entry

    async def completeWithdrawal(self, entryId: int, adminId: int) -> LedgerEntry:
        entry = self._getWithdrawal(entryId)
        entry.transitionTo(LedgerStatus.COMPLETED)
        self.session.flush()
        logger.info(f"Withdrawal {entryId} completed by admin {adminId}")
        return entry

    async def rejectWithdrawal(self, entryId: int, adminId: int, reason: str) -> LedgerEntry:
        entry = self._getWithdrawal(entryId)
        self.failEntry(entry, reason or "rejected")
        logger.info(f"Withdrawal {entryId} rejected by admin {adminId}: {reason}")
        return entry

    def history(self, accountId: int, limit: int = 100) -> List[LedgerEntry]:
        return self.session.query(LedgerEntry).filter_by(
            accountID=accountId
        ).order_by(LedgerEntry.entryID.desc()).limit(limit).all()
