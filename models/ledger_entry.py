# models/ledger_entry.py
"""
LedgerEntry model - the atomic unit of money.

Entries are append-only: amount, owner and kind never change after
insert (enforced by listeners). Corrections are new entries, invalidation
is a status transition to failed.

Status machine:
    pending -> frozen -> completed
    pending -> failed
    frozen  -> failed
completed and failed are terminal.
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DECIMAL, DateTime, ForeignKey, JSON, Index, text
)
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin, _get_current_time


class LedgerKind(str, Enum):
    COMMISSION = "commission"
    BONUS = "bonus"
    WITHDRAWAL = "withdrawal"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"


class LedgerStatus(str, Enum):
    PENDING = "pending"
    FROZEN = "frozen"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    LedgerStatus.PENDING: {LedgerStatus.FROZEN, LedgerStatus.FAILED},
    LedgerStatus.FROZEN: {LedgerStatus.COMPLETED, LedgerStatus.FAILED},
    LedgerStatus.COMPLETED: set(),
    LedgerStatus.FAILED: set(),
}

# Kinds whose open (pending/frozen) entries are outflows, not earnings
OUTFLOW_KINDS = (LedgerKind.WITHDRAWAL.value, LedgerKind.PURCHASE.value)

_LIVE_COMMISSION = "kind = 'commission' AND status != 'failed'"


class LedgerEntry(Base, AuditMixin):
    __tablename__ = 'ledger_entries'

    entryID = Column(Integer, primary_key=True, autoincrement=True)

    # Owner
    accountID = Column(Integer, ForeignKey('accounts.accountID'), nullable=False, index=True)

    # Money
    kind = Column(String, nullable=False, index=True)
    amount = Column(DECIMAL(18, 2), nullable=False)  # signed

    # Commission coordinates
    structure = Column(String(1), nullable=True)
    level = Column(Integer, nullable=True)

    # Lifecycle
    status = Column(String, nullable=False, default=LedgerStatus.PENDING.value, index=True)
    statusChangedAt = Column(DateTime, default=_get_current_time)
    frozenUntil = Column(DateTime, nullable=True, index=True)
    failureReason = Column(String, nullable=True)

    # Source references
    paymentID = Column(Integer, ForeignKey('payment_events.paymentID'), nullable=True, index=True)
    sourceEntryID = Column(Integer, ForeignKey('ledger_entries.entryID'), nullable=True)

    # Typed provenance record, see models.provenance
    provenance = Column(JSON, nullable=True)
    createdBy = Column(Integer, nullable=True)  # admin accountID, None for system

    __table_args__ = (
        Index(
            'uq_ledger_live_commission',
            'paymentID', 'accountID', 'level', 'structure',
            unique=True,
            sqlite_where=text(_LIVE_COMMISSION),
            postgresql_where=text(_LIVE_COMMISSION),
        ),
    )

    # Relationships
    account = relationship('Account')
    payment = relationship('PaymentEvent')

    def canTransition(self, newStatus) -> bool:
        current = LedgerStatus(self.status)
        return LedgerStatus(newStatus) in ALLOWED_TRANSITIONS[current]

    def transitionTo(self, newStatus, reason: str = None):
        """
        Move the entry along the status machine.

        Raises:
            InvalidTransitionError: transition not allowed from current status
        """
        from commission_system.errors import InvalidTransitionError

        newStatus = LedgerStatus(newStatus)
        if not self.canTransition(newStatus):
            raise InvalidTransitionError(
                f"Entry {self.entryID}: {self.status} -> {newStatus.value} is not allowed"
            )

        self.status = newStatus.value
        self.statusChangedAt = _get_current_time()
        if newStatus == LedgerStatus.FAILED:
            self.failureReason = reason

    @property
    def provenanceRecord(self):
        from models.provenance import parse_provenance
        return parse_provenance(self.provenance)

    def __repr__(self):
        return (
            f"<LedgerEntry(entryID={self.entryID}, account={self.accountID}, kind={self.kind}, "
            f"amount={self.amount}, status={self.status})>"
        )
