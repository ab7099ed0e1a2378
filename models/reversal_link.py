# models/reversal_link.py
"""
ReversalLink model - ties a neutralized entry to its adjustment.

sourceEntryID is unique: an entry can be reversed once.
"""
from sqlalchemy import Column, Integer, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin


class ReversalLink(Base, AuditMixin):
    __tablename__ = 'reversal_links'

    linkID = Column(Integer, primary_key=True, autoincrement=True)
    sourceEntryID = Column(Integer, ForeignKey('ledger_entries.entryID'), nullable=False, unique=True)
    adjustmentEntryID = Column(Integer, ForeignKey('ledger_entries.entryID'), nullable=False, index=True)
    createdBy = Column(Integer, nullable=True)

    sourceEntry = relationship('LedgerEntry', foreign_keys=[sourceEntryID])
    adjustmentEntry = relationship('LedgerEntry', foreign_keys=[adjustmentEntryID])

    def __repr__(self):
        return f"<ReversalLink(source={self.sourceEntryID}, adjustment={self.adjustmentEntryID})>"
