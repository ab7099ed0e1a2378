# models/referral.py
"""
Referral model - history of sponsor edges.

A row is opened when an account is bound under a sponsor and closed
(removedAt) when the edge is moved or the account is purged. The number
of open rows of a referrer at an instant is its direct-referral count at
that instant.
"""
from sqlalchemy import Column, Integer, String, DateTime, Index

from models.base import Base, _get_current_time


class Referral(Base):
    __tablename__ = 'referrals'

    referralID = Column(Integer, primary_key=True, autoincrement=True)

    # Plain ids, no FK: purged accounts keep their history rows
    referrerID = Column(Integer, nullable=False, index=True)
    referredID = Column(Integer, nullable=False, index=True)

    createdAt = Column(DateTime, default=_get_current_time, nullable=False)
    createdBy = Column(Integer, nullable=True)  # admin accountID for manual binds

    removedAt = Column(DateTime, nullable=True)
    removedReason = Column(String, nullable=True)  # rebind, purge, purge_reassign

    __table_args__ = (
        Index('ix_referrals_referrer_window', 'referrerID', 'createdAt', 'removedAt'),
    )

    def isOpenAt(self, moment) -> bool:
        return self.createdAt <= moment and (self.removedAt is None or self.removedAt > moment)

    def __repr__(self):
        return f"<Referral({self.referrerID} -> {self.referredID}, from={self.createdAt}, to={self.removedAt})>"
