# models/account.py
"""
Account model - a participant of the compensation plan.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Text

from models.base import Base, AuditMixin, _get_current_time


class Account(Base, AuditMixin):
    __tablename__ = 'accounts'

    # Primary identification
    accountID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=True, index=True)
    firstname = Column(String, nullable=True)
    surname = Column(String, nullable=True)

    # Sponsor graph: accountID of the direct sponsor (current edge only,
    # history lives in the referrals table)
    sponsorID = Column(Integer, nullable=True, index=True)
    registeredAt = Column(DateTime, default=_get_current_time)

    # System fields
    status = Column(String, default="active", index=True)  # active, banned, deleted
    role = Column(String, default="user")  # user, admin, superadmin
    deletedAt = Column(DateTime, nullable=True)

    # Denormalized counters and caches (authoritative data: referrals, ledger)
    directReferrals = Column(Integer, default=0)
    balanceAvailable = Column(DECIMAL(18, 2), default=0)
    subscriptionExpiresAt = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)  # admin notes only

    @property
    def isActive(self) -> bool:
        return self.status == "active"

    @property
    def isAdmin(self) -> bool:
        return self.role in ("admin", "superadmin")

    @property
    def isSuperadmin(self) -> bool:
        return self.role == "superadmin"

    @property
    def displayName(self) -> str:
        parts = [p for p in (self.firstname, self.surname) if p]
        if parts:
            return " ".join(parts)
        return self.email or f"#{self.accountID}"

    def __repr__(self):
        return f"<Account(accountID={self.accountID}, sponsor={self.sponsorID}, status={self.status})>"
