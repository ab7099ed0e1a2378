# models/skip_record.py
"""
SkipRecord model - a commission evaluated and deliberately not paid.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin


class SkipReason(str, Enum):
    """Ineligibility reasons, in resolver precedence order."""
    NOT_ACTIVATED = "not_activated"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    NO_PAYMENT_THIS_MONTH = "no_payment_this_month"
    TOO_DEEP = "too_deep"
    LEVEL_NOT_UNLOCKED = "level_not_unlocked"
    MARKETING_FREE_ACCESS = "marketing_free_access"
    SPONSOR_INACTIVE = "sponsor_inactive"
    ALREADY_RECEIVED_BEFORE = "already_received_before"


class SkipRecord(Base, AuditMixin):
    __tablename__ = 'skip_records'

    skipID = Column(Integer, primary_key=True, autoincrement=True)

    paymentID = Column(Integer, ForeignKey('payment_events.paymentID'), nullable=False, index=True)
    accountID = Column(Integer, nullable=False, index=True)  # would-be beneficiary
    structure = Column(String(1), nullable=False)
    level = Column(Integer, nullable=False)

    reason = Column(String, nullable=False, index=True)
    forgoneAmount = Column(DECIMAL(18, 2), default=0)  # pass-up amount, not paid anywhere

    # Unlock context (level_not_unlocked)
    referralsPresent = Column(Integer, nullable=True)
    referralsRequired = Column(Integer, nullable=True)

    ruleVersion = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint('paymentID', 'accountID', 'level', 'structure', name='uq_skip_tuple'),
    )

    payment = relationship('PaymentEvent')

    def __repr__(self):
        return f"<SkipRecord(payment={self.paymentID}, account={self.accountID}, L{self.level}, {self.reason})>"
