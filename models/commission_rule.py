# models/commission_rule.py
"""
CommissionRule model - percent and unlock threshold per (structure, level).

Rows are versioned by effectiveFrom: the rule set in force at an instant
is the newest version of each level with effectiveFrom <= that instant.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, Text, UniqueConstraint

from models.base import Base, AuditMixin


class Structure(str, Enum):
    """Compensation structures."""
    A = "A"  # subscription, 5 levels flat
    B = "B"  # products, 10 levels tiered


MAX_DEPTH = {
    Structure.A: 5,
    Structure.B: 10,
}


class CommissionRule(Base, AuditMixin):
    __tablename__ = 'commission_rules'

    ruleID = Column(Integer, primary_key=True, autoincrement=True)

    planID = Column(String, nullable=False, default="default", index=True)
    structure = Column(String(1), nullable=False)
    level = Column(Integer, nullable=False)

    percent = Column(DECIMAL(6, 4), nullable=False)  # 0.1000 = 10%
    unlockReferrals = Column(Integer, nullable=False, default=0)  # direct referrals needed

    effectiveFrom = Column(DateTime, nullable=False)
    isActive = Column(Boolean, default=True, nullable=False)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('planID', 'structure', 'level', 'effectiveFrom', name='uq_rule_version'),
    )

    def __repr__(self):
        return (
            f"<CommissionRule({self.structure}{self.level}: {self.percent}, "
            f"unlock={self.unlockReferrals}, from={self.effectiveFrom})>"
        )
