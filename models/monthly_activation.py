# models/monthly_activation.py
"""
MonthlyActivation model - Structure B activation per calendar month.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, Boolean, Text, UniqueConstraint

from models.base import Base, AuditMixin


class MonthlyActivation(Base, AuditMixin):
    __tablename__ = 'monthly_activations'

    activationID = Column(Integer, primary_key=True, autoincrement=True)
    accountID = Column(Integer, nullable=False, index=True)

    # Period
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)

    # Result
    isActivated = Column(Boolean, default=False, nullable=False)
    totalAmount = Column(DECIMAL(18, 2), default=0)  # qualifying B purchases, KZT
    threshold = Column(DECIMAL(18, 2), nullable=True)  # threshold used for the decision

    # Origin of the fact
    source = Column(String, default="recalculated")  # recalculated, external, admin
    adminComment = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('accountID', 'year', 'month', name='uq_activation_account_month'),
    )

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def __repr__(self):
        return f"<MonthlyActivation(account={self.accountID}, {self.period}, active={self.isActivated})>"
