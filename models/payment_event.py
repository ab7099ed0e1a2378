# models/payment_event.py
"""
PaymentEvent model - a confirmed incoming payment.

Amount, payer, structure and paidAt are facts and never change after
intake. The exemption flag and the rejection fields are later admin
annotations on the fact.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin


class PaymentEvent(Base, AuditMixin):
    __tablename__ = 'payment_events'

    # Primary key
    paymentID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    accountID = Column(Integer, ForeignKey('accounts.accountID'), nullable=False, index=True)

    # Payment details
    structure = Column(String(1), nullable=False, index=True)  # A (subscription), B (product)
    amount = Column(DECIMAL(18, 2), nullable=False)  # in payment currency
    currency = Column(String(3), nullable=False, default="KZT")  # KZT or USD
    normalizedAmount = Column(DECIMAL(18, 2), nullable=False)  # in KZT
    paidAt = Column(DateTime, nullable=False, index=True)
    method = Column(String, nullable=True)  # gateway, balance
    externalRef = Column(String, nullable=True, unique=True)  # gateway transaction id

    # Marketing-free access: never generates commissions
    isExempt = Column(Boolean, default=False, nullable=False)
    exemptFlaggedAt = Column(DateTime, nullable=True)
    exemptFlaggedBy = Column(Integer, nullable=True)

    # Lifecycle
    status = Column(String, default="confirmed", index=True)  # confirmed, rejected
    rejectedAt = Column(DateTime, nullable=True)
    rejectedBy = Column(Integer, nullable=True)
    rejectionReason = Column(String, nullable=True)

    # Structure A subscription window opened by this payment
    validFrom = Column(DateTime, nullable=True)
    validUntil = Column(DateTime, nullable=True)

    # Relationships
    account = relationship('Account')

    @property
    def isRejected(self) -> bool:
        return self.status == "rejected"

    def __repr__(self):
        return (
            f"<PaymentEvent(paymentID={self.paymentID}, structure={self.structure}, "
            f"amount={self.normalizedAmount}, exempt={self.isExempt})>"
        )
