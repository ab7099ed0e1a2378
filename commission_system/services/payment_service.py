# commission_system/services/payment_service.py
"""
Payment intake: confirmation, exemption flag, rejection.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Config
from models.account import Account
from models.payment_event import PaymentEvent
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.commission_rule import Structure
from models.provenance import PurchaseProvenance
from commission_system.errors import (
    AccountNotFoundError, InsufficientBalanceError, PaymentNotFoundError, ValidationError
)
from commission_system.services.ledger_service import LedgerService
from commission_system.services.activation_service import ActivationService
from commission_system.services.reversal_service import ReversalService, reversed_entry_ids
from commission_system.utils.money import normalize_amount
from commission_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class PaymentService:
    """Records payment facts handed over by the payment gateway."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = LedgerService(session)
        self.activation = ActivationService(session)
        self.reversal = ReversalService(session)

    def getPayment(self, paymentId: int) -> PaymentEvent:
        payment = self.session.get(PaymentEvent, paymentId)
        if not payment:
            raise PaymentNotFoundError(f"Payment {paymentId} not found")
        return payment

    async def confirmPayment(
            self,
            accountId: int,
            structure,
            amount,
            currency: str = "KZT",
            paidAt: Optional[datetime] = None,
            isExempt: bool = False,
            method: Optional[str] = None,
            externalRef: Optional[str] = None,
            payFromBalance: bool = False
    ) -> PaymentEvent:
        """
        Record a confirmed payment.

        Structure A payments open a subscription window, Structure B
        payments refresh the payer's monthly activation. With
        payFromBalance the amount is debited as a completed purchase entry.
        Replaying an externalRef returns the stored payment.
        """
        structure = Structure(structure)

        if externalRef:
            existing = self.session.query(PaymentEvent).filter_by(externalRef=externalRef).first()
            if existing:
                logger.info(f"Payment {externalRef} already recorded as {existing.paymentID}")
                return existing

        account = self.session.get(Account, accountId)
        if not account:
            raise AccountNotFoundError(f"Account {accountId} not found")
        if not account.isActive:
            raise ValidationError(f"Account {accountId} is {account.status}")

        if Decimal(str(amount)) <= 0:
            raise ValidationError("Payment amount must be positive")

        paidAt = paidAt or timeMachine.now
        normalized = normalize_amount(amount, currency)

        if payFromBalance:
            spendable = self.ledger.computeBalance(accountId)["spendable"]
            if spendable < normalized:
                raise InsufficientBalanceError(
                    f"Balance payment {normalized} exceeds spendable balance {spendable}"
                )

        payment = PaymentEvent(
            accountID=accountId,
            structure=structure.value,
            amount=Decimal(str(amount)),
            currency=(currency or "KZT").upper(),
            normalizedAmount=normalized,
            paidAt=paidAt,
            method="balance" if payFromBalance else method,
            externalRef=externalRef,
            isExempt=isExempt,
            status="confirmed"
        )

        if structure == Structure.A:
            payment.validFrom, payment.validUntil = self._nextWindow(accountId, paidAt)
            account.subscriptionExpiresAt = payment.validUntil

        self.session.add(payment)
        self.session.flush()

        if payFromBalance:
            self.ledger.addEntry(
                accountId,
                LedgerKind.PURCHASE,
                -normalized,
                LedgerStatus.COMPLETED,
                provenance=PurchaseProvenance(paymentID=payment.paymentID),
                paymentID=payment.paymentID,
                createdBy=accountId
            )

        if structure == Structure.B:
            await self.activation.recalculateMonth(paidAt.year, paidAt.month, [accountId])

        logger.info(
            f"Payment {payment.paymentID} confirmed: account={accountId}, {structure.value}, "
            f"{amount} {payment.currency} -> {normalized}, exempt={isExempt}"
        )
        return payment

    def _nextWindow(self, accountId: int, paidAt: datetime):
        """Subscription window: starts at the later of paidAt and the current expiry."""
        currentEnd = self.session.query(func.max(PaymentEvent.validUntil)).filter(
            PaymentEvent.accountID == accountId,
            PaymentEvent.structure == Structure.A.value,
            PaymentEvent.status != "rejected"
        ).scalar()

        start = paidAt
        if currentEnd is not None and currentEnd > paidAt:
            start = currentEnd

        days = int(Config.get(Config.SUBSCRIPTION_DAYS, 365))
        return start, start + timedelta(days=days)

    async def flagExempt(self, paymentId: int, adminId: Optional[int], isExempt: bool = True) -> PaymentEvent:
        """Mark a payment as marketing-free access (or clear the mark)."""
        payment = self.getPayment(paymentId)
        payment.isExempt = isExempt
        payment.exemptFlaggedAt = timeMachine.now if isExempt else None
        payment.exemptFlaggedBy = adminId if isExempt else None
        self.session.flush()

        logger.info(f"Payment {paymentId} exempt={isExempt} set by admin {adminId}")
        return payment

    async def rejectPayment(self, paymentId: int, adminId: Optional[int], reason: str) -> Dict:
        """
        Invalidate a payment after the fact.

        Open (pending/frozen) entries of the payment go to failed,
        completed ones are reversed. Entries already neutralized by a
        reversal are left alone.
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        payment = self.getPayment(paymentId)
        if payment.isRejected:
            raise ValidationError(f"Payment {paymentId} is already rejected")

        entries = self.session.query(LedgerEntry).filter(
            LedgerEntry.paymentID == paymentId,
            LedgerEntry.kind.in_([LedgerKind.COMMISSION.value, LedgerKind.PURCHASE.value]),
            LedgerEntry.status != LedgerStatus.FAILED.value
        ).order_by(LedgerEntry.entryID).all()

        neutralized = reversed_entry_ids(self.session, [e.entryID for e in entries])

        failed = []
        toReverse = []
        for entry in entries:
            if entry.entryID in neutralized:
                continue
            if entry.status in (LedgerStatus.PENDING.value, LedgerStatus.FROZEN.value):
                self.ledger.failEntry(entry, f"payment {paymentId} rejected: {reason}")
                failed.append(entry)
            else:
                toReverse.append(entry)

        adjustments = await self.reversal.reverseEntries(
            toReverse,
            f"payment {paymentId} rejected: {reason}",
            adminId,
            trigger="payment_rejected"
        )

        payment.status = "rejected"
        payment.rejectedAt = timeMachine.now
        payment.rejectedBy = adminId
        payment.rejectionReason = reason
        self.session.flush()

        if payment.structure == Structure.B.value:
            await self.activation.recalculateMonth(payment.paidAt.year, payment.paidAt.month, [payment.accountID])
        else:
            account = self.session.get(Account, payment.accountID)
            account.subscriptionExpiresAt = self.session.query(func.max(PaymentEvent.validUntil)).filter(
                PaymentEvent.accountID == payment.accountID,
                PaymentEvent.structure == Structure.A.value,
                PaymentEvent.status != "rejected"
            ).scalar()

        result = {
            "paymentId": paymentId,
            "failed": len(failed),
            "reversed": len(toReverse),
            "adjustments": [a.entryID for a in adjustments],
        }
        logger.warning(f"Payment {paymentId} rejected by admin {adminId}: {result}")
        return result
