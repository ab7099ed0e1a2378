# commission_system/services/activation_service.py
"""
Monthly activation service (Structure B).

An account is activated for a calendar month when its confirmed
Structure B payments of that month sum to at least
ACTIVATION_MIN_USD x USD_KZT_RATE (in base currency). External and admin
facts recorded with recordActivation() are authoritative and are not
overwritten by recalculation.
"""
from decimal import Decimal
from typing import Dict, Iterable, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Config
from models.payment_event import PaymentEvent
from models.monthly_activation import MonthlyActivation
from models.commission_rule import Structure
from commission_system.errors import ValidationError
from commission_system.utils.money import to_money
from commission_system.utils.time_machine import month_bounds

logger = logging.getLogger(__name__)

RECALCULATED = "recalculated"
AUTHORITATIVE_SOURCES = ("external", "admin")


class ActivationService:
    """Computes and records monthly activation facts."""

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def threshold() -> Decimal:
        return to_money(
            Decimal(Config.get(Config.ACTIVATION_MIN_USD, Decimal("40")))
            * Decimal(Config.get(Config.USD_KZT_RATE, Decimal("450")))
        )

    def monthTotals(self, year: int, month: int, accountIds: Optional[Iterable[int]] = None) -> Dict[int, Decimal]:
        """Sum of confirmed B payments per account within the month."""
        start, end = month_bounds(year, month)
        query = self.session.query(
            PaymentEvent.accountID,
            func.coalesce(func.sum(PaymentEvent.normalizedAmount), 0)
        ).filter(
            PaymentEvent.structure == Structure.B.value,
            PaymentEvent.status != "rejected",
            PaymentEvent.paidAt >= start,
            PaymentEvent.paidAt < end
        )
        if accountIds is not None:
            query = query.filter(PaymentEvent.accountID.in_(list(accountIds)))

        return {accountId: to_money(total) for accountId, total in query.group_by(PaymentEvent.accountID).all()}

    async def recalculateMonth(self, year: int, month: int, accountIds: Optional[Iterable[int]] = None) -> Dict:
        """
        Recompute activation of a month from payments.

        Accounts covered: those with B payments in the month plus those
        holding a recalculated row for it (so a rejected payment can
        deactivate).

        Returns:
            Summary with activated/deactivated/unchanged counts
        """
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid month: {month}")

        accountIds = list(accountIds) if accountIds is not None else None
        totals = self.monthTotals(year, month, accountIds)
        threshold = self.threshold()

        query = self.session.query(MonthlyActivation).filter_by(year=year, month=month)
        if accountIds is not None:
            query = query.filter(MonthlyActivation.accountID.in_(accountIds))
        existing = {row.accountID: row for row in query.all()}

        stats = {"year": year, "month": month, "activated": 0, "deactivated": 0, "unchanged": 0, "kept": 0}

        for accountId in sorted(set(totals) | set(existing)):
            row = existing.get(accountId)
            if row is not None and row.source in AUTHORITATIVE_SOURCES:
                stats["kept"] += 1
                continue

            total = totals.get(accountId, Decimal("0"))
            isActivated = total >= threshold

            if row is None:
                row = MonthlyActivation(accountID=accountId, year=year, month=month, source=RECALCULATED)
                self.session.add(row)
                wasActivated = False
            else:
                wasActivated = bool(row.isActivated)

            row.isActivated = isActivated
            row.totalAmount = total
            row.threshold = threshold

            if isActivated and not wasActivated:
                stats["activated"] += 1
            elif wasActivated and not isActivated:
                stats["deactivated"] += 1
            else:
                stats["unchanged"] += 1

        self.session.flush()

        logger.info(
            f"Activation {year}-{month:02d} recalculated: "
            f"+{stats['activated']} -{stats['deactivated']} ={stats['unchanged']} kept={stats['kept']}"
        )
        return stats

    async def recordActivation(
            self,
            accountId: int,
            year: int,
            month: int,
            isActivated: bool,
            source: str = "external",
            adminComment: Optional[str] = None,
            totalAmount=None
    ) -> MonthlyActivation:
        """Upsert an activation fact coming from outside the engine."""
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid month: {month}")

        row = self.session.query(MonthlyActivation).filter_by(
            accountID=accountId, year=year, month=month
        ).first()

        if row is None:
            row = MonthlyActivation(accountID=accountId, year=year, month=month)
            self.session.add(row)

        row.isActivated = isActivated
        row.source = source
        row.adminComment = adminComment
        if totalAmount is not None:
            row.totalAmount = to_money(totalAmount)
        row.threshold = self.threshold()

        self.session.flush()
        logger.info(f"Activation recorded: account={accountId} {year}-{month:02d} active={isActivated} ({source})")
        return row
