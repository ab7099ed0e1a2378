# commission_system/utils/referral_counter.py
"""
Direct-referral counts at any instant, from the referrals history table.
"""
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from models.account import Account
from models.referral import Referral
from commission_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class ReferralCounter:
    """Reads and writes the sponsor edge history."""

    def __init__(self, session: Session):
        self.session = session

    def countAt(self, accountId: int, moment: datetime) -> int:
        """Number of edges of accountId open at moment."""
        return self.session.query(func.count(Referral.referralID)).filter(
            Referral.referrerID == accountId,
            Referral.createdAt <= moment,
            or_(Referral.removedAt.is_(None), Referral.removedAt > moment)
        ).scalar() or 0

    def countNow(self, accountId: int) -> int:
        return self.countAt(accountId, timeMachine.now)

    def openEdge(
            self,
            referrerId: int,
            referredId: int,
            at: Optional[datetime] = None,
            createdBy: Optional[int] = None
    ) -> Referral:
        """Record a new sponsor edge and bump the cached counter."""
        edge = Referral(
            referrerID=referrerId,
            referredID=referredId,
            createdAt=at or timeMachine.now,
            createdBy=createdBy
        )
        self.session.add(edge)
        self.session.flush()
        self.syncCachedCount(referrerId)
        return edge

    def closeEdge(self, referredId: int, reason: str, at: Optional[datetime] = None) -> Optional[int]:
        """
        Close the open edge of referredId.

        Returns:
            referrerID of the closed edge, None if there was none
        """
        at = at or timeMachine.now
        edge = self.session.query(Referral).filter(
            Referral.referredID == referredId,
            Referral.removedAt.is_(None)
        ).order_by(Referral.createdAt.desc()).first()

        if not edge:
            return None

        edge.removedAt = at
        edge.removedReason = reason
        self.session.flush()
        self.syncCachedCount(edge.referrerID)
        return edge.referrerID

    def syncCachedCount(self, accountId: int) -> int:
        """Overwrite Account.directReferrals with the current open-edge count."""
        count = self.session.query(func.count(Referral.referralID)).filter(
            Referral.referrerID == accountId,
            Referral.removedAt.is_(None)
        ).scalar() or 0

        account = self.session.get(Account, accountId)
        if account:
            account.directReferrals = count
        return count
