# commission_system/services/account_service.py
"""
Account lifecycle: registration, sponsor binding, ban, soft delete, purge.
"""
from datetime import datetime
from typing import Dict, Optional
import logging

from sqlalchemy.orm import Session

from models.account import Account
from models.ledger_entry import LedgerEntry
from models.payment_event import PaymentEvent
from models.monthly_activation import MonthlyActivation
from commission_system.errors import AccountNotFoundError, SponsorBindError, ValidationError
from commission_system.utils.chain_walker import ChainWalker
from commission_system.utils.referral_counter import ReferralCounter
from commission_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ROLES = ("user", "admin", "superadmin")


class AccountService:
    """Participants and the sponsor graph."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)
        self.referrals = ReferralCounter(session)

    def getAccount(self, accountId: int) -> Account:
        account = self.session.get(Account, accountId)
        if not account:
            raise AccountNotFoundError(f"Account {accountId} not found")
        return account

    async def register(
            self,
            email: Optional[str] = None,
            sponsorId: Optional[int] = None,
            firstname: Optional[str] = None,
            surname: Optional[str] = None,
            role: str = "user",
            registeredAt: Optional[datetime] = None
    ) -> Account:
        """Create an account, optionally bound under a sponsor at registration time."""
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")

        registeredAt = registeredAt or timeMachine.now

        if sponsorId is not None:
            sponsor = self.getAccount(sponsorId)
            if sponsor.status == "deleted":
                raise SponsorBindError(f"Sponsor {sponsorId} is deleted")

        account = Account(
            email=email,
            firstname=firstname,
            surname=surname,
            sponsorID=sponsorId,
            role=role,
            registeredAt=registeredAt,
            directReferrals=0
        )
        self.session.add(account)
        self.session.flush()

        if sponsorId is not None:
            self.referrals.openEdge(sponsorId, account.accountID, at=registeredAt)

        logger.info(f"Account {account.accountID} registered (sponsor={sponsorId})")
        return account

    async def bindSponsor(
            self,
            accountId: int,
            sponsorId: int,
            adminId: Optional[int] = None,
            allowRebind: bool = False,
            at: Optional[datetime] = None
    ) -> Account:
        """
        Attach an account under a sponsor.

        Raises:
            SponsorBindError: rebinding without allowRebind, unknown/deleted
                sponsor, or the edge would close a cycle
        """
        account = self.getAccount(accountId)
        at = at or timeMachine.now

        if account.sponsorID == sponsorId:
            return account

        if account.sponsorID is not None and not allowRebind:
            raise SponsorBindError(
                f"Account {accountId} already has sponsor {account.sponsorID}; rebinding requires superadmin"
            )

        sponsor = self.session.get(Account, sponsorId)
        if not sponsor:
            raise SponsorBindError(f"Sponsor {sponsorId} not found")
        if sponsor.status == "deleted":
            raise SponsorBindError(f"Sponsor {sponsorId} is deleted")

        if self.walker.would_create_cycle(accountId, sponsorId):
            raise SponsorBindError(f"Binding {accountId} under {sponsorId} would create a cycle")

        previous = account.sponsorID
        if previous is not None:
            self.referrals.closeEdge(accountId, reason="rebind", at=at)

        account.sponsorID = sponsorId
        self.session.flush()
        self.referrals.openEdge(sponsorId, accountId, at=at, createdBy=adminId)

        logger.info(f"Account {accountId} bound to sponsor {sponsorId} (was {previous}) by {adminId}")
        return account

    async def setStatus(self, accountId: int, status: str, adminId: Optional[int] = None) -> Account:
        """Ban/unban and soft delete/restore."""
        if status not in ("active", "banned", "deleted"):
            raise ValidationError(f"Unknown status: {status}")

        account = self.getAccount(accountId)
        previous = account.status
        account.status = status
        account.deletedAt = timeMachine.now if status == "deleted" else None
        self.session.flush()

        logger.info(f"Account {accountId} status {previous} -> {status} by admin {adminId}")
        return account

    async def ban(self, accountId: int, adminId: Optional[int] = None) -> Account:
        return await self.setStatus(accountId, "banned", adminId)

    async def unban(self, accountId: int, adminId: Optional[int] = None) -> Account:
        return await self.setStatus(accountId, "active", adminId)

    async def softDelete(self, accountId: int, adminId: Optional[int] = None) -> Account:
        return await self.setStatus(accountId, "deleted", adminId)

    async def restore(self, accountId: int, adminId: Optional[int] = None) -> Account:
        return await self.setStatus(accountId, "active", adminId)

    async def hardPurge(self, accountId: int, adminId: int, reassignDownline: bool = True) -> Dict:
        """
        Physically delete an account.

        Direct referrals are moved to the purged account's sponsor, or
        orphaned (sponsorID=None) when reassignDownline is False or there
        is no upper sponsor.

        Raises:
            ValidationError: the account owns ledger entries or payments
        """
        account = self.getAccount(accountId)

        if self.session.query(LedgerEntry.entryID).filter_by(accountID=accountId).first():
            raise ValidationError(f"Account {accountId} owns ledger entries and cannot be purged")
        if self.session.query(PaymentEvent.paymentID).filter_by(accountID=accountId).first():
            raise ValidationError(f"Account {accountId} owns payments and cannot be purged")

        now = timeMachine.now
        upper = account.sponsorID if reassignDownline else None

        children = self.session.query(Account).filter(Account.sponsorID == accountId).all()
        for child in children:
            self.referrals.closeEdge(child.accountID, reason="purge", at=now)
            child.sponsorID = upper
            self.session.flush()
            if upper is not None:
                self.referrals.openEdge(upper, child.accountID, at=now, createdBy=adminId)

        if account.sponsorID is not None:
            self.referrals.closeEdge(accountId, reason="purge", at=now)

        self.session.query(MonthlyActivation).filter_by(accountID=accountId).delete()
        self.session.delete(account)
        self.session.flush()

        result = {
            "accountId": accountId,
            "downlineMoved": len(children),
            "newSponsorId": upper,
        }
        logger.warning(f"Account {accountId} PURGED by admin {adminId}: {result}")
        return result
