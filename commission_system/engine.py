# commission_system/engine.py
"""
CommissionEngine - the operations the admin surface and the payment
gateway call into.

Admin operations check the caller's role before reading any financial
data, are recorded in admin_actions and commit their own unit of work.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from config import Config
from models.admin_action import AdminAction
from models.commission_rule import Structure
from models.ledger_entry import LedgerEntry
from models.skip_record import SkipRecord
from commission_system.errors import AlreadyReversedError, CommissionError, ValidationError
from commission_system.events.event_bus import eventBus, CommissionEvents
from commission_system.services.account_service import AccountService
from commission_system.services.activation_service import ActivationService
from commission_system.services.audit_service import AuditService
from commission_system.services.backfill_service import BackfillService
from commission_system.services.commission_service import CommissionService
from commission_system.services.fix_service import FixService
from commission_system.services.ledger_service import LedgerService
from commission_system.services.payment_service import PaymentService
from commission_system.services.report_service import ReportService
from commission_system.services.reversal_service import ReversalService
from commission_system.utils.admin_guard import (
    ADMIN_ROLES, SUPERADMIN_ROLES, require_role, require_confirmation
)
from commission_system.utils.money import to_money

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    """Make a result summary storable in a JSON column."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (Decimal, datetime)):
        return str(value)
    return value


class CommissionEngine:
    """Facade over the commission services."""

    def __init__(self, session: Session):
        self.session = session
        self.accounts = AccountService(session)
        self.activation = ActivationService(session)
        self.audits = AuditService(session)
        self.backfill = BackfillService(session)
        self.commissions = CommissionService(session)
        self.fixes = FixService(session)
        self.ledger = LedgerService(session)
        self.payments = PaymentService(session)
        self.reports = ReportService(session)
        self.reversal = ReversalService(session)

    # ═══════════════════════════════════════════════════════════════════════
    # ADMIN PLUMBING
    # ═══════════════════════════════════════════════════════════════════════

    def _record(self, adminId, action, params, dryRun, result, status="ok"):
        self.session.add(AdminAction(
            adminID=adminId,
            action=action,
            params=_jsonable(params),
            dryRun=dryRun,
            result=_jsonable(result),
            status=status
        ))
        self.session.commit()

    async def _adminOperation(self, action: str, adminId, roles, params: Dict, operation,
                              dryRun: bool = False, summarize=None):
        """Authorize, run, record and commit an admin operation."""
        try:
            require_role(self.session, adminId, roles)
        except CommissionError as e:
            self._record(adminId, action, params, dryRun, {"error": str(e)}, status="rejected")
            raise

        try:
            result = await operation()
        except CommissionError as e:
            self.session.rollback()
            self._record(adminId, action, params, dryRun, {"error": str(e)}, status="error")
            raise

        self._record(adminId, action, params, dryRun, summarize(result) if summarize else result)
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # PAYMENTS AND DISTRIBUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def confirmPayment(self, accountId: int, structure, amount, emit: bool = True, **kwargs):
        """Record a confirmed payment, commit it and announce it."""
        payment = await self.payments.confirmPayment(accountId, structure, amount, **kwargs)
        self.session.commit()

        if emit:
            await eventBus.emit(CommissionEvents.PAYMENT_CONFIRMED, {
                "paymentId": payment.paymentID,
                "accountId": accountId,
                "structure": payment.structure,
            })
        return payment

    async def distributeCommission(self, paymentId: int) -> Dict:
        """
        Distribute one payment. Safe to call repeatedly.

        Returns:
            Summary: created entries, recorded skips, pass-up count/amount
        """
        written = await self.commissions.distribute(paymentId)
        self.session.commit()

        entries = [w for w in written if isinstance(w, LedgerEntry)]
        skips = [w for w in written if isinstance(w, SkipRecord)]

        result = {
            "paymentId": paymentId,
            "created": len(entries),
            "entryIds": [e.entryID for e in entries],
            "totalAmount": to_money(sum((Decimal(e.amount) for e in entries), Decimal("0"))),
            "skipped": len(skips),
            "skipReasons": [s.reason for s in skips],
            "passUpCount": len(skips),
            "passUpAmount": to_money(sum((Decimal(s.forgoneAmount or 0) for s in skips), Decimal("0"))),
        }

        if entries:
            await eventBus.emit(CommissionEvents.COMMISSION_DISTRIBUTED, result)
        return result

    async def flagExempt(self, paymentId: int, admin: int, isExempt: bool = True):
        return await self._adminOperation(
            "flag_exempt", admin, ADMIN_ROLES, {"paymentId": paymentId, "isExempt": isExempt},
            lambda: self.payments.flagExempt(paymentId, admin, isExempt),
            summarize=lambda p: {"paymentId": p.paymentID, "isExempt": p.isExempt}
        )

    async def rejectPayment(self, paymentId: int, reason: str, admin: int) -> Dict:
        return await self._adminOperation(
            "reject_payment", admin, SUPERADMIN_ROLES, {"paymentId": paymentId, "reason": reason},
            lambda: self.payments.rejectPayment(paymentId, admin, reason)
        )

    async def recordActivation(self, accountId: int, year: int, month: int, isActivated: bool,
                               source: str = "external", adminComment: Optional[str] = None):
        """Consume an 'account activation recomputed' fact."""
        row = await self.activation.recordActivation(
            accountId, year, month, isActivated, source=source, adminComment=adminComment
        )
        self.session.commit()
        await eventBus.emit(CommissionEvents.ACTIVATION_RECOMPUTED, {
            "accountId": accountId, "year": year, "month": month, "isActivated": isActivated
        })
        return row

    async def recalculateActivations(self, year: int, month: int) -> Dict:
        stats = await self.activation.recalculateMonth(year, month)
        self.session.commit()
        return stats

    async def releaseMatured(self) -> Dict:
        result = await self.ledger.releaseMatured()
        self.session.commit()
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # BALANCES
    # ═══════════════════════════════════════════════════════════════════════

    async def getBalance(self, accountId: int) -> Dict:
        return await self.ledger.getBalance(accountId)

    async def adjustBalance(self, accountId: int, signedAmount, reason: str, admin: int) -> Dict:
        return await self._adminOperation(
            "adjust_balance", admin, SUPERADMIN_ROLES,
            {"accountId": accountId, "amount": signedAmount, "reason": reason},
            lambda: self.ledger.adjustBalance(accountId, signedAmount, reason, admin)
        )

    async def grantBonus(self, accountId: int, amount, reason: str, admin: int):
        return await self._adminOperation(
            "grant_bonus", admin, SUPERADMIN_ROLES,
            {"accountId": accountId, "amount": amount, "reason": reason},
            lambda: self.ledger.grantBonus(accountId, amount, reason, admin),
            summarize=lambda e: {"entryId": e.entryID, "amount": e.amount}
        )

    # ═══════════════════════════════════════════════════════════════════════
    # AUDITS
    # ═══════════════════════════════════════════════════════════════════════

    async def auditBalanceIntegrity(self, admin: int) -> List[Dict]:
        return await self._adminOperation(
            "audit_balance", admin, ADMIN_ROLES, {}, self.audits.auditBalanceIntegrity,
            summarize=lambda findings: {"findings": len(findings)}
        )

    async def auditUnlockViolations(self, admin: int) -> List[Dict]:
        return await self._adminOperation(
            "audit_unlock", admin, ADMIN_ROLES, {}, self.audits.auditUnlockViolations,
            summarize=lambda findings: {"findings": len(findings)}
        )

    async def auditMarketingFreeViolations(self, admin: int) -> List[Dict]:
        return await self._adminOperation(
            "audit_marketing", admin, ADMIN_ROLES, {}, self.audits.auditMarketingFreeViolations,
            summarize=lambda findings: {"findings": len(findings)}
        )

    async def auditEarlyUnlockViolations(self, admin: int, lookbackDays: Optional[int] = None) -> List[Dict]:
        return await self._adminOperation(
            "audit_early_unlock", admin, ADMIN_ROLES, {"lookbackDays": lookbackDays},
            lambda: self.audits.auditEarlyUnlockViolations(lookbackDays),
            summarize=lambda findings: {"findings": len(findings)}
        )

    async def auditGraphIntegrity(self, admin: int) -> Dict:
        return await self._adminOperation(
            "audit_graph", admin, ADMIN_ROLES, {}, self.audits.auditGraphIntegrity,
            summarize=lambda r: {k: len(v) for k, v in r.items()}
        )

    # ═══════════════════════════════════════════════════════════════════════
    # FIXES
    # ═══════════════════════════════════════════════════════════════════════

    async def fixUnlockViolations(self, dryRun: bool, admin: int, previewToken: Optional[str] = None) -> Dict:
        return await self._adminOperation(
            "fix_unlock", admin, SUPERADMIN_ROLES, {"previewToken": previewToken},
            lambda: self.fixes.fixUnlockViolations(dryRun, admin, previewToken), dryRun=dryRun
        )

    async def fixMarketingFreeViolations(self, dryRun: bool, admin: int, previewToken: Optional[str] = None) -> Dict:
        return await self._adminOperation(
            "fix_marketing", admin, SUPERADMIN_ROLES, {"previewToken": previewToken},
            lambda: self.fixes.fixMarketingFreeViolations(dryRun, admin, previewToken), dryRun=dryRun
        )

    async def fixEarlyUnlockViolations(self, dryRun: bool, admin: int, previewToken: Optional[str] = None,
                                       lookbackDays: Optional[int] = None) -> Dict:
        return await self._adminOperation(
            "fix_early_unlock", admin, SUPERADMIN_ROLES,
            {"previewToken": previewToken, "lookbackDays": lookbackDays},
            lambda: self.fixes.fixEarlyUnlockViolations(dryRun, admin, previewToken, lookbackDays), dryRun=dryRun
        )

    # ═══════════════════════════════════════════════════════════════════════
    # BACKFILL / RECALCULATION
    # ═══════════════════════════════════════════════════════════════════════

    async def backfillMissingCommissions(self, scope=None, dryRun: bool = True, admin: int = None,
                                         previewToken: Optional[str] = None, resume: bool = False) -> Dict:
        return await self._batch("backfill", scope, dryRun, admin, previewToken, resume)

    async def recalculateCommissions(self, scope=None, dryRun: bool = True, admin: int = None,
                                     previewToken: Optional[str] = None, resume: bool = False) -> Dict:
        return await self._batch("recalculation", scope, dryRun, admin, previewToken, resume)

    async def _batch(self, mode, scope, dryRun, admin, previewToken, resume) -> Dict:
        async def operation():
            if dryRun:
                result = await self.backfill.plan(scope, mode=mode, resume=resume)
            else:
                result = await self.backfill.commit(scope, previewToken, admin, mode=mode, resume=resume)
            return result.to_dict()

        return await self._adminOperation(
            mode, admin, SUPERADMIN_ROLES,
            {"scope": scope, "previewToken": previewToken, "resume": resume},
            operation, dryRun=dryRun
        )

    # ═══════════════════════════════════════════════════════════════════════
    # REVERSAL
    # ═══════════════════════════════════════════════════════════════════════

    async def reverseCommissions(
            self,
            beneficiaryScope,
            reason: str,
            admin: int,
            confirmation: Optional[str] = None,
            structure: Optional[str] = None,
            paymentId: Optional[int] = None,
            entryIds: Optional[List[int]] = None
    ) -> Dict:
        """
        Neutralize live commissions of one or more beneficiaries.

        Args:
            beneficiaryScope: Account id or list of ids
            confirmation: Typed REVERSAL_CONFIRMATION_PHRASE

        Raises:
            ConfirmationPhraseError: phrase mismatch
            AlreadyReversedError: every matching entry was reversed before
        """
        beneficiaryIds = [beneficiaryScope] if isinstance(beneficiaryScope, int) else list(beneficiaryScope or [])

        async def operation():
            require_confirmation(confirmation, Config.get(Config.REVERSAL_CONFIRMATION_PHRASE))
            if not beneficiaryIds and not entryIds:
                raise ValidationError("Reversal scope is empty")

            reversible, already = self.reversal.collectCommissions(
                beneficiaryIds, structure=structure, paymentId=paymentId, entryIds=entryIds
            )
            if entryIds and already:
                raise AlreadyReversedError(f"Entries already reversed: {[e.entryID for e in already]}")
            if not reversible and already:
                raise AlreadyReversedError("All commissions in scope were already reversed")

            adjustments = await self.reversal.reverseEntries(reversible, reason, admin, trigger="manual")
            total = to_money(sum((Decimal(e.amount) for e in reversible), Decimal("0")))
            return {
                "reversedCount": len(reversible),
                "totalAmount": total,
                "adjustmentIds": [a.entryID for a in adjustments],
            }

        result = await self._adminOperation(
            "reverse_commissions", admin, SUPERADMIN_ROLES,
            {"beneficiaryIds": beneficiaryIds, "reason": reason, "structure": structure,
             "paymentId": paymentId, "entryIds": entryIds},
            operation
        )
        if result["reversedCount"]:
            await eventBus.emit(CommissionEvents.COMMISSION_REVERSED, result)
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # ACCOUNTS
    # ═══════════════════════════════════════════════════════════════════════

    async def registerAccount(self, **kwargs):
        account = await self.accounts.register(**kwargs)
        self.session.commit()
        return account

    async def bindSponsor(self, accountId: int, sponsorId: int, admin: Optional[int] = None):
        """First bind is open to admins; moving an existing edge needs superadmin."""
        account = self.accounts.getAccount(accountId)
        rebinding = account.sponsorID is not None and account.sponsorID != sponsorId
        roles = SUPERADMIN_ROLES if rebinding else ADMIN_ROLES

        return await self._adminOperation(
            "bind_sponsor", admin, roles, {"accountId": accountId, "sponsorId": sponsorId},
            lambda: self.accounts.bindSponsor(accountId, sponsorId, admin, allowRebind=rebinding),
            summarize=lambda a: {"accountId": a.accountID, "sponsorId": a.sponsorID}
        )

    async def setAccountStatus(self, accountId: int, status: str, admin: int):
        return await self._adminOperation(
            "account_status", admin, ADMIN_ROLES, {"accountId": accountId, "status": status},
            lambda: self.accounts.setStatus(accountId, status, admin),
            summarize=lambda a: {"accountId": a.accountID, "status": a.status}
        )

    async def purgeAccount(self, accountId: int, admin: int, confirmation: Optional[str] = None,
                           reassignDownline: bool = True) -> Dict:
        async def operation():
            require_confirmation(confirmation, Config.get(Config.PURGE_CONFIRMATION_PHRASE))
            return await self.accounts.hardPurge(accountId, admin, reassignDownline)

        return await self._adminOperation(
            "purge_account", admin, SUPERADMIN_ROLES,
            {"accountId": accountId, "reassignDownline": reassignDownline},
            operation
        )

    # ═══════════════════════════════════════════════════════════════════════
    # REPORTS
    # ═══════════════════════════════════════════════════════════════════════

    async def structureStats(self, structure, admin: int, dateFrom=None, dateTo=None) -> Dict:
        return await self._adminOperation(
            "report_structure", admin, ADMIN_ROLES,
            {"structure": Structure(structure).value, "dateFrom": dateFrom, "dateTo": dateTo},
            lambda: self.reports.structureStats(structure, dateFrom, dateTo),
            summarize=lambda r: r["totals"]
        )

    async def accountCommissionAudit(self, accountId: int, admin: int, structure=None) -> List[Dict]:
        return await self._adminOperation(
            "report_account", admin, ADMIN_ROLES, {"accountId": accountId},
            lambda: self.reports.accountCommissionAudit(accountId, structure),
            summarize=lambda rows: {"rows": len(rows)}
        )
