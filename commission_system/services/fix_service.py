# commission_system/services/fix_service.py
"""
Fixes for audit findings.

Every fix is a reversal of the offending entries. A dry run returns the
same shape as the committing run plus a preview token; the committing
run re-runs the audit and refuses to write if the findings changed.
"""
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from models.ledger_entry import LedgerEntry
from commission_system.services.audit_service import AuditService
from commission_system.services.reversal_service import ReversalService
from commission_system.utils.money import to_money
from commission_system.utils.preview import preview_token, check_preview

logger = logging.getLogger(__name__)

FIX_REASONS = {
    "fix_unlock": "Level unlock violation (referral count below threshold)",
    "fix_marketing": "Commission from marketing-free access payment",
    "fix_early_unlock": "Early-unlock violation (threshold not met at payment time)",
}


class FixService:
    """Dry-run-then-commit reversal of violating entries."""

    def __init__(self, session: Session):
        self.session = session
        self.audit = AuditService(session)
        self.reversal = ReversalService(session)

    async def fixUnlockViolations(self, dryRun: bool = True, adminId: Optional[int] = None,
                                  previewToken: Optional[str] = None) -> Dict:
        findings = await self.audit.auditUnlockViolations()
        entryIds = [entryId for finding in findings for entryId in finding["violatingEntryIds"]]
        return await self._apply("fix_unlock", entryIds, dryRun, adminId, previewToken)

    async def fixMarketingFreeViolations(self, dryRun: bool = True, adminId: Optional[int] = None,
                                         previewToken: Optional[str] = None) -> Dict:
        findings = await self.audit.auditMarketingFreeViolations()
        return await self._apply("fix_marketing", [f["entryId"] for f in findings], dryRun, adminId, previewToken)

    async def fixEarlyUnlockViolations(self, dryRun: bool = True, adminId: Optional[int] = None,
                                       previewToken: Optional[str] = None,
                                       lookbackDays: Optional[int] = None) -> Dict:
        findings = await self.audit.auditEarlyUnlockViolations(lookbackDays)
        return await self._apply("fix_early_unlock", [f["entryId"] for f in findings], dryRun, adminId, previewToken)

    async def _apply(self, trigger: str, entryIds: List[int], dryRun: bool, adminId: Optional[int],
                     previewToken: Optional[str]) -> Dict:
        entryIds = sorted(set(entryIds))
        entries = [self.session.get(LedgerEntry, entryId) for entryId in entryIds]
        total = to_money(sum((Decimal(e.amount) for e in entries), Decimal("0")))

        token = preview_token({
            "fix": trigger,
            "entries": [[e.entryID, e.accountID, str(to_money(e.amount))] for e in entries],
        })

        result = {
            "count": len(entries),
            "totalAmount": total,
            "entryIds": entryIds,
            "dryRun": dryRun,
            "previewToken": token,
        }

        if dryRun:
            logger.info(f"{trigger} dry run: {len(entries)} entries, total {total}")
            return result

        check_preview(token, previewToken)

        adjustments = await self.reversal.reverseEntries(entries, FIX_REASONS[trigger], adminId, trigger=trigger)
        result["adjustmentIds"] = [a.entryID for a in adjustments]

        logger.info(f"{trigger} committed by admin {adminId}: {len(entries)} entries reversed, total {total}")
        return result
