# commission_system/services/backfill_service.py
"""
Backfill / reconciliation engine.

plan() and commit() build the same decision list through
CommissionService.decide(); commit() refuses to write when the decisions
differ from the presented preview. Committing runs are chunked by
payment id and checkpointed in batch_jobs after every chunk.

Modes:
    backfill       create missing commissions (and record skips)
    recalculation  backfill + retire existing commissions that the
                   resolver, as of the payment time, deems ineligible
"""
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union
import logging

from sqlalchemy.orm import Session

from config import Config
from models.account import Account
from models.payment_event import PaymentEvent
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from models.batch_job import BatchJob
from models.skip_record import SkipRecord
from commission_system.config.rules import RuleSet
from commission_system.errors import AccountNotFoundError, ValidationError
from commission_system.services.commission_service import CommissionService, Decision
from commission_system.services.eligibility_service import StagedEntries
from commission_system.services.reversal_service import ReversalService, reversed_entry_ids, REVERSIBLE_STATUSES
from commission_system.utils.chain_walker import ChainWalker
from commission_system.utils.money import to_money
from commission_system.utils.preview import preview_token, check_preview
from commission_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

MODES = ("backfill", "recalculation")
SCOPE_DEPTH = 10  # deepest structure


@dataclass
class BatchResult:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    retired: int = 0
    totalAmount: Decimal = Decimal("0")
    retiredAmount: Decimal = Decimal("0")
    dryRun: bool = True
    previewToken: Optional[str] = None
    lastPaymentId: int = 0
    jobId: Optional[int] = None

    # Dry-run vocabulary
    @property
    def wouldCreate(self) -> int:
        return self.created

    @property
    def wouldSkip(self) -> int:
        return self.skipped

    @property
    def wouldRetire(self) -> int:
        return self.retired

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["totalAmount"] = to_money(self.totalAmount)
        data["retiredAmount"] = to_money(self.retiredAmount)
        if self.dryRun:
            data["wouldCreate"] = self.created
            data["wouldSkip"] = self.skipped
            data["wouldRetire"] = self.retired
        return data


@dataclass
class PlannedAction:
    action: str  # create, skip, retire
    paymentId: int
    beneficiaryId: int
    level: int
    structure: str
    amount: Decimal
    reason: Optional[str] = None
    entryId: Optional[int] = None

    def signature(self) -> list:
        return [
            self.action, self.paymentId, self.beneficiaryId, self.level,
            self.structure, str(to_money(self.amount)), self.reason, self.entryId
        ]


@dataclass
class BatchPlan:
    mode: str
    scope: Dict
    startAfter: int
    items: List[Tuple[PaymentEvent, RuleSet, List[Tuple[PlannedAction, Optional[Decision]]]]] = field(
        default_factory=list
    )

    @property
    def actions(self) -> List[PlannedAction]:
        return [action for _, _, pairs in self.items for action, _ in pairs]

    @property
    def token(self) -> str:
        return preview_token({
            "mode": self.mode,
            "scope": self.scope,
            "startAfter": self.startAfter,
            "actions": [action.signature() for action in self.actions],
        })

    def summary(self) -> BatchResult:
        result = BatchResult(dryRun=True, previewToken=self.token)
        for payment, _, pairs in self.items:
            result.processed += 1
            result.lastPaymentId = payment.paymentID
            for action, _ in pairs:
                if action.action == "create":
                    result.created += 1
                    result.totalAmount += action.amount
                elif action.action == "skip":
                    result.skipped += 1
                elif action.action == "retire":
                    result.retired += 1
                    result.retiredAmount += action.amount
        return result


def normalize_scope(scope: Union[None, str, int, Dict]) -> Dict:
    """None/'all' -> {'all': True}; an account id -> {'beneficiaryId': id}."""
    if scope is None or scope == "all":
        return {"all": True}
    if isinstance(scope, dict):
        if scope.get("beneficiaryId") is not None:
            return {"beneficiaryId": int(scope["beneficiaryId"])}
        if scope.get("all"):
            return {"all": True}
        raise ValidationError(f"Invalid scope: {scope}")
    if isinstance(scope, int):
        return {"beneficiaryId": scope}
    raise ValidationError(f"Invalid scope: {scope}")


class BackfillService:
    """Idempotent creation of missing commissions and retirement of wrong ones."""

    def __init__(self, session: Session):
        self.session = session
        self.commissions = CommissionService(session)
        self.reversal = ReversalService(session)
        self.walker = ChainWalker(session)

    # ═══════════════════════════════════════════════════════════════════════
    # PLANNING (pure)
    # ═══════════════════════════════════════════════════════════════════════

    async def plan(self, scope=None, mode: str = "backfill", resume: bool = False) -> BatchResult:
        """Dry run: decisions a committing run would apply, with their preview token."""
        scope = normalize_scope(scope)
        job = self._resumableJob(mode, scope) if resume else None
        plan = self._buildPlan(scope, mode, job.lastPaymentID if job else 0)
        result = plan.summary()

        logger.info(
            f"{mode} plan {scope}: processed={result.processed}, wouldCreate={result.created}, "
            f"wouldSkip={result.skipped}, wouldRetire={result.retired}, total={to_money(result.totalAmount)}"
        )
        return result

    def _buildPlan(self, scope: Dict, mode: str, startAfter: int) -> BatchPlan:
        if mode not in MODES:
            raise ValidationError(f"Unknown batch mode: {mode}")

        beneficiaryId = scope.get("beneficiaryId")
        payerIds = None
        if beneficiaryId is not None:
            beneficiary = self.session.get(Account, beneficiaryId)
            if not beneficiary:
                raise AccountNotFoundError(f"Account {beneficiaryId} not found")
            payerIds = list(self.walker.downline_levels(beneficiary, SCOPE_DEPTH).keys())

        plan = BatchPlan(mode=mode, scope=scope, startAfter=startAfter)
        staged = StagedEntries()

        for payment in self._iterPayments(startAfter, payerIds):
            ruleSet = self.commissions.loadRules(payment)
            decisions = self.commissions.decide(payment, ruleSet, staged, beneficiaryId)

            pairs = []
            for decision in decisions:
                if decision.eligible:
                    pairs.append((self._action("create", decision), decision))
                    continue

                entry = self._liveEntry(decision)
                if entry is None:
                    if not self._skipRecorded(decision):
                        pairs.append((self._action("skip", decision, decision.reason.value), decision))
                elif mode == "recalculation":
                    retire = self._retireCheck(payment, ruleSet, decision, entry, staged)
                    if retire is not None:
                        pairs.append((retire, decision))

            plan.items.append((payment, ruleSet, pairs))

        return plan

    def _iterPayments(self, startAfter: int, payerIds: Optional[List[int]]):
        """Confirmed payments in id order, fetched in chunks."""
        if payerIds is not None and not payerIds:
            return

        chunkSize = int(Config.get(Config.BATCH_CHUNK_SIZE, 500))
        last = startAfter

        while True:
            query = self.session.query(PaymentEvent).filter(
                PaymentEvent.paymentID > last,
                PaymentEvent.status != "rejected"
            )
            if payerIds is not None:
                query = query.filter(PaymentEvent.accountID.in_(payerIds))

            chunk = query.order_by(PaymentEvent.paymentID).limit(chunkSize).all()
            if not chunk:
                return

            for payment in chunk:
                yield payment
            last = chunk[-1].paymentID

    def _skipRecorded(self, decision: Decision) -> bool:
        return self.session.query(SkipRecord.skipID).filter_by(
            paymentID=decision.paymentId,
            accountID=decision.beneficiaryId,
            level=decision.level,
            structure=decision.structure
        ).first() is not None

    @staticmethod
    def _action(kind: str, decision: Decision, reason: Optional[str] = None, entryId: Optional[int] = None,
                amount: Optional[Decimal] = None) -> PlannedAction:
        return PlannedAction(
            action=kind,
            paymentId=decision.paymentId,
            beneficiaryId=decision.beneficiaryId,
            level=decision.level,
            structure=decision.structure,
            amount=decision.amount if amount is None else amount,
            reason=reason,
            entryId=entryId
        )

    def _liveEntry(self, decision: Decision) -> Optional[LedgerEntry]:
        return self.session.query(LedgerEntry).filter(
            LedgerEntry.kind == LedgerKind.COMMISSION.value,
            LedgerEntry.status != LedgerStatus.FAILED.value,
            LedgerEntry.paymentID == decision.paymentId,
            LedgerEntry.accountID == decision.beneficiaryId,
            LedgerEntry.level == decision.level,
            LedgerEntry.structure == decision.structure
        ).first()

    def _retireCheck(self, payment, ruleSet, decision, entry, staged) -> Optional[PlannedAction]:
        """
        Decide whether an existing commission must be retired.

        A denial raised before the duplicate check applies to the entry
        as is; a duplicate is re-validated with the entry itself ignored.
        """
        if entry.status not in REVERSIBLE_STATUSES:
            return None
        if reversed_entry_ids(self.session, [entry.entryID]):
            return None

        reason = decision.reason
        if decision.duplicate:
            beneficiary = self.session.get(Account, decision.beneficiaryId)
            resolution = self.commissions.eligibility.resolve(
                beneficiary,
                decision.level,
                decision.structure,
                payment.paidAt,
                ruleSet,
                payment=payment,
                staged=staged,
                excludeEntryId=entry.entryID
            )
            if resolution.eligible:
                return None
            reason = resolution.reason

        return self._action("retire", decision, reason.value, entry.entryID, Decimal(entry.amount))

    # ═══════════════════════════════════════════════════════════════════════
    # COMMIT
    # ═══════════════════════════════════════════════════════════════════════

    async def commit(
            self,
            scope=None,
            previewToken: Optional[str] = None,
            adminId: Optional[int] = None,
            mode: str = "backfill",
            resume: bool = False
    ) -> BatchResult:
        """
        Apply the plan, chunk by chunk, checkpointing after each chunk.

        Raises:
            PreviewMismatchError: token missing (when required) or the
                decisions differ from the previewed ones
        """
        scope = normalize_scope(scope)
        job = self._resumableJob(mode, scope) if resume else None
        plan = self._buildPlan(scope, mode, job.lastPaymentID if job else 0)
        self._checkPreview(plan, previewToken)

        if job is None:
            job = BatchJob(jobType=mode, scope=scope, startedBy=adminId, lastPaymentID=0,
                           processed=0, created=0, skipped=0, retired=0, totalAmount=Decimal("0"), attempts=0)
            self.session.add(job)
        elif job.lastPaymentID:
            logger.info(f"Resuming {mode} job {job.id} after payment {job.lastPaymentID}")

        job.status = "running"
        job.attempts = (job.attempts or 0) + 1
        self.session.commit()
        jobId = job.id

        result = BatchResult(dryRun=False, previewToken=plan.token, jobId=jobId)
        chunkSize = int(Config.get(Config.BATCH_CHUNK_SIZE, 500))

        try:
            for start in range(0, len(plan.items), chunkSize):
                chunk = plan.items[start:start + chunkSize]
                before = (result.processed, result.created, result.skipped, result.retired,
                          result.totalAmount)

                for payment, ruleSet, pairs in chunk:
                    await self._applyPayment(payment, ruleSet, pairs, mode, adminId, result)
                    result.processed += 1
                    result.lastPaymentId = payment.paymentID

                job = self.session.get(BatchJob, jobId)
                job.lastPaymentID = result.lastPaymentId
                job.processed = (job.processed or 0) + result.processed - before[0]
                job.created = (job.created or 0) + result.created - before[1]
                job.skipped = (job.skipped or 0) + result.skipped - before[2]
                job.retired = (job.retired or 0) + result.retired - before[3]
                job.totalAmount = to_money(Decimal(job.totalAmount or 0) + result.totalAmount - before[4])
                self.session.commit()
                logger.debug(f"{mode} job {jobId}: checkpoint at payment {result.lastPaymentId}")

        except Exception as e:
            self.session.rollback()
            job = self.session.get(BatchJob, jobId)
            job.status = "failed"
            job.lastError = str(e)[:500]
            self.session.commit()
            logger.error(f"{mode} job {jobId} failed after payment {job.lastPaymentID}: {e}", exc_info=True)
            raise

        job = self.session.get(BatchJob, jobId)
        job.status = "completed"
        job.completedAt = timeMachine.now
        self.session.commit()

        logger.info(
            f"{mode} commit {scope}: processed={result.processed}, created={result.created}, "
            f"skipped={result.skipped}, retired={result.retired}, total={to_money(result.totalAmount)}"
        )
        return result

    async def _applyPayment(self, payment, ruleSet, pairs, mode, adminId, result: BatchResult):
        retire = []
        for action, decision in pairs:
            if action.action == "create":
                entry = self.commissions.writeCommission(payment, decision, ruleSet, origin=mode)
                if entry is not None:
                    result.created += 1
                    result.totalAmount += Decimal(entry.amount)
            elif action.action == "skip":
                self.commissions.writeSkip(payment, decision)
                result.skipped += 1
            elif action.action == "retire":
                retire.append(action)

        if not retire:
            return

        byReason = defaultdict(list)
        for action in retire:
            byReason[action.reason].append(self.session.get(LedgerEntry, action.entryId))

        for reason, entries in byReason.items():
            await self.reversal.reverseEntries(
                entries,
                f"recalculation: {reason}",
                adminId,
                trigger="recalculation"
            )
            result.retired += len(entries)
            result.retiredAmount += sum((Decimal(e.amount) for e in entries), Decimal("0"))

    def _checkPreview(self, plan: BatchPlan, previewToken: Optional[str]):
        check_preview(plan.token, previewToken)

    def _resumableJob(self, mode: str, scope: Dict) -> Optional[BatchJob]:
        """Latest unfinished job with the same mode and scope."""
        jobs = self.session.query(BatchJob).filter(
            BatchJob.jobType == mode,
            BatchJob.status.in_(["running", "failed"])
        ).order_by(BatchJob.id.desc()).all()

        for job in jobs:
            if job.scope == scope:
                return job
        return None
