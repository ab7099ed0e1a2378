# background/commission_scheduler.py
"""
Commission Scheduler - time-based ledger operations.
Uses APScheduler for task scheduling.
"""
import logging
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.db import get_db_session_ctx
from commission_system.services.ledger_service import LedgerService
from commission_system.services.activation_service import ActivationService
from commission_system.services.audit_service import AuditService
from commission_system.utils.time_machine import timeMachine, previous_month
from commission_system.events.event_bus import eventBus, CommissionEvents

logger = logging.getLogger(__name__)


class CommissionScheduler:
    """
    Background scheduler for ledger operations.
    Uses APScheduler for reliable task scheduling.
    """

    def __init__(self):
        self.isRunning = False

        # Create APScheduler instance
        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )

        # Statistics
        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "entriesReleased": 0,
            "lastAuditFindings": None
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Release of matured frozen entries: every 1 hour
        - Monthly activation recalculation: every day at 00:05 UTC
        - Integrity audit (read-only): every day at 03:00 UTC
        """
        if self.isRunning:
            logger.warning("Commission Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting Commission Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Release matured frozen entries (every 1 hour)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_release_wrapper,
            trigger=IntervalTrigger(hours=1),
            id='release_frozen',
            name='Release Frozen Entries',
            replace_existing=True
        )
        logger.info("✓ Job registered: Release Frozen Entries (every 1 hour)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Monthly activation recalculation (every day at 00:05 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_activation_wrapper,
            trigger=CronTrigger(hour=0, minute=5),
            id='activation_recalc',
            name='Activation Recalculation (00:05 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Activation Recalculation (00:05 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 3: Integrity audit (every day at 03:00 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_audit_wrapper,
            trigger=CronTrigger(hour=3, minute=0),
            id='integrity_audit',
            name='Integrity Audit (03:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Integrity Audit (03:00 UTC)")

        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Commission Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Commission Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Commission Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_release_wrapper(self):
        """Safe wrapper for the release job."""
        try:
            await self.releaseFrozenEntries()
        except Exception as e:
            logger.error(f"Error in release job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_activation_wrapper(self):
        """Safe wrapper for activation recalculation."""
        try:
            await self.recalculateActivations()
        except Exception as e:
            logger.error(f"Error in activation job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_audit_wrapper(self):
        """Safe wrapper for the integrity audit."""
        try:
            await self.runIntegrityAudit()
        except Exception as e:
            logger.error(f"Error in audit job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def releaseFrozenEntries(self):
        """Transition frozen entries past their hold period to completed."""
        with get_db_session_ctx() as session:
            result = await LedgerService(session).releaseMatured(timeMachine.now)

        self.stats["entriesReleased"] += result["released"]
        self._markExecuted()
        return result

    async def recalculateActivations(self):
        """
        Recompute activation of the current month; on the 1st also close
        the previous month (late payments and rejections of the last day).
        """
        now = timeMachine.now
        months = [(now.year, now.month)]
        if timeMachine.isFirstOfMonth:
            months.insert(0, previous_month(now.year, now.month))

        results = []
        with get_db_session_ctx() as session:
            service = ActivationService(session)
            for year, month in months:
                results.append(await service.recalculateMonth(year, month))

        for stats in results:
            await eventBus.emit(CommissionEvents.ACTIVATION_RECOMPUTED, stats)

        self._markExecuted()
        return results

    async def runIntegrityAudit(self):
        """Read-only sweep; findings are only logged."""
        with get_db_session_ctx() as session:
            audits = AuditService(session)
            findings = {
                "balance": len(await audits.auditBalanceIntegrity()),
                "unlock": len(await audits.auditUnlockViolations()),
                "marketing": len(await audits.auditMarketingFreeViolations()),
                "earlyUnlock": len(await audits.auditEarlyUnlockViolations()),
            }
            graph = await audits.auditGraphIntegrity()
            findings.update({key: len(value) for key, value in graph.items()})
            session.rollback()

        self.stats["lastAuditFindings"] = findings
        if any(findings.values()):
            logger.warning(f"Integrity audit findings: {findings}")
        else:
            logger.info("Integrity audit: clean")

        self._markExecuted()
        return findings

    def _markExecuted(self):
        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
