# tests/test_scheduler.py
"""
Tests for the scheduled jobs (called directly, the APScheduler loop is not started).

Each job opens its own session through core.db; the test session is
committed and left without an open transaction before a job runs.

Run:
    pytest tests/test_scheduler.py -v
"""
import logging
from datetime import datetime

import pytest

from models.ledger_entry import LedgerEntry, LedgerStatus
from models.monthly_activation import MonthlyActivation
from background.commission_scheduler import CommissionScheduler
from commission_system.events.handlers import handle_activation_recomputed


@pytest.fixture
def scheduler():
    return CommissionScheduler()


class TestReleaseJob:

    def test_releases_after_hold(self, engine, session, run, make_chain, activate, pay, scheduler, virtual_time):
        sponsor, payer = make_chain(2)
        activate(sponsor)
        payment = pay(payer, "B", 20000)
        result = run(engine.distributeCommission(payment.paymentID))
        entryId = result["entryIds"][0]
        session.commit()

        virtual_time.advanceTime(days=6)
        assert run(scheduler.releaseFrozenEntries())["released"] == 0

        virtual_time.advanceTime(days=2)
        assert run(scheduler.releaseFrozenEntries())["released"] == 1

        assert scheduler.stats["entriesReleased"] == 1
        assert scheduler.stats["tasksExecuted"] == 2
        assert session.get(LedgerEntry, entryId).status == LedgerStatus.COMPLETED.value


class TestActivationJob:

    def test_current_month(self, session, run, make_account, scheduler):
        make_account()
        session.commit()

        results = run(scheduler.recalculateActivations())

        assert [(r["year"], r["month"]) for r in results] == [(2025, 1)]

    def test_first_of_month_closes_previous(self, session, run, make_account, pay, scheduler, virtual_time):
        account = make_account()
        accountId = account.accountID
        pay(account, "B", 18000, paidAt=datetime(2025, 1, 31, 23, 0))
        session.commit()

        virtual_time.setTime(datetime(2025, 2, 1, 0, 5))
        results = run(scheduler.recalculateActivations())

        assert [(r["year"], r["month"]) for r in results] == [(2025, 1), (2025, 2)]
        row = session.query(MonthlyActivation).filter_by(accountID=accountId, year=2025, month=1).one()
        assert row.isActivated

    def test_month_totals_logged(self, run, caplog):
        stats = {"year": 2025, "month": 1, "activated": 2, "deactivated": 1, "unchanged": 4, "kept": 0}

        with caplog.at_level(logging.INFO, logger="commission_system.events.handlers"):
            run(handle_activation_recomputed(stats))

        assert "Activation recomputed for 2025-1: +2 -1 =4 kept=0" in caplog.text
        assert "account=None" not in caplog.text

    def test_account_fact_logged(self, run, caplog):
        fact = {"accountId": 7, "year": 2025, "month": 1, "isActivated": True}

        with caplog.at_level(logging.INFO, logger="commission_system.events.handlers"):
            run(handle_activation_recomputed(fact))

        assert "account=7 2025-1 active=True" in caplog.text


class TestIntegrityJob:

    def test_clean(self, session, run, make_chain, scheduler):
        make_chain(3)
        session.commit()

        findings = run(scheduler.runIntegrityAudit())

        assert not any(findings.values())
        assert scheduler.stats["lastAuditFindings"] == findings

    def test_reports_orphan(self, session, run, make_chain, scheduler):
        top, middle, bottom = make_chain(3)
        middle.sponsorID = 9999
        session.commit()

        findings = run(scheduler.runIntegrityAudit())

        assert findings["orphans"] == 1
        assert findings["cycles"] == 0
