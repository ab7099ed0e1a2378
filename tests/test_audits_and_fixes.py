# tests/test_audits_and_fixes.py
"""
Tests for violation audits and their dry-run-then-commit fixes.

Run:
    pytest tests/test_audits_and_fixes.py -v
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from models.account import Account
from models.admin_action import AdminAction
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from commission_system.errors import AuthorizationError, PreviewMismatchError


@pytest.fixture
def paid_structure_a(engine, run, make_chain, qualify, pay):
    """Two qualified sponsors paid from one Structure A payment (L1 only, L2 locked)."""
    upper, direct, payer = make_chain(3)
    qualify(upper, direct)
    payment = pay(payer, "A", 100, currency="USD")
    run(engine.distributeCommission(payment.paymentID))
    return {"upper": upper, "direct": direct, "payer": payer, "payment": payment}


# =============================================================================
# MARKETING-FREE ACCESS
# =============================================================================

class TestMarketingFree:

    def test_flag_after_payout_is_reported_and_fixed(self, engine, session, run, paid_structure_a, admin, superadmin):
        payment = paid_structure_a["payment"]
        run(engine.flagExempt(payment.paymentID, admin.accountID))

        findings = run(engine.auditMarketingFreeViolations(admin.accountID))
        assert len(findings) == 1
        assert findings[0]["paymentId"] == payment.paymentID
        original = findings[0]["amount"]

        preview = run(engine.fixMarketingFreeViolations(True, superadmin.accountID))
        assert preview["count"] == 1
        assert preview["dryRun"] is True
        assert session.query(LedgerEntry).filter_by(kind=LedgerKind.ADJUSTMENT.value).count() == 0

        committed = run(engine.fixMarketingFreeViolations(False, superadmin.accountID, preview["previewToken"]))
        assert committed["count"] == preview["count"]
        assert committed["totalAmount"] == preview["totalAmount"]

        adjustments = [session.get(LedgerEntry, i) for i in committed["adjustmentIds"]]
        assert sum(a.amount for a in adjustments) == -original

        assert run(engine.auditMarketingFreeViolations(admin.accountID)) == []

    def test_commit_without_preview_refused(self, engine, session, run, paid_structure_a, admin, superadmin):
        run(engine.flagExempt(paid_structure_a["payment"].paymentID, admin.accountID))

        with pytest.raises(PreviewMismatchError):
            run(engine.fixMarketingFreeViolations(False, superadmin.accountID))

        assert session.query(LedgerEntry).filter_by(kind=LedgerKind.ADJUSTMENT.value).count() == 0

    def test_stale_preview_refused(self, engine, session, run, paid_structure_a, admin, superadmin, pay):
        payment = paid_structure_a["payment"]
        run(engine.flagExempt(payment.paymentID, admin.accountID))
        preview = run(engine.fixMarketingFreeViolations(True, superadmin.accountID))

        second = pay(paid_structure_a["payer"], "A", 100, currency="USD")
        run(engine.distributeCommission(second.paymentID))
        run(engine.flagExempt(second.paymentID, admin.accountID))

        with pytest.raises(PreviewMismatchError):
            run(engine.fixMarketingFreeViolations(False, superadmin.accountID, preview["previewToken"]))

    def test_fix_requires_superadmin(self, engine, session, run, paid_structure_a, admin):
        with pytest.raises(AuthorizationError):
            run(engine.fixMarketingFreeViolations(True, admin.accountID))

        record = session.query(AdminAction).filter_by(action="fix_marketing").one()
        assert record.status == "rejected"


# =============================================================================
# UNLOCK / EARLY UNLOCK
# =============================================================================

@pytest.fixture
def early_unlock(engine, session, run, make_account, virtual_time, pay):
    """
    Level-2 commission paid in January while the beneficiary had 2 of 3
    required referrals; the 3rd referral joined in February.
    """
    december = datetime(2024, 12, 1)
    beneficiary = make_account(registeredAt=december)
    direct = make_account(sponsor=beneficiary, registeredAt=december)
    make_account(sponsor=beneficiary, registeredAt=december)
    payer = make_account(sponsor=direct, registeredAt=december)

    payment = pay(payer, "A", 100, currency="USD", paidAt=datetime(2025, 1, 10))
    entry = engine.ledger.addEntry(
        beneficiary.accountID,
        LedgerKind.COMMISSION,
        Decimal("4500.00"),
        LedgerStatus.FROZEN,
        structure="A",
        level=2,
        paymentID=payment.paymentID,
        frozenUntil=datetime(2025, 1, 17)
    )
    session.commit()

    make_account(sponsor=beneficiary, registeredAt=datetime(2025, 2, 5))
    virtual_time.setTime(datetime(2025, 2, 15))
    return {"beneficiary": beneficiary, "entry": entry, "payment": payment}


class TestEarlyUnlock:

    def test_flagged_by_payment_time_count(self, engine, run, early_unlock, admin):
        findings = run(engine.auditEarlyUnlockViolations(admin.accountID))

        assert len(findings) == 1
        finding = findings[0]
        assert finding["entryId"] == early_unlock["entry"].entryID
        assert finding["referralsAtPaymentTime"] == 2
        assert finding["referralsNow"] == 3
        assert finding["referralsRequired"] == 3

    def test_not_flagged_by_todays_count(self, engine, run, early_unlock, admin):
        assert run(engine.auditUnlockViolations(admin.accountID)) == []

    def test_lookback_window(self, engine, run, early_unlock, admin):
        assert run(engine.auditEarlyUnlockViolations(admin.accountID, lookbackDays=10)) == []

    def test_fix_reverses_entry(self, engine, session, run, early_unlock, admin, superadmin):
        preview = run(engine.fixEarlyUnlockViolations(True, superadmin.accountID))
        assert preview["entryIds"] == [early_unlock["entry"].entryID]

        run(engine.fixEarlyUnlockViolations(False, superadmin.accountID, preview["previewToken"]))
        assert run(engine.auditEarlyUnlockViolations(admin.accountID)) == []

        balance = run(engine.getBalance(early_unlock["beneficiary"].accountID))
        assert balance["frozen"] == Decimal("0.00")


class TestUnlockToday:

    def test_lost_referral_flags_entry(self, engine, session, run, make_account, admin, superadmin, pay):
        beneficiary = make_account()
        direct = make_account(sponsor=beneficiary)
        others = [make_account(sponsor=beneficiary) for _ in range(2)]
        payer = make_account(sponsor=direct)

        payment = pay(payer, "A", 100, currency="USD")
        entry = engine.ledger.addEntry(
            beneficiary.accountID, LedgerKind.COMMISSION, Decimal("4500.00"), LedgerStatus.FROZEN,
            structure="A", level=2, paymentID=payment.paymentID
        )
        session.commit()
        assert run(engine.auditUnlockViolations(admin.accountID)) == []

        run(engine.bindSponsor(others[0].accountID, direct.accountID, superadmin.accountID))

        findings = run(engine.auditUnlockViolations(admin.accountID))
        assert len(findings) == 1
        assert findings[0]["violatingEntryIds"] == [entry.entryID]
        assert findings[0]["referralsPresent"] == 2

        preview = run(engine.fixUnlockViolations(True, superadmin.accountID))
        result = run(engine.fixUnlockViolations(False, superadmin.accountID, preview["previewToken"]))
        assert result["count"] == 1
        assert run(engine.auditUnlockViolations(admin.accountID)) == []


# =============================================================================
# BALANCE / GRAPH INTEGRITY
# =============================================================================

class TestIntegrity:

    def test_balance_cache_mismatch(self, engine, session, run, make_account, superadmin, admin):
        account = make_account()
        run(engine.grantBonus(account.accountID, Decimal("100"), "bonus", superadmin.accountID))
        assert run(engine.auditBalanceIntegrity(admin.accountID)) == []

        session.execute(
            update(Account).where(Account.accountID == account.accountID).values(balanceAvailable=Decimal("150"))
        )
        session.commit()

        findings = run(engine.auditBalanceIntegrity(admin.accountID))
        assert len(findings) == 1
        assert findings[0]["accountId"] == account.accountID
        assert findings[0]["diff"] == Decimal("50.00")
        assert findings[0]["negative"] is False

    def test_graph_findings(self, engine, session, run, make_account, admin):
        root = make_account()
        child = make_account(sponsor=root)
        orphan = make_account()
        session.execute(update(Account).where(Account.accountID == orphan.accountID).values(sponsorID=9999))
        session.execute(update(Account).where(Account.accountID == root.accountID).values(directReferrals=5))
        session.commit()

        result = run(engine.auditGraphIntegrity(admin.accountID))

        assert result["orphans"] == [orphan.accountID]
        assert result["cycles"] == []
        assert result["staleCounters"] == [{"accountId": root.accountID, "cached": 5, "actual": 1}]
        assert child.accountID not in result["orphans"]

    def test_audits_write_nothing(self, engine, session, run, paid_structure_a, admin):
        before = session.query(LedgerEntry).count()
        run(engine.auditUnlockViolations(admin.accountID))
        run(engine.auditMarketingFreeViolations(admin.accountID))
        run(engine.auditEarlyUnlockViolations(admin.accountID))
        assert session.query(LedgerEntry).count() == before
