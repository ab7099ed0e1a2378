# tests/test_ledger_service.py
"""
Tests for balances, hold release and manual money operations.

Run:
    pytest tests/test_ledger_service.py -v
"""
from decimal import Decimal

import pytest

from models.admin_action import AdminAction
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from commission_system.errors import (
    AuthorizationError, InsufficientBalanceError, InvalidTransitionError, ValidationError
)
from conftest import NOW


@pytest.fixture
def earned(engine, run, make_account, qualify, pay):
    """Sponsor holding one frozen 4500.00 commission."""
    sponsor = make_account()
    qualify(sponsor)
    payer = make_account(sponsor=sponsor)
    payment = pay(payer, "A", 100, currency="USD")
    run(engine.distributeCommission(payment.paymentID))
    return sponsor


class TestBalanceBuckets:

    def test_frozen_commission(self, engine, run, earned):
        balance = run(engine.getBalance(earned.accountID))
        assert balance["frozen"] == Decimal("4500.00")
        assert balance["available"] == Decimal("0.00")

    def test_release_after_hold(self, engine, run, earned, virtual_time, session):
        virtual_time.advanceTime(days=6)
        assert run(engine.releaseMatured())["released"] == 0

        virtual_time.advanceTime(days=1)
        result = run(engine.releaseMatured())
        assert result["released"] == 1
        assert result["amount"] == Decimal("4500.00")

        balance = run(engine.getBalance(earned.accountID))
        assert balance["available"] == Decimal("4500.00")
        assert balance["frozen"] == Decimal("0.00")

        session.refresh(earned)
        assert earned.balanceAvailable == Decimal("4500.00")

    def test_failed_entries_count_nowhere(self, engine, session, run, earned):
        entry = session.query(LedgerEntry).filter_by(accountID=earned.accountID).one()
        engine.ledger.failEntry(entry, "test")
        session.commit()

        balance = run(engine.getBalance(earned.accountID))
        assert balance["frozen"] == balance["available"] == balance["pending"] == Decimal("0.00")

    def test_completed_entry_cannot_fail(self, engine, session, run, earned, virtual_time):
        virtual_time.advanceTime(days=8)
        run(engine.releaseMatured())
        entry = session.query(LedgerEntry).filter_by(accountID=earned.accountID).one()

        with pytest.raises(InvalidTransitionError):
            engine.ledger.failEntry(entry, "too late")


class TestAdjustBalance:

    def test_positive_adjustment(self, engine, run, make_account, superadmin):
        account = make_account()
        result = run(engine.adjustBalance(account.accountID, Decimal("250"), "goodwill", superadmin.accountID))

        assert result["newBalance"] == Decimal("250.00")
        assert run(engine.getBalance(account.accountID))["available"] == Decimal("250.00")

    def test_negative_beyond_available_rejected(self, engine, session, run, make_account, superadmin):
        account = make_account()
        run(engine.adjustBalance(account.accountID, Decimal("100"), "goodwill", superadmin.accountID))

        with pytest.raises(InsufficientBalanceError):
            run(engine.adjustBalance(account.accountID, Decimal("-100.01"), "clawback", superadmin.accountID))

        assert session.query(AdminAction).filter_by(action="adjust_balance", status="error").count() == 1
        assert run(engine.getBalance(account.accountID))["available"] == Decimal("100.00")

    def test_reason_required(self, engine, run, make_account, superadmin):
        account = make_account()
        with pytest.raises(ValidationError):
            run(engine.adjustBalance(account.accountID, Decimal("10"), "  ", superadmin.accountID))

    def test_admin_is_not_enough(self, engine, session, run, make_account, admin):
        account = make_account()
        with pytest.raises(AuthorizationError):
            run(engine.adjustBalance(account.accountID, Decimal("10"), "goodwill", admin.accountID))

        assert session.query(LedgerEntry).count() == 0
        assert session.query(AdminAction).filter_by(status="rejected").count() == 1

    def test_provenance(self, engine, session, run, make_account, superadmin):
        account = make_account()
        result = run(engine.adjustBalance(account.accountID, Decimal("5"), "goodwill", superadmin.accountID))

        record = session.get(LedgerEntry, result["entryId"]).provenanceRecord
        assert record.reason == "goodwill"
        assert record.adminID == superadmin.accountID


class TestWithdrawals:

    def test_lifecycle(self, engine, session, run, make_account, superadmin):
        account = make_account()
        run(engine.grantBonus(account.accountID, Decimal("1000"), "launch bonus", superadmin.accountID))

        withdrawal = run(engine.ledger.requestWithdrawal(account.accountID, Decimal("400"), method="card"))
        session.commit()
        balance = run(engine.getBalance(account.accountID))
        assert balance["available"] == Decimal("1000.00")
        assert balance["spendable"] == Decimal("600.00")

        run(engine.ledger.approveWithdrawal(withdrawal.entryID, superadmin.accountID))
        run(engine.ledger.completeWithdrawal(withdrawal.entryID, superadmin.accountID))
        session.commit()

        balance = run(engine.getBalance(account.accountID))
        assert balance["available"] == Decimal("600.00")
        assert balance["withdrawn"] == Decimal("400.00")
        assert balance["spendable"] == Decimal("600.00")

    def test_rejected_withdrawal_restores_spendable(self, engine, session, run, make_account, superadmin):
        account = make_account()
        run(engine.grantBonus(account.accountID, Decimal("100"), "bonus", superadmin.accountID))

        withdrawal = run(engine.ledger.requestWithdrawal(account.accountID, Decimal("100")))
        run(engine.ledger.rejectWithdrawal(withdrawal.entryID, superadmin.accountID, "wrong card"))
        session.commit()

        assert run(engine.getBalance(account.accountID))["spendable"] == Decimal("100.00")
        assert withdrawal.status == LedgerStatus.FAILED.value

    def test_overdraw_rejected(self, engine, run, make_account, superadmin):
        account = make_account()
        run(engine.grantBonus(account.accountID, Decimal("100"), "bonus", superadmin.accountID))
        run(engine.ledger.requestWithdrawal(account.accountID, Decimal("80")))

        with pytest.raises(InsufficientBalanceError):
            run(engine.ledger.requestWithdrawal(account.accountID, Decimal("30")))

    def test_frozen_money_not_withdrawable(self, engine, run, earned):
        with pytest.raises(InsufficientBalanceError):
            run(engine.ledger.requestWithdrawal(earned.accountID, Decimal("1")))


class TestBalancePayment:

    def test_subscription_paid_from_balance(self, engine, session, run, make_account, superadmin, pay):
        account = make_account()
        run(engine.grantBonus(account.accountID, Decimal("50000"), "bonus", superadmin.accountID))

        payment = pay(account, "A", 100, currency="USD", payFromBalance=True)

        purchase = session.query(LedgerEntry).filter_by(kind=LedgerKind.PURCHASE.value).one()
        assert purchase.amount == Decimal("-45000.00")
        assert purchase.paymentID == payment.paymentID
        assert run(engine.getBalance(account.accountID))["available"] == Decimal("5000.00")

        session.refresh(account)
        assert account.subscriptionExpiresAt == payment.validUntil

    def test_balance_too_low(self, engine, run, make_account, pay):
        account = make_account()
        with pytest.raises(InsufficientBalanceError):
            pay(account, "A", 100, currency="USD", payFromBalance=True)
