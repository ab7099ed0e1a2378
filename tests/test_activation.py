# tests/test_activation.py
"""
Tests for monthly activation (Structure B).

Run:
    pytest tests/test_activation.py -v
"""
from datetime import datetime
from decimal import Decimal

import pytest

from models.monthly_activation import MonthlyActivation
from commission_system.errors import ValidationError


def activation_row(session, account, year=2025, month=1):
    return session.query(MonthlyActivation).filter_by(
        accountID=account.accountID, year=year, month=month
    ).first()


class TestThreshold:

    def test_default_threshold(self, engine):
        assert engine.activation.threshold() == Decimal("18000.00")

    def test_threshold_follows_rate(self, engine, test_config):
        test_config.set(test_config.USD_KZT_RATE, Decimal("500"))
        assert engine.activation.threshold() == Decimal("20000.00")


class TestRecalculateOnPayment:

    def test_payment_at_threshold_activates(self, session, make_account, pay):
        account = make_account()
        pay(account, "B", 18000)

        row = activation_row(session, account)
        assert row.isActivated
        assert row.source == "recalculated"
        assert row.totalAmount == Decimal("18000.00")
        assert row.threshold == Decimal("18000.00")

    def test_below_threshold(self, session, make_account, pay):
        account = make_account()
        pay(account, "B", Decimal("17999.99"))

        row = activation_row(session, account)
        assert not row.isActivated

    def test_payments_in_month_add_up(self, session, make_account, pay):
        account = make_account()
        pay(account, "B", 10000, paidAt=datetime(2025, 1, 3))
        pay(account, "B", 8000, paidAt=datetime(2025, 1, 28))

        assert activation_row(session, account).isActivated

    def test_months_are_separate(self, session, make_account, pay):
        account = make_account()
        pay(account, "B", 10000, paidAt=datetime(2024, 12, 31, 23, 59))
        pay(account, "B", 10000, paidAt=datetime(2025, 1, 1))

        assert not activation_row(session, account, 2024, 12).isActivated
        assert not activation_row(session, account).isActivated

    def test_usd_payment_normalized(self, session, make_account, pay):
        account = make_account()
        pay(account, "B", 40, currency="USD")

        assert activation_row(session, account).isActivated

    def test_structure_a_does_not_activate(self, session, make_account, subscribe):
        account = make_account()
        subscribe(account)

        assert activation_row(session, account) is None


class TestRecalculateMonth:

    def test_idempotent(self, engine, session, run, make_account, pay):
        account = make_account()
        pay(account, "B", 20000)

        stats = run(engine.recalculateActivations(2025, 1))

        assert stats["activated"] == 0
        assert stats["unchanged"] == 1
        assert activation_row(session, account).isActivated

    def test_admin_fact_kept(self, engine, session, run, make_account, activate):
        account = make_account()
        activate(account)

        stats = run(engine.recalculateActivations(2025, 1))

        assert stats["kept"] == 1
        row = activation_row(session, account)
        assert row.isActivated
        assert row.source == "admin"

    def test_external_deactivation_survives_payment(self, session, make_account, activate, pay):
        account = make_account()
        activate(account, isActivated=False)
        pay(account, "B", 50000)

        row = activation_row(session, account)
        assert not row.isActivated
        assert row.source == "admin"

    def test_invalid_month(self, engine, run):
        with pytest.raises(ValidationError):
            run(engine.recalculateActivations(2025, 13))


class TestRecordActivation:

    def test_upsert(self, engine, session, run, make_account):
        account = make_account()

        run(engine.activation.recordActivation(account.accountID, 2025, 1, True, source="external"))
        run(engine.activation.recordActivation(
            account.accountID, 2025, 1, False, source="external", adminComment="chargeback"
        ))

        rows = session.query(MonthlyActivation).filter_by(accountID=account.accountID).all()
        assert len(rows) == 1
        assert not rows[0].isActivated
        assert rows[0].adminComment == "chargeback"

    def test_invalid_month(self, engine, run, make_account):
        account = make_account()

        with pytest.raises(ValidationError):
            run(engine.activation.recordActivation(account.accountID, 2025, 0, True))
