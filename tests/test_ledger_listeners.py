# tests/test_ledger_listeners.py
"""
Tests for Ledger Event Listeners.

Tests SQLAlchemy Event Listeners that keep Account.balanceAvailable in
sync with the ledger using FULL RECALCULATION architecture:

    Account.balanceAvailable = SUM(LedgerEntry.amount) WHERE status='completed'

and the protection listeners that keep ledger rows append-only.

Run:
    pytest tests/test_ledger_listeners.py -v
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, update

from models.account import Account
from models.ledger_entry import LedgerEntry, LedgerKind, LedgerStatus
from commission_system.errors import InvalidTransitionError, LedgerImmutableError
from commission_system.services.ledger_service import LedgerService


@pytest.fixture
def ledger(session):
    return LedgerService(session)


@pytest.fixture
def journal_sum(session):
    """Real SUM(amount) of completed entries of an account."""

    def _sum(account_id: int) -> Decimal:
        result = session.query(
            func.coalesce(func.sum(LedgerEntry.amount), 0)
        ).filter(
            LedgerEntry.accountID == account_id,
            LedgerEntry.status == LedgerStatus.COMPLETED.value
        ).scalar()
        return Decimal(str(result))

    return _sum


# =============================================================================
# TEST CLASS: INSERT
# =============================================================================

class TestLedgerInsert:
    """Tests for INSERT into LedgerEntry -> recalculate Account.balanceAvailable."""

    def test_insert_completed_recalculates_balance(self, session, ledger, make_account, journal_sum):
        """
        TEST: INSERT with status='completed' triggers full recalculation.
        """
        account = make_account()
        ledger.addEntry(account.accountID, LedgerKind.BONUS, Decimal("100.00"), LedgerStatus.COMPLETED)
        session.commit()

        session.refresh(account)
        assert account.balanceAvailable == journal_sum(account.accountID) == Decimal("100.00")

    def test_insert_frozen_not_in_available(self, session, ledger, make_account, journal_sum):
        """
        TEST: INSERT with status='frozen' - recalculation happens, but frozen not in SUM.
        """
        account = make_account()
        ledger.addEntry(account.accountID, LedgerKind.BONUS, Decimal("50.00"), LedgerStatus.COMPLETED)
        ledger.addEntry(account.accountID, LedgerKind.COMMISSION, Decimal("500.00"), LedgerStatus.FROZEN)
        session.commit()

        session.refresh(account)
        assert account.balanceAvailable == Decimal("50.00")
        assert journal_sum(account.accountID) == Decimal("50.00")


# =============================================================================
# TEST CLASS: UPDATE (status transitions)
# =============================================================================

class TestLedgerUpdate:
    """Status transitions recalculate the cached balance."""

    def test_frozen_to_completed_updates_balance(self, session, ledger, make_account):
        account = make_account()
        entry = ledger.addEntry(account.accountID, LedgerKind.COMMISSION, Decimal("300.00"), LedgerStatus.FROZEN)
        session.commit()

        entry.transitionTo(LedgerStatus.COMPLETED)
        session.commit()

        session.refresh(account)
        assert account.balanceAvailable == Decimal("300.00")

    def test_discrepancy_self_heals(self, session, ledger, make_account, journal_sum):
        """
        TEST: a tampered cache is overwritten on the next ledger write.
        """
        account = make_account()
        ledger.addEntry(account.accountID, LedgerKind.BONUS, Decimal("10.00"), LedgerStatus.COMPLETED)
        session.commit()

        session.execute(
            update(Account).where(Account.accountID == account.accountID).values(balanceAvailable=Decimal("999"))
        )
        session.commit()

        ledger.addEntry(account.accountID, LedgerKind.BONUS, Decimal("5.00"), LedgerStatus.COMPLETED)
        session.commit()

        session.refresh(account)
        assert account.balanceAvailable == journal_sum(account.accountID) == Decimal("15.00")


# =============================================================================
# TEST CLASS: STATUS MACHINE
# =============================================================================

class TestStatusMachine:

    @pytest.mark.parametrize("start,target,allowed", [
        (LedgerStatus.PENDING, LedgerStatus.FROZEN, True),
        (LedgerStatus.PENDING, LedgerStatus.FAILED, True),
        (LedgerStatus.FROZEN, LedgerStatus.COMPLETED, True),
        (LedgerStatus.FROZEN, LedgerStatus.FAILED, True),
        (LedgerStatus.PENDING, LedgerStatus.COMPLETED, False),
        (LedgerStatus.COMPLETED, LedgerStatus.FAILED, False),
        (LedgerStatus.COMPLETED, LedgerStatus.FROZEN, False),
        (LedgerStatus.FAILED, LedgerStatus.PENDING, False),
    ])
    def test_transitions(self, start, target, allowed):
        entry = LedgerEntry(accountID=1, kind=LedgerKind.COMMISSION.value, amount=Decimal("1"), status=start.value)
        assert entry.canTransition(target) is allowed

        if allowed:
            entry.transitionTo(target, "reason")
            assert entry.status == target.value
        else:
            with pytest.raises(InvalidTransitionError):
                entry.transitionTo(target)
            assert entry.status == start.value

    def test_failed_records_reason(self):
        entry = LedgerEntry(accountID=1, kind=LedgerKind.WITHDRAWAL.value, amount=Decimal("-1"),
                            status=LedgerStatus.PENDING.value)
        entry.transitionTo(LedgerStatus.FAILED, "payment bounced")
        assert entry.failureReason == "payment bounced"


# =============================================================================
# TEST CLASS: IMMUTABILITY
# =============================================================================

class TestImmutability:
    """Ledger rows are append-only."""

    def test_amount_change_rejected(self, session, ledger, make_account):
        account = make_account()
        entry = ledger.addEntry(account.accountID, LedgerKind.BONUS, Decimal("10.00"), LedgerStatus.COMPLETED)
        session.commit()

        entry.amount = Decimal("20.00")
        with pytest.raises(LedgerImmutableError):
            session.flush()
        session.rollback()

        assert session.get(LedgerEntry, entry.entryID).amount == Decimal("10.00")

    def test_owner_change_rejected(self, session, ledger, make_account):
        first = make_account()
        second = make_account()
        entry = ledger.addEntry(first.accountID, LedgerKind.BONUS, Decimal("10.00"), LedgerStatus.COMPLETED)
        session.commit()

        entry.accountID = second.accountID
        with pytest.raises(LedgerImmutableError):
            session.flush()
        session.rollback()

    def test_delete_rejected(self, session, ledger, make_account):
        account = make_account()
        entry = ledger.addEntry(account.accountID, LedgerKind.BONUS, Decimal("10.00"), LedgerStatus.COMPLETED)
        session.commit()

        session.delete(entry)
        with pytest.raises(LedgerImmutableError):
            session.flush()
        session.rollback()

        assert session.get(LedgerEntry, entry.entryID) is not None
