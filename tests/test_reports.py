# tests/test_reports.py
"""
Tests for structure statistics and per-account commission audit.

Run:
    pytest tests/test_reports.py -v
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from models.admin_action import AdminAction
from commission_system.errors import AccountNotFoundError, AuthorizationError
from conftest import NOW


@pytest.fixture
def distributed(engine, run, make_chain, activate, pay):
    """B payment of 45000 with an unactivated account at level 2."""
    top, middle, direct, payer = make_chain(4)
    activate(top)
    activate(direct)
    payment = pay(payer, "B", 45000)
    run(engine.distributeCommission(payment.paymentID))
    return {"top": top, "middle": middle, "direct": direct, "payer": payer, "payment": payment}


class TestStructureStats:

    def test_per_level_totals(self, engine, run, distributed, admin):
        stats = run(engine.structureStats("B", admin.accountID))

        assert stats["structure"] == "B"
        assert len(stats["levels"]) == 10

        level1, level2, level3 = stats["levels"][:3]
        assert level1["entries"] == 1
        assert level1["frozenAmount"] == Decimal("4500.00")
        assert level2["entries"] == 0
        assert level2["passUpCount"] == 1
        assert level2["passUpAmount"] == Decimal("3150.00")
        assert level3["frozenAmount"] == Decimal("2250.00")

        assert stats["totals"]["entries"] == 2
        assert stats["totals"]["frozenAmount"] == Decimal("6750.00")
        assert stats["totals"]["availableAmount"] == Decimal("0")
        assert stats["totals"]["passUpAmount"] == Decimal("3150.00")

    def test_released_counts_as_available(self, engine, run, distributed, admin, virtual_time):
        virtual_time.advanceTime(days=8)
        run(engine.releaseMatured())

        stats = run(engine.structureStats("B", admin.accountID))

        assert stats["totals"]["frozenAmount"] == Decimal("0")
        assert stats["totals"]["availableAmount"] == Decimal("6750.00")

    def test_reversed_left_out(self, engine, run, distributed, admin, superadmin):
        run(engine.reverseCommissions(
            distributed["direct"].accountID, "fraud", superadmin.accountID, "REVERSE COMMISSIONS"
        ))

        stats = run(engine.structureStats("B", admin.accountID))

        assert stats["levels"][0]["entries"] == 0
        assert stats["totals"]["frozenAmount"] == Decimal("2250.00")

    def test_backfilled_skip_not_counted_as_pass_up(self, engine, run, make_chain, activate, pay, admin,
                                                     superadmin):
        sponsor, payer = make_chain(2)
        payment = pay(payer, "B", 45000)
        run(engine.distributeCommission(payment.paymentID))
        activate(sponsor)

        preview = run(engine.backfillMissingCommissions("all", dryRun=True, admin=superadmin.accountID))
        result = run(engine.backfillMissingCommissions(
            "all", dryRun=False, admin=superadmin.accountID, previewToken=preview["previewToken"]
        ))
        assert result["created"] == 1

        stats = run(engine.structureStats("B", admin.accountID))
        level1 = stats["levels"][0]
        assert level1["entries"] == 1
        assert level1["frozenAmount"] == Decimal("4500.00")
        assert level1["passUpCount"] == 0
        assert level1["passUpAmount"] == Decimal("0")

        rows = run(engine.accountCommissionAudit(sponsor.accountID, admin.accountID))
        assert rows[0]["received"] == Decimal("4500.00")
        assert rows[0]["reason"] is None

    def test_date_window(self, engine, run, distributed, admin):
        stats = run(engine.structureStats("B", admin.accountID, dateFrom=NOW + timedelta(seconds=1)))

        assert stats["totals"]["entries"] == 0
        assert stats["totals"]["passUpCount"] == 0

    def test_structure_a_depth(self, engine, run, admin):
        stats = run(engine.structureStats("A", admin.accountID))
        assert [row["level"] for row in stats["levels"]] == [1, 2, 3, 4, 5]

    def test_requires_admin(self, engine, session, run, distributed):
        with pytest.raises(AuthorizationError):
            run(engine.structureStats("B", distributed["payer"].accountID))

        assert session.query(AdminAction).filter_by(status="rejected").count() == 1


class TestAccountCommissionAudit:

    def test_received_commission(self, engine, run, distributed, admin):
        rows = run(engine.accountCommissionAudit(distributed["top"].accountID, admin.accountID))

        assert len(rows) == 1
        row = rows[0]
        assert row["paymentId"] == distributed["payment"].paymentID
        assert row["level"] == 3
        assert row["expected"] == Decimal("2250.00")
        assert row["received"] == Decimal("2250.00")
        assert row["statuses"] == ["frozen"]
        assert row["reason"] is None

    def test_skipped_commission(self, engine, run, distributed, admin):
        rows = run(engine.accountCommissionAudit(distributed["middle"].accountID, admin.accountID))

        assert rows[0]["expected"] == Decimal("3150.00")
        assert rows[0]["received"] == Decimal("0.00")
        assert rows[0]["reason"] == "not_activated"

    def test_missing_commission(self, engine, run, make_chain, activate, pay, admin):
        sponsor, payer = make_chain(2)
        activate(sponsor)
        pay(payer, "B", 20000)

        rows = run(engine.accountCommissionAudit(sponsor.accountID, admin.accountID))

        assert rows[0]["expected"] == Decimal("2000.00")
        assert rows[0]["reason"] == "missing"

    def test_reversed_commission(self, engine, run, distributed, admin, superadmin):
        direct = distributed["direct"]
        run(engine.reverseCommissions(direct.accountID, "fraud", superadmin.accountID, "REVERSE COMMISSIONS"))

        rows = run(engine.accountCommissionAudit(direct.accountID, admin.accountID))

        assert rows[0]["received"] == Decimal("0.00")
        assert rows[0]["statuses"] == ["reversed"]
        assert rows[0]["reason"] == "reversed"

    def test_structure_filter(self, engine, run, distributed, admin):
        rows = run(engine.accountCommissionAudit(distributed["top"].accountID, admin.accountID, structure="A"))
        assert rows == []

    def test_unknown_account(self, engine, run, admin):
        with pytest.raises(AccountNotFoundError):
            run(engine.accountCommissionAudit(9999, admin.accountID))
