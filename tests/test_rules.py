# tests/test_rules.py
"""
Tests for rule sets (versioning, validation) and configuration loading.

Run:
    pytest tests/test_rules.py -v
"""
from datetime import datetime
from decimal import Decimal

import pytest

from config import Config, ConfigurationError
from models.commission_rule import CommissionRule
from commission_system.config.rules import load_rule_set, seed_default_rules
from commission_system.errors import CommissionConfigError
from conftest import NOW


class TestDefaultPlan:

    def test_seed_is_idempotent(self, session):
        assert seed_default_rules(session) == 0
        assert session.query(CommissionRule).count() == 15

    def test_default_percents(self, session):
        ruleSet = load_rule_set(session, NOW)

        assert [ruleSet.rule("A", level).unlockReferrals for level in range(1, 6)] == [0, 3, 5, 8, 10]
        assert sum(ruleSet.rule("B", level).percent for level in range(1, 11)) == Decimal("0.38")
        ruleSet.validate("A")
        ruleSet.validate("B")

    def test_activation_threshold(self, session):
        assert load_rule_set(session, NOW).activationThreshold == Decimal("18000")


class TestVersioning:

    @pytest.fixture
    def raised_level_one(self, session):
        session.add(CommissionRule(
            planID="default", structure="B", level=1, percent=Decimal("0.12"),
            unlockReferrals=0, effectiveFrom=datetime(2025, 1, 10), isActive=True
        ))
        session.commit()

    def test_newest_effective_rule_wins(self, session, raised_level_one):
        assert load_rule_set(session, NOW).rule("B", 1).percent == Decimal("0.12")
        assert load_rule_set(session, datetime(2025, 1, 9)).rule("B", 1).percent == Decimal("0.10")

    def test_version_changes(self, session, raised_level_one):
        before = load_rule_set(session, datetime(2025, 1, 9))
        after = load_rule_set(session, NOW)

        assert before.version != after.version
        assert after.version == "default@2025-01-10T00:00:00"

    def test_distribution_uses_rules_of_payment_time(self, engine, session, run, make_chain, activate, pay,
                                                      raised_level_one):
        sponsor, payer = make_chain(2)
        activate(sponsor)
        early = pay(payer, "B", 20000, paidAt=datetime(2025, 1, 5))
        late = pay(payer, "B", 20000)

        assert run(engine.distributeCommission(early.paymentID))["totalAmount"] == Decimal("2000.00")
        assert run(engine.distributeCommission(late.paymentID))["totalAmount"] == Decimal("2400.00")


class TestValidation:

    def test_missing_level(self, session):
        session.query(CommissionRule).filter_by(structure="B", level=7).update({"isActive": False})
        session.commit()

        ruleSet = load_rule_set(session, NOW)
        ruleSet.validate("A")
        with pytest.raises(CommissionConfigError):
            ruleSet.validate("B")

    def test_percent_out_of_range(self, session):
        session.query(CommissionRule).filter_by(structure="A", level=2).update({"percent": Decimal("1.5")})
        session.commit()

        with pytest.raises(CommissionConfigError):
            load_rule_set(session, NOW).validate("A")

    def test_other_plan_is_empty(self, session):
        ruleSet = load_rule_set(session, NOW, planId="promo")

        with pytest.raises(CommissionConfigError):
            ruleSet.rule("A", 1)


class TestConfig:

    def test_critical_keys_present(self, test_config):
        test_config.validate_critical_keys()

    def test_missing_database_url(self, test_config):
        test_config.set(Config.DATABASE_URL, "")

        with pytest.raises(ConfigurationError):
            test_config.validate_critical_keys()

    def test_negative_rate(self, test_config):
        test_config.set(Config.USD_KZT_RATE, Decimal("-1"))

        with pytest.raises(ConfigurationError):
            test_config.validate_critical_keys()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("HOLD_PERIOD_DAYS", "14")
        monkeypatch.setenv("ONE_TIME_PER_PARTNER_STRUCTURES", "b, a")

        Config.initialize_from_env()

        assert Config.get(Config.HOLD_PERIOD_DAYS) == 14
        assert Config.get(Config.ONE_TIME_PER_PARTNER_STRUCTURES) == ["B", "A"]

    def test_unparsable_value(self, monkeypatch):
        monkeypatch.setenv("USD_KZT_RATE", "four hundred")

        with pytest.raises(ConfigurationError):
            Config.initialize_from_env()
