# tests/conftest.py
"""
Pytest configuration and shared fixtures for the commission engine tests.

Every test gets a fresh in-memory SQLite database with the default plan
seeded, deterministic configuration and virtual time pinned to
2025-01-15 12:00 UTC.

Run:
    pytest tests -v
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401 - registers all tables on Base.metadata
from config import Config
from core.db import create_db_engine, bind_engine
from models.base import Base
from models.account import Account
from models.listeners import register_all_listeners
from commission_system.config.rules import seed_default_rules
from commission_system.engine import CommissionEngine
from commission_system.events.event_bus import eventBus
from commission_system.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

NOW = datetime(2025, 1, 15, 12, 0)

TEST_CONFIG = {
    Config.USD_KZT_RATE: Decimal("450"),
    Config.MONEY_QUANTUM: Decimal("0.01"),
    Config.SUBSCRIPTION_PRICE_USD: Decimal("100"),
    Config.SUBSCRIPTION_DAYS: 365,
    Config.ACTIVATION_MIN_USD: Decimal("40"),
    Config.HOLD_PERIOD_DAYS: 7,
    Config.SPONSOR_ACTIVATION_STRUCTURES: ["A", "B"],
    Config.ONE_TIME_PER_PARTNER_STRUCTURES: [],
    Config.PLAN_ID: "default",
    Config.BATCH_CHUNK_SIZE: 500,
    Config.EARLY_UNLOCK_LOOKBACK_DAYS: 90,
    Config.REQUIRE_DRY_RUN_PREVIEW: True,
    Config.PURGE_CONFIRMATION_PHRASE: "DELETE PERMANENTLY",
    Config.REVERSAL_CONFIRMATION_PHRASE: "REVERSE COMMISSIONS",
}


# =============================================================================
# CONFIG / TIME FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture(autouse=True)
def test_config():
    """Deterministic configuration, independent of any .env file."""
    Config.initialize_from_env()
    for key, value in TEST_CONFIG.items():
        Config.set(key, value, source="tests")
    yield Config


@pytest.fixture(autouse=True)
def virtual_time():
    """Pin system time; tests move it with timeMachine.setTime/advanceTime."""
    timeMachine.setTime(NOW)
    yield timeMachine
    timeMachine.resetToRealTime()


@pytest.fixture(autouse=True)
def clean_event_bus():
    eventBus.clear()
    yield
    eventBus.clear()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def db_engine():
    """Fresh in-memory database, also bound for get_session() users."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    bind_engine(engine)
    yield engine
    bind_engine(None)
    engine.dispose()


@pytest.fixture
def session(db_engine):
    """Database session with the default commission plan seeded."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    seed_default_rules(session)
    session.commit()
    yield session
    session.close()


@pytest.fixture
def engine(session):
    return CommissionEngine(session)


@pytest.fixture
def run():
    """Run a service coroutine to completion."""

    def _run(coro):
        return asyncio.run(coro)

    return _run


# =============================================================================
# ACCOUNT FIXTURES
# =============================================================================

@pytest.fixture
def make_account(engine, session, run):
    """Register an account (one month before NOW unless registeredAt given)."""
    counter = [0]

    def _make(sponsor=None, role="user", registeredAt=None, firstname=None):
        counter[0] += 1
        account = run(engine.accounts.register(
            email=f"user{counter[0]}@example.com",
            sponsorId=sponsor.accountID if isinstance(sponsor, Account) else sponsor,
            firstname=firstname or f"User{counter[0]}",
            role=role,
            registeredAt=registeredAt or NOW - timedelta(days=30)
        ))
        session.commit()
        return account

    return _make


@pytest.fixture
def make_chain(make_account):
    """
    Linear sponsor chain.

    Returns:
        List from the top account down to the bottom one
    """

    def _make(length, top=None, registeredAt=None):
        chain = []
        sponsor = top
        for _ in range(length):
            sponsor = make_account(sponsor=sponsor, registeredAt=registeredAt)
            chain.append(sponsor)
        return chain

    return _make


@pytest.fixture
def superadmin(make_account):
    return make_account(role="superadmin", firstname="Root")


@pytest.fixture
def admin(make_account):
    return make_account(role="admin", firstname="Support")


# =============================================================================
# PAYMENT / QUALIFICATION FIXTURES
# =============================================================================

@pytest.fixture
def pay(engine, session, run):
    """Confirm a payment without distributing it."""

    def _pay(account, structure, amount, currency="KZT", paidAt=None, **kwargs):
        payment = run(engine.payments.confirmPayment(
            account.accountID, structure, amount, currency=currency, paidAt=paidAt or NOW, **kwargs
        ))
        session.commit()
        return payment

    return _pay


@pytest.fixture
def subscribe(pay):
    """Structure A subscription paid one day before NOW."""

    def _subscribe(account, paidAt=None):
        return pay(account, "A", Decimal("100"), currency="USD", paidAt=paidAt or NOW - timedelta(days=1))

    return _subscribe


@pytest.fixture
def activate(engine, session, run):
    """Mark an account activated for a month (January 2025 by default)."""

    def _activate(account, year=2025, month=1, isActivated=True):
        row = run(engine.activation.recordActivation(
            account.accountID, year, month, isActivated, source="admin"
        ))
        session.commit()
        return row

    return _activate


@pytest.fixture
def qualify(subscribe, activate):
    """Subscribed in A and activated in B for January 2025."""

    def _qualify(*accounts):
        for account in accounts:
            subscribe(account)
            activate(account)

    return _qualify
