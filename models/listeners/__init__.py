"""
SQLAlchemy Event Listeners Package.

Registers all event listeners for the application.
Import this module once during app startup to activate listeners.

Listeners:
    - ledger_listeners: Sync Account.balanceAvailable on ledger changes,
      block mutation of ledger money fields
"""
import logging

logger = logging.getLogger(__name__)

_listeners_registered = False


def register_all_listeners():
    """
    Register all event listeners.

    Safe to call multiple times - listeners are registered only once.

    Call this from application startup, e.g.:
        from models.listeners import register_all_listeners
        register_all_listeners()
    """
    global _listeners_registered

    if _listeners_registered:
        logger.debug("Listeners already registered, skipping")
        return

    from models.listeners.ledger_listeners import (
        register_balance_listeners,
        register_ledger_protection
    )

    register_balance_listeners()
    logger.info("Balance sync listeners registered (LedgerEntry -> Account.balanceAvailable)")

    register_ledger_protection()
    logger.info("Ledger protection listeners registered (immutable amount/owner/kind)")

    _listeners_registered = True
    logger.info("All event listeners registered successfully")
