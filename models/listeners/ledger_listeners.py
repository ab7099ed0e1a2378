# models/listeners/ledger_listeners.py
"""
Ledger Event Listeners - keep Account.balanceAvailable in sync with the ledger.

Architecture:
    LedgerEntry (INSERT/UPDATE) -> Account.balanceAvailable = SUM(completed entries)

The cached column is always overwritten with a full recalculation, never
incremented. Ledger rows are append-only: amount, owner and kind cannot
change and rows cannot be deleted.
"""
import logging

from sqlalchemy import event, func, select
from sqlalchemy.orm import attributes

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = ('amount', 'accountID', 'kind')


def register_balance_listeners():
    """
    Register event listeners for balance synchronization.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.ledger_entry import LedgerEntry, LedgerStatus
    from models.account import Account

    ledger = LedgerEntry.__table__
    accounts = Account.__table__

    def recalc_available_balance(mapper, connection, target):
        """
        Full recalculation of Account.balanceAvailable from the ledger.

        Formula: Account.balanceAvailable = SUM(LedgerEntry.amount)
                                            WHERE accountID=X AND status='completed'
        """
        result = connection.execute(
            select(func.coalesce(func.sum(ledger.c.amount), 0))
            .where(ledger.c.accountID == target.accountID)
            .where(ledger.c.status == LedgerStatus.COMPLETED.value)
        )
        real_balance = result.scalar()

        # Overwrite (NOT increment!)
        connection.execute(
            accounts.update()
            .where(accounts.c.accountID == target.accountID)
            .values(balanceAvailable=real_balance)
        )

        logger.debug(
            f"Balance RECALC: account={target.accountID}, "
            f"available={real_balance}, trigger=entry {target.entryID} ({target.status})"
        )

    event.listen(LedgerEntry, 'after_insert', recalc_available_balance)
    event.listen(LedgerEntry, 'after_update', recalc_available_balance)


def register_ledger_protection():
    """Reject in-place edits of money fields and deletion of ledger rows."""
    from models.ledger_entry import LedgerEntry
    from models.account import Account

    @event.listens_for(LedgerEntry, 'before_update')
    def block_money_mutation(mapper, connection, target):
        from commission_system.errors import LedgerImmutableError

        ledger = LedgerEntry.__table__

        for field in IMMUTABLE_FIELDS:
            history = attributes.get_history(target, field)
            if not history.added:
                continue

            if history.deleted:
                stored = history.deleted[0]
            else:
                # set on an expired instance: the old value was never loaded
                stored = connection.execute(
                    select(ledger.c[field]).where(ledger.c.entryID == target.entryID)
                ).scalar()

            if stored != history.added[0]:
                raise LedgerImmutableError(
                    f"LedgerEntry {target.entryID}: '{field}' is immutable "
                    f"({stored} -> {history.added[0]})"
                )

    @event.listens_for(LedgerEntry, 'before_delete')
    def block_delete(mapper, connection, target):
        from commission_system.errors import LedgerImmutableError
        raise LedgerImmutableError(f"LedgerEntry {target.entryID} cannot be deleted")

    @event.listens_for(Account.balanceAvailable, 'set')
    def warn_direct_balance_set(target, value, oldvalue, initiator):
        """Warn when balanceAvailable is set directly (not via listener)."""
        if oldvalue is not None and oldvalue is not attributes.NO_VALUE and value != oldvalue:
            logger.warning(
                f"DIRECT balanceAvailable modification detected! "
                f"account={target.accountID}, {oldvalue} -> {value}"
            )
