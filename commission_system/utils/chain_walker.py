# commission_system/utils/chain_walker.py
"""
Safe sponsor chain walking utilities.
Prevents infinite loops and validates chain integrity.
"""
from typing import Optional, Callable, Set, List, Dict
from sqlalchemy.orm import Session
import logging

from models.account import Account

logger = logging.getLogger(__name__)

# Hard cap for walks that are not bounded by a structure depth
SAFETY_DEPTH = 100


class ChainWalker:
    """
    Safe utilities for walking sponsor upline/downline chains.
    Prevents infinite loops and validates chain integrity.
    """

    def __init__(self, session: Session):
        self.session = session

    def walk_upline(
            self,
            start_account: Account,
            callback: Callable[[Account, int], bool],
            max_depth: int = SAFETY_DEPTH
    ) -> int:
        """
        Safely walk up the sponsor chain, calling callback for each ancestor.

        The direct sponsor is level 1. The walk stops at the chain end,
        at max_depth, on a missing sponsor or on a cycle.

        Args:
            start_account: Paying account
            callback: Function(account, level) -> continue_walking (bool)
            max_depth: Maximum level to visit

        Returns:
            Number of ancestors processed
        """
        current = start_account
        level = 1
        processed = 0
        visited = {start_account.accountID}

        while current.sponsorID is not None and level <= max_depth:
            if current.sponsorID in visited:
                logger.error(
                    f"Cycle detected at account {current.accountID} "
                    f"(sponsor {current.sponsorID} already visited)"
                )
                break

            sponsor = self.session.get(Account, current.sponsorID)
            if not sponsor:
                logger.warning(
                    f"Sponsor not found: accountID={current.sponsorID} "
                    f"for account {current.accountID}"
                )
                break

            visited.add(sponsor.accountID)

            should_continue = callback(sponsor, level)
            processed += 1

            if not should_continue:
                break

            current = sponsor
            level += 1

        return processed

    def get_upline_chain(self, account: Account, max_depth: int = SAFETY_DEPTH) -> List[Account]:
        """
        Ancestors from the direct sponsor upwards.

        Returns:
            List where index 0 is level 1
        """
        chain = []

        def collect(sponsor, level):
            chain.append(sponsor)
            return True

        self.walk_upline(account, collect, max_depth)
        return chain

    def ancestor_at(self, account: Account, level: int) -> Optional[Account]:
        """The level-N ancestor, or None when the chain is shorter."""
        chain = self.get_upline_chain(account, level)
        if len(chain) < level:
            return None
        return chain[level - 1]

    def walk_downline(
            self,
            start_account: Account,
            callback: Callable[[Account, int], None],
            max_depth: int = SAFETY_DEPTH,
            visited: Optional[Set[int]] = None,
            _level: int = 1
    ) -> int:
        """
        Safely walk down the sponsor tree recursively.

        Args:
            start_account: Root of the subtree
            callback: Function(account, level) for each descendant,
                level 1 being direct referrals
            max_depth: Maximum depth
            visited: Set of visited account IDs (for cycle detection)

        Returns:
            Total number of accounts processed
        """
        if visited is None:
            visited = set()

        if _level > max_depth:
            return 0

        if start_account.accountID in visited:
            logger.error(f"Cycle detected in downline at account {start_account.accountID}")
            return 0

        visited.add(start_account.accountID)

        referrals = self.session.query(Account).filter(
            Account.sponsorID == start_account.accountID
        ).order_by(Account.accountID).all()

        processed = 0

        for referral in referrals:
            if referral.accountID in visited:
                logger.error(f"Cycle detected in downline at account {referral.accountID}")
                continue

            callback(referral, _level)
            processed += 1

            processed += self.walk_downline(
                referral,
                callback,
                max_depth,
                visited,
                _level + 1
            )

        return processed

    def downline_levels(self, account: Account, max_depth: int) -> Dict[int, int]:
        """Map of descendant accountID -> level below account."""
        levels = {}

        def collect(descendant, level):
            levels[descendant.accountID] = level

        self.walk_downline(account, collect, max_depth)
        return levels

    def count_downline(self, account: Account, max_depth: int = SAFETY_DEPTH) -> int:
        """Total number of accounts in the downline."""
        count = [0]  # Use list to allow modification in callback

        def counter(descendant, level):
            count[0] += 1

        self.walk_downline(account, counter, max_depth)
        return count[0]

    def would_create_cycle(self, account_id: int, new_sponsor_id: int) -> bool:
        """
        Check whether binding account_id under new_sponsor_id closes a loop.

        True when new_sponsor_id is the account itself or one of its
        descendants (i.e. account_id appears in the new sponsor's upline).
        """
        if account_id == new_sponsor_id:
            return True

        sponsor = self.session.get(Account, new_sponsor_id)
        if sponsor is None:
            return False

        found = [False]

        def check(ancestor, level):
            if ancestor.accountID == account_id:
                found[0] = True
                return False
            return True

        self.walk_upline(sponsor, check, SAFETY_DEPTH)
        return found[0]

    def validate_chain(self, account_id: int) -> bool:
        """
        Validate that the account's upline ends at a root without cycles
        or dangling sponsor references.
        """
        account = self.session.get(Account, account_id)
        if not account:
            logger.error(f"Account {account_id} not found")
            return False

        visited = set()
        current = account
        depth = 0

        while depth < SAFETY_DEPTH:
            if current.sponsorID is None:
                logger.debug(f"Account {account_id} chain is valid (depth={depth})")
                return True

            if current.accountID in visited:
                logger.error(f"Cycle detected in chain for account {account_id}")
                return False

            visited.add(current.accountID)

            sponsor = self.session.get(Account, current.sponsorID)
            if not sponsor:
                logger.error(
                    f"Broken chain: sponsor {current.sponsorID} not found "
                    f"for account {current.accountID}"
                )
                return False

            current = sponsor
            depth += 1

        logger.error(f"Chain too deep (>{SAFETY_DEPTH}) for account {account_id}")
        return False

    def find_orphans(self) -> List[int]:
        """Accounts whose sponsorID points to a non-existent account."""
        existing = {row[0] for row in self.session.query(Account.accountID).all()}
        orphans = [
            accountID
            for accountID, sponsorID in self.session.query(Account.accountID, Account.sponsorID).filter(
                Account.sponsorID.isnot(None)
            ).all()
            if sponsorID not in existing
        ]

        if orphans:
            logger.warning(f"Found {len(orphans)} accounts with dangling sponsor: {orphans}")
        return sorted(orphans)

    def find_cycles(self) -> List[List[int]]:
        """
        Find sponsor cycles.

        Returns:
            Each cycle as a list of accountIDs, starting at its smallest id
        """
        sponsors = dict(self.session.query(Account.accountID, Account.sponsorID).all())
        cycles = []
        settled: Set[int] = set()

        for start in sorted(sponsors):
            path: List[int] = []
            onPath: Dict[int, int] = {}
            node = start

            while node is not None and node in sponsors and node not in settled:
                if node in onPath:
                    cycle = path[onPath[node]:]
                    pivot = cycle.index(min(cycle))
                    cycles.append(cycle[pivot:] + cycle[:pivot])
                    break
                onPath[node] = len(path)
                path.append(node)
                node = sponsors[node]

            settled.update(path)

        if cycles:
            logger.warning(f"Found {len(cycles)} sponsor cycles: {cycles}")
        return cycles
