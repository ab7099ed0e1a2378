# commission_system/utils/admin_guard.py
"""
Authorization and confirmation checks for admin operations.

Checks run before the operation touches any financial data.
"""
from typing import Iterable, Optional
import logging

from sqlalchemy.orm import Session

from models.account import Account
from commission_system.errors import AuthorizationError, ConfirmationPhraseError

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "superadmin")
SUPERADMIN_ROLES = ("superadmin",)


def require_role(session: Session, adminId: Optional[int], roles: Iterable[str]) -> Account:
    """
    Load the acting account and check its role.

    Raises:
        AuthorizationError: unknown, inactive or under-privileged caller
    """
    roles = tuple(roles)
    admin = session.get(Account, adminId) if adminId is not None else None

    if admin is None or not admin.isActive or admin.role not in roles:
        logger.warning(f"Authorization rejected: account {adminId} needs one of {roles}")
        raise AuthorizationError(f"Account {adminId} is not allowed to perform this operation")

    return admin


def require_confirmation(presented: Optional[str], expected: str):
    """
    Typed confirmation for destructive operations, matched verbatim.

    Raises:
        ConfirmationPhraseError: phrase missing or different
    """
    if presented != expected:
        raise ConfirmationPhraseError(f"Type '{expected}' exactly to confirm this operation")
