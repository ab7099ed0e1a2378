# commission_system/errors.py
"""
Domain exceptions of the commission engine.

Eligibility denials are never exceptions: they are SkipRecords.
"""


class CommissionError(Exception):
    """Base class for commission engine errors."""
    pass


class CommissionConfigError(CommissionError):
    """Missing or invalid commission rule. Halts distribution for the structure."""
    pass


class InvalidTransitionError(CommissionError):
    """Ledger status transition outside the allowed state machine."""
    pass


class LedgerImmutableError(CommissionError):
    """Attempt to change amount/owner/kind of a ledger entry or delete it."""
    pass


class AuthorizationError(CommissionError):
    """Caller lacks the role required for the operation."""
    pass


class ConfirmationPhraseError(CommissionError):
    """Typed confirmation phrase did not match verbatim."""
    pass


class PreviewMismatchError(CommissionError):
    """Committing run does not match the presented dry-run preview."""
    pass


class AlreadyReversedError(CommissionError):
    """Source entries were already neutralized by a reversal."""
    pass


class InsufficientBalanceError(CommissionError):
    """Operation would drive the available balance below zero."""
    pass


class SponsorBindError(CommissionError):
    """Sponsor edge would create a cycle or is otherwise not allowed."""
    pass


class AccountNotFoundError(CommissionError):
    pass


class PaymentNotFoundError(CommissionError):
    pass


class ValidationError(CommissionError):
    """Invalid input to an engine operation."""
    pass
