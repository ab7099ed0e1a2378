"""
Database models for the commission ledger engine.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Participants and sponsor graph
from models.account import Account
from models.referral import Referral

# Payments and activation
from models.payment_event import PaymentEvent
from models.monthly_activation import MonthlyActivation

# Commission plan
from models.commission_rule import CommissionRule, Structure, MAX_DEPTH

# Ledger
from models.ledger_entry import (
    LedgerEntry, LedgerKind, LedgerStatus, ALLOWED_TRANSITIONS, OUTFLOW_KINDS
)
from models.skip_record import SkipRecord, SkipReason
from models.reversal_link import ReversalLink

# Administration
from models.admin_action import AdminAction
from models.batch_job import BatchJob

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Participants
    'Account',
    'Referral',

    # Payments
    'PaymentEvent',
    'MonthlyActivation',

    # Plan
    'CommissionRule',
    'Structure',
    'MAX_DEPTH',

    # Ledger
    'LedgerEntry',
    'LedgerKind',
    'LedgerStatus',
    'ALLOWED_TRANSITIONS',
    'OUTFLOW_KINDS',
    'SkipRecord',
    'SkipReason',
    'ReversalLink',

    # Administration
    'AdminAction',
    'BatchJob',

    # Listeners
    'register_all_listeners',
]
