# commission_system/__init__.py
"""
Commission System - multi-level commission ledger and reconciliation engine.
"""

# Facade
from commission_system.engine import CommissionEngine

# Services
from commission_system.services.eligibility_service import EligibilityService
from commission_system.services.commission_service import CommissionService
from commission_system.services.ledger_service import LedgerService
from commission_system.services.audit_service import AuditService
from commission_system.services.backfill_service import BackfillService
from commission_system.services.reversal_service import ReversalService

# Configuration
from commission_system.config.rules import RuleSet, load_rule_set, seed_default_rules

# Utilities
from commission_system.utils.time_machine import timeMachine

# Events
from commission_system.events.event_bus import eventBus, CommissionEvents

__all__ = [
    # Facade
    'CommissionEngine',

    # Services
    'EligibilityService',
    'CommissionService',
    'LedgerService',
    'AuditService',
    'BackfillService',
    'ReversalService',

    # Config
    'RuleSet',
    'load_rule_set',
    'seed_default_rules',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'CommissionEvents',
]
