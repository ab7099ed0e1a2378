# commission_system/events/setup.py
"""
Setup commission event handlers.
Register all event handlers with the event bus.
"""
import logging

from commission_system.events.event_bus import eventBus, CommissionEvents
from commission_system.events.handlers import handle_payment_confirmed, handle_activation_recomputed

logger = logging.getLogger(__name__)


def setup_commission_event_handlers():
    """
    Register all commission event handlers with the event bus.

    This function should be called during engine initialization.
    """
    logger.info("Setting up commission event handlers...")

    eventBus.subscribe(CommissionEvents.PAYMENT_CONFIRMED, handle_payment_confirmed)
    logger.debug(f"Registered handler for {CommissionEvents.PAYMENT_CONFIRMED}")

    eventBus.subscribe(CommissionEvents.ACTIVATION_RECOMPUTED, handle_activation_recomputed)
    logger.debug(f"Registered handler for {CommissionEvents.ACTIVATION_RECOMPUTED}")

    logger.info("Commission event handlers registered successfully")


def teardown_commission_event_handlers():
    """
    Unregister all commission event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down commission event handlers...")

    eventBus.unsubscribe(CommissionEvents.PAYMENT_CONFIRMED, handle_payment_confirmed)
    eventBus.unsubscribe(CommissionEvents.ACTIVATION_RECOMPUTED, handle_activation_recomputed)

    logger.info("Commission event handlers unregistered")
