# commission_system/events/handlers.py
"""
Event handlers for the commission engine.
Each handler opens its own session.
"""
import logging
from typing import Dict, Any

from core.db import get_session

logger = logging.getLogger(__name__)


async def handle_payment_confirmed(data: Dict[str, Any]):
    """
    Handle PAYMENT_CONFIRMED: distribute commissions of the payment.

    Args:
        data: Event data with 'paymentId' key
    """
    payment_id = data.get("paymentId")

    if not payment_id:
        logger.error("PAYMENT_CONFIRMED event missing paymentId")
        return

    from commission_system.engine import CommissionEngine

    session = get_session()
    try:
        engine = CommissionEngine(session)
        result = await engine.distributeCommission(payment_id)
        logger.info(
            f"✓ Payment {payment_id} distributed: {result['created']} commissions, "
            f"{result['passUpCount']} pass-ups"
        )
    except Exception as e:
        session.rollback()
        logger.error(f"Error distributing payment {payment_id}: {e}", exc_info=True)
    finally:
        session.close()


async def handle_activation_recomputed(data: Dict[str, Any]):
    """
    Log activation facts: a single account's fact, or the totals of a
    month recomputed by the scheduler.
    """
    period = f"{data.get('year')}-{data.get('month')}"

    if data.get("accountId") is None:
        logger.info(
            f"Activation recomputed for {period}: +{data.get('activated', 0)} "
            f"-{data.get('deactivated', 0)} ={data.get('unchanged', 0)} kept={data.get('kept', 0)}"
        )
        return

    logger.info(
        f"Activation recomputed: account={data['accountId']} {period} active={data.get('isActivated')}"
    )
