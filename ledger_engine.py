# ledger_engine.py
"""
Commission Ledger Engine - main entry point.
Boots configuration, database, listeners, commission rules, event
handlers and the background scheduler, then runs until stopped.
"""
import asyncio
import logging
import signal
import sys

from config import Config, ConfigurationError
from core.db import setup_database, get_db_session_ctx

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('ledger_engine.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize_engine():
    """
    Initialize the engine with all services and configurations.

    Returns:
        CommissionScheduler: started scheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("COMMISSION LEDGER ENGINE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logging.getLogger().setLevel(Config.get(Config.LOG_LEVEL, "INFO"))
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        Config.validate_critical_keys()
        logger.info("✓ Configuration validated")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()

        from models import register_all_listeners
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Seed default commission rules
        # ═══════════════════════════════════════════════════════════════════════
        from commission_system.config.rules import seed_default_rules, load_rule_set
        from commission_system.utils.time_machine import timeMachine

        with get_db_session_ctx() as session:
            seed_default_rules(session)
            ruleSet = load_rule_set(session, timeMachine.now)
            for structure in ("A", "B"):
                ruleSet.validate(structure)
            logger.info(f"✓ Commission rules ready (version {ruleSet.version})")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Setup event handlers
        # ═══════════════════════════════════════════════════════════════════════
        from commission_system.events.setup import setup_commission_event_handlers
        setup_commission_event_handlers()
        logger.info("✓ Event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 6: Start background scheduler
        # ═══════════════════════════════════════════════════════════════════════
        from background.commission_scheduler import CommissionScheduler
        scheduler = CommissionScheduler()
        await scheduler.start()

        Config.set(Config.SYSTEM_READY, True, source="startup")

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return scheduler

    except ConfigurationError as e:
        logger.critical(f"❌ Configuration error: {e}", exc_info=True)
        raise
    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


async def main():
    """Main entry point."""
    scheduler = None
    stop_event = asyncio.Event()

    try:
        scheduler = await initialize_engine()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig} not supported on this platform")

        logger.info("🔄 Engine running, waiting for jobs...")
        await stop_event.wait()

    except KeyboardInterrupt:
        logger.info("⚠️ Engine stopped by user")
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler:
            await scheduler.stop()
        logger.info("👋 Engine shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")
