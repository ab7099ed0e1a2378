# config.py
"""
Configuration management for the commission ledger engine.
Loads from .env, validates critical keys.
"""
import os
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


def _parse_list(raw: str) -> List[str]:
    return [item.strip().upper() for item in raw.split(',') if item.strip()]


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        hold_days = Config.get(Config.HOLD_PERIOD_DAYS)

        # Override at runtime (tests, admin tooling)
        Config.set(Config.REQUIRE_DRY_RUN_PREVIEW, False)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Money
    USD_KZT_RATE = "USD_KZT_RATE"
    MONEY_QUANTUM = "MONEY_QUANTUM"
    SUBSCRIPTION_PRICE_USD = "SUBSCRIPTION_PRICE_USD"
    SUBSCRIPTION_DAYS = "SUBSCRIPTION_DAYS"
    ACTIVATION_MIN_USD = "ACTIVATION_MIN_USD"

    # Commission plan
    HOLD_PERIOD_DAYS = "HOLD_PERIOD_DAYS"
    SPONSOR_ACTIVATION_STRUCTURES = "SPONSOR_ACTIVATION_STRUCTURES"
    ONE_TIME_PER_PARTNER_STRUCTURES = "ONE_TIME_PER_PARTNER_STRUCTURES"
    PLAN_ID = "PLAN_ID"

    # Batch jobs and audits
    BATCH_CHUNK_SIZE = "BATCH_CHUNK_SIZE"
    EARLY_UNLOCK_LOOKBACK_DAYS = "EARLY_UNLOCK_LOOKBACK_DAYS"
    REQUIRE_DRY_RUN_PREVIEW = "REQUIRE_DRY_RUN_PREVIEW"

    # Destructive operations
    PURGE_CONFIRMATION_PHRASE = "PURGE_CONFIRMATION_PHRASE"
    REVERSAL_CONFIRMATION_PHRASE = "REVERSAL_CONFIRMATION_PHRASE"

    # System
    LOG_LEVEL = "LOG_LEVEL"
    SYSTEM_READY = "SYSTEM_READY"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
        USD_KZT_RATE,
        HOLD_PERIOD_DAYS,
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file and process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///ledger.db"
            )

            # Money
            cls._config[cls.USD_KZT_RATE] = Decimal(os.getenv("USD_KZT_RATE", "450"))
            cls._config[cls.MONEY_QUANTUM] = Decimal(os.getenv("MONEY_QUANTUM", "0.01"))
            cls._config[cls.SUBSCRIPTION_PRICE_USD] = Decimal(
                os.getenv("SUBSCRIPTION_PRICE_USD", "100")
            )
            cls._config[cls.SUBSCRIPTION_DAYS] = int(os.getenv("SUBSCRIPTION_DAYS", "365"))
            cls._config[cls.ACTIVATION_MIN_USD] = Decimal(os.getenv("ACTIVATION_MIN_USD", "40"))

            # Commission plan
            cls._config[cls.HOLD_PERIOD_DAYS] = int(os.getenv("HOLD_PERIOD_DAYS", "7"))
            cls._config[cls.SPONSOR_ACTIVATION_STRUCTURES] = _parse_list(
                os.getenv("SPONSOR_ACTIVATION_STRUCTURES", "A,B")
            )
            cls._config[cls.ONE_TIME_PER_PARTNER_STRUCTURES] = _parse_list(
                os.getenv("ONE_TIME_PER_PARTNER_STRUCTURES", "")
            )
            cls._config[cls.PLAN_ID] = os.getenv("PLAN_ID", "default")

            # Batch jobs and audits
            cls._config[cls.BATCH_CHUNK_SIZE] = int(os.getenv("BATCH_CHUNK_SIZE", "500"))
            cls._config[cls.EARLY_UNLOCK_LOOKBACK_DAYS] = int(
                os.getenv("EARLY_UNLOCK_LOOKBACK_DAYS", "90")
            )
            cls._config[cls.REQUIRE_DRY_RUN_PREVIEW] = (
                    os.getenv("REQUIRE_DRY_RUN_PREVIEW", "true").lower() == "true"
            )

            # Destructive operations
            cls._config[cls.PURGE_CONFIRMATION_PHRASE] = os.getenv(
                "PURGE_CONFIRMATION_PHRASE",
                "DELETE PERMANENTLY"
            )
            cls._config[cls.REVERSAL_CONFIRMATION_PHRASE] = os.getenv(
                "REVERSAL_CONFIRMATION_PHRASE",
                "REVERSE COMMISSIONS"
            )

            # System
            cls._config[cls.LOG_LEVEL] = os.getenv("LOG_LEVEL", "INFO").upper()
            cls._config[cls.SYSTEM_READY] = False

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except (ValueError, InvalidOperation) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present and sane.

        Raises:
            ConfigurationError: If any critical key is missing or invalid
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if cls.get(key) is None or cls.get(key) == "":
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        if cls.get(cls.USD_KZT_RATE) <= 0:
            raise ConfigurationError("USD_KZT_RATE must be positive")

        if cls.get(cls.HOLD_PERIOD_DAYS) < 0:
            raise ConfigurationError("HOLD_PERIOD_DAYS must not be negative")

        logger.info("All critical configuration keys validated ✓")

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._initialized

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return cls._config.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """
        Get all configuration values.

        Returns:
            Copy of configuration dictionary
        """
        return cls._config.copy()
