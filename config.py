# config.py
"""
Configuration management for the referral engine.
Loads from .env, validates critical keys.
"""
import os
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        depth = Config.get(Config.MAX_UPLINE_DEPTH)

        # Override at runtime (tests, admin tools)
        Config.set(Config.INDIRECT_ROLLUP_ENABLED, False)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Referral graph
    MAX_UPLINE_DEPTH = "MAX_UPLINE_DEPTH"

    # Commission policy
    PACKAGE_VALIDITY_DAYS = "PACKAGE_VALIDITY_DAYS"
    INDIRECT_ROLLUP_ENABLED = "INDIRECT_ROLLUP_ENABLED"
    UPLINE_POINTS_ENABLED = "UPLINE_POINTS_ENABLED"

    # Integrity audit
    AUDIT_INTERVAL_HOURS = "AUDIT_INTERVAL_HOURS"
    AUDIT_FALLBACK_REFERRER = "AUDIT_FALLBACK_REFERRER"

    # Logging
    LOG_LEVEL = "LOG_LEVEL"
    LOG_FILE = "LOG_FILE"

    # ═══════════════════════════════════════════════════════════════════════
    # DEFAULTS
    # ═══════════════════════════════════════════════════════════════════════

    DEFAULTS: Dict[str, Any] = {
        DATABASE_URL: "sqlite:///referral_engine.db",
        MAX_UPLINE_DEPTH: 15,
        PACKAGE_VALIDITY_DAYS: 365,
        INDIRECT_ROLLUP_ENABLED: True,
        UPLINE_POINTS_ENABLED: False,
        AUDIT_INTERVAL_HOURS: 24,
        AUDIT_FALLBACK_REFERRER: None,
        LOG_LEVEL: "INFO",
        LOG_FILE: "referral_engine.log",
    }

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
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
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                cls.DEFAULTS[cls.DATABASE_URL]
            )

            cls._config[cls.MAX_UPLINE_DEPTH] = int(
                os.getenv("MAX_UPLINE_DEPTH", str(cls.DEFAULTS[cls.MAX_UPLINE_DEPTH]))
            )
            if cls._config[cls.MAX_UPLINE_DEPTH] < 1:
                raise ValueError("MAX_UPLINE_DEPTH must be at least 1")

            cls._config[cls.PACKAGE_VALIDITY_DAYS] = int(
                os.getenv("PACKAGE_VALIDITY_DAYS", str(cls.DEFAULTS[cls.PACKAGE_VALIDITY_DAYS]))
            )
            cls._config[cls.INDIRECT_ROLLUP_ENABLED] = _env_bool("INDIRECT_ROLLUP_ENABLED", "true")
            cls._config[cls.UPLINE_POINTS_ENABLED] = _env_bool("UPLINE_POINTS_ENABLED", "false")

            cls._config[cls.AUDIT_INTERVAL_HOURS] = int(
                os.getenv("AUDIT_INTERVAL_HOURS", str(cls.DEFAULTS[cls.AUDIT_INTERVAL_HOURS]))
            )
            cls._config[cls.AUDIT_FALLBACK_REFERRER] = os.getenv("AUDIT_FALLBACK_REFERRER") or None

            cls._config[cls.LOG_LEVEL] = os.getenv("LOG_LEVEL", cls.DEFAULTS[cls.LOG_LEVEL]).upper()
            cls._config[cls.LOG_FILE] = os.getenv("LOG_FILE", cls.DEFAULTS[cls.LOG_FILE])

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Falls back to the built-in default when the key was never loaded,
        so services work before initialize_from_env() (e.g. in tests).

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in cls._config:
            return cls._config[key]
        if default is not None:
            return default
        return cls.DEFAULTS.get(key)

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
    def reset(cls) -> None:
        """Drop all loaded and runtime values."""
        cls._config = {}
        cls._initialized = False

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """
        Get all configuration values.

        Returns:
            Copy of configuration dictionary, defaults included
        """
        merged = dict(cls.DEFAULTS)
        merged.update(cls._config)
        return merged
