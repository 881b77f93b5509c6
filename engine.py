# engine.py
"""
Referral Engine - main entry point.
Prepares the database, registers listeners and event handlers and runs
the periodic integrity audit until interrupted.
"""
import logging
import sys
import time

from config import Config
from core.db import setup_database, dispose_engine
from models.listeners import register_all_listeners
from referral_engine.events.setup import setup_event_handlers
from background.audit_scheduler import AuditScheduler

logger = logging.getLogger(__name__)


def configure_logging():
    """Stdout + file logging at Config.LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, Config.get(Config.LOG_LEVEL), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(Config.get(Config.LOG_FILE))
        ]
    )


def initialize_engine(startScheduler: bool = True):
    """
    Initialize the engine.

    Returns:
        AuditScheduler (started if startScheduler)
    """
    try:
        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        Config.initialize_from_env()
        configure_logging()

        logger.info("=" * 60)
        logger.info("REFERRAL ENGINE INITIALIZATION")
        logger.info("=" * 60)

        Config.validate_critical_keys()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Setup database and ORM listeners
        # ═══════════════════════════════════════════════════════════════════════
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Event handlers
        # ═══════════════════════════════════════════════════════════════════════
        setup_event_handlers()
        logger.info("✓ Event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Background audit
        # ═══════════════════════════════════════════════════════════════════════
        scheduler = AuditScheduler()
        if startScheduler:
            scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


def main():
    """Main entry point."""
    scheduler = None
    try:
        scheduler = initialize_engine()
        while True:
            time.sleep(60)

    except KeyboardInterrupt:
        logger.info("⚠️ Engine stopped by user")
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler is not None:
            scheduler.stop()
        dispose_engine()
        logger.info("👋 Engine shutdown complete")


if __name__ == '__main__':
    main()
