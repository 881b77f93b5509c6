"""
ORM listeners guarding the money tables.

    Earning  - append-only ledger; UPDATE/DELETE abort the flush
    User     - balance/totalEarnings change only via SQL increments;
               a direct attribute assignment is allowed but logged

Engine startup and the test suite call register_all_listeners() once.
"""
import logging

logger = logging.getLogger(__name__)

_listeners_registered = False


def register_all_listeners():
    """Attach ledger guards to the mappers. Repeated calls are no-ops."""
    global _listeners_registered

    if _listeners_registered:
        logger.debug("Ledger listeners already attached")
        return

    from models.listeners.ledger_listeners import (
        register_ledger_listeners,
        register_balance_protection
    )

    register_ledger_listeners()
    register_balance_protection()

    _listeners_registered = True
    logger.info("Ledger guards attached: Earning append-only, direct balance edits logged")
