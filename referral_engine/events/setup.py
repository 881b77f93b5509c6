# referral_engine/events/setup.py
"""
Setup referral engine event handlers.
Register all event handlers with the event bus.
"""
import logging

from referral_engine.events.event_bus import eventBus, ReferralEvents
from referral_engine.events.handlers import (
    handle_anomaly,
    handle_package_processed,
    handle_rank_changed,
    handle_audit_completed,
)

logger = logging.getLogger(__name__)

_SUBSCRIPTIONS = [
    *[(event, handle_anomaly) for event in ReferralEvents.ANOMALIES],
    (ReferralEvents.PACKAGE_APPROVED, handle_package_processed),
    (ReferralEvents.PACKAGE_REJECTED, handle_package_processed),
    (ReferralEvents.RANK_CHANGED, handle_rank_changed),
    (ReferralEvents.AUDIT_COMPLETED, handle_audit_completed),
]


def setup_event_handlers():
    """
    Register all engine event handlers with the event bus.

    This function should be called during application initialization.
    """
    logger.info("Setting up referral engine event handlers...")

    for event, handler in _SUBSCRIPTIONS:
        eventBus.subscribe(event, handler)
        logger.debug(f"Registered {handler.__name__} for {event}")

    logger.info("Referral engine event handlers registered successfully")


def teardown_event_handlers():
    """
    Unregister all engine event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down referral engine event handlers...")

    for event, handler in _SUBSCRIPTIONS:
        eventBus.unsubscribe(event, handler)

    logger.info("Referral engine event handlers unregistered")
