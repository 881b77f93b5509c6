# referral_engine/events/event_bus.py
"""
In-process event bus for engine diagnostics and lifecycle events.

Handlers run synchronously in emit order. A failing handler is logged
and never breaks the emitter - events are notifications, not control flow.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], None]


class ReferralEvents:
    """Event names."""
    DANGLING_REFERRER = "referral.dangling_referrer"
    CYCLE_DETECTED = "referral.cycle_detected"
    DEPTH_LIMIT_REACHED = "referral.depth_limit_reached"
    TIER_ROLLED_UP = "commission.tier_rolled_up"
    TIER_UNFILLED = "commission.tier_unfilled"
    PACKAGE_APPROVED = "package.approved"
    PACKAGE_REJECTED = "package.rejected"
    RANK_CHANGED = "rank.changed"
    AUDIT_COMPLETED = "audit.completed"

    ANOMALIES = (
        DANGLING_REFERRER,
        CYCLE_DETECTED,
        DEPTH_LIMIT_REACHED,
        TIER_ROLLED_UP,
        TIER_UNFILLED,
    )


class EventBus:

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event]:
            self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def handlers(self, event: str) -> List[EventHandler]:
        return list(self._handlers.get(event, []))

    def emit(self, event: str, data: Dict[str, Any]) -> int:
        """
        Deliver `data` to every handler of `event`.

        Returns:
            Number of handlers that ran without error
        """
        delivered = 0
        payload = dict(data, event=event)

        for handler in self.handlers(event):
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} "
                    f"failed for {event}: {e}",
                    exc_info=True
                )

        return delivered


eventBus = EventBus()
