"""
Event Bus - Query and Sync Lifecycle Notifications
The engine emits an event after each state change it persists (query
created / sent / done / canceled, sync progress, sweep totals). Listeners
subscribe by name. Emits may come from the background sync thread, so the
handler table is guarded by a lock and handlers run on the emitting thread.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


def _handler_name(handler: Handler) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventBus:
    """
    In-process publish/subscribe.
    A failing handler is logged; the emitter and the other handlers carry on.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def on(self, event_name: str, handler: Handler) -> None:
        """
        Register a handler for an event.

        Args:
            event_name: one of the EVENT_* names below
            handler: callable receiving the event_data dict
        """
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Registered handler for event '{event_name}': {_handler_name(handler)}")

    def off(self, event_name: str, handler: Handler) -> bool:
        """Unregister a handler. Returns False when it was not registered."""
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
        return True

    def emit(self, event_name: str, event_data: Optional[Dict[str, Any]] = None) -> None:
        if event_data is None:
            event_data = {}

        with self._lock:
            handlers = list(self._handlers.get(event_name, []))

        logger.debug(f"Emitting '{event_name}' to {len(handlers)} handler(s): {event_data}")
        for handler in handlers:
            try:
                handler(event_data)
            except Exception as e:
                logger.error(f"Handler {_handler_name(handler)} failed on '{event_name}': {e}", exc_info=True)

    def clear(self) -> None:
        """Drop every handler (tests reset the singleton with this)."""
        with self._lock:
            self._handlers.clear()


# Singleton instance
bus = EventBus()


# =============================================================================
# STANDARD EVENTS
# =============================================================================

# Query lifecycle
EVENT_QUERY_CREATED = 'query_created'
EVENT_QUERY_SENT = 'query_sent'
EVENT_QUERY_FAILED = 'query_failed'
EVENT_QUERY_DONE = 'query_done'
EVENT_QUERY_CANCELED = 'query_canceled'

# Sync orchestrator
EVENT_SYNC_STARTED = 'sync_started'
EVENT_SYNC_PROGRESS = 'sync_progress'
EVENT_SYNC_COMPLETE = 'sync_complete'
EVENT_SYNC_FAILED = 'sync_failed'

# Cron sweep
EVENT_SWEEP_COMPLETE = 'sweep_complete'
