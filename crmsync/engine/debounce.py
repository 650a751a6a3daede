"""
Debounce Window
Coalesces bursts of triggers for the same entity (e.g. repeated cart updates).
Each submit() replaces the key's pending action and restarts its timer, so
only the last action of a burst runs, once the key has been quiet for
`seconds`.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    generation: int
    action: Callable[[], Any]
    timer: Any


class DebounceWindow:
    """
    Trailing-edge debounce keyed by entity.

    Args:
        seconds: quiet period before the latest action runs
        timer_factory: threading.Timer compatible constructor (injectable for tests)
    """

    def __init__(self, seconds: float, timer_factory: Optional[Callable[..., Any]] = None):
        self.seconds = seconds
        self.timer_factory = timer_factory or threading.Timer
        self._pending: Dict[Hashable, _Pending] = {}
        self._generations = itertools.count(1)
        self._lock = threading.Lock()

    def submit(self, key: Hashable, action: Callable[[], Any]) -> int:
        """Make `action` the pending one for key and restart its timer. Returns its generation."""
        with self._lock:
            previous = self._pending.get(key)
            if previous:
                previous.timer.cancel()
                logger.debug(f"Debounce: replaced pending action for {key!r}")

            generation = next(self._generations)
            timer = self.timer_factory(self.seconds, self._expire, args=(key, generation))
            timer.name = 'crmsync-debounce'
            self._pending[key] = _Pending(generation, action, timer)
            timer.start()
        return generation

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._pending

    def clear(self) -> None:
        """Drop every pending action without running it."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            entry.timer.cancel()

    def _expire(self, key: Hashable, generation: int) -> None:
        with self._lock:
            pending = self._pending.get(key)
            # A timer that fired after being replaced must not run the old action
            if pending is None or pending.generation != generation:
                logger.debug(f"Debounce: stale timer for {key!r} ignored")
                return
            del self._pending[key]

        logger.debug(f"Debounce: {key!r} quiet for {self.seconds}s, running latest action")
        try:
            pending.action()
        except Exception as e:
            logger.error(f"Debounced action for {key!r} failed: {e}", exc_info=True)
