from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class Observable:
    """Publishes immutable state snapshots to subscribers.

    Subclasses keep their state in a frozen dataclass and call _set_state()
    after every mutation, holding self._lock across read-modify-write so
    observers see a single-writer sequence of snapshots.
    """

    def __init__(self, initial_state):
        self._lock = threading.RLock()
        self._state = initial_state
        self._subscribers: list[Callable] = []

    def snapshot(self):
        with self._lock:
            return self._state

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register callback(state). Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _set_state(self, state):
        with self._lock:
            self._state = state
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(state)
            except Exception:
                logger.exception(f"State subscriber {callback!r} raised")
