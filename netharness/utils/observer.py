"""Minimal observer primitive used for connect notifications."""

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class Signal:
    """
    Ordered list of callbacks. emit() calls them in registration order and
    lets exceptions propagate to the emitter.
    """

    def __init__(self, name: str = "signal"):
        self.name = name
        self._observers: List[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]):
        """Subscribe a callback function."""
        if callback not in self._observers:
            self._observers.append(callback)

    def disconnect(self, callback: Callable[..., Any]):
        """Unsubscribe a callback function."""
        if callback in self._observers:
            self._observers.remove(callback)

    def emit(self, *args, **kwargs):
        """Notify all subscribers."""
        # Snapshot: a callback may subscribe another one while we iterate.
        for callback in list(self._observers):
            logger.debug(f"[Signal:{self.name}] -> {getattr(callback, '__qualname__', callback)}")
            callback(*args, **kwargs)

    def __len__(self) -> int:
        return len(self._observers)
