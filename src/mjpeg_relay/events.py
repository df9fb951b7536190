"""
Notifications
=============

Explicit observer registry for zero-argument notifications.

Each notification kind is one EventHook instance owned by the emitting
component (e.g. reader.connection_failed). Listeners are plain callables.

Design Rules:
    - Listeners are called in subscription order, on the emitter's task
    - A failing listener is logged and never breaks the emitter
    - Listeners must not block; hand work off instead

Example:
    reader.connection_failed.subscribe(lambda: print("camera lost"))
"""

import logging
from typing import Callable, List


logger = logging.getLogger(__name__)


Listener = Callable[[], None]


class EventHook:
    """
    Multi-listener notification.

    Attributes:
        name: Notification name used in log messages
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Listener:
        """
        Register a listener.

        Returns the listener so the method can be used as a decorator.
        """
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def fire(self) -> None:
        """Call every listener."""
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception(f"Listener for '{self.name}' failed")

    def __len__(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"EventHook(name={self.name!r}, listeners={len(self._listeners)})"
