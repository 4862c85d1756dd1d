"""
Listener registry shared by the state machine, sync layer and poller

Every ``add`` returns an unsubscribe handle so subscribers created by a context
can be dropped when that context goes away.
"""

import logging
from typing import Any, Callable, List

Unsubscribe = Callable[[], None]


class ListenerRegistry:
    """Ordered observer list with failure isolation"""

    def __init__(self, name: str = "listeners"):
        self.name = name
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._listeners: List[Callable[..., Any]] = []

    def add(self, listener: Callable[..., Any]) -> Unsubscribe:
        """Register a listener, returns a callable that removes it again"""
        self._listeners.append(listener)

        def unsubscribe():
            self.remove(listener)

        return unsubscribe

    def remove(self, listener: Callable[..., Any]) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    def clear(self):
        self._listeners.clear()

    def notify(self, *args, **kwargs) -> int:
        """
        Call every listener in registration order

        A failing listener is logged and skipped, the rest still run.

        Returns:
            int: number of listeners that raised
        """
        failures = 0
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                listener(*args, **kwargs)
            except Exception as e:
                failures += 1
                self.logger.error(f"{self.name} listener {listener!r} failed: {e}", exc_info=True)
        return failures

    def __len__(self):
        return len(self._listeners)

    def __contains__(self, listener):
        return listener in self._listeners
