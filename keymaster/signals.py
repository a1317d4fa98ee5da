"""Signal helpers used to publish connection lifecycle events.

Connections and the registry expose their events as :class:`Signal`
attributes with the familiar ``connect``/``emit`` pattern, so a UI can
subscribe without the engine knowing anything about it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class Signal:
    """Simple signal that mirrors the Qt ``connect``/``emit`` pattern."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subscribers: List[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]) -> None:
        """Register a slot to be invoked when the signal fires."""

        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def disconnect(self, callback: Callable[..., Any]) -> None:
        """Remove a previously registered slot if present."""

        try:
            self._subscribers.remove(callback)
        except ValueError:
            return

    def emit(self, *args: Any, **kwargs: Any) -> None:
        """Invoke all connected slots with the provided arguments.

        A failing slot is logged and does not stop delivery to the others.
        """

        for callback in list(self._subscribers):
            try:
                callback(*args, **kwargs)
            except Exception:
                logger.exception("Subscriber of signal %s failed", self.name or "<anonymous>")

    def __len__(self) -> int:
        return len(self._subscribers)
