from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from .logging import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]
Unsubscribe = Callable[[], None]


class EventEmitter:
    """Synchronous publish/subscribe keyed by event name.

    Listeners run in registration order on the emitting call stack. A listener
    that raises is logged and skipped; the remaining listeners still run.
    """

    def __init__(self, max_listeners: int = 100):
        self.max_listeners = max_listeners
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._warned: set[str] = set()

    def on(self, event: str, listener: Listener) -> Unsubscribe:
        listeners = self._listeners[event]
        listeners.append(listener)
        if self.max_listeners > 0 and len(listeners) > self.max_listeners and event not in self._warned:
            self._warned.add(event)
            logger.warning(
                "Possible listener leak: %d listeners for %r (max %d)",
                len(listeners),
                event,
                self.max_listeners,
            )

        def unsubscribe() -> None:
            self.off(event, listener)

        return unsubscribe

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
            except Exception:  # noqa: BLE001
                logger.exception("Listener for %r failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()
