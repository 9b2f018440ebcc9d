from typing import Any, Callable, Protocol

import structlog

logger = structlog.get_logger()

PROVIDER_UPDATED = "provider-updated"
PROVIDER_ERROR = "provider-error"

Listener = Callable[[str, Any], None]


class EventEmitter(Protocol):
    def emit(self, event: "str", payload: "Any") -> "None": ...


class EventBus:
    """
    EventBus publishes events to whoever subscribed. Delivery
    is best-effort: with no listener the event is dropped, and a
    failing listener is logged and skipped.
    """

    def __init__(self) -> "None":
        self._listeners: "list[Listener]" = []

    def subscribe(self, listener: "Listener") -> "None":
        self._listeners.append(listener)

    def unsubscribe(self, listener: "Listener") -> "None":
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: "str", payload: "Any") -> "None":
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("event_listener_failed", event=event)
