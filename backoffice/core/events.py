from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def organization_id(self) -> str | None:
        value = self.payload.get("organization_id")
        return str(value) if value is not None else None


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of published envelopes to subscribed handlers.

    A subscription ending in ``.*`` receives every event under that prefix, so
    ``invoice.*`` sees ``invoice.paid`` and ``invoice.overdue``. Handler errors
    propagate to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        matched = list(self._subscribers.get(event_name, []))
        prefix = event_name
        while "." in prefix:
            prefix = prefix.rsplit(".", 1)[0]
            matched.extend(handler for handler in self._subscribers.get(f"{prefix}.*", []) if handler not in matched)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
