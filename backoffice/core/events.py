from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any


@dataclass(frozen=True, slots=True)
class InternalEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out keyed by glob patterns such as ``crm.*.won``."""

    def __init__(self) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if (pattern, handler) not in self._subscriptions:
            self._subscriptions.append((pattern, handler))

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        if (pattern, handler) in self._subscriptions:
            self._subscriptions.remove((pattern, handler))

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return [handler for pattern, handler in self._subscriptions if fnmatchcase(event_name, pattern)]

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
