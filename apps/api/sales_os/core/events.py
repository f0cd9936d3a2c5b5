from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class InProcessEventBus:
    """Synchronous fan-out. ``"sales.*"`` subscribes to every event under ``sales.``."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers[pattern]
        if handler not in handlers:
            handlers.append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        matched: list[EventHandler] = []
        for pattern, handlers in self._subscribers.items():
            if pattern == event_name or (pattern.endswith(".*") and event_name.startswith(pattern[:-1])):
                matched.extend(handler for handler in handlers if handler not in matched)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = DomainEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
