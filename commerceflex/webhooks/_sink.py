"""
Where canonical events go once a delivery has been applied.
"""

from __future__ import annotations

from typing import Protocol

from commerceflex.model import EventType, WebhookEvent


class EventSink(Protocol):
    async def emit(self, event: WebhookEvent) -> None: ...


class MemorySink:
    """Collects events in order; for tests and local development."""

    def __init__(self) -> None:
        self.events: list[WebhookEvent] = []

    async def emit(self, event: WebhookEvent) -> None:
        self.events.append(event)

    def of_type(self, kind: EventType) -> list[WebhookEvent]:
        return [e for e in self.events if e.type is kind]

    def clear(self) -> None:
        self.events.clear()


__all__ = ("EventSink", "MemorySink")
