"""Calendar provider contract.

The core only needs to list a user's events inside a window and create or
update events. Provider specifics (internal store, Google, Apple, Outlook)
live behind this protocol.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol

import structlog

from concierge.core.ids import new_id

logger = structlog.get_logger()


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and self.start < end


@dataclass(frozen=True)
class EventSpec:
    """What a caller asks the provider to create."""

    title: str
    start: datetime
    end: datetime
    location: str = ""
    description: str = ""
    attendees: tuple[str, ...] = ()


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    location: str = ""
    description: str = ""
    attendees: tuple[str, ...] = ()
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "location": self.location,
            "description": self.description,
            "attendees": list(self.attendees),
            "url": self.url,
        }


class CalendarProvider(Protocol):
    async def list_events(self, user_id: str, window: TimeWindow) -> list[CalendarEvent]: ...

    async def create_event(self, user_id: str, spec: EventSpec) -> CalendarEvent: ...

    async def update_event(
        self, user_id: str, event_id: str, updates: dict[str, Any],
    ) -> CalendarEvent | None: ...


_UPDATABLE_FIELDS = frozenset({"title", "start", "end", "location", "description", "attendees"})


class InMemoryCalendar:
    """Process-local calendar, used as the internal provider and in tests."""

    def __init__(self, base_url: str = "https://calendar.local/events") -> None:
        self._events: dict[str, dict[str, CalendarEvent]] = {}
        self._base_url = base_url.rstrip("/")
        self._lock = asyncio.Lock()

    async def list_events(self, user_id: str, window: TimeWindow) -> list[CalendarEvent]:
        events = self._events.get(user_id, {}).values()
        return sorted(
            (e for e in events if window.overlaps(e.start, e.end)),
            key=lambda e: e.start,
        )

    async def create_event(self, user_id: str, spec: EventSpec) -> CalendarEvent:
        if spec.end <= spec.start:
            raise ValueError("event end must be after start")
        event_id = new_id("evt")
        event = CalendarEvent(
            id=event_id,
            title=spec.title,
            start=spec.start,
            end=spec.end,
            location=spec.location,
            description=spec.description,
            attendees=tuple(spec.attendees),
            url=f"{self._base_url}/{event_id}",
        )
        async with self._lock:
            self._events.setdefault(user_id, {})[event_id] = event
        logger.info("calendar_event_created", user_id=user_id, event_id=event_id, title=spec.title)
        return event

    async def update_event(
        self, user_id: str, event_id: str, updates: dict[str, Any],
    ) -> CalendarEvent | None:
        async with self._lock:
            event = self._events.get(user_id, {}).get(event_id)
            if event is None:
                return None
            changes = {k: v for k, v in updates.items() if k in _UPDATABLE_FIELDS}
            if "attendees" in changes:
                changes["attendees"] = tuple(changes["attendees"])
            updated = replace(event, **changes)
            self._events[user_id][event_id] = updated
        logger.info("calendar_event_updated", user_id=user_id, event_id=event_id, fields=sorted(changes))
        return updated

    def add(self, user_id: str, event: CalendarEvent) -> None:
        """Seed an existing commitment (fixtures, imports)."""
        self._events.setdefault(user_id, {})[event.id] = event
