"""Smart scheduler: earliest conflict-free slot inside working hours.

Candidates are generated in strict chronological order, day by day inside
the working hours of the policy timezone, at a fixed granularity. The first
candidate ``[start, start + duration)`` that overlaps no existing event
(padded by the buffer) wins. Because candidates are tested in order, the
result is always the earliest free slot and ties cannot occur.

Finding no slot is a normal outcome: ``None``, not an exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo

import structlog

from concierge.config import settings
from concierge.core.errors import ValidationError
from concierge.core.ids import Clock, utcnow
from concierge.core.locks import KeyedLocks
from concierge.integrations.calendar import CalendarEvent, CalendarProvider, EventSpec, TimeWindow

logger = structlog.get_logger()


@dataclass(frozen=True)
class SchedulingPolicy:
    lookahead_days: int = 14
    work_start: time = time(8, 0)
    work_end: time = time(20, 0)
    granularity_minutes: int = 15
    buffer_minutes: int = 0
    timezone: str = "UTC"
    # Python weekday numbers (Monday = 0). None means every day.
    days_of_week: frozenset[int] | None = None

    @classmethod
    def from_settings(cls) -> SchedulingPolicy:
        return cls(
            lookahead_days=settings.scheduler_lookahead_days,
            work_start=settings.scheduler_work_start,
            work_end=settings.scheduler_work_end,
            granularity_minutes=settings.scheduler_granularity_minutes,
            buffer_minutes=settings.scheduler_buffer_minutes,
            timezone=settings.scheduler_timezone,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class ScheduleRequest:
    title: str
    duration: int  # minutes
    type: str = ""
    description: str = ""
    location: str = ""
    attendees: tuple[str, ...] = ()
    not_before: datetime | None = None


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class _Busy:
    intervals: list[tuple[datetime, datetime]] = field(default_factory=list)

    def conflicts(self, start: datetime, end: datetime) -> bool:
        return any(start < busy_end and busy_start < end for busy_start, busy_end in self.intervals)


class SmartScheduler:
    def __init__(
        self,
        calendar: CalendarProvider,
        policy: SchedulingPolicy | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.calendar = calendar
        self.policy = policy or SchedulingPolicy.from_settings()
        self._clock = clock
        # Serializes find-then-create per user so two requests never take the same slot.
        self._user_locks = KeyedLocks()

    def _candidates(self, earliest: datetime, duration: timedelta, horizon: datetime) -> Iterator[Slot]:
        policy = self.policy
        tz = policy.tz
        step = timedelta(minutes=policy.granularity_minutes)
        day: date = earliest.astimezone(tz).date()
        last_day: date = horizon.astimezone(tz).date()

        while day <= last_day:
            if policy.days_of_week is None or day.weekday() in policy.days_of_week:
                slot = datetime.combine(day, policy.work_start, tzinfo=tz)
                day_end = datetime.combine(day, policy.work_end, tzinfo=tz)
                while slot + duration <= day_end and slot + duration <= horizon:
                    if slot >= earliest:
                        yield Slot(slot.astimezone(timezone.utc), (slot + duration).astimezone(timezone.utc))
                    slot += step
            day += timedelta(days=1)

    async def find_free_slot(
        self,
        user_id: str,
        duration: int,
        not_before: datetime | None = None,
    ) -> Slot | None:
        """Return the earliest free slot of *duration* minutes, without writing anything."""
        if duration <= 0:
            raise ValidationError("duration must be a positive number of minutes")

        now = self._clock()
        earliest = max(now, not_before) if not_before else now
        horizon = earliest + timedelta(days=self.policy.lookahead_days)
        length = timedelta(minutes=duration)

        events: list[CalendarEvent] = await self.calendar.list_events(
            user_id, TimeWindow(earliest - length, horizon + length),
        )
        pad = timedelta(minutes=self.policy.buffer_minutes)
        busy = _Busy([(e.start - pad, e.end + pad) for e in events])

        for candidate in self._candidates(earliest, length, horizon):
            if not busy.conflicts(candidate.start, candidate.end):
                return candidate
        return None

    async def auto_schedule_event(self, user_id: str, request: ScheduleRequest) -> CalendarEvent | None:
        """Place *request* in the earliest free slot and persist it. ``None`` if nothing fits."""
        if not request.title.strip():
            raise ValidationError("title is required")

        async with self._user_locks.hold(user_id):
            slot = await self.find_free_slot(user_id, request.duration, request.not_before)
            if slot is None:
                logger.info(
                    "smart_schedule_no_slot",
                    user_id=user_id,
                    duration=request.duration,
                    lookahead_days=self.policy.lookahead_days,
                )
                return None

            event = await self.calendar.create_event(user_id, EventSpec(
                title=request.title,
                start=slot.start,
                end=slot.end,
                location=request.location,
                description=request.description,
                attendees=request.attendees,
            ))

        logger.info(
            "smart_schedule_placed",
            user_id=user_id,
            event_id=event.id,
            start=slot.start.isoformat(),
            duration=request.duration,
            event_type=request.type or None,
        )
        return event
