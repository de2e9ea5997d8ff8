"""Tests for the smart scheduler.

The fixed clock starts on Monday 2026-03-02 07:00 UTC; working hours are
08:00-20:00 in the policy timezone with 15-minute granularity.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest

from concierge.core.errors import ValidationError
from concierge.integrations.calendar import TimeWindow
from concierge.scheduling.smart_scheduler import ScheduleRequest, SchedulingPolicy, SmartScheduler

from conftest import T0, FixedClock, seed_event


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


# ── Slot search ─────────────────────────────────────────────────────────

class TestFindFreeSlot:
    async def test_earliest_slot_before_existing_event(self, scheduler, calendar):
        seed_event(calendar, "u1", at(9), 30)
        slot = await scheduler.find_free_slot("u1", 30)
        assert slot.start == at(8)
        assert slot.end == at(8, 30)

    async def test_skips_busy_time(self, scheduler, calendar):
        seed_event(calendar, "u1", at(8), 60, title="Standup")
        seed_event(calendar, "u1", at(9), 30)
        slot = await scheduler.find_free_slot("u1", 30)
        assert slot.start == at(9, 30)

    async def test_back_to_back_is_not_a_conflict(self, scheduler, calendar):
        seed_event(calendar, "u1", at(8, 30), 30)
        slot = await scheduler.find_free_slot("u1", 30)
        assert slot.start == at(8)

    async def test_only_own_calendar_counts(self, scheduler, calendar):
        seed_event(calendar, "u2", at(8), 120)
        assert (await scheduler.find_free_slot("u1", 30)).start == at(8)

    async def test_buffer_pads_existing_events(self, calendar, clock):
        scheduler = SmartScheduler(calendar, SchedulingPolicy(buffer_minutes=15), clock=clock)
        seed_event(calendar, "u1", at(8), 60)
        slot = await scheduler.find_free_slot("u1", 30)
        assert slot.start == at(9, 15)

    async def test_starts_at_next_granularity_step(self, scheduler, clock):
        clock.now = at(12, 5)
        assert (await scheduler.find_free_slot("u1", 30)).start == at(12, 15)

    async def test_rolls_over_to_next_day(self, scheduler, clock):
        clock.now = at(19, 50)
        assert (await scheduler.find_free_slot("u1", 30)).start == at(8, day=3)

    async def test_not_before(self, scheduler):
        slot = await scheduler.find_free_slot("u1", 45, not_before=at(10, 7, day=3))
        assert slot.start == at(10, 15, day=3)
        assert slot.end == at(11, day=3)

    async def test_allowed_weekdays(self, calendar, clock):
        policy = SchedulingPolicy(days_of_week=frozenset({5, 6}))
        scheduler = SmartScheduler(calendar, policy, clock=clock)
        assert (await scheduler.find_free_slot("u1", 30)).start == at(8, day=7)

    async def test_policy_timezone(self, calendar, clock):
        policy = SchedulingPolicy(timezone="America/New_York", work_start=time(9), work_end=time(17))
        scheduler = SmartScheduler(calendar, policy, clock=clock)
        # 09:00 EST is 14:00 UTC before the March DST switch.
        assert (await scheduler.find_free_slot("u1", 30)).start == at(14)

    async def test_nothing_longer_than_a_working_day(self, scheduler):
        assert await scheduler.find_free_slot("u1", 13 * 60) is None

    async def test_fully_booked_window(self, calendar, clock):
        scheduler = SmartScheduler(calendar, SchedulingPolicy(lookahead_days=2), clock=clock)
        seed_event(calendar, "u1", T0, 3 * 24 * 60, title="Vacation")
        assert await scheduler.find_free_slot("u1", 30) is None

    @pytest.mark.parametrize("duration", [0, -30])
    async def test_non_positive_duration_rejected(self, scheduler, duration):
        with pytest.raises(ValidationError):
            await scheduler.find_free_slot("u1", duration)


# ── Placement ───────────────────────────────────────────────────────────

class TestAutoScheduleEvent:
    async def test_places_event_in_first_free_slot(self, scheduler, calendar):
        seed_event(calendar, "u1", at(9), 30)

        event = await scheduler.auto_schedule_event("u1", ScheduleRequest(title="Dentist", duration=60))

        assert event.start == at(8)
        assert event.end == at(9)
        events = await calendar.list_events("u1", TimeWindow(at(0), at(23)))
        assert [e.title for e in events] == ["Dentist", "Busy"]

    async def test_no_slot_creates_nothing(self, scheduler, calendar):
        event = await scheduler.auto_schedule_event("u1", ScheduleRequest(title="Marathon", duration=13 * 60))
        assert event is None
        assert await calendar.list_events("u1", TimeWindow(at(0), at(0, day=20))) == []

    async def test_blank_title_rejected(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.auto_schedule_event("u1", ScheduleRequest(title="  ", duration=30))

    async def test_concurrent_requests_never_share_a_slot(self, scheduler):
        events = await asyncio.gather(*(
            scheduler.auto_schedule_event("u1", ScheduleRequest(title=f"Call {n}", duration=30))
            for n in range(3)
        ))
        assert sorted(e.start for e in events) == [at(8), at(8, 30), at(9)]
        assert len(scheduler._user_locks) == 0

    async def test_default_policy_from_settings(self, calendar):
        scheduler = SmartScheduler(calendar, clock=FixedClock())
        assert scheduler.policy.granularity_minutes > 0
        assert scheduler.policy.lookahead_days > 0
