"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                              # Run all tests
    pytest tests/test_automation_engine.py -v  # Run specific test file

Collaborators (calendar, notifications, extraction, mailbox) are replaced by
in-process fakes; time is a ``FixedClock`` so scheduling is deterministic.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio

from concierge.automation.actions import ActionServices
from concierge.automation.engine import AutomationEngine
from concierge.core.errors import ExtractionError
from concierge.db.store import MemoryStore
from concierge.integrations.calendar import CalendarEvent, EventSpec, InMemoryCalendar
from concierge.integrations.extraction import ExtractionResult
from concierge.integrations.notifications import Notification, NotificationResult
from concierge.scheduling.smart_scheduler import SchedulingPolicy, SmartScheduler
from concierge.triggers.email import EmailTriggerMatcher
from concierge.workflows.engine import WorkflowExecutionEngine
from concierge.workflows.steps import StepServices

# Monday
T0 = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.fail_with: str | None = None

    async def send(self, notification: Notification) -> NotificationResult:
        self.sent.append(notification)
        if self.fail_with:
            return NotificationResult(success=False, error=self.fail_with)
        return NotificationResult(success=True, message_id=f"msg_{len(self.sent)}")


class FakeExtraction:
    def __init__(self, result: ExtractionResult | None = None, error: str | None = None) -> None:
        self.result = result or ExtractionResult(title="Dentist", duration=30)
        self.error = error
        self.calls: list[str] = []

    async def extract(self, free_text: str) -> ExtractionResult:
        self.calls.append(free_text)
        if self.error:
            raise ExtractionError(self.error)
        return self.result


class HangingCalendar(InMemoryCalendar):
    """``create_event`` never returns while ``hang`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.hang = False

    async def create_event(self, user_id: str, spec: EventSpec) -> CalendarEvent:
        if self.hang:
            await asyncio.Event().wait()
        return await super().create_event(user_id, spec)


def seed_event(calendar: InMemoryCalendar, user_id: str, start: datetime, minutes: int, title: str = "Busy") -> None:
    calendar.add(user_id, CalendarEvent(
        id=f"evt_{title.lower()}_{start:%H%M}",
        title=title,
        start=start,
        end=start + timedelta(minutes=minutes),
    ))


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def calendar() -> HangingCalendar:
    return HangingCalendar()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def extraction() -> FakeExtraction:
    return FakeExtraction()


@pytest.fixture
def policy() -> SchedulingPolicy:
    return SchedulingPolicy(lookahead_days=7, granularity_minutes=15)


@pytest.fixture
def scheduler(calendar, policy, clock) -> SmartScheduler:
    return SmartScheduler(calendar, policy, clock=clock)


@pytest.fixture
def webhook_requests() -> list[httpx.Request]:
    return []


@pytest_asyncio.fixture
async def http_client(webhook_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        if request.url.path.endswith("/fail"):
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def engine(store, notifier, calendar, scheduler, http_client, clock, sleeper) -> AutomationEngine:
    services = ActionServices(
        notifier=notifier,
        calendar=calendar,
        scheduler=scheduler,
        http_client=http_client,
        webhook_timeout_s=5,
    )
    return AutomationEngine(store, services, clock=clock, sleep=sleeper, log_default_limit=50, log_max_limit=500)


@pytest.fixture
def matcher(store, engine, clock) -> EmailTriggerMatcher:
    return EmailTriggerMatcher(store, engine, clock=clock)


@pytest.fixture
def workflows(store, extraction, calendar, scheduler, notifier, clock) -> WorkflowExecutionEngine:
    services = StepServices(
        extraction=extraction,
        calendar=calendar,
        scheduler=scheduler,
        notifier=notifier,
    )
    return WorkflowExecutionEngine(store, services, clock=clock, step_timeout_s=1.0, approval_ttl_s=None)


def notify_rule(user_id: str = "u1", **overrides: Any) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "user_id": user_id,
        "name": "Invoice alert",
        "trigger": {"type": "email", "conditions": {"patterns": ["invoice"]}},
        "actions": [{"type": "notify", "config": {"message": "Got {{subject}}"}}],
    }
    spec.update(overrides)
    return spec
