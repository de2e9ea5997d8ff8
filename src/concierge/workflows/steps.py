"""Workflow step executors, dispatched by ``StepType``.

Each executor receives the step's rendered config and a ``StepContext`` and
returns a JSON-serializable result, or raises. The engine wraps every call
in the step's time budget and records the outcome on the execution.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

import structlog

from concierge.core.errors import ExecutionFailure
from concierge.core.timeout import BudgetClass
from concierge.integrations.calendar import CalendarProvider, EventSpec
from concierge.integrations.extraction import ExtractionService
from concierge.integrations.notifications import Channel, Notification, NotificationService
from concierge.scheduling.smart_scheduler import ScheduleRequest, SmartScheduler
from concierge.workflows.models import StepType, WorkflowExecution, WorkflowStep

logger = structlog.get_logger()

_TEXT_FIELDS = ("text", "body", "transcript", "content")


@dataclass
class StepServices:
    extraction: ExtractionService
    calendar: CalendarProvider
    scheduler: SmartScheduler
    notifier: NotificationService
    timezone: str = "UTC"


@dataclass
class StepContext:
    execution: WorkflowExecution
    step: WorkflowStep
    services: StepServices

    @property
    def template_data(self) -> dict[str, Any]:
        return {
            **self.execution.step_results(),
            "trigger": self.execution.trigger_data,
            "user_id": self.execution.user_id,
            "execution_id": self.execution.id,
        }


StepExecutor = Callable[[dict[str, Any], StepContext], Awaitable[dict[str, Any]]]

_STEP_EXECUTORS: dict[StepType, StepExecutor] = {}

BUDGET_CLASSES: dict[StepType, BudgetClass] = {
    StepType.EXTRACT: BudgetClass.EXTRACT,
    StepType.CALENDAR: BudgetClass.CALENDAR,
    StepType.NOTIFY: BudgetClass.NOTIFY,
}


def step_executor(step_type: StepType) -> Callable[[StepExecutor], StepExecutor]:
    def _register(fn: StepExecutor) -> StepExecutor:
        _STEP_EXECUTORS[step_type] = fn
        return fn
    return _register


async def run_step(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    fn = _STEP_EXECUTORS.get(ctx.step.type)
    if fn is None:
        raise ExecutionFailure(f"no executor registered for step type '{ctx.step.type.value}'")
    return await fn(config, ctx)


@step_executor(StepType.TRIGGER)
async def _trigger(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    data = ctx.execution.trigger_data
    return {
        "source": data.get("source", config.get("source", "manual")),
        "received_fields": sorted(data),
    }


@step_executor(StepType.EXTRACT)
async def _extract(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    text = config.get("text")
    if not text:
        data = ctx.execution.trigger_data
        text = next((data[k] for k in _TEXT_FIELDS if data.get(k)), "")
    # ExtractionError propagates and fails the step.
    result = await ctx.services.extraction.extract(str(text))
    return result.to_dict()


def _fixed_start(config: dict[str, Any], tz: str) -> datetime | None:
    day, at = config.get("date"), config.get("time")
    if not day or not at:
        return None
    try:
        start = datetime.fromisoformat(f"{day}T{at}")
    except ValueError as e:
        raise ExecutionFailure(f"invalid date/time {day!r} {at!r}") from e
    if start.tzinfo is None:
        start = start.replace(tzinfo=ZoneInfo(tz))
    return start.astimezone(timezone.utc)


@step_executor(StepType.CALENDAR)
async def _calendar(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    """Book at the extracted time when one was given, otherwise let the scheduler pick."""
    title = str(config.get("title") or "").strip()
    if not title:
        raise ExecutionFailure("calendar step needs a title")
    try:
        duration = int(config.get("duration") or 60)
    except (TypeError, ValueError) as e:
        raise ExecutionFailure(f"invalid duration {config.get('duration')!r}") from e

    attendee = config.get("attendee")
    attendees = tuple(a for a in (config.get("attendees") or ([attendee] if attendee else [])) if a)
    user_id = ctx.execution.user_id
    start = _fixed_start(config, ctx.services.timezone)

    if start is not None:
        event = await ctx.services.calendar.create_event(user_id, EventSpec(
            title=title,
            start=start,
            end=start + timedelta(minutes=duration),
            location=str(config.get("location") or ""),
            description=str(config.get("description") or ""),
            attendees=attendees,
        ))
        placed_by = "fixed"
    else:
        event = await ctx.services.scheduler.auto_schedule_event(user_id, ScheduleRequest(
            title=title,
            duration=duration,
            type=str(config.get("event_type") or ""),
            description=str(config.get("description") or ""),
            location=str(config.get("location") or ""),
            attendees=attendees,
        ))
        if event is None:
            raise ExecutionFailure("unable to find optimal time for event")
        placed_by = "smart_scheduler"

    return {
        "event_id": event.id,
        "event_url": event.url,
        "start": event.start.isoformat(),
        "end": event.end.isoformat(),
        "placed_by": placed_by,
    }


@step_executor(StepType.NOTIFY)
async def _notify(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    channel = Channel(config.get("channel", Channel.PUSH.value))
    result = await ctx.services.notifier.send(Notification(
        user_id=ctx.execution.user_id,
        channel=channel,
        recipient=str(config.get("recipient") or ""),
        subject=str(config.get("subject") or ""),
        body=str(config.get("message") or f"Workflow '{ctx.execution.workflow_name}' update"),
        data={"execution_id": ctx.execution.id, "step_id": ctx.step.id},
    ))
    if not result.success:
        raise ExecutionFailure(f"notification failed: {result.error or 'unknown error'}")
    return {"channel": channel.value, "message_id": result.message_id}


@step_executor(StepType.APPROVAL)
async def _approval(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    # Only reached after the gate was approved.
    approved_at = ctx.execution.approved_at
    return {"approved": True, "approved_at": approved_at.isoformat() if approved_at else None}


@step_executor(StepType.END)
async def _end(config: dict[str, Any], ctx: StepContext) -> dict[str, Any]:
    return {"completed": True}
