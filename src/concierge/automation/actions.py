"""Action executors, dispatched by ``ActionType`` through a lookup table.

Each executor receives its validated config model and an ``ActionContext``
and returns a JSON-serializable result dict, or raises ``ExecutionFailure``.
Adding an action type means adding one ``ActionType`` member, one config
model in ``schemas`` and one ``@executor`` function here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
import structlog
from pydantic import BaseModel

from concierge.automation.expressions import evaluate_condition, render_placeholders
from concierge.automation.models import ActionType, AutomationRule, RuleAction
from concierge.automation.schemas import (
    ConditionalConfig,
    CreateCalendarEventConfig,
    NotifyConfig,
    SendEmailConfig,
    SendSmsConfig,
    SmartScheduleConfig,
    UpdateCalendarEventConfig,
    WaitConfig,
    WebhookCallConfig,
    validate_action_config,
)
from concierge.config import settings
from concierge.core.errors import ExecutionFailure
from concierge.integrations.calendar import CalendarProvider, EventSpec
from concierge.integrations.notifications import (
    Channel,
    Notification,
    NotificationResult,
    NotificationService,
)

if TYPE_CHECKING:
    from concierge.scheduling.smart_scheduler import SmartScheduler

logger = structlog.get_logger()


@dataclass
class ActionServices:
    """Collaborators available to executors."""

    notifier: NotificationService
    calendar: CalendarProvider
    scheduler: SmartScheduler | None = None
    http_client: httpx.AsyncClient | None = None
    webhook_timeout_s: float = field(default_factory=lambda: settings.webhook_timeout_s)


@dataclass
class ActionContext:
    rule: AutomationRule
    user_id: str
    execution_id: str
    trigger_data: dict[str, Any]
    services: ActionServices
    # Set by the engine so ``conditional`` can run a nested sequence.
    run_nested: Callable[[list[RuleAction]], Awaitable[list[dict[str, Any]]]] | None = None

    @property
    def template_data(self) -> dict[str, Any]:
        return {
            **self.trigger_data,
            "trigger": self.trigger_data,
            "rule": {"id": self.rule.id, "name": self.rule.name},
            "user_id": self.user_id,
            "execution_id": self.execution_id,
        }


ActionExecutor = Callable[[Any, ActionContext], Awaitable[dict[str, Any]]]

_EXECUTORS: dict[ActionType, ActionExecutor] = {}


def executor(action_type: ActionType) -> Callable[[ActionExecutor], ActionExecutor]:
    def _register(fn: ActionExecutor) -> ActionExecutor:
        _EXECUTORS[action_type] = fn
        return fn
    return _register


async def run_action(action: RuleAction, ctx: ActionContext) -> dict[str, Any]:
    """Render placeholders, validate the config and dispatch to its executor."""
    fn = _EXECUTORS.get(action.type)
    if fn is None:
        raise ExecutionFailure(f"no executor registered for action type '{action.type.value}'")

    raw = action.config
    if action.type is not ActionType.CONDITIONAL:
        # Nested actions are rendered when they run.
        raw = render_placeholders(raw, ctx.template_data)
    try:
        config = validate_action_config(action.type, raw)
    except ValueError as e:
        raise ExecutionFailure(f"invalid config after rendering: {e}") from e
    return await fn(config, ctx)


# ═══════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

def _check_delivery(result: NotificationResult, channel: Channel) -> dict[str, Any]:
    if not result.success:
        raise ExecutionFailure(f"{channel.value} delivery failed: {result.error or 'unknown error'}")
    return {"channel": channel.value, "message_id": result.message_id}


@executor(ActionType.NOTIFY)
async def _notify(config: NotifyConfig, ctx: ActionContext) -> dict[str, Any]:
    result = await ctx.services.notifier.send(Notification(
        user_id=ctx.user_id,
        channel=config.channel,
        recipient=config.recipient,
        subject=config.subject,
        body=config.message,
        data={"rule_id": ctx.rule.id, "execution_id": ctx.execution_id},
    ))
    return _check_delivery(result, config.channel)


@executor(ActionType.SEND_EMAIL)
async def _send_email(config: SendEmailConfig, ctx: ActionContext) -> dict[str, Any]:
    result = await ctx.services.notifier.send(Notification(
        user_id=ctx.user_id,
        channel=Channel.EMAIL,
        recipient=config.to,
        subject=config.subject,
        body=config.body,
        data={"template": config.template, **config.data},
    ))
    return _check_delivery(result, Channel.EMAIL) | {"to": config.to}


@executor(ActionType.SEND_SMS)
async def _send_sms(config: SendSmsConfig, ctx: ActionContext) -> dict[str, Any]:
    result = await ctx.services.notifier.send(Notification(
        user_id=ctx.user_id,
        channel=Channel.SMS,
        recipient=config.to,
        body=config.message,
    ))
    return _check_delivery(result, Channel.SMS) | {"to": config.to}


# ═══════════════════════════════════════════════════════════════════════════
# CALENDAR
# ═══════════════════════════════════════════════════════════════════════════

def _parse_when(value: str, field_name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ExecutionFailure(f"{field_name} is not an ISO datetime: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@executor(ActionType.CREATE_CALENDAR_EVENT)
async def _create_calendar_event(config: CreateCalendarEventConfig, ctx: ActionContext) -> dict[str, Any]:
    start = _parse_when(config.start, "start")
    end = _parse_when(config.end, "end") if config.end else start + timedelta(minutes=config.duration_minutes)
    if end <= start:
        raise ExecutionFailure("event end must be after start")
    event = await ctx.services.calendar.create_event(ctx.user_id, EventSpec(
        title=config.title,
        start=start,
        end=end,
        location=config.location,
        description=config.description,
        attendees=tuple(config.attendees),
    ))
    return {"event_id": event.id, "event_url": event.url, "start": event.start.isoformat()}


@executor(ActionType.UPDATE_CALENDAR_EVENT)
async def _update_calendar_event(config: UpdateCalendarEventConfig, ctx: ActionContext) -> dict[str, Any]:
    updates = dict(config.updates)
    for key in ("start", "end"):
        if isinstance(updates.get(key), str):
            updates[key] = _parse_when(updates[key], key)
    event = await ctx.services.calendar.update_event(ctx.user_id, config.event_id, updates)
    if event is None:
        raise ExecutionFailure(f"calendar event {config.event_id} not found")
    return {"event_id": event.id, "updated": sorted(config.updates)}


@executor(ActionType.SMART_SCHEDULE)
async def _smart_schedule(config: SmartScheduleConfig, ctx: ActionContext) -> dict[str, Any]:
    from concierge.scheduling.smart_scheduler import ScheduleRequest

    if ctx.services.scheduler is None:
        raise ExecutionFailure("smart scheduler is not configured")
    event = await ctx.services.scheduler.auto_schedule_event(ctx.user_id, ScheduleRequest(
        title=config.title,
        duration=config.duration_minutes,
        type=config.type,
        description=config.description,
        location=config.location,
    ))
    if event is None:
        raise ExecutionFailure("unable to find optimal time for event")
    return {"event_id": event.id, "event_url": event.url, "start": event.start.isoformat()}


# ═══════════════════════════════════════════════════════════════════════════
# CONTROL FLOW AND EXTERNAL CALLS
# ═══════════════════════════════════════════════════════════════════════════

@executor(ActionType.WEBHOOK_CALL)
async def _webhook_call(config: WebhookCallConfig, ctx: ActionContext) -> dict[str, Any]:
    timeout = config.timeout_s or ctx.services.webhook_timeout_s
    request_kwargs: dict[str, Any] = {
        "headers": {"Content-Type": "application/json", **config.headers},
        "timeout": timeout,
    }
    if config.body is not None:
        request_kwargs["json"] = config.body

    try:
        if ctx.services.http_client is not None:
            response = await ctx.services.http_client.request(config.method, config.url, **request_kwargs)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.request(config.method, config.url, **request_kwargs)
    except httpx.TimeoutException as e:
        raise ExecutionFailure(f"webhook timed out after {timeout:.0f}s") from e
    except httpx.HTTPError as e:
        raise ExecutionFailure(f"webhook call failed: {type(e).__name__}: {e}") from e

    if not response.is_success:
        raise ExecutionFailure(f"webhook call failed: {response.status_code} {response.reason_phrase}")
    return {"status_code": response.status_code, "url": config.url}


@executor(ActionType.WAIT)
async def _wait(config: WaitConfig, ctx: ActionContext) -> dict[str, Any]:
    await asyncio.sleep(config.duration_ms / 1000)
    return {"waited_ms": config.duration_ms}


@executor(ActionType.CONDITIONAL)
async def _conditional(config: ConditionalConfig, ctx: ActionContext) -> dict[str, Any]:
    condition: Any = config.condition
    if isinstance(condition, BaseModel):
        condition = condition.model_dump()
    met = evaluate_condition(condition, ctx.template_data)
    branch = config.true_actions if met else config.false_actions
    nested = [
        RuleAction(type=a.type, config=a.config, delay_ms=a.delay_ms)
        for a in branch
    ]
    results: list[dict[str, Any]] = []
    if nested:
        if ctx.run_nested is None:
            raise ExecutionFailure("nested actions are not supported in this context")
        results = await ctx.run_nested(nested)
    return {"condition_met": met, "branch": "true" if met else "false", "results": results}
