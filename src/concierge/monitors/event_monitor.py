"""Event monitor: supervised polling loops for mailboxes and voicemail.

Each monitor is a background ``asyncio.Task`` that polls its source at the
configured interval. A failing tick is logged and retried with exponential
backoff; only ``stop_monitoring`` ends the loop. Events observed by a tick
are dispatched as separate tasks, so stopping a monitor cancels future
ticks but never an execution that is already running.
"""

from __future__ import annotations

import asyncio
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping

import pydantic
import structlog
from pydantic import BaseModel, Field

from concierge.automation.schemas import format_errors
from concierge.config import settings
from concierge.core.errors import ValidationError
from concierge.core.ids import Clock, new_id, utcnow
from concierge.monitors.sources import (
    InboundMessage,
    MailboxSource,
    Transcriber,
    Voicemail,
    VoicemailSource,
    determine_priority,
    redact,
)

if TYPE_CHECKING:
    from concierge.triggers.email import EmailTriggerMatcher
    from concierge.workflows.engine import WorkflowExecutionEngine

logger = structlog.get_logger()


class MonitorKind(str, Enum):
    EMAIL = "email"
    VOICEMAIL = "voicemail"


class EmailMonitorConfig(BaseModel):
    provider: Literal["gmail", "outlook", "imap", "pop3"] = "imap"
    account: str = ""
    credentials: dict[str, Any] = Field(default_factory=dict)
    poll_interval_s: float | None = Field(default=None, gt=0)
    # Also run this workflow for every new message, besides trigger matching.
    workflow_id: str | None = None


class VoicemailMonitorConfig(BaseModel):
    provider: Literal["twilio", "vonage", "custom"] = "custom"
    account: str = ""
    credentials: dict[str, Any] = Field(default_factory=dict)
    poll_interval_s: float | None = Field(default=None, gt=0)
    workflow_id: str = "schedule-appointment"


MailboxFactory = Callable[[str, EmailMonitorConfig], MailboxSource]
VoicemailFactory = Callable[[str, VoicemailMonitorConfig], VoicemailSource]


@dataclass
class Monitor:
    id: str
    user_id: str
    kind: MonitorKind
    config: EmailMonitorConfig | VoicemailMonitorConfig
    source: Any
    interval_s: float
    started_at: datetime
    running: bool = True
    last_check_at: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    processed: int = 0
    seen: OrderedDict[str, None] = field(default_factory=OrderedDict)
    task: asyncio.Task[None] | None = None

    @property
    def key(self) -> tuple[str, MonitorKind, str]:
        return (self.user_id, self.kind, self.config.account)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "config": redact(self.config.model_dump()),
            "interval_s": self.interval_s,
            "running": self.running,
            "started_at": self.started_at.isoformat(),
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "processed": self.processed,
        }


def _parse(model: type[BaseModel], config: Mapping[str, Any] | BaseModel | None) -> Any:
    if isinstance(config, model):
        return config
    try:
        return model.model_validate(dict(config or {}))
    except pydantic.ValidationError as e:
        raise ValidationError(format_errors(e)) from e


class EventMonitor:
    def __init__(
        self,
        matcher: EmailTriggerMatcher,
        workflows: WorkflowExecutionEngine,
        *,
        mailbox_factory: MailboxFactory,
        voicemail_factory: VoicemailFactory,
        transcriber: Transcriber,
        clock: Clock = utcnow,
        min_poll_interval_s: float | None = None,
        max_backoff_s: float | None = None,
        seen_ids_max: int | None = None,
    ) -> None:
        self.matcher = matcher
        self.workflows = workflows
        self._mailbox_factory = mailbox_factory
        self._voicemail_factory = voicemail_factory
        self._transcriber = transcriber
        self._clock = clock
        self._min_interval = (
            settings.monitor_min_poll_interval_s if min_poll_interval_s is None else min_poll_interval_s
        )
        self._max_backoff = max_backoff_s or settings.monitor_max_backoff_s
        self._seen_max = seen_ids_max or settings.monitor_seen_ids_max
        self._monitors: dict[str, Monitor] = {}
        self._dispatches: set[asyncio.Task[Any]] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start_email_monitoring(
        self, user_id: str, config: EmailMonitorConfig | Mapping[str, Any] | None = None,
    ) -> str:
        parsed: EmailMonitorConfig = _parse(EmailMonitorConfig, config)
        source = self._mailbox_factory(user_id, parsed)
        interval = parsed.poll_interval_s or settings.monitor_email_poll_interval_s
        return await self._start(user_id, MonitorKind.EMAIL, parsed, source, interval)

    async def start_voicemail_monitoring(
        self, user_id: str, config: VoicemailMonitorConfig | Mapping[str, Any] | None = None,
    ) -> str:
        parsed: VoicemailMonitorConfig = _parse(VoicemailMonitorConfig, config)
        source = self._voicemail_factory(user_id, parsed)
        interval = parsed.poll_interval_s or settings.monitor_voicemail_poll_interval_s
        return await self._start(user_id, MonitorKind.VOICEMAIL, parsed, source, interval)

    async def _start(
        self,
        user_id: str,
        kind: MonitorKind,
        config: EmailMonitorConfig | VoicemailMonitorConfig,
        source: Any,
        interval: float,
    ) -> str:
        monitor = Monitor(
            id=new_id(f"mon_{kind.value}"),
            user_id=user_id,
            kind=kind,
            config=config,
            source=source,
            interval_s=max(interval, self._min_interval),
            started_at=self._clock(),
        )

        existing = next((m for m in self._monitors.values() if m.key == monitor.key), None)
        if existing is not None:
            # Restart in place: keep the id and the dedup window.
            await self._halt(existing)
            monitor.id = existing.id
            monitor.seen = existing.seen
            logger.info("monitor_restarting", monitor_id=existing.id, kind=kind.value, user_id=user_id)

        self._monitors[monitor.id] = monitor
        monitor.task = asyncio.create_task(self._poll_loop(monitor), name=f"monitor:{monitor.id}")
        logger.info(
            "monitor_started",
            monitor_id=monitor.id,
            kind=kind.value,
            user_id=user_id,
            provider=config.provider,
            interval_s=monitor.interval_s,
        )
        return monitor.id

    async def stop_monitoring(self, monitor_id: str, user_id: str | None = None) -> None:
        """Stop a monitor. Unknown, foreign or already-stopped monitors are a no-op."""
        monitor = self._monitors.get(monitor_id)
        if monitor is None or (user_id is not None and monitor.user_id != user_id):
            return
        del self._monitors[monitor_id]
        await self._halt(monitor)
        logger.info("monitor_stopped", monitor_id=monitor_id, processed=monitor.processed)

    async def stop_all(self, drain: bool = True) -> None:
        """Stop every monitor; optionally wait for dispatched executions to finish."""
        for monitor_id in list(self._monitors):
            await self.stop_monitoring(monitor_id)
        if drain:
            await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until every dispatched execution has finished."""
        while self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def _halt(self, monitor: Monitor) -> None:
        monitor.running = False
        task = monitor.task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_user_monitors(self, user_id: str) -> list[Monitor]:
        return [m for m in self._monitors.values() if m.user_id == user_id]

    def get_monitor(self, monitor_id: str) -> Monitor | None:
        return self._monitors.get(monitor_id)

    # ── Polling ──────────────────────────────────────────────────────────

    def _backoff(self, monitor: Monitor) -> float:
        return min(
            monitor.interval_s * math.pow(2, monitor.consecutive_failures - 1),
            self._max_backoff,
        )

    async def _poll_loop(self, monitor: Monitor) -> None:
        while monitor.running:
            try:
                await self._tick(monitor)
                delay = monitor.interval_s
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self._backoff(monitor)
                logger.error(
                    "monitor_poll_failed",
                    monitor_id=monitor.id,
                    kind=monitor.kind.value,
                    error=str(e),
                    error_type=type(e).__name__,
                    consecutive_failures=monitor.consecutive_failures,
                    backoff_seconds=delay,
                )
            await asyncio.sleep(delay)

    async def poll_now(self, monitor_id: str) -> int:
        """Run one tick immediately. Returns the number of new events dispatched."""
        monitor = self._monitors.get(monitor_id)
        if monitor is None:
            return 0
        return await self._tick(monitor)

    async def _tick(self, monitor: Monitor) -> int:
        since = monitor.last_check_at
        checked_at = self._clock()
        try:
            items = await monitor.source.fetch_new(since)
        except Exception as e:
            monitor.consecutive_failures += 1
            monitor.last_error = str(e)
            raise
        monitor.consecutive_failures = 0
        monitor.last_error = None
        monitor.last_check_at = checked_at

        dispatched = 0
        for item in items:
            if item.id in monitor.seen:
                continue
            self._remember(monitor, item.id)
            monitor.processed += 1
            dispatched += 1
            handler = self._handle_email if monitor.kind is MonitorKind.EMAIL else self._handle_voicemail
            self._dispatch(monitor, handler(monitor, item), item.id)

        if dispatched:
            logger.info("monitor_events_dispatched", monitor_id=monitor.id, count=dispatched)
        return dispatched

    def _remember(self, monitor: Monitor, item_id: str) -> None:
        monitor.seen[item_id] = None
        while len(monitor.seen) > self._seen_max:
            monitor.seen.popitem(last=False)

    def _dispatch(self, monitor: Monitor, coro: Awaitable[None], item_id: str) -> None:
        async def _run() -> None:
            try:
                await coro
            except Exception as e:
                logger.error(
                    "monitor_dispatch_failed",
                    monitor_id=monitor.id,
                    item_id=item_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        task = asyncio.create_task(_run())
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _handle_email(self, monitor: Monitor, message: InboundMessage) -> None:
        priority = determine_priority(message.subject, message.body)
        logger.info(
            "monitor_email_received",
            monitor_id=monitor.id,
            message_id=message.id,
            priority=priority.value,
        )
        await self.matcher.process_email({
            "user_id": monitor.user_id,
            "from": message.sender,
            "subject": message.subject,
            "body": message.body,
        })
        workflow_id = monitor.config.workflow_id
        if workflow_id:
            await self.workflows.execute_workflow(workflow_id, monitor.user_id, {
                "source": "email",
                "source_id": message.id,
                "priority": priority.value,
                "from": message.sender,
                "to": message.to,
                "subject": message.subject,
                "body": message.body,
                "received_at": message.received_at.isoformat(),
            })

    async def _handle_voicemail(self, monitor: Monitor, voicemail: Voicemail) -> None:
        transcript = await self._transcriber.transcribe(voicemail)
        priority = determine_priority(transcript)
        logger.info(
            "monitor_voicemail_received",
            monitor_id=monitor.id,
            voicemail_id=voicemail.id,
            priority=priority.value,
            transcript_chars=len(transcript),
        )
        await self.workflows.execute_workflow(monitor.config.workflow_id, monitor.user_id, {
            "source": "voicemail",
            "source_id": voicemail.id,
            "priority": priority.value,
            "from": voicemail.caller,
            "subject": f"Voicemail from {voicemail.caller}",
            "transcript": transcript,
            "audio_url": voicemail.audio_url,
            "duration_s": voicemail.duration_s,
            "received_at": voicemail.received_at.isoformat(),
        })
