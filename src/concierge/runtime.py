"""Process-wide component container.

One ``Runtime`` owns one instance of each engine, wired with injected
collaborators. ``init_runtime`` builds and installs it at startup (tests
build a fresh one per test); ``get_runtime`` returns the installed one.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
import structlog

from concierge.automation.actions import ActionServices
from concierge.automation.engine import AutomationEngine
from concierge.config import settings
from concierge.core.ids import Clock, utcnow
from concierge.db.store import AutomationStore, MemoryStore
from concierge.integrations.calendar import CalendarProvider, InMemoryCalendar
from concierge.integrations.extraction import ExtractionService, LLMExtractionService
from concierge.integrations.notifications import LogNotificationService, NotificationService
from concierge.monitors.event_monitor import EventMonitor, MailboxFactory, VoicemailFactory
from concierge.monitors.sources import InMemorySourceRegistry, StaticTranscriber, Transcriber
from concierge.scheduling.smart_scheduler import SchedulingPolicy, SmartScheduler
from concierge.triggers.email import EmailTriggerMatcher
from concierge.workflows.engine import WorkflowExecutionEngine
from concierge.workflows.steps import StepServices

logger = structlog.get_logger()


@dataclass
class Runtime:
    store: AutomationStore
    calendar: CalendarProvider
    notifier: NotificationService
    extraction: ExtractionService
    scheduler: SmartScheduler
    automation: AutomationEngine
    triggers: EmailTriggerMatcher
    workflows: WorkflowExecutionEngine
    monitors: EventMonitor
    http_client: httpx.AsyncClient | None = None
    _owned_closers: list = field(default_factory=list)

    async def start(self) -> None:
        await self.automation.start()
        logger.info("runtime_started")

    async def stop(self) -> None:
        await self.monitors.stop_all()
        await self.automation.stop()
        for close in self._owned_closers:
            await close()
        self._owned_closers.clear()
        logger.info("runtime_stopped")


_runtime: Runtime | None = None


def build_runtime(
    *,
    store: AutomationStore | None = None,
    calendar: CalendarProvider | None = None,
    notifier: NotificationService | None = None,
    extraction: ExtractionService | None = None,
    transcriber: Transcriber | None = None,
    mailbox_factory: MailboxFactory | None = None,
    voicemail_factory: VoicemailFactory | None = None,
    http_client: httpx.AsyncClient | None = None,
    policy: SchedulingPolicy | None = None,
    clock: Clock = utcnow,
) -> Runtime:
    """Wire every component. Missing collaborators get the in-process defaults."""
    closers = []
    store = store or MemoryStore()
    calendar = calendar or InMemoryCalendar()
    notifier = notifier or LogNotificationService()
    if extraction is None:
        llm = LLMExtractionService()
        closers.append(llm.close)
        extraction = llm
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.webhook_timeout_s)
        closers.append(http_client.aclose)
    sources = InMemorySourceRegistry()

    scheduler = SmartScheduler(calendar, policy, clock=clock)
    automation = AutomationEngine(
        store,
        ActionServices(
            notifier=notifier,
            calendar=calendar,
            scheduler=scheduler,
            http_client=http_client,
        ),
        clock=clock,
    )
    triggers = EmailTriggerMatcher(store, automation, clock=clock)
    workflows = WorkflowExecutionEngine(
        store,
        StepServices(
            extraction=extraction,
            calendar=calendar,
            scheduler=scheduler,
            notifier=notifier,
            timezone=scheduler.policy.timezone,
        ),
        clock=clock,
    )
    monitors = EventMonitor(
        triggers,
        workflows,
        mailbox_factory=mailbox_factory or sources.mailbox_for,
        voicemail_factory=voicemail_factory or sources.voicemail_for,
        transcriber=transcriber or StaticTranscriber(sources.transcripts),
        clock=clock,
    )
    return Runtime(
        store=store,
        calendar=calendar,
        notifier=notifier,
        extraction=extraction,
        scheduler=scheduler,
        automation=automation,
        triggers=triggers,
        workflows=workflows,
        monitors=monitors,
        http_client=http_client,
        _owned_closers=closers,
    )


def init_runtime(runtime: Runtime | None = None, **kwargs) -> Runtime:
    """Install *runtime* (or a freshly built one) as the process-wide instance."""
    global _runtime
    _runtime = runtime or build_runtime(**kwargs)
    return _runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("runtime not initialized; call init_runtime() first")
    return _runtime


def reset_runtime() -> None:
    global _runtime
    _runtime = None
