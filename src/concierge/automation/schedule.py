"""APScheduler jobs for ``schedule`` and ``time_based`` rules.

One job per rule, keyed by the rule id. Jobs only hold the rule id and
owner; the engine re-reads the rule when the job fires, so toggling or
editing a rule never leaves a stale copy inside the scheduler.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from apscheduler.events import EVENT_JOB_MISSED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from concierge.automation.models import AutomationRule, TriggerType
from concierge.core.ids import Clock, utcnow

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 300

FireCallback = Callable[[str, str, dict[str, Any]], Awaitable[bool]]


def build_trigger(rule: AutomationRule, now: datetime) -> Any | None:
    """Return the APScheduler trigger for a rule, or None if it never fires again."""
    conditions = rule.trigger.conditions
    if rule.trigger.type is TriggerType.SCHEDULE:
        tz = conditions.get("timezone") or None
        if conditions.get("cron"):
            return CronTrigger.from_crontab(conditions["cron"], timezone=tz)
        return IntervalTrigger(seconds=int(conditions["interval_seconds"]), timezone=tz)
    if rule.trigger.type is TriggerType.TIME_BASED:
        run_at = conditions["run_at"]
        if isinstance(run_at, str):
            run_at = datetime.fromisoformat(run_at)
        if run_at <= now:
            return None
        return DateTrigger(run_date=run_at)
    return None


class RuleScheduler:
    """Keeps one APScheduler job per enabled time-driven rule."""

    def __init__(self, fire: FireCallback, *, clock: Clock = utcnow) -> None:
        self._fire = fire
        self._clock = clock
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning(
            "rule_job_missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time),
        )

    def start(self, rules: list[AutomationRule]) -> int:
        """Register jobs for *rules* and start the scheduler. Returns the job count."""
        count = sum(1 for rule in rules if self.register(rule))
        self.scheduler.start()
        self._running = True
        logger.info("rule_scheduler_started", total_jobs=count)
        return count

    def stop(self) -> None:
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("rule_scheduler_stopped")

    def register(self, rule: AutomationRule) -> bool:
        """Add or replace the job for *rule*. Disabled or expired rules are unscheduled."""
        if not rule.enabled:
            self.unregister(rule.id)
            return False
        trigger = build_trigger(rule, self._clock())
        if trigger is None:
            self.unregister(rule.id)
            logger.info("rule_not_scheduled", rule_id=rule.id, trigger_type=rule.trigger.type.value)
            return False
        self.scheduler.add_job(
            self._run,
            trigger=trigger,
            args=[rule.id, rule.user_id, rule.trigger.type.value],
            id=rule.id,
            name=rule.name,
            replace_existing=True,
        )
        logger.info(
            "rule_scheduled",
            rule_id=rule.id,
            trigger_type=rule.trigger.type.value,
            schedule=rule.trigger.conditions,
        )
        return True

    def unregister(self, rule_id: str) -> None:
        try:
            self.scheduler.remove_job(rule_id)
        except JobLookupError:
            return
        logger.info("rule_unscheduled", rule_id=rule_id)

    def has_job(self, rule_id: str) -> bool:
        return self.scheduler.get_job(rule_id) is not None

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "rule_id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]

    async def _run(self, rule_id: str, user_id: str, trigger_type: str) -> None:
        fired_at = self._clock()
        try:
            await self._fire(rule_id, user_id, {"trigger": trigger_type, "fired_at": fired_at.isoformat()})
        except Exception as e:
            logger.error("rule_job_failed", rule_id=rule_id, error=str(e), error_type=type(e).__name__)
