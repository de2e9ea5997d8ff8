"""Automation engine: owns the rule catalog and executes rules.

Execution model
---------------
- ``execute_rule`` fails closed: a missing, foreign or disabled rule returns
  ``False`` and never raises.
- Actions run strictly in order. ``delay_ms`` postpones only that action's
  start; other rules keep running because every wait is an ``await``.
- The first failing action aborts the rest. Completed actions are not rolled
  back; the log entry records which ones ran.
- Every invocation of an existing, owned rule appends exactly one
  ``ExecutionLogEntry``. Only fully successful runs bump ``execution_count``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping

import structlog

from concierge.automation.actions import ActionContext, ActionServices, run_action
from concierge.automation.expressions import email_matches, evaluate_conditions
from concierge.automation.models import (
    ActionOutcome,
    ActionStatus,
    AutomationRule,
    ExecutionLogEntry,
    ExecutionStatus,
    RuleAction,
    RuleTrigger,
    TriggerType,
)
from concierge.automation.schedule import RuleScheduler
from concierge.automation.schemas import RuleSpec, validate_rule_spec
from concierge.automation.templates import build_rule_spec
from concierge.config import settings
from concierge.core.errors import ExecutionFailure
from concierge.core.ids import Clock, new_id, utcnow
from concierge.db.store import AutomationStore

logger = structlog.get_logger()

_TIME_DRIVEN = (TriggerType.SCHEDULE, TriggerType.TIME_BASED)

Sleep = Callable[[float], Awaitable[Any]]


class AutomationEngine:
    def __init__(
        self,
        store: AutomationStore,
        services: ActionServices,
        *,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        log_default_limit: int | None = None,
        log_max_limit: int | None = None,
    ) -> None:
        self.store = store
        self.services = services
        self._clock = clock
        self._sleep = sleep
        self._log_default_limit = log_default_limit or settings.execution_log_default_limit
        self._log_max_limit = log_max_limit or settings.execution_log_max_limit
        self.scheduler = RuleScheduler(self.execute_rule, clock=clock)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Register time-driven rules with the job scheduler."""
        if self.scheduler.running:
            return
        rules: list[AutomationRule] = []
        for trigger_type in _TIME_DRIVEN:
            rules.extend(await self.store.list_enabled_rules(trigger_type))
        self.scheduler.start(rules)

    async def stop(self) -> None:
        self.scheduler.stop()

    def _sync_schedule(self, rule: AutomationRule) -> None:
        # Before start() the catalog is loaded in bulk instead.
        if self.scheduler.running and rule.trigger.type in _TIME_DRIVEN:
            self.scheduler.register(rule)

    # ── Rule catalog ─────────────────────────────────────────────────────

    async def add_rule(self, spec: RuleSpec | Mapping[str, Any]) -> str:
        """Validate and persist a rule. Raises ``ValidationError`` before any state change."""
        validated = validate_rule_spec(spec)
        rule = AutomationRule(
            id=new_id("rule"),
            user_id=validated.user_id,
            name=validated.name,
            description=validated.description,
            trigger=RuleTrigger(type=validated.trigger.type, conditions=validated.trigger.conditions),
            actions=[
                RuleAction(type=a.type, config=a.config, delay_ms=a.delay_ms)
                for a in validated.actions
            ],
            enabled=validated.enabled,
            created_at=self._clock(),
        )
        await self.store.save_rule(rule)
        self._sync_schedule(rule)
        logger.info(
            "rule_created",
            rule_id=rule.id,
            user_id=rule.user_id,
            trigger_type=rule.trigger.type.value,
            action_count=len(rule.actions),
        )
        return rule.id

    async def create_rule_from_template(
        self,
        user_id: str,
        template_id: str,
        customizations: Mapping[str, Any] | None = None,
    ) -> str | None:
        """Instantiate a catalog template. Returns ``None`` for an unknown template."""
        spec = build_rule_spec(user_id, template_id, customizations)
        if spec is None:
            return None
        rule_id = await self.add_rule(spec)
        logger.info("rule_created_from_template", rule_id=rule_id, template_id=template_id)
        return rule_id

    async def get_user_rules(self, user_id: str) -> list[AutomationRule]:
        return await self.store.list_rules(user_id)

    async def get_rule(self, rule_id: str, user_id: str) -> AutomationRule | None:
        rule = await self.store.get_rule(rule_id)
        if rule is None or rule.user_id != user_id:
            return None
        return rule

    async def toggle_rule(self, rule_id: str, enabled: bool, user_id: str) -> bool:
        rule = await self.get_rule(rule_id, user_id)
        if rule is None:
            return False
        rule.enabled = enabled
        await self.store.save_rule(rule)
        self._sync_schedule(rule)
        logger.info("rule_toggled", rule_id=rule_id, enabled=enabled)
        return True

    async def delete_rule(self, rule_id: str, user_id: str) -> bool:
        rule = await self.get_rule(rule_id, user_id)
        if rule is None:
            return False
        await self.store.delete_rule(rule_id)
        if self.scheduler.running:
            self.scheduler.unregister(rule_id)
        logger.info("rule_deleted", rule_id=rule_id, user_id=user_id)
        return True

    # ── Matching ─────────────────────────────────────────────────────────

    @staticmethod
    def rule_matches(rule: AutomationRule, trigger_data: Mapping[str, Any]) -> bool:
        """Evaluate a rule's trigger conditions against event data."""
        conditions = rule.trigger.conditions
        data = dict(trigger_data)
        if rule.trigger.type is TriggerType.EMAIL:
            patterns = conditions.get("patterns") or []
            return not patterns or email_matches(patterns, data) is not None
        if rule.trigger.type in _TIME_DRIVEN:
            # Fired by the job scheduler, never by event data.
            return True
        return evaluate_conditions(conditions.get("fields", []), data, conditions.get("match", "all"))

    async def dispatch_event(
        self,
        trigger_type: TriggerType,
        user_id: str,
        trigger_data: Mapping[str, Any],
    ) -> dict[str, bool]:
        """Fire every enabled rule of *user_id* whose trigger matches the event.

        Returns ``{rule_id: succeeded}`` for the rules that fired.
        """
        candidates = [
            rule for rule in await self.store.list_enabled_rules(trigger_type)
            if rule.user_id == user_id and self.rule_matches(rule, trigger_data)
        ]
        if not candidates:
            return {}
        results = await asyncio.gather(*(
            self.execute_rule(rule.id, user_id, dict(trigger_data)) for rule in candidates
        ))
        logger.info(
            "event_dispatched",
            trigger_type=trigger_type.value,
            user_id=user_id,
            fired=len(candidates),
        )
        return {rule.id: ok for rule, ok in zip(candidates, results)}

    # ── Execution ────────────────────────────────────────────────────────

    async def execute_rule(
        self,
        rule_id: str,
        user_id: str,
        trigger_data: Mapping[str, Any] | None = None,
    ) -> bool:
        """Run a rule's actions in order. Returns ``True`` only if every action succeeded."""
        trigger_data = dict(trigger_data or {})
        rule = await self.store.get_rule(rule_id)
        if rule is None or rule.user_id != user_id:
            logger.warning("rule_execution_rejected", rule_id=rule_id, user_id=user_id, reason="not_found")
            return False

        execution_id = new_id("exec")
        started_at = self._clock()

        if not rule.enabled:
            await self.store.append_execution_log(ExecutionLogEntry(
                id=execution_id,
                rule_id=rule.id,
                user_id=user_id,
                status=ExecutionStatus.SKIPPED,
                trigger_data=trigger_data,
                actions=(),
                started_at=started_at,
                finished_at=self._clock(),
                error="rule is disabled",
            ))
            logger.info("rule_execution_skipped", rule_id=rule_id, reason="disabled")
            return False

        ctx = ActionContext(
            rule=rule,
            user_id=user_id,
            execution_id=execution_id,
            trigger_data=trigger_data,
            services=self.services,
        )
        ctx.run_nested = lambda actions: self._run_nested(actions, ctx)

        outcomes: list[ActionOutcome] = []
        error: str | None = None
        for index, action in enumerate(rule.actions):
            if error is not None:
                outcomes.append(ActionOutcome(index=index, type=action.type, status=ActionStatus.SKIPPED))
                continue
            try:
                if action.delay_ms:
                    await self._sleep(action.delay_ms / 1000)
                result = await run_action(action, ctx)
            except Exception as e:
                error = f"action {index} ({action.type.value}) failed: {e}"
                outcomes.append(ActionOutcome(
                    index=index, type=action.type, status=ActionStatus.FAILED, error=str(e),
                ))
                log = logger.warning if isinstance(e, ExecutionFailure) else logger.error
                log(
                    "rule_action_failed",
                    rule_id=rule_id,
                    execution_id=execution_id,
                    action_index=index,
                    action_type=action.type.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            outcomes.append(ActionOutcome(
                index=index, type=action.type, status=ActionStatus.COMPLETED, result=result,
            ))

        finished_at = self._clock()
        status = ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED
        await self.store.append_execution_log(ExecutionLogEntry(
            id=execution_id,
            rule_id=rule.id,
            user_id=user_id,
            status=status,
            trigger_data=trigger_data,
            actions=tuple(outcomes),
            started_at=started_at,
            finished_at=finished_at,
            error=error,
        ))

        if error:
            logger.warning("rule_execution_failed", rule_id=rule_id, execution_id=execution_id, error=error)
            return False

        count = await self.store.record_rule_execution(rule.id, finished_at)
        logger.info(
            "rule_executed",
            rule_id=rule_id,
            execution_id=execution_id,
            actions=len(outcomes),
            execution_count=count,
            duration_ms=round((finished_at - started_at).total_seconds() * 1000),
        )
        return True

    async def _run_nested(self, actions: list[RuleAction], ctx: ActionContext) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for action in actions:
            if action.delay_ms:
                await self._sleep(action.delay_ms / 1000)
            results.append(await run_action(action, ctx))
        return results

    # ── Execution logs ───────────────────────────────────────────────────

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None or limit <= 0:
            return self._log_default_limit
        return min(limit, self._log_max_limit)

    async def get_rule_execution_logs(self, rule_id: str, limit: int | None = None) -> list[ExecutionLogEntry]:
        return await self.store.list_rule_execution_logs(rule_id, self._clamp_limit(limit))

    async def get_user_execution_logs(self, user_id: str, limit: int | None = None) -> list[ExecutionLogEntry]:
        return await self.store.list_user_execution_logs(user_id, self._clamp_limit(limit))
