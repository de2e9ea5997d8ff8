"""Persistence contract for rules, triggers, execution logs and workflow runs.

``MemoryStore`` is the process-local implementation used by default and in
tests. ``SqlStore`` (``concierge.db.sql_store``) backs the same protocol
with the SQLAlchemy models in ``concierge.db.models``.

Stores hand out copies: mutating a returned record never changes stored
state without an explicit ``save_*`` call. A rule's ``execution_count`` and
``last_executed_at`` belong to ``record_rule_execution``; ``save_rule`` only
sets them when it creates the rule.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Protocol

from concierge.automation.models import AutomationRule, ExecutionLogEntry, TriggerType
from concierge.triggers.models import EmailTrigger
from concierge.workflows.models import WorkflowExecution


class AutomationStore(Protocol):
    # Rules
    async def save_rule(self, rule: AutomationRule) -> None: ...
    async def get_rule(self, rule_id: str) -> AutomationRule | None: ...
    async def list_rules(self, user_id: str) -> list[AutomationRule]: ...
    async def list_enabled_rules(self, trigger_type: TriggerType) -> list[AutomationRule]: ...
    async def delete_rule(self, rule_id: str) -> bool: ...
    async def record_rule_execution(self, rule_id: str, at: datetime) -> int | None: ...

    # Email triggers
    async def save_email_trigger(self, trigger: EmailTrigger) -> None: ...
    async def get_email_trigger(self, trigger_id: str) -> EmailTrigger | None: ...
    async def list_email_triggers(self, user_id: str) -> list[EmailTrigger]: ...
    async def delete_email_trigger(self, trigger_id: str) -> bool: ...

    # Execution logs (append-only)
    async def append_execution_log(self, entry: ExecutionLogEntry) -> None: ...
    async def list_rule_execution_logs(self, rule_id: str, limit: int) -> list[ExecutionLogEntry]: ...
    async def list_user_execution_logs(self, user_id: str, limit: int) -> list[ExecutionLogEntry]: ...

    # Workflow executions
    async def save_workflow_execution(self, execution: WorkflowExecution) -> None: ...
    async def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None: ...
    async def find_workflow_execution_by_token(self, token: str) -> WorkflowExecution | None: ...
    async def list_workflow_executions(self, user_id: str) -> list[WorkflowExecution]: ...


def _newest_first(entries: list[ExecutionLogEntry], limit: int) -> list[ExecutionLogEntry]:
    # Insertion order breaks ties between entries that finished in the same instant.
    indexed = sorted(enumerate(entries), key=lambda pair: (pair[1].started_at, pair[0]), reverse=True)
    return [entry for _, entry in indexed[:limit]]


class MemoryStore:
    """In-memory ``AutomationStore``. Insertion order is preserved."""

    def __init__(self) -> None:
        self._rules: dict[str, AutomationRule] = {}
        self._triggers: dict[str, EmailTrigger] = {}
        self._logs: list[ExecutionLogEntry] = []
        self._executions: dict[str, WorkflowExecution] = {}
        self._lock = asyncio.Lock()

    # ── Rules ────────────────────────────────────────────────────────────

    async def save_rule(self, rule: AutomationRule) -> None:
        saved = copy.deepcopy(rule)
        async with self._lock:
            existing = self._rules.get(rule.id)
            if existing is not None:
                saved.execution_count = existing.execution_count
                saved.last_executed_at = existing.last_executed_at
            self._rules[rule.id] = saved

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        rule = self._rules.get(rule_id)
        return copy.deepcopy(rule) if rule else None

    async def list_rules(self, user_id: str) -> list[AutomationRule]:
        return [copy.deepcopy(r) for r in self._rules.values() if r.user_id == user_id]

    async def list_enabled_rules(self, trigger_type: TriggerType) -> list[AutomationRule]:
        return [
            copy.deepcopy(r) for r in self._rules.values()
            if r.enabled and r.trigger.type is trigger_type
        ]

    async def delete_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def record_rule_execution(self, rule_id: str, at: datetime) -> int | None:
        async with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return None
            rule.execution_count += 1
            rule.last_executed_at = at
            return rule.execution_count

    # ── Email triggers ───────────────────────────────────────────────────

    async def save_email_trigger(self, trigger: EmailTrigger) -> None:
        self._triggers[trigger.id] = copy.deepcopy(trigger)

    async def get_email_trigger(self, trigger_id: str) -> EmailTrigger | None:
        trigger = self._triggers.get(trigger_id)
        return copy.deepcopy(trigger) if trigger else None

    async def list_email_triggers(self, user_id: str) -> list[EmailTrigger]:
        return [copy.deepcopy(t) for t in self._triggers.values() if t.user_id == user_id]

    async def delete_email_trigger(self, trigger_id: str) -> bool:
        return self._triggers.pop(trigger_id, None) is not None

    # ── Execution logs ───────────────────────────────────────────────────

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        self._logs.append(entry)

    async def list_rule_execution_logs(self, rule_id: str, limit: int) -> list[ExecutionLogEntry]:
        return _newest_first([e for e in self._logs if e.rule_id == rule_id], limit)

    async def list_user_execution_logs(self, user_id: str, limit: int) -> list[ExecutionLogEntry]:
        return _newest_first([e for e in self._logs if e.user_id == user_id], limit)

    # ── Workflow executions ──────────────────────────────────────────────

    async def save_workflow_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = copy.deepcopy(execution)

    async def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    async def find_workflow_execution_by_token(self, token: str) -> WorkflowExecution | None:
        for execution in self._executions.values():
            if execution.approval_token == token:
                return copy.deepcopy(execution)
        return None

    async def list_workflow_executions(self, user_id: str) -> list[WorkflowExecution]:
        return [copy.deepcopy(e) for e in self._executions.values() if e.user_id == user_id]
