"""SQLAlchemy-backed ``AutomationStore``.

Each call is its own unit of work. The execution counter is bumped with a
single ``UPDATE ... SET execution_count = execution_count + 1`` so concurrent
firings of the same rule never lose an increment. ``save_rule`` never writes
the counter columns of an existing row, so a stale copy saved after a run
cannot roll the count back.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concierge.automation.models import (
    ActionType,
    AutomationRule,
    ExecutionLogEntry,
    RuleAction,
    RuleTrigger,
    TriggerType,
)
from concierge.db.models import (
    AutomationRuleRow,
    EmailTriggerRow,
    ExecutionLogRow,
    WorkflowExecutionRow,
)
from concierge.db.session import db_session
from concierge.triggers.models import EmailTrigger
from concierge.workflows.models import WorkflowExecution

logger = structlog.get_logger()


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; every stored timestamp is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _rule_from_row(row: AutomationRuleRow) -> AutomationRule:
    return AutomationRule(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        description=row.description or "",
        trigger=RuleTrigger(
            type=TriggerType(row.trigger_type),
            conditions=dict(row.trigger_conditions or {}),
        ),
        actions=[
            RuleAction(
                type=ActionType(a["type"]),
                config=a.get("config", {}),
                delay_ms=a.get("delay_ms"),
            )
            for a in row.actions or []
        ],
        enabled=row.enabled,
        execution_count=row.execution_count,
        last_executed_at=_aware(row.last_executed_at),
        created_at=_aware(row.created_at),
    )


def _trigger_from_row(row: EmailTriggerRow) -> EmailTrigger:
    return EmailTrigger(
        id=row.id,
        user_id=row.user_id,
        patterns=tuple(row.patterns or ()),
        rule_id=row.rule_id,
        enabled=row.enabled,
        created_at=_aware(row.created_at),
    )


def _log_from_row(row: ExecutionLogRow) -> ExecutionLogEntry:
    return ExecutionLogEntry.from_dict({
        "id": row.id,
        "rule_id": row.rule_id,
        "user_id": row.user_id,
        "status": row.status,
        "trigger_data": row.trigger_data,
        "actions": row.actions,
        "started_at": _aware(row.started_at),
        "finished_at": _aware(row.finished_at),
        "error": row.error,
    })


class SqlStore:
    """``AutomationStore`` over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = session_factory

    def _session(self):
        return db_session(self._factory)

    # ── Rules ────────────────────────────────────────────────────────────

    async def save_rule(self, rule: AutomationRule) -> None:
        data = rule.to_dict()
        definition = dict(
            user_id=rule.user_id,
            name=rule.name,
            description=rule.description,
            trigger_type=rule.trigger.type.value,
            trigger_conditions=data["trigger"]["conditions"],
            actions=data["actions"],
            enabled=rule.enabled,
        )
        async with self._session() as db:
            result = await db.execute(
                update(AutomationRuleRow).where(AutomationRuleRow.id == rule.id).values(**definition)
            )
            if result.rowcount == 0:
                db.add(AutomationRuleRow(
                    id=rule.id,
                    execution_count=rule.execution_count,
                    last_executed_at=rule.last_executed_at,
                    created_at=rule.created_at,
                    **definition,
                ))

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        async with self._session() as db:
            row = await db.get(AutomationRuleRow, rule_id)
            return _rule_from_row(row) if row else None

    async def list_rules(self, user_id: str) -> list[AutomationRule]:
        async with self._session() as db:
            result = await db.execute(
                select(AutomationRuleRow)
                .where(AutomationRuleRow.user_id == user_id)
                .order_by(AutomationRuleRow.created_at)
            )
            return [_rule_from_row(r) for r in result.scalars()]

    async def list_enabled_rules(self, trigger_type: TriggerType) -> list[AutomationRule]:
        async with self._session() as db:
            result = await db.execute(
                select(AutomationRuleRow)
                .where(
                    AutomationRuleRow.enabled.is_(True),
                    AutomationRuleRow.trigger_type == trigger_type.value,
                )
                .order_by(AutomationRuleRow.created_at)
            )
            return [_rule_from_row(r) for r in result.scalars()]

    async def delete_rule(self, rule_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(delete(AutomationRuleRow).where(AutomationRuleRow.id == rule_id))
            return result.rowcount > 0

    async def record_rule_execution(self, rule_id: str, at: datetime) -> int | None:
        async with self._session() as db:
            result = await db.execute(
                update(AutomationRuleRow)
                .where(AutomationRuleRow.id == rule_id)
                .values(
                    execution_count=AutomationRuleRow.execution_count + 1,
                    last_executed_at=at,
                )
            )
            if result.rowcount == 0:
                return None
            count = await db.scalar(
                select(AutomationRuleRow.execution_count).where(AutomationRuleRow.id == rule_id)
            )
            return count

    # ── Email triggers ───────────────────────────────────────────────────

    async def save_email_trigger(self, trigger: EmailTrigger) -> None:
        async with self._session() as db:
            await db.merge(EmailTriggerRow(
                id=trigger.id,
                user_id=trigger.user_id,
                patterns=list(trigger.patterns),
                rule_id=trigger.rule_id,
                enabled=trigger.enabled,
                created_at=trigger.created_at,
            ))

    async def get_email_trigger(self, trigger_id: str) -> EmailTrigger | None:
        async with self._session() as db:
            row = await db.get(EmailTriggerRow, trigger_id)
            return _trigger_from_row(row) if row else None

    async def list_email_triggers(self, user_id: str) -> list[EmailTrigger]:
        async with self._session() as db:
            result = await db.execute(
                select(EmailTriggerRow)
                .where(EmailTriggerRow.user_id == user_id)
                .order_by(EmailTriggerRow.created_at)
            )
            return [_trigger_from_row(r) for r in result.scalars()]

    async def delete_email_trigger(self, trigger_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(delete(EmailTriggerRow).where(EmailTriggerRow.id == trigger_id))
            return result.rowcount > 0

    # ── Execution logs ───────────────────────────────────────────────────

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        data = entry.to_dict()
        async with self._session() as db:
            db.add(ExecutionLogRow(
                id=entry.id,
                rule_id=entry.rule_id,
                user_id=entry.user_id,
                status=entry.status.value,
                trigger_data=entry.trigger_data,
                actions=data["actions"],
                error=entry.error,
                started_at=entry.started_at,
                finished_at=entry.finished_at,
            ))

    async def _list_logs(self, clause, limit: int) -> list[ExecutionLogEntry]:
        async with self._session() as db:
            result = await db.execute(
                select(ExecutionLogRow)
                .where(clause)
                .order_by(ExecutionLogRow.started_at.desc(), ExecutionLogRow.seq.desc())
                .limit(limit)
            )
            return [_log_from_row(r) for r in result.scalars()]

    async def list_rule_execution_logs(self, rule_id: str, limit: int) -> list[ExecutionLogEntry]:
        return await self._list_logs(ExecutionLogRow.rule_id == rule_id, limit)

    async def list_user_execution_logs(self, user_id: str, limit: int) -> list[ExecutionLogEntry]:
        return await self._list_logs(ExecutionLogRow.user_id == user_id, limit)

    # ── Workflow executions ──────────────────────────────────────────────

    async def save_workflow_execution(self, execution: WorkflowExecution) -> None:
        async with self._session() as db:
            await db.merge(WorkflowExecutionRow(
                id=execution.id,
                workflow_id=execution.workflow_id,
                user_id=execution.user_id,
                status=execution.status.value,
                approval_token=execution.approval_token,
                started_at=execution.started_at,
                document=execution.to_dict(include_token=True),
            ))

    async def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self._session() as db:
            row = await db.get(WorkflowExecutionRow, execution_id)
            return WorkflowExecution.from_dict(row.document) if row else None

    async def find_workflow_execution_by_token(self, token: str) -> WorkflowExecution | None:
        async with self._session() as db:
            row = await db.scalar(
                select(WorkflowExecutionRow).where(WorkflowExecutionRow.approval_token == token)
            )
            return WorkflowExecution.from_dict(row.document) if row else None

    async def list_workflow_executions(self, user_id: str) -> list[WorkflowExecution]:
        async with self._session() as db:
            result = await db.execute(
                select(WorkflowExecutionRow)
                .where(WorkflowExecutionRow.user_id == user_id)
                .order_by(WorkflowExecutionRow.started_at)
            )
            return [WorkflowExecution.from_dict(r.document) for r in result.scalars()]
