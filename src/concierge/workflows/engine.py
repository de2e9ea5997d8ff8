"""Workflow execution engine.

Runs a workflow's steps strictly in order for one trigger occurrence.
Execution only leaves ``running`` at an approval gate: the engine issues a
single-use token, persists the execution as ``awaiting_approval`` and
returns. ``approve_workflow`` consumes the token under a per-execution lock
and either resumes after the gate or fails the execution. Each execution
carries the definition it started with, and a resumed execution runs those
steps even if a different definition is later passed under the same id.

Step failures never escape: the execution's ``status`` and
``result["error"]`` report them. A step that exceeds its time budget ends
the execution as ``timeout`` instead of ``failed``. Store errors propagate.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

import structlog

from concierge.automation.expressions import render_placeholders
from concierge.config import settings
from concierge.core.errors import InvalidTokenError, StepTimeoutError
from concierge.core.ids import Clock, new_approval_token, new_id, utcnow
from concierge.core.locks import KeyedLocks
from concierge.core.timeout import BudgetClass, budget_for, with_timeout
from concierge.db.store import AutomationStore
from concierge.integrations.notifications import Channel, Notification
from concierge.workflows.definitions import PREDEFINED_WORKFLOWS
from concierge.workflows.models import (
    ApprovalResult,
    StepRecord,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
)
from concierge.workflows.steps import BUDGET_CLASSES, StepContext, StepServices, run_step

logger = structlog.get_logger()

_UNSET: Any = object()


class UnknownWorkflowError(LookupError):
    pass


class WorkflowExecutionEngine:
    def __init__(
        self,
        store: AutomationStore,
        services: StepServices,
        *,
        clock: Clock = utcnow,
        step_timeout_s: float | None = None,
        approval_ttl_s: float | None = _UNSET,
        workflows: Mapping[str, WorkflowDefinition] | None = None,
    ) -> None:
        self.store = store
        self.services = services
        self._clock = clock
        self._step_timeout_s = step_timeout_s or settings.workflow_step_timeout_s
        self._approval_ttl_s = settings.workflow_approval_ttl_s if approval_ttl_s is _UNSET else approval_ttl_s
        self._workflows: dict[str, WorkflowDefinition] = dict(
            PREDEFINED_WORKFLOWS if workflows is None else workflows
        )
        self._locks = KeyedLocks()

    # ── Definitions ──────────────────────────────────────────────────────

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._workflows.get(workflow_id)

    # ── Entry points ─────────────────────────────────────────────────────

    async def execute_workflow(
        self,
        workflow: WorkflowDefinition | str,
        user_id: str,
        trigger_data: Mapping[str, Any] | None = None,
    ) -> WorkflowExecution:
        """Start an execution and run it until it finishes or pauses at a gate."""
        if isinstance(workflow, str):
            definition = self.get_workflow(workflow)
            if definition is None:
                raise UnknownWorkflowError(workflow)
        else:
            definition = workflow

        execution = WorkflowExecution(
            id=new_id("wfx"),
            workflow_id=definition.id,
            workflow_name=definition.name,
            user_id=user_id,
            status=WorkflowStatus.RUNNING,
            started_at=self._clock(),
            steps=[StepRecord(id=s.id, type=s.type) for s in definition.steps],
            definition=definition,
            trigger_data=dict(trigger_data or {}),
        )
        logger.info(
            "workflow_started",
            execution_id=execution.id,
            workflow_id=definition.id,
            user_id=user_id,
            steps=len(definition.steps),
        )
        async with self._locks.hold(execution.id):
            await self.store.save_workflow_execution(execution)
            await self._advance(execution, definition, 0)
        return execution

    async def approve_workflow(
        self,
        approval_token: str,
        approved: bool,
        reason: str | None = None,
    ) -> ApprovalResult:
        """Consume an approval token. Raises ``InvalidTokenError`` if unknown or already used."""
        found = await self.store.find_workflow_execution_by_token(approval_token)
        if found is None:
            raise InvalidTokenError(approval_token)

        async with self._locks.hold(found.id):
            # Re-read under the lock: a concurrent call may have consumed the token.
            execution = await self.store.get_workflow_execution(found.id)
            if (
                execution is None
                or execution.approval_token != approval_token
                or execution.status is not WorkflowStatus.AWAITING_APPROVAL
            ):
                raise InvalidTokenError(approval_token)

            now = self._clock()
            gate = execution.steps[execution.current_step]
            execution.approval_token = None

            if not approved or self._approval_expired(execution):
                error = (
                    "approval expired" if approved
                    else f"rejected by user: {reason}" if reason
                    else "rejected by user"
                )
                gate.status = StepStatus.FAILED
                gate.error = error
                gate.finished_at = now
                self._skip_remaining(execution, execution.current_step + 1)
                self._finish(execution, WorkflowStatus.FAILED, error=error)
                await self.store.save_workflow_execution(execution)
                logger.info("workflow_rejected", execution_id=execution.id, step_id=gate.id, reason=error)
                return ApprovalResult(execution.id, approved=False, status=execution.status, error=error)

            execution.approved_at = now
            execution.status = WorkflowStatus.RUNNING
            logger.info("workflow_approved", execution_id=execution.id, step_id=gate.id)
            await self._advance(execution, execution.definition, execution.current_step, gate_approved=True)
            return ApprovalResult(
                execution.id,
                approved=True,
                status=execution.status,
                error=execution.result.get("error"),
            )

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_all_executions(self, user_id: str) -> list[WorkflowExecution]:
        return await self.store.list_workflow_executions(user_id)

    async def get_execution(self, execution_id: str, user_id: str) -> WorkflowExecution | None:
        execution = await self.store.get_workflow_execution(execution_id)
        if execution is None or execution.user_id != user_id:
            return None
        return execution

    async def get_pending_approvals(self, user_id: str) -> list[WorkflowExecution]:
        return [
            e for e in await self.store.list_workflow_executions(user_id)
            if e.status is WorkflowStatus.AWAITING_APPROVAL
        ]

    # ── Step loop ────────────────────────────────────────────────────────

    def _approval_expired(self, execution: WorkflowExecution) -> bool:
        if self._approval_ttl_s is None or execution.approval_requested_at is None:
            return False
        deadline = execution.approval_requested_at + timedelta(seconds=self._approval_ttl_s)
        return self._clock() > deadline

    def _budget(self, definition: WorkflowDefinition, step_index: int) -> float:
        step = definition.steps[step_index]
        if step.timeout_s:
            return step.timeout_s
        base = definition.step_timeout_s or self._step_timeout_s
        return budget_for(BUDGET_CLASSES.get(step.type, BudgetClass.DEFAULT), base)

    async def _advance(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        start: int,
        gate_approved: bool = False,
    ) -> None:
        for index in range(start, len(definition.steps)):
            step = definition.steps[index]
            record = execution.steps[index]
            execution.current_step = index

            if step.is_gate and not (gate_approved and index == start):
                await self._pause(execution, index)
                return

            record.status = StepStatus.RUNNING
            record.started_at = self._clock()
            ctx = StepContext(execution=execution, step=step, services=self.services)
            config = render_placeholders(dict(step.config), ctx.template_data)
            budget = self._budget(definition, index)

            try:
                result = await with_timeout(run_step(config, ctx), step.id, budget)
            except StepTimeoutError as e:
                self._fail_step(execution, index, StepStatus.TIMEOUT, str(e))
                self._finish(execution, WorkflowStatus.TIMEOUT, error=str(e))
                await self.store.save_workflow_execution(execution)
                logger.warning(
                    "workflow_step_timeout",
                    execution_id=execution.id,
                    step_id=step.id,
                    budget_s=budget,
                )
                return
            except Exception as e:
                error = f"step '{step.id}' failed: {e}"
                self._fail_step(execution, index, StepStatus.FAILED, str(e))
                self._finish(execution, WorkflowStatus.FAILED, error=error)
                await self.store.save_workflow_execution(execution)
                logger.warning(
                    "workflow_step_failed",
                    execution_id=execution.id,
                    step_id=step.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return

            record.status = StepStatus.COMPLETED
            record.result = result
            record.finished_at = self._clock()
            if step.type is StepType.CALENDAR:
                execution.calendar_event = {"event_id": result["event_id"], "event_url": result["event_url"]}
                execution.result["appointment_id"] = result["event_id"]
                execution.result["event_url"] = result["event_url"]
            await self.store.save_workflow_execution(execution)
            logger.debug("workflow_step_completed", execution_id=execution.id, step_id=step.id)

        execution.current_step = len(definition.steps)
        self._finish(execution, WorkflowStatus.COMPLETED)
        await self.store.save_workflow_execution(execution)
        logger.info(
            "workflow_completed",
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            duration_ms=round((execution.ended_at - execution.started_at).total_seconds() * 1000),
        )

    async def _pause(self, execution: WorkflowExecution, index: int) -> None:
        record = execution.steps[index]
        token = new_approval_token()
        record.status = StepStatus.AWAITING_APPROVAL
        record.started_at = self._clock()
        execution.status = WorkflowStatus.AWAITING_APPROVAL
        execution.approval_token = token
        execution.approval_requested_at = record.started_at
        await self.store.save_workflow_execution(execution)
        logger.info("workflow_awaiting_approval", execution_id=execution.id, step_id=record.id)
        await self._send_approval_request(execution, index, token)

    async def _send_approval_request(self, execution: WorkflowExecution, index: int, token: str) -> None:
        # Best effort: the token is already persisted and listed in pending approvals.
        ctx_data = {
            **execution.step_results(),
            "trigger": execution.trigger_data,
        }
        step = execution.definition.steps[index]
        message = str(render_placeholders(step.config.get("message", ""), ctx_data))
        try:
            result = await self.services.notifier.send(Notification(
                user_id=execution.user_id,
                channel=Channel.PUSH,
                subject=f"Approval needed: {execution.workflow_name}",
                body=message or f"'{execution.workflow_name}' is waiting for your approval",
                data={"execution_id": execution.id, "approval_token": token},
            ))
        except Exception as e:
            logger.warning("approval_request_send_failed", execution_id=execution.id, error=str(e))
            return
        if not result.success:
            logger.warning("approval_request_send_failed", execution_id=execution.id, error=result.error)

    def _fail_step(self, execution: WorkflowExecution, index: int, status: StepStatus, error: str) -> None:
        record = execution.steps[index]
        record.status = status
        record.error = error
        record.finished_at = self._clock()
        self._skip_remaining(execution, index + 1)

    @staticmethod
    def _skip_remaining(execution: WorkflowExecution, start: int) -> None:
        for record in execution.steps[start:]:
            if record.status is StepStatus.PENDING:
                record.status = StepStatus.SKIPPED

    def _finish(self, execution: WorkflowExecution, status: WorkflowStatus, error: str | None = None) -> None:
        execution.status = status
        execution.ended_at = self._clock()
        if error is not None:
            execution.result["error"] = error
