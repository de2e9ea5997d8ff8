"""Workflow definitions and execution records.

State machine per execution:

    running ──(step succeeds, more steps)──► running
    running ──(step requires approval)─────► awaiting_approval
    awaiting_approval ──(approved)─────────► running ──► … ──► completed
    awaiting_approval ──(rejected)─────────► failed
    running ──(step fails)─────────────────► failed
    running ──(step exceeds its budget)────► timeout
    running ──(all steps succeed)──────────► completed

``completed``, ``failed`` and ``timeout`` are terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class StepType(str, Enum):
    TRIGGER = "trigger"
    EXTRACT = "extract"
    CALENDAR = "calendar"
    NOTIFY = "notify"
    APPROVAL = "approval"
    END = "end"


@dataclass(frozen=True)
class WorkflowStep:
    id: str
    type: StepType
    name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    timeout_s: float | None = None

    @property
    def is_gate(self) -> bool:
        return self.type is StepType.APPROVAL or self.requires_approval

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "config": self.config,
            "requires_approval": self.requires_approval,
            "timeout_s": self.timeout_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowStep:
        return cls(
            id=data["id"],
            type=StepType(data["type"]),
            name=data.get("name", ""),
            config=data.get("config") or {},
            requires_approval=data.get("requires_approval", False),
            timeout_s=data.get("timeout_s"),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    steps: tuple[WorkflowStep, ...]
    description: str = ""
    step_timeout_s: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "step_timeout_s": self.step_timeout_s,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            step_timeout_s=data.get("step_timeout_s"),
            steps=tuple(WorkflowStep.from_dict(s) for s in data.get("steps", [])),
        )


@dataclass
class StepRecord:
    id: str
    type: StepType
    status: StepStatus = StepStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepRecord:
        return cls(
            id=data["id"],
            type=StepType(data["type"]),
            status=StepStatus(data["status"]),
            result=data.get("result"),
            error=data.get("error"),
            started_at=_opt_datetime(data.get("started_at")),
            finished_at=_opt_datetime(data.get("finished_at")),
        )


@dataclass
class WorkflowExecution:
    id: str
    workflow_id: str
    workflow_name: str
    user_id: str
    status: WorkflowStatus
    started_at: datetime
    steps: list[StepRecord]
    # Snapshot taken at start; resuming after approval runs these steps.
    definition: WorkflowDefinition
    trigger_data: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    ended_at: datetime | None = None
    calendar_event: dict[str, str] | None = None
    current_step: int = 0
    approval_token: str | None = None
    approval_requested_at: datetime | None = None
    approved_at: datetime | None = None

    def step_results(self) -> dict[str, Any]:
        """Completed step results keyed by step id, for placeholder rendering."""
        return {s.id: s.result for s in self.steps if s.status is StepStatus.COMPLETED and s.result is not None}

    def to_dict(self, include_token: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "user_id": self.user_id,
            "status": self.status.value,
            "start_time": self.started_at.isoformat(),
            "end_time": self.ended_at.isoformat() if self.ended_at else None,
            "steps": [s.to_dict() for s in self.steps],
            "definition": self.definition.to_dict(),
            "trigger_data": self.trigger_data,
            "result": self.result,
            "calendar_event": self.calendar_event,
            "current_step": self.current_step,
            "approval_requested_at": (
                self.approval_requested_at.isoformat() if self.approval_requested_at else None
            ),
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }
        if include_token:
            data["approval_token"] = self.approval_token
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowExecution:
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            workflow_name=data["workflow_name"],
            user_id=data["user_id"],
            status=WorkflowStatus(data["status"]),
            started_at=_opt_datetime(data["start_time"]),
            ended_at=_opt_datetime(data.get("end_time")),
            steps=[StepRecord.from_dict(s) for s in data.get("steps", [])],
            definition=WorkflowDefinition.from_dict(data["definition"]),
            trigger_data=data.get("trigger_data") or {},
            result=data.get("result") or {},
            calendar_event=data.get("calendar_event"),
            current_step=data.get("current_step", 0),
            approval_token=data.get("approval_token"),
            approval_requested_at=_opt_datetime(data.get("approval_requested_at")),
            approved_at=_opt_datetime(data.get("approved_at")),
        )


@dataclass(frozen=True)
class ApprovalResult:
    execution_id: str
    approved: bool
    status: WorkflowStatus
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "approved": self.approved,
            "status": self.status.value,
            "error": self.error,
        }


def _opt_datetime(value: datetime | str | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
