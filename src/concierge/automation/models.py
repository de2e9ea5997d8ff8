"""Automation rule and execution-log records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TriggerType(str, Enum):
    SCHEDULE = "schedule"
    EMAIL = "email"
    SMS = "sms"
    CALENDAR_EVENT = "calendar_event"
    WEBHOOK = "webhook"
    TIME_BASED = "time_based"


class ActionType(str, Enum):
    NOTIFY = "notify"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_CALENDAR_EVENT = "create_calendar_event"
    UPDATE_CALENDAR_EVENT = "update_calendar_event"
    SMART_SCHEDULE = "smart_schedule"
    WEBHOOK_CALL = "webhook_call"
    WAIT = "wait"
    CONDITIONAL = "conditional"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # rule disabled at fire time


class ActionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # not reached after an earlier failure


@dataclass(frozen=True)
class RuleTrigger:
    type: TriggerType
    conditions: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleAction:
    type: ActionType
    config: dict[str, Any] = field(default_factory=dict)
    delay_ms: int | None = None


@dataclass
class AutomationRule:
    id: str
    user_id: str
    name: str
    trigger: RuleTrigger
    actions: list[RuleAction]
    created_at: datetime
    description: str = ""
    enabled: bool = True
    execution_count: int = 0
    last_executed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "trigger": {
                "type": self.trigger.type.value,
                "conditions": self.trigger.conditions,
            },
            "actions": [
                {"type": a.type.value, "config": a.config, "delay_ms": a.delay_ms}
                for a in self.actions
            ],
            "enabled": self.enabled,
            "execution_count": self.execution_count,
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ActionOutcome:
    index: int
    type: ActionType
    status: ActionStatus
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "type": self.type.value,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One rule invocation. Immutable once appended."""

    id: str
    rule_id: str
    user_id: str
    status: ExecutionStatus
    trigger_data: dict[str, Any]
    actions: tuple[ActionOutcome, ...]
    started_at: datetime
    finished_at: datetime
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "trigger_data": self.trigger_data,
            "actions": [a.to_dict() for a in self.actions],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionLogEntry:
        return cls(
            id=data["id"],
            rule_id=data["rule_id"],
            user_id=data["user_id"],
            status=ExecutionStatus(data["status"]),
            trigger_data=data.get("trigger_data") or {},
            actions=tuple(
                ActionOutcome(
                    index=a["index"],
                    type=ActionType(a["type"]),
                    status=ActionStatus(a["status"]),
                    result=a.get("result"),
                    error=a.get("error"),
                )
                for a in data.get("actions", [])
            ),
            started_at=_as_datetime(data["started_at"]),
            finished_at=_as_datetime(data["finished_at"]),
            error=data.get("error"),
        )


def _as_datetime(value: datetime | str) -> datetime:
    return datetime.fromisoformat(value) if isinstance(value, str) else value
