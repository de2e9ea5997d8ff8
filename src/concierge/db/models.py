"""Database models for the automation core.

Design principles:
- Every table carries user_id for tenant-scoped lookups
- JSON columns (JSONB on PostgreSQL) for per-type trigger/action payloads
- execution_logs is append-only; rows are never updated
- Hot paths indexed: rules by user, logs by rule/user newest-first,
  workflow executions by approval token
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class PortableJSON(TypeDecorator):
    """JSON column that is JSONB on PostgreSQL and handles UUID/datetime/Enum values."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class Base(DeclarativeBase):
    type_annotation_map = {
        dict[str, Any]: PortableJSON,
        list[Any]: PortableJSON,
        datetime: DateTime(timezone=True),
    }


class AutomationRuleRow(Base):
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    trigger_type: Mapped[str] = mapped_column(String(32), index=True)
    trigger_conditions: Mapped[dict[str, Any]] = mapped_column(default=dict)
    actions: Mapped[list[Any]] = mapped_column(default=list)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime]

    __table_args__ = (
        Index("ix_automation_rules_user_enabled", "user_id", "enabled"),
    )


class EmailTriggerRow(Base):
    __tablename__ = "email_triggers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    patterns: Mapped[list[Any]] = mapped_column(default=list)
    rule_id: Mapped[str] = mapped_column(String(64))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime]


class ExecutionLogRow(Base):
    __tablename__ = "execution_logs"

    # Surrogate sequence keeps a stable order between entries with equal timestamps.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True)
    rule_id: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(32))
    trigger_data: Mapped[dict[str, Any]] = mapped_column(default=dict)
    actions: Mapped[list[Any]] = mapped_column(default=list)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime]
    finished_at: Mapped[datetime]

    __table_args__ = (
        Index("ix_execution_logs_rule_started", "rule_id", "started_at"),
        Index("ix_execution_logs_user_started", "user_id", "started_at"),
    )


class WorkflowExecutionRow(Base):
    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(128))
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    status: Mapped[str] = mapped_column(String(32))
    approval_token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    started_at: Mapped[datetime]
    document: Mapped[dict[str, Any]] = mapped_column(default=dict)

    __table_args__ = (
        Index("ix_workflow_executions_user_started", "user_id", "started_at"),
        Index("ix_workflow_executions_status_user", "status", "user_id"),
    )
