"""Validated payload schemas for rule triggers and actions.

Every trigger type and action type has exactly one pydantic model. A rule's
free-form ``conditions`` / ``config`` dicts are validated against the model
registered for their type when the rule is created, and stored in their
normalized JSON form, so executors can rely on a known shape.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal, Mapping

import pydantic
from apscheduler.triggers.cron import CronTrigger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from concierge.automation.models import ActionType, TriggerType
from concierge.config import settings
from concierge.core.errors import ValidationError
from concierge.integrations.notifications import Channel

ConditionOperator = Literal["equals", "not_equals", "contains", "matches", "greater_than", "less_than"]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ═══════════════════════════════════════════════════════════════════════════
# TRIGGER CONDITIONS
# ═══════════════════════════════════════════════════════════════════════════

class FieldCondition(_Strict):
    field: str = Field(min_length=1)
    operator: ConditionOperator = "equals"
    value: Any = None

    @model_validator(mode="after")
    def _check_regex(self) -> FieldCondition:
        if self.operator == "matches":
            try:
                re.compile(str(self.value))
            except re.error as e:
                raise ValueError(f"invalid regex {self.value!r}: {e}") from e
        return self


class EmailConditions(_Strict):
    patterns: list[str] = Field(default_factory=list)

    @field_validator("patterns")
    @classmethod
    def _non_blank(cls, patterns: list[str]) -> list[str]:
        cleaned = [p.strip() for p in patterns]
        if any(not p for p in cleaned):
            raise ValueError("patterns must be non-empty strings")
        return cleaned


class ScheduleConditions(_Strict):
    cron: str | None = None
    interval_seconds: int | None = Field(default=None, ge=1)
    timezone: str | None = None

    @model_validator(mode="after")
    def _one_schedule(self) -> ScheduleConditions:
        if (self.cron is None) == (self.interval_seconds is None):
            raise ValueError("exactly one of 'cron' or 'interval_seconds' is required")
        if self.cron is not None:
            try:
                CronTrigger.from_crontab(self.cron, timezone=self.timezone)
            except (ValueError, TypeError) as e:
                raise ValueError(f"invalid cron expression {self.cron!r}: {e}") from e
        return self


class TimeBasedConditions(_Strict):
    run_at: datetime

    @field_validator("run_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("run_at must include a timezone offset")
        return value


class FieldConditionSet(_Strict):
    match: Literal["all", "any"] = "all"
    fields: list[FieldCondition] = Field(default_factory=list)


TRIGGER_CONDITION_MODELS: dict[TriggerType, type[BaseModel]] = {
    TriggerType.EMAIL: EmailConditions,
    TriggerType.SCHEDULE: ScheduleConditions,
    TriggerType.TIME_BASED: TimeBasedConditions,
    TriggerType.SMS: FieldConditionSet,
    TriggerType.CALENDAR_EVENT: FieldConditionSet,
    TriggerType.WEBHOOK: FieldConditionSet,
}


class TriggerSpec(BaseModel):
    type: TriggerType
    conditions: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_conditions(self) -> TriggerSpec:
        model = TRIGGER_CONDITION_MODELS[self.type]
        self.conditions = model.model_validate(self.conditions).model_dump(mode="json", exclude_none=True)
        return self


# ═══════════════════════════════════════════════════════════════════════════
# ACTIONS
# ═══════════════════════════════════════════════════════════════════════════

class ActionSpec(BaseModel):
    type: ActionType
    config: dict[str, Any] = Field(default_factory=dict)
    delay_ms: int | None = Field(default=None, ge=0, validation_alias=AliasChoices("delay_ms", "delay"))

    @model_validator(mode="after")
    def _validate_config(self) -> ActionSpec:
        if self.delay_ms is not None and self.delay_ms > settings.action_max_delay_ms:
            raise ValueError(f"delay_ms exceeds the maximum of {settings.action_max_delay_ms}")
        model = ACTION_CONFIG_MODELS[self.type]
        self.config = model.model_validate(self.config).model_dump(mode="json")
        return self


class NotifyConfig(_Strict):
    channel: Channel = Channel.PUSH
    recipient: str = ""
    subject: str = ""
    message: str = "Automation '{{rule.name}}' ran"


class SendEmailConfig(_Strict):
    to: str = Field(min_length=1)
    subject: str = ""
    template: str = ""
    body: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class SendSmsConfig(_Strict):
    to: str = Field(min_length=1)
    message: str = Field(min_length=1)


class CreateCalendarEventConfig(_Strict):
    title: str = Field(min_length=1)
    start: str = Field(min_length=1)
    end: str | None = None
    duration_minutes: int = Field(default=60, gt=0)
    location: str = ""
    description: str = ""
    attendees: list[str] = Field(default_factory=list)


class UpdateCalendarEventConfig(_Strict):
    event_id: str = Field(min_length=1)
    updates: dict[str, Any] = Field(min_length=1)


class SmartScheduleConfig(_Strict):
    title: str = Field(min_length=1)
    duration_minutes: int = Field(gt=0, validation_alias=AliasChoices("duration_minutes", "duration"))
    type: str = ""
    description: str = ""
    location: str = ""


class WebhookCallConfig(_Strict):
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_s: float | None = Field(default=None, gt=0)

    @field_validator("url")
    @classmethod
    def _http_url(cls, url: str) -> str:
        if not (url.startswith(("http://", "https://")) or url.startswith("{{")):
            raise ValueError("url must be http(s) or a placeholder")
        return url


class WaitConfig(_Strict):
    duration_ms: int = Field(ge=0, validation_alias=AliasChoices("duration_ms", "duration"))


class ConditionalConfig(_Strict):
    condition: FieldCondition | bool
    true_actions: list[ActionSpec] = Field(default_factory=list)
    false_actions: list[ActionSpec] = Field(default_factory=list)


ACTION_CONFIG_MODELS: dict[ActionType, type[BaseModel]] = {
    ActionType.NOTIFY: NotifyConfig,
    ActionType.SEND_EMAIL: SendEmailConfig,
    ActionType.SEND_SMS: SendSmsConfig,
    ActionType.CREATE_CALENDAR_EVENT: CreateCalendarEventConfig,
    ActionType.UPDATE_CALENDAR_EVENT: UpdateCalendarEventConfig,
    ActionType.SMART_SCHEDULE: SmartScheduleConfig,
    ActionType.WEBHOOK_CALL: WebhookCallConfig,
    ActionType.WAIT: WaitConfig,
    ActionType.CONDITIONAL: ConditionalConfig,
}


# ═══════════════════════════════════════════════════════════════════════════
# RULE
# ═══════════════════════════════════════════════════════════════════════════

class RuleSpec(BaseModel):
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    trigger: TriggerSpec
    actions: list[ActionSpec] = Field(min_length=1)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _strip_name(cls, name: str) -> str:
        name = name.strip()
        if not name:
            raise ValueError("name must not be blank")
        return name


def format_errors(exc: pydantic.ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
        for err in exc.errors()
    ]


def validate_rule_spec(spec: RuleSpec | Mapping[str, Any]) -> RuleSpec:
    """Validate a rule-creation payload or raise ``ValidationError``."""
    if isinstance(spec, RuleSpec):
        return spec
    try:
        return RuleSpec.model_validate(dict(spec))
    except pydantic.ValidationError as e:
        raise ValidationError(format_errors(e)) from e


def validate_action_config(action_type: ActionType, config: dict[str, Any]) -> BaseModel:
    """Parse a stored action config into its typed model."""
    return ACTION_CONFIG_MODELS[action_type].model_validate(config)
