"""Email trigger matcher.

Decides, for one inbound email, which rules fire. Each enabled trigger
owned by the recipient is tested once: any pattern matching the sender,
subject or body fires its rule (OR semantics), so one email fires a given
trigger at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping

import pydantic
import structlog
from pydantic import BaseModel, Field, field_validator

from concierge.automation.expressions import email_matches
from concierge.automation.schemas import format_errors
from concierge.core.errors import ValidationError
from concierge.core.ids import Clock, new_id, utcnow
from concierge.db.store import AutomationStore
from concierge.triggers.models import EmailTrigger

if TYPE_CHECKING:
    from concierge.automation.engine import AutomationEngine

logger = structlog.get_logger()


class EmailTriggerSpec(BaseModel):
    user_id: str = Field(min_length=1)
    patterns: list[str] = Field(min_length=1)
    rule_id: str = Field(min_length=1)
    enabled: bool = True

    @field_validator("patterns")
    @classmethod
    def _clean(cls, patterns: list[str]) -> list[str]:
        cleaned = [p.strip() for p in patterns]
        if any(not p for p in cleaned):
            raise ValueError("patterns must be non-empty strings")
        # Ordered set: keep the first occurrence of each pattern.
        return list(dict.fromkeys(cleaned))


class InboundEmail(BaseModel):
    user_id: str = Field(min_length=1)
    sender: str = Field(default="", validation_alias=pydantic.AliasChoices("from", "sender", "from_"))
    subject: str = ""
    body: str = ""

    def trigger_data(self) -> dict[str, Any]:
        return {"from": self.sender, "subject": self.subject, "body": self.body}


@dataclass(frozen=True)
class TriggerFire:
    trigger_id: str
    rule_id: str
    pattern: str
    executed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "rule_id": self.rule_id,
            "pattern": self.pattern,
            "executed": self.executed,
        }


def _validate(model: type[BaseModel], data: Mapping[str, Any] | BaseModel) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(dict(data))
    except pydantic.ValidationError as e:
        raise ValidationError(format_errors(e)) from e


class EmailTriggerMatcher:
    def __init__(self, store: AutomationStore, engine: AutomationEngine, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.engine = engine
        self._clock = clock

    async def add_trigger(self, spec: EmailTriggerSpec | Mapping[str, Any]) -> str:
        validated: EmailTriggerSpec = _validate(EmailTriggerSpec, spec)
        trigger = EmailTrigger(
            id=new_id("trg"),
            user_id=validated.user_id,
            patterns=tuple(validated.patterns),
            rule_id=validated.rule_id,
            enabled=validated.enabled,
            created_at=self._clock(),
        )
        await self.store.save_email_trigger(trigger)
        logger.info(
            "email_trigger_created",
            trigger_id=trigger.id,
            user_id=trigger.user_id,
            rule_id=trigger.rule_id,
            pattern_count=len(trigger.patterns),
        )
        return trigger.id

    async def delete_trigger(self, trigger_id: str, user_id: str | None = None) -> bool:
        """Delete a trigger. Returns ``False`` when absent (or owned by another user)."""
        trigger = await self.store.get_email_trigger(trigger_id)
        if trigger is None or (user_id is not None and trigger.user_id != user_id):
            return False
        await self.store.delete_email_trigger(trigger_id)
        logger.info("email_trigger_deleted", trigger_id=trigger_id)
        return True

    async def get_user_triggers(self, user_id: str) -> list[EmailTrigger]:
        return await self.store.list_email_triggers(user_id)

    async def process_email(self, email: InboundEmail | Mapping[str, Any]) -> list[TriggerFire]:
        """Fire the rule of every matching trigger. Never raises for a dangling rule."""
        message: InboundEmail = _validate(InboundEmail, email)
        data = message.trigger_data()

        fires: list[TriggerFire] = []
        for trigger in await self.store.list_email_triggers(message.user_id):
            if not trigger.enabled:
                continue
            pattern = email_matches(trigger.patterns, data)
            if pattern is None:
                continue

            logger.info(
                "email_trigger_matched",
                trigger_id=trigger.id,
                rule_id=trigger.rule_id,
                pattern=pattern,
                subject=message.subject[:80],
            )
            if await self.engine.get_rule(trigger.rule_id, message.user_id) is None:
                logger.warning("email_trigger_rule_missing", trigger_id=trigger.id, rule_id=trigger.rule_id)
                fires.append(TriggerFire(trigger.id, trigger.rule_id, pattern, executed=False))
                continue

            executed = await self.engine.execute_rule(trigger.rule_id, message.user_id, data)
            fires.append(TriggerFire(trigger.id, trigger.rule_id, pattern, executed=executed))

        if not fires:
            logger.debug("email_no_trigger_matched", user_id=message.user_id)
        return fires
