"""Tests for the automation template catalog."""

from __future__ import annotations

import pytest

from concierge.automation.models import ActionType, TriggerType
from concierge.automation.schemas import validate_rule_spec
from concierge.automation.templates import (
    AUTOMATION_TEMPLATES,
    RECIPIENT_PLACEHOLDER,
    build_rule_spec,
    get_template,
    list_templates,
)
from concierge.core.errors import ValidationError


class TestCatalog:
    def test_lists_every_template(self):
        ids = [t["id"] for t in list_templates()]
        assert ids == list(AUTOMATION_TEMPLATES)
        assert "doctor_appointment_detection" in ids

    @pytest.mark.parametrize("template_id", list(AUTOMATION_TEMPLATES))
    def test_every_template_is_a_valid_rule(self, template_id):
        spec = validate_rule_spec(build_rule_spec("u1", template_id, {"recipient": "me@example.test"}))
        assert spec.user_id == "u1"
        assert spec.actions

    def test_get_template_returns_a_copy(self):
        body = get_template("bill_reminder")
        body["name"] = "changed"
        assert get_template("bill_reminder")["name"] == "Bill Reminder"

    def test_unknown_template(self):
        assert get_template("nope") is None
        assert build_rule_spec("u1", "nope") is None


class TestBuildRuleSpec:
    def test_recipient_fills_nested_actions(self):
        spec = build_rule_spec("u1", "doctor_appointment_detection", {"recipient": "me@example.test"})
        true_actions = spec["actions"][0]["config"]["true_actions"]
        email = next(a for a in true_actions if a["type"] == "send_email")
        assert email["config"]["to"] == "me@example.test"

    def test_placeholder_kept_without_recipient(self):
        spec = build_rule_spec("u1", "meeting_follow_up")
        assert spec["actions"][1]["config"]["to"] == RECIPIENT_PLACEHOLDER

    def test_scheduled_template_requires_recipient(self):
        with pytest.raises(ValidationError, match="needs a recipient"):
            build_rule_spec("u1", "bill_reminder")

    def test_scheduled_template_accepts_non_timer_trigger_override(self):
        trigger = {"type": "webhook", "conditions": {}}
        spec = build_rule_spec("u1", "bill_reminder", {"trigger": trigger})
        assert spec["actions"][0]["config"]["to"] == RECIPIENT_PLACEHOLDER

    def test_customizations_override(self):
        trigger = {"type": "schedule", "conditions": {"cron": "30 7 * * 1-5"}}
        spec = build_rule_spec("u1", "meeting_reminder", {"name": "Weekday meetings", "trigger": trigger, "enabled": False})
        assert spec["name"] == "Weekday meetings"
        assert spec["trigger"] == trigger
        assert spec["enabled"] is False
        assert AUTOMATION_TEMPLATES["meeting_reminder"]["name"] == "Meeting Reminder"


class TestCreateRuleFromTemplate:
    async def test_creates_rule(self, engine):
        rule_id = await engine.create_rule_from_template("u1", "medication_reminder", {"recipient": "me@example.test"})
        rule = await engine.get_rule(rule_id, "u1")
        assert rule.trigger.type is TriggerType.SCHEDULE
        assert rule.trigger.conditions["cron"] == "0 8,14,20 * * *"
        assert rule.actions[0].type is ActionType.SEND_EMAIL
        assert rule.actions[0].config["to"] == "me@example.test"

    async def test_unknown_template(self, engine):
        assert await engine.create_rule_from_template("u1", "nope") is None
        assert await engine.get_user_rules("u1") == []

    async def test_scheduled_template_without_recipient_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.create_rule_from_template("u1", "medication_reminder")
        assert await engine.get_user_rules("u1") == []

    async def test_detection_template_books_appointment(self, engine, notifier, calendar):
        rule_id = await engine.create_rule_from_template(
            "u1", "doctor_appointment_detection", {"recipient": "me@example.test"},
        )
        ok = await engine.execute_rule(rule_id, "u1", {
            "subject": "Your appointment with Dr. Lee",
            "doctor_name": "Dr. Lee",
            "appointment_date": "2026-03-05T10:00:00+00:00",
            "doctor_address": "1 Main St",
        })
        assert ok is True
        assert notifier.sent[0].recipient == "me@example.test"
        assert notifier.sent[0].data["doctor"] == "Dr. Lee"
