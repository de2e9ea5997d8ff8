"""Tests for the email trigger matcher.

Validates:
- Patterns are OR-ed across sender, subject and body
- One email fires a given trigger at most once
- Dangling rule references are reported, not raised
- Disabled triggers and other users' triggers are ignored
"""

from __future__ import annotations

import pytest

from concierge.core.errors import ValidationError

from conftest import notify_rule


@pytest.fixture
async def rule_id(engine):
    return await engine.add_rule(notify_rule(trigger={"type": "email", "conditions": {}}))


class TestAddTrigger:
    async def test_patterns_cleaned_and_deduplicated(self, matcher, rule_id):
        trigger_id = await matcher.add_trigger({
            "user_id": "u1", "rule_id": rule_id, "patterns": [" invoice ", "receipt", "invoice"],
        })
        (trigger,) = await matcher.get_user_triggers("u1")
        assert trigger.id == trigger_id
        assert trigger.patterns == ("invoice", "receipt")

    @pytest.mark.parametrize("patterns", [[], ["ok", ""], ["   "]])
    async def test_bad_patterns_rejected(self, matcher, store, rule_id, patterns):
        with pytest.raises(ValidationError):
            await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": patterns})
        assert await store.list_email_triggers("u1") == []

    async def test_delete(self, matcher, rule_id):
        trigger_id = await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["x"]})
        assert await matcher.delete_trigger(trigger_id, "u2") is False
        assert await matcher.delete_trigger(trigger_id, "u1") is True
        assert await matcher.delete_trigger(trigger_id, "u1") is False
        assert await matcher.delete_trigger("trg_unknown") is False


class TestProcessEmail:
    async def test_any_pattern_fires_once(self, matcher, engine, notifier, rule_id):
        trigger_id = await matcher.add_trigger({
            "user_id": "u1", "rule_id": rule_id, "patterns": ["invoice", "acme", "overdue"],
        })

        fires = await matcher.process_email({
            "user_id": "u1",
            "from": "billing@acme.test",
            "subject": "Overdue invoice",
            "body": "",
        })

        assert len(fires) == 1
        assert fires[0].trigger_id == trigger_id
        assert fires[0].pattern == "invoice"
        assert fires[0].executed is True
        assert len(notifier.sent) == 1
        assert len(await engine.get_rule_execution_logs(rule_id)) == 1

    async def test_trigger_data_passed_to_rule(self, matcher, engine, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"]})
        await matcher.process_email({"user_id": "u1", "sender": "a@b.test", "subject": "invoice 9"})
        (entry,) = await engine.get_rule_execution_logs(rule_id)
        assert entry.trigger_data == {"from": "a@b.test", "subject": "invoice 9", "body": ""}

    async def test_no_match(self, matcher, notifier, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"]})
        assert await matcher.process_email({"user_id": "u1", "subject": "lunch?"}) == []
        assert notifier.sent == []

    async def test_two_triggers_same_rule_fire_independently(self, matcher, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"]})
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["acme"]})
        fires = await matcher.process_email({"user_id": "u1", "from": "x@acme.test", "subject": "invoice"})
        assert len(fires) == 2

    async def test_disabled_trigger_ignored(self, matcher, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"], "enabled": False})
        assert await matcher.process_email({"user_id": "u1", "subject": "invoice"}) == []

    async def test_other_users_triggers_ignored(self, matcher, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"]})
        assert await matcher.process_email({"user_id": "u2", "subject": "invoice"}) == []

    async def test_dangling_rule_reported(self, matcher, engine, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"]})
        await engine.delete_rule(rule_id, "u1")

        (fire,) = await matcher.process_email({"user_id": "u1", "subject": "invoice"})

        assert fire.executed is False
        assert await engine.get_user_execution_logs("u1") == []

    async def test_disabled_rule_does_not_execute(self, matcher, engine, notifier, rule_id):
        await matcher.add_trigger({"user_id": "u1", "rule_id": rule_id, "patterns": ["invoice"]})
        await engine.toggle_rule(rule_id, False, "u1")

        (fire,) = await matcher.process_email({"user_id": "u1", "subject": "invoice"})

        assert fire.executed is False
        assert notifier.sent == []
