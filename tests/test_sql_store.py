"""Tests for the SQLAlchemy-backed store (SQLite via aiosqlite).

The same engines run against ``SqlStore`` as against ``MemoryStore``; these
tests cover what only the SQL mapping can get wrong: JSON columns, timezone
round-trips, atomic counters and log ordering.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest_asyncio

from concierge.automation.actions import ActionServices
from concierge.automation.engine import AutomationEngine
from concierge.automation.models import (
    ActionOutcome,
    ActionStatus,
    ActionType,
    AutomationRule,
    ExecutionLogEntry,
    ExecutionStatus,
    RuleAction,
    RuleTrigger,
    TriggerType,
)
from concierge.db.session import create_engine, init_db, make_session_factory
from concierge.db.sql_store import SqlStore
from concierge.triggers.models import EmailTrigger
from concierge.workflows.engine import WorkflowExecutionEngine

from conftest import T0, notify_rule


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'concierge.db'}", echo=False)
    await init_db(engine)
    yield SqlStore(make_session_factory(engine))
    await engine.dispose()


def _rule(rule_id: str = "rule_1", user_id: str = "u1", **overrides) -> AutomationRule:
    fields = dict(
        id=rule_id,
        user_id=user_id,
        name="Morning digest",
        trigger=RuleTrigger(TriggerType.SCHEDULE, {"cron": "0 8 * * *"}),
        actions=[RuleAction(ActionType.NOTIFY, {"message": "hi"}, delay_ms=250)],
        created_at=T0,
    )
    fields.update(overrides)
    return AutomationRule(**fields)


def _log(entry_id: str, started_offset_s: int = 0, rule_id: str = "rule_1") -> ExecutionLogEntry:
    started = T0 + timedelta(seconds=started_offset_s)
    return ExecutionLogEntry(
        id=entry_id,
        rule_id=rule_id,
        user_id="u1",
        status=ExecutionStatus.COMPLETED,
        trigger_data={"n": entry_id},
        actions=(ActionOutcome(0, ActionType.NOTIFY, ActionStatus.COMPLETED, result={"message_id": "m"}),),
        started_at=started,
        finished_at=started,
    )


# ── Rules ───────────────────────────────────────────────────────────────

class TestRules:
    async def test_round_trip(self, sql_store):
        await sql_store.save_rule(_rule())
        rule = await sql_store.get_rule("rule_1")
        assert rule.trigger == RuleTrigger(TriggerType.SCHEDULE, {"cron": "0 8 * * *"})
        assert rule.actions == [RuleAction(ActionType.NOTIFY, {"message": "hi"}, delay_ms=250)]
        assert rule.created_at == T0
        assert rule.last_executed_at is None

    async def test_save_overwrites(self, sql_store):
        rule = _rule()
        await sql_store.save_rule(rule)
        rule.enabled = False
        await sql_store.save_rule(rule)
        assert (await sql_store.get_rule("rule_1")).enabled is False
        assert len(await sql_store.list_rules("u1")) == 1

    async def test_list_enabled_by_trigger_type(self, sql_store):
        await sql_store.save_rule(_rule("rule_1"))
        await sql_store.save_rule(_rule("rule_2", enabled=False))
        await sql_store.save_rule(_rule("rule_3", trigger=RuleTrigger(TriggerType.EMAIL, {"patterns": []})))
        enabled = await sql_store.list_enabled_rules(TriggerType.SCHEDULE)
        assert [r.id for r in enabled] == ["rule_1"]

    async def test_delete(self, sql_store):
        await sql_store.save_rule(_rule())
        assert await sql_store.delete_rule("rule_1") is True
        assert await sql_store.delete_rule("rule_1") is False
        assert await sql_store.get_rule("rule_1") is None

    async def test_record_execution_increments(self, sql_store):
        await sql_store.save_rule(_rule())
        counts = [await sql_store.record_rule_execution("rule_1", T0 + timedelta(minutes=n)) for n in range(3)]
        assert counts == [1, 2, 3]
        rule = await sql_store.get_rule("rule_1")
        assert rule.execution_count == 3
        assert rule.last_executed_at == T0 + timedelta(minutes=2)

    async def test_record_execution_missing_rule(self, sql_store):
        assert await sql_store.record_rule_execution("rule_missing", T0) is None

    async def test_stale_save_keeps_execution_count(self, sql_store):
        await sql_store.save_rule(_rule())
        stale = await sql_store.get_rule("rule_1")
        await sql_store.record_rule_execution("rule_1", T0)

        stale.enabled = False
        await sql_store.save_rule(stale)

        rule = await sql_store.get_rule("rule_1")
        assert rule.enabled is False
        assert rule.execution_count == 1
        assert rule.last_executed_at == T0


# ── Triggers and logs ───────────────────────────────────────────────────

class TestTriggersAndLogs:
    async def test_email_trigger_round_trip(self, sql_store):
        trigger = EmailTrigger(id="trg_1", user_id="u1", patterns=("invoice", "bill"), rule_id="rule_1", created_at=T0)
        await sql_store.save_email_trigger(trigger)
        assert await sql_store.list_email_triggers("u1") == [trigger]
        assert await sql_store.delete_email_trigger("trg_1") is True
        assert await sql_store.get_email_trigger("trg_1") is None

    async def test_logs_newest_first_with_stable_ties(self, sql_store):
        for entry in (_log("a", 0), _log("b", 60), _log("c", 60), _log("d", 30)):
            await sql_store.append_execution_log(entry)
        logs = await sql_store.list_rule_execution_logs("rule_1", 10)
        assert [e.id for e in logs] == ["c", "b", "d", "a"]
        assert logs[0].actions[0].result == {"message_id": "m"}
        assert logs[0].started_at == T0 + timedelta(seconds=60)

    async def test_log_limit_and_scope(self, sql_store):
        await sql_store.append_execution_log(_log("a", 0))
        await sql_store.append_execution_log(_log("b", 1, rule_id="rule_2"))
        assert [e.id for e in await sql_store.list_user_execution_logs("u1", 1)] == ["b"]
        assert [e.id for e in await sql_store.list_rule_execution_logs("rule_2", 10)] == ["b"]


# ── Engines over SQL ────────────────────────────────────────────────────

class TestEnginesOverSql:
    async def test_rule_execution(self, sql_store, notifier, calendar, clock):
        engine = AutomationEngine(sql_store, ActionServices(notifier=notifier, calendar=calendar), clock=clock)
        rule_id = await engine.add_rule(notify_rule())

        assert await engine.execute_rule(rule_id, "u1", {"subject": "invoice"}) is True

        assert (await engine.get_rule(rule_id, "u1")).execution_count == 1
        (entry,) = await engine.get_rule_execution_logs(rule_id)
        assert entry.status is ExecutionStatus.COMPLETED

    async def test_concurrent_executions_all_counted(self, sql_store, notifier, calendar, clock):
        engine = AutomationEngine(sql_store, ActionServices(notifier=notifier, calendar=calendar), clock=clock)
        rule_id = await engine.add_rule(notify_rule())

        results = await asyncio.gather(*(
            engine.execute_rule(rule_id, "u1", {"subject": f"invoice {n}"}) for n in range(5)
        ))

        assert results == [True] * 5
        assert (await engine.get_rule(rule_id, "u1")).execution_count == 5
        assert len(await engine.get_rule_execution_logs(rule_id)) == 5

    async def test_toggle_after_run_keeps_count(self, sql_store, notifier, calendar, clock):
        engine = AutomationEngine(sql_store, ActionServices(notifier=notifier, calendar=calendar), clock=clock)
        rule_id = await engine.add_rule(notify_rule())
        stale = await sql_store.get_rule(rule_id)
        assert await engine.execute_rule(rule_id, "u1", {"subject": "invoice"}) is True

        stale.enabled = False
        await sql_store.save_rule(stale)
        assert await engine.toggle_rule(rule_id, True, "u1") is True

        rule = await engine.get_rule(rule_id, "u1")
        assert rule.enabled is True
        assert rule.execution_count == 1

    async def test_log_reads_are_repeatable(self, sql_store, notifier, calendar, clock):
        engine = AutomationEngine(sql_store, ActionServices(notifier=notifier, calendar=calendar), clock=clock)
        rule_id = await engine.add_rule(notify_rule())
        for n in range(3):
            await engine.execute_rule(rule_id, "u1", {"subject": f"invoice {n}"})

        first = [e.to_dict() for e in await engine.get_user_execution_logs("u1")]
        second = [e.to_dict() for e in await engine.get_user_execution_logs("u1")]
        assert first == second
        assert len(first) == 3

    async def test_approval_token_lookup(self, sql_store, workflows, clock):
        engine = WorkflowExecutionEngine(sql_store, workflows.services, clock=clock, approval_ttl_s=None)
        execution = await engine.execute_workflow("schedule-appointment", "u1", {"body": "dentist please"})
        token = execution.approval_token

        found = await sql_store.find_workflow_execution_by_token(token)
        assert found.id == execution.id
        assert found.started_at == T0

        await engine.approve_workflow(token, True)

        assert await sql_store.find_workflow_execution_by_token(token) is None
        done = await engine.get_execution(execution.id, "u1")
        assert done.result["appointment_id"] == done.calendar_event["event_id"]
