"""HTTP surface tests (FastAPI TestClient over an in-memory runtime)."""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from concierge.app import create_app
from concierge.db.store import MemoryStore
from concierge.runtime import build_runtime, init_runtime, reset_runtime
from concierge.scheduling.smart_scheduler import SchedulingPolicy

from conftest import FakeExtraction, FixedClock, HangingCalendar, RecordingNotifier, notify_rule

HEADERS = {"X-User-Id": "u1"}


@pytest.fixture
def rt():
    runtime = build_runtime(
        store=MemoryStore(),
        calendar=HangingCalendar(),
        notifier=RecordingNotifier(),
        extraction=FakeExtraction(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))),
        policy=SchedulingPolicy(lookahead_days=7),
        clock=FixedClock(),
    )
    init_runtime(runtime)
    yield runtime
    reset_runtime()


@pytest.fixture
def client(rt):
    with TestClient(create_app(use_lifespan=False)) as c:
        yield c
        c.portal.call(rt.monitors.stop_all)


def _rule_body(**overrides):
    body = notify_rule()
    body.pop("user_id")
    body.update(overrides)
    return body


def _create_rule(client, **overrides) -> str:
    resp = client.post("/api/rules", json=_rule_body(**overrides), headers=HEADERS)
    assert resp.status_code == 201
    return resp.json()["rule_id"]


# ── Basics ──────────────────────────────────────────────────────────────

class TestBasics:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_user_header_required(self, client):
        assert client.get("/api/rules").status_code == 422


# ── Rules ───────────────────────────────────────────────────────────────

class TestRulesApi:
    def test_crud(self, client):
        rule_id = _create_rule(client)

        assert client.get(f"/api/rules/{rule_id}", headers=HEADERS).json()["name"] == "Invoice alert"
        assert [r["id"] for r in client.get("/api/rules", headers=HEADERS).json()["rules"]] == [rule_id]

        resp = client.patch(f"/api/rules/{rule_id}", json={"enabled": False}, headers=HEADERS)
        assert resp.json() == {"rule_id": rule_id, "enabled": False}

        assert client.delete(f"/api/rules/{rule_id}", headers=HEADERS).status_code == 204
        assert client.get(f"/api/rules/{rule_id}", headers=HEADERS).status_code == 404

    def test_invalid_rule_is_400(self, client):
        resp = client.post("/api/rules", json=_rule_body(actions=[]), headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"
        assert resp.json()["problems"]

    def test_other_users_rule_is_404(self, client):
        rule_id = _create_rule(client)
        other = {"X-User-Id": "u2"}
        assert client.get(f"/api/rules/{rule_id}", headers=other).status_code == 404
        assert client.get(f"/api/rules/{rule_id}/logs", headers=other).status_code == 404
        assert client.delete(f"/api/rules/{rule_id}", headers=other).status_code == 404

    def test_execute_and_logs(self, client, rt):
        rule_id = _create_rule(client)

        resp = client.post(f"/api/rules/{rule_id}/execute", json={"trigger_data": {"subject": "invoice"}}, headers=HEADERS)
        assert resp.json() == {"rule_id": rule_id, "success": True}
        assert rt.notifier.sent[0].body == "Got invoice"

        logs = client.get(f"/api/rules/{rule_id}/logs", params={"limit": 5}, headers=HEADERS).json()["logs"]
        assert [entry["status"] for entry in logs] == ["completed"]
        assert len(client.get("/api/logs", headers=HEADERS).json()["logs"]) == 1

    def test_templates(self, client):
        templates = client.get("/api/templates").json()["templates"]
        assert any(t["id"] == "bill_reminder" for t in templates)

        resp = client.post("/api/templates/bill_reminder/rules", json={"recipient": "me@example.test"}, headers=HEADERS)
        assert resp.status_code == 201
        rule = client.get(f"/api/rules/{resp.json()['rule_id']}", headers=HEADERS).json()
        assert rule["actions"][0]["config"]["to"] == "me@example.test"

        assert client.post("/api/templates/nope/rules", json={}, headers=HEADERS).status_code == 404

        resp = client.post("/api/templates/bill_reminder/rules", json={}, headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"


# ── Email triggers ──────────────────────────────────────────────────────

class TestEmailApi:
    def test_trigger_fires_on_inbound_email(self, client, rt):
        rule_id = _create_rule(client, trigger={"type": "email", "conditions": {}})
        resp = client.post("/api/triggers/email", json={"patterns": ["invoice"], "rule_id": rule_id}, headers=HEADERS)
        trigger_id = resp.json()["trigger_id"]

        fired = client.post(
            "/api/emails/inbound",
            json={"from": "billing@acme.test", "subject": "Invoice 7", "body": ""},
            headers=HEADERS,
        ).json()["fired"]

        assert fired == [{"trigger_id": trigger_id, "rule_id": rule_id, "pattern": "invoice", "executed": True}]
        assert len(client.get("/api/triggers/email", headers=HEADERS).json()["triggers"]) == 1
        assert client.delete(f"/api/triggers/email/{trigger_id}", headers=HEADERS).status_code == 204
        assert client.delete(f"/api/triggers/email/{trigger_id}", headers=HEADERS).status_code == 404

    def test_empty_patterns_rejected(self, client):
        resp = client.post("/api/triggers/email", json={"patterns": [], "rule_id": "rule_x"}, headers=HEADERS)
        assert resp.status_code == 400


# ── Scheduling and workflows ────────────────────────────────────────────

class TestSchedulingApi:
    def test_schedule(self, client):
        resp = client.post("/api/schedule", json={"title": "Dentist", "duration": 30}, headers=HEADERS)
        assert resp.status_code == 201
        assert resp.json()["event"]["start"] == "2026-03-02T08:00:00+00:00"

    def test_no_slot_is_400(self, client):
        resp = client.post("/api/schedule", json={"title": "Marathon", "duration": 13 * 60}, headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["error"] == "no_slot_available"


class TestWorkflowApi:
    def test_approval_round_trip(self, client):
        resp = client.post(
            "/api/workflows/schedule-appointment/execute",
            json={"trigger_data": {"body": "book the dentist"}},
            headers=HEADERS,
        )
        assert resp.status_code == 201
        execution = resp.json()
        assert execution["status"] == "awaiting_approval"
        assert "approval_token" not in execution

        (pending,) = client.get("/api/workflows/approvals", headers=HEADERS).json()["executions"]
        token = pending["approval_token"]

        result = client.post("/api/workflows/approvals", json={"token": token, "approved": True}, headers=HEADERS)
        assert result.json()["status"] == "completed"

        done = client.get(f"/api/workflows/executions/{execution['id']}", headers=HEADERS).json()
        assert done["result"]["appointment_id"]

        again = client.post("/api/workflows/approvals", json={"token": token, "approved": True}, headers=HEADERS)
        assert again.status_code == 404
        assert again.json()["error"] == "invalid_token"

    def test_unknown_workflow_is_404(self, client):
        assert client.post("/api/workflows/nope/execute", json={}, headers=HEADERS).status_code == 404

    def test_executions_scoped_to_user(self, client):
        client.post("/api/workflows/notify-only/execute", json={}, headers=HEADERS)
        assert len(client.get("/api/workflows/executions", headers=HEADERS).json()["executions"]) == 1
        assert client.get("/api/workflows/executions", headers={"X-User-Id": "u2"}).json()["executions"] == []


class TestMonitorApi:
    def test_start_list_stop(self, client):
        resp = client.post("/api/monitors/email", json={"account": "me@home.test", "poll_interval_s": 3600}, headers=HEADERS)
        assert resp.status_code == 201
        monitor_id = resp.json()["monitor_id"]

        (monitor,) = client.get("/api/monitors", headers=HEADERS).json()["monitors"]
        assert monitor["id"] == monitor_id
        assert monitor["kind"] == "email"

        assert client.delete(f"/api/monitors/{monitor_id}", headers=HEADERS).status_code == 204
        assert client.delete(f"/api/monitors/{monitor_id}", headers=HEADERS).status_code == 204
        assert client.get("/api/monitors", headers=HEADERS).json()["monitors"] == []

    def test_bad_provider_is_400(self, client):
        resp = client.post("/api/monitors/voicemail", json={"provider": "carrier-pigeon"}, headers=HEADERS)
        assert resp.status_code == 400
