"""Tests for the control API."""

import tempfile
import time
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from agent_orchestrator.config import Config
from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.runtime import Orchestrator
from agent_orchestrator.db.engine import get_db
from agent_orchestrator.web.app import create_app


@pytest.fixture
def web_env():
    """Set up an orchestrator on a temp database and a client for its API."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        orchestrator = Orchestrator(
            Config(db_path=db_path, poll_interval=0.02, activity_backoff=0.0)
        )
        client = TestClient(create_app(orchestrator))
        yield client, orchestrator, db_path
        orchestrator.shutdown(timeout=2.0)


def _start(client, **overrides):
    body = {"agent_id": "agent-1", "task_id": "t1", "title": "Build API", "priority": "high"}
    body.update(overrides)
    return client.post("/api/workflows", json=body)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestWorkflowsAPI:
    def test_start_workflow(self, web_env):
        client, orchestrator, _ = web_env
        resp = _start(client)
        assert resp.status_code == 201
        data = resp.json()
        assert data["task_id"] == "t1"
        assert data["agent_id"] == "agent-1"
        assert data["progress"]["task_title"] == "Build API"

    def test_start_requires_fields(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/workflows", json={"agent_id": "agent-1"})
        assert resp.status_code == 400
        assert "task_id" in resp.json()["error"]

    def test_start_rejects_bad_priority(self, web_env):
        client, _, _ = web_env
        resp = _start(client, priority="urgent")
        assert resp.status_code == 400

    def test_start_rejects_invalid_json(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/workflows", content=b"not json", headers={"content-type": "application/json"}
        )
        assert resp.status_code == 400

    def test_list_and_get(self, web_env):
        client, _, _ = web_env
        _start(client)
        resp = client.get("/api/workflows")
        assert [w["task_id"] for w in resp.json()] == ["t1"]

        resp = client.get("/api/workflows/t1")
        assert resp.status_code == 200
        assert resp.json()["running"] is True

    def test_get_unknown(self, web_env):
        client, _, _ = web_env
        assert client.get("/api/workflows/nope").status_code == 404

    def test_signal_cancel(self, web_env):
        client, orchestrator, _ = web_env
        _start(client)
        handle = orchestrator.get_workflow("t1")
        assert _wait_for(lambda: handle.status() == "working")

        resp = client.post("/api/workflows/t1/signals/cancel")
        assert resp.status_code == 200
        assert resp.json()["accepted"] is True
        assert handle.result(timeout=5).status == "cancelled"

        resp = client.get("/api/workflows/t1")
        assert resp.json()["result"]["status"] == "cancelled"
        assert client.post("/api/workflows/t1/signals/wake").status_code == 404

    def test_signal_unblock_with_reason(self, web_env):
        client, orchestrator, db_path = web_env
        _start(client)
        handle = orchestrator.get_workflow("t1")
        assert _wait_for(lambda: handle.status() == "working")

        with get_db(db_path) as db:
            tasks_mod.update_task_status(db, "t1", "blocked", "needs approval")
        assert _wait_for(lambda: handle.status() == "blocked")

        resp = client.post("/api/workflows/t1/signals/unblock", json={"reason": "approved"})
        assert resp.status_code == 200
        assert _wait_for(lambda: handle.status() == "working")

    def test_unknown_signal(self, web_env):
        client, _, _ = web_env
        _start(client)
        assert client.post("/api/workflows/t1/signals/explode").status_code == 400


class TestNotificationsAPI:
    def test_send_and_list(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/notifications",
            json={
                "type": "blocked",
                "agent_id": "agent-1",
                "task_id": "t1",
                "title": "Build API",
                "priority": "high",
                "reason": "missing credentials",
            },
        )
        assert resp.status_code == 202

        messages = client.get("/api/messages").json()
        assert len(messages) == 1
        assert messages[0]["content"] == (
            '[HIGH] Agent "agent-1" blocked on "Build API": missing credentials'
        )
        assert messages[0]["read"] is False

        resp = client.post(f"/api/messages/{messages[0]['id']}/read")
        assert resp.json()["read"] is True
        assert client.get("/api/messages?unread=1").json() == []

    def test_delayed_notification_is_pending(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/notifications",
            json={"type": "blocked", "agent_id": "agent-1", "task_id": "t1", "title": "Build API"},
        )
        assert resp.status_code == 202
        assert resp.json()["pending"] == 1
        assert client.get("/api/messages").json() == []

    def test_invalid_type(self, web_env):
        client, _, _ = web_env
        resp = client.post(
            "/api/notifications",
            json={"type": "exploded", "agent_id": "agent-1", "task_id": "t1"},
        )
        assert resp.status_code == 400

    def test_missing_field(self, web_env):
        client, _, _ = web_env
        resp = client.post("/api/notifications", json={"type": "error", "task_id": "t1"})
        assert resp.status_code == 400
        assert "agent_id" in resp.json()["error"]

    def test_read_missing_message(self, web_env):
        client, _, _ = web_env
        assert client.post("/api/messages/999/read").status_code == 404


class TestAlertRulesAPI:
    def test_list(self, web_env):
        client, _, _ = web_env
        rules = client.get("/api/alert-rules").json()
        assert len(rules) == 8
        assert {"id": "error-all", "trigger": "error", "priority_filter": "all",
                "delay_ms": 0, "channel": "both", "enabled": True} in rules

    def test_update(self, web_env):
        client, _, _ = web_env
        resp = client.patch("/api/alert-rules/blocked-low", json={"channel": "push"})
        assert resp.status_code == 200
        assert resp.json()["channel"] == "push"

    def test_update_invalid(self, web_env):
        client, _, _ = web_env
        resp = client.patch("/api/alert-rules/blocked-low", json={"delay_ms": -5})
        assert resp.status_code == 400

    def test_update_unknown(self, web_env):
        client, _, _ = web_env
        assert client.patch("/api/alert-rules/nope", json={"enabled": False}).status_code == 404


class TestAgentsAPI:
    def test_agents_and_tasks(self, web_env):
        client, _, db_path = web_env
        with get_db(db_path) as db:
            agents_mod.create_agent(db, "agent-1", "Builder")
            tasks_mod.create_agent_task(db, "t1", "agent-1", "Build API")

        agents = client.get("/api/agents").json()
        assert [a["id"] for a in agents] == ["agent-1"]

        task = client.get("/api/tasks/t1").json()
        assert task["status"] == "in_progress"
        assert task["agent_id"] == "agent-1"

        assert client.get("/api/tasks/nope").status_code == 404
