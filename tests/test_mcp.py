"""Tests for the MCP tool functions, called with a stand-in request context."""

import tempfile
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from agent_orchestrator.config import Config
from agent_orchestrator.core.runtime import Orchestrator
from agent_orchestrator.mcp import server


@pytest.fixture
def ctx():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(db_path=Path(tmp) / "test.db", poll_interval=0.02, activity_backoff=0.0)
        orchestrator = Orchestrator(config)
        app = server.AppContext(orchestrator=orchestrator, config=config)
        yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
        orchestrator.shutdown(timeout=2.0)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestWorkflowTools:
    def test_start_report_and_finish(self, ctx):
        started = server.start_agent_task(ctx, "agent-1", "t1", "Build API", priority="high")
        assert started["task_id"] == "t1"
        assert _wait_for(
            lambda: server.get_workflow_progress(ctx, "t1")["progress"]["status"] == "working"
        )

        blocked = server.report_blocked(ctx, "t1", "missing credentials")
        assert blocked["status"] == "blocked"
        assert _wait_for(
            lambda: server.get_workflow_progress(ctx, "t1")["progress"]["status"] == "blocked"
        )
        messages = server.list_messages(ctx)
        assert messages[0]["content"].startswith("[HIGH]")

        assert server.signal_workflow(ctx, "t1", "unblock", "rotated keys")["accepted"] is True
        assert _wait_for(
            lambda: server.get_workflow_progress(ctx, "t1")["progress"]["status"] == "working"
        )

        assert server.report_completed(ctx, "t1")["status"] == "completed"
        assert _wait_for(lambda: server.get_workflow_progress(ctx, "t1")["running"] is False)
        assert server.get_workflow_progress(ctx, "t1")["result"]["status"] == "completed"
        assert server.list_workflows(ctx, running_only=True) == []

    def test_errors_are_returned(self, ctx):
        assert "error" in server.start_agent_task(ctx, "a", "t", "T", priority="urgent")
        assert "error" in server.signal_workflow(ctx, "nope", "cancel")
        assert "error" in server.get_workflow_progress(ctx, "nope")
        assert "error" in server.report_completed(ctx, "nope")
        assert "error" in server.mark_message_read(ctx, 999)

    def test_unknown_signal(self, ctx):
        server.start_agent_task(ctx, "agent-1", "t1", "Build API")
        result = server.signal_workflow(ctx, "t1", "explode")
        assert result == {"error": "Unknown signal: explode"}


class TestNotificationTools:
    def test_send_and_cancel(self, ctx):
        result = server.send_notification(ctx, "blocked", "agent-1", "t1", "Build API")
        assert result == {"accepted": True, "pending": 1}

        cancelled = server.cancel_alerts(ctx, "agent-1")
        assert cancelled["cancelled"] == 1
        assert server.list_messages(ctx) == []

    def test_invalid_type(self, ctx):
        assert "error" in server.send_notification(ctx, "exploded", "agent-1", "t1", "T")

    def test_list_alert_rules(self, ctx):
        rules = server.list_alert_rules(ctx)
        assert len(rules) == 8
