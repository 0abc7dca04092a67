"""Tests for workflow activities and the retrying activity runner."""

import tempfile
import time
from pathlib import Path

import pytest

from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import messages as messages_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.activities import (
    Activities,
    ActivityError,
    ActivityRunner,
    AgentTaskInput,
    MonitorResult,
    NotificationPayload,
)
from agent_orchestrator.core.alerts import AlertScheduler, NotificationSink
from agent_orchestrator.core.events import EventBus
from agent_orchestrator.core.rate_control import RateController
from agent_orchestrator.db.engine import get_db, init_db


class FakeTimer:
    def __init__(self, delay, callback, args=()):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.daemon = False
        self.cancelled = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "test.db"
        init_db(path).close()
        yield path


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def activities(db_path, bus):
    sink = NotificationSink(db_path, bus)
    alerts = AlertScheduler(db_path, sink, RateController(), timer_factory=FakeTimer)
    return Activities(db_path, bus, alerts)


@pytest.fixture
def task_input():
    return AgentTaskInput(
        agent_id="agent-1",
        agent_name="Builder",
        task_id="t1",
        title="Build login page",
        priority="high",
        skills=["python"],
        project_id="web",
    )


@pytest.fixture
def started(activities, task_input):
    activities.register_agent(task_input)
    activities.start_agent_task(task_input)
    return task_input


class TestInputs:
    def test_invalid_priority(self):
        with pytest.raises(ValueError, match="Invalid priority"):
            AgentTaskInput("a", "A", "t", "T", priority="urgent")

    def test_invalid_notification_type(self):
        with pytest.raises(ValueError, match="Invalid notification type"):
            NotificationPayload(type="exploded", agent_id="a", task_id="t", title="T")


class TestRegistration:
    def test_register_creates_agent_once(self, activities, task_input, db_path, bus):
        q = bus.subscribe()
        activities.register_agent(task_input)
        activities.register_agent(task_input)

        with get_db(db_path) as db:
            agents = agents_mod.list_agents(db)
        assert [a.id for a in agents] == ["agent-1"]
        assert agents[0].skills == ["python"]
        assert q.get_nowait().payload == {"agent_id": "agent-1", "action": "registered"}

    def test_start_task(self, started, db_path):
        with get_db(db_path) as db:
            task = tasks_mod.get_agent_task(db, "t1")
            agent = agents_mod.get_agent(db, "agent-1")
        assert task.status == "in_progress"
        assert task.priority == "high"
        assert task.project_id == "web"
        assert agent.status == "working"
        assert agent.current_task_id == "t1"

    def test_start_task_twice_keeps_one_record(self, activities, started, db_path):
        activities.start_agent_task(started)
        with get_db(db_path) as db:
            assert len(tasks_mod.list_agent_tasks(db)) == 1

    def test_start_task_owned_by_other_agent(self, activities, started):
        other = AgentTaskInput("agent-2", "Other", "t1", "Build login page")
        activities.register_agent(other)
        with pytest.raises(ValueError, match="owned by agent"):
            activities.start_agent_task(other)

    def test_start_finished_task_leaves_it_alone(self, activities, started, db_path, bus):
        with get_db(db_path) as db:
            tasks_mod.update_task_status(db, "t1", "completed")
            agents_mod.set_agent_status(db, "agent-1", "idle")
        q = bus.subscribe()

        assert activities.start_agent_task(started) == "completed"

        with get_db(db_path) as db:
            assert tasks_mod.get_agent_task(db, "t1").status == "completed"
            assert agents_mod.get_agent(db, "agent-1").status == "idle"
        assert q.empty()


class TestMonitor:
    def test_working(self, activities, started):
        assert activities.monitor_agent("agent-1", "t1") == MonitorResult("working")

    def test_refreshes_heartbeat(self, activities, started, db_path):
        with get_db(db_path) as db:
            before = agents_mod.get_agent(db, "agent-1").last_heartbeat
        time.sleep(0.01)
        activities.monitor_agent("agent-1", "t1")
        with get_db(db_path) as db:
            after = agents_mod.get_agent(db, "agent-1").last_heartbeat
        assert after > before

    def test_blocked(self, activities, started, db_path):
        with get_db(db_path) as db:
            tasks_mod.update_task_status(db, "t1", "blocked", "missing credentials")
        assert activities.monitor_agent("agent-1", "t1") == MonitorResult(
            "blocked", "missing credentials"
        )

    def test_completed(self, activities, started, db_path):
        with get_db(db_path) as db:
            tasks_mod.update_task_status(db, "t1", "completed")
        assert activities.monitor_agent("agent-1", "t1").status == "completed"

    def test_cancelled_externally(self, activities, started, db_path):
        with get_db(db_path) as db:
            tasks_mod.update_task_status(db, "t1", "cancelled")
        assert activities.monitor_agent("agent-1", "t1") == MonitorResult(
            "error", "Task cancelled externally"
        )

    def test_missing_agent(self, activities):
        assert activities.monitor_agent("ghost", "t1") == MonitorResult("error", "Agent not found")

    def test_missing_task(self, activities, started):
        assert activities.monitor_agent("agent-1", "nope") == MonitorResult("error", "Task not found")


class TestUpdateDashboard:
    def test_block_then_resume(self, activities, started, db_path, bus):
        q = bus.subscribe()
        activities.update_dashboard("agent-1", "blocked", "t1", "blocked", "waiting on API key")
        with get_db(db_path) as db:
            agent = agents_mod.get_agent(db, "agent-1")
            task = tasks_mod.get_agent_task(db, "t1")
        assert agent.status == "blocked"
        assert agent.current_task_id == "t1"
        assert task.blocked_reason == "waiting on API key"
        assert task.blocked_at is not None
        assert q.get_nowait().payload["task_status"] == "blocked"

        activities.update_dashboard("agent-1", "working", "t1", "in_progress")
        with get_db(db_path) as db:
            task = tasks_mod.get_agent_task(db, "t1")
        assert task.status == "in_progress"
        assert task.blocked_reason is None
        assert task.blocked_at is None

    def test_agent_only_update(self, activities, started, db_path):
        activities.update_dashboard("agent-1", "sleeping", "t1")
        with get_db(db_path) as db:
            agent = agents_mod.get_agent(db, "agent-1")
            task = tasks_mod.get_agent_task(db, "t1")
        assert agent.status == "sleeping"
        assert agent.current_task_id is None
        assert task.status == "in_progress"

    def test_completion(self, activities, started, db_path):
        activities.update_dashboard("agent-1", "idle", "t1", "completed")
        with get_db(db_path) as db:
            agent = agents_mod.get_agent(db, "agent-1")
            task = tasks_mod.get_agent_task(db, "t1")
        assert agent.status == "idle"
        assert agent.current_task_id is None
        assert task.completed_at is not None


class TestNotifications:
    def test_send_notification(self, activities, started, db_path):
        activities.send_notification(
            NotificationPayload(
                type="blocked",
                agent_id="agent-1",
                task_id="t1",
                title="Build login page",
                priority="high",
                reason="missing credentials",
            )
        )
        with get_db(db_path) as db:
            messages = messages_mod.list_messages(db)
        assert [m.content for m in messages] == [
            '[HIGH] Agent "agent-1" blocked on "Build login page": missing credentials'
        ]

    def test_cancel_alerts(self, activities, started):
        activities.send_notification(
            NotificationPayload(type="blocked", agent_id="agent-1", task_id="t1", title="T")
        )
        assert activities.cancel_alerts("agent-1", "t1") == 1
        assert activities.cancel_alerts("agent-1", "t1") == 0


class TestActivityRunner:
    def test_returns_value(self):
        runner = ActivityRunner(backoff=0)
        try:
            assert runner.call(lambda x: x * 2, 21) == 42
        finally:
            runner.shutdown()

    def test_retries_transient_failure(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("database is locked")
            return "ok"

        runner = ActivityRunner(max_attempts=3, backoff=0)
        try:
            assert runner.call(flaky) == "ok"
        finally:
            runner.shutdown()
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError("still broken")

        runner = ActivityRunner(max_attempts=3, backoff=0)
        try:
            with pytest.raises(ActivityError, match="after 3 attempt") as exc_info:
                runner.call(broken)
        finally:
            runner.shutdown()
        assert len(calls) == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_value_error_not_retried(self):
        calls = []

        def invalid():
            calls.append(1)
            raise ValueError("bad input")

        runner = ActivityRunner(max_attempts=3, backoff=0)
        try:
            with pytest.raises(ActivityError, match="after 1 attempt"):
                runner.call(invalid)
        finally:
            runner.shutdown()
        assert len(calls) == 1

    def test_attempt_timeout(self):
        runner = ActivityRunner(max_attempts=1, timeout=0.05, backoff=0)
        try:
            with pytest.raises(ActivityError, match="timed out"):
                runner.call(time.sleep, 0.5)
        finally:
            runner.shutdown()

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            ActivityRunner(max_attempts=0)
