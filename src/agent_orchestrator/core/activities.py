"""Activities: the side-effecting operations a workflow is allowed to perform.

Workflows never touch the store, the bus or the alert scheduler directly; they
call these operations through an ``ActivityRunner``, which retries a failed
call a bounded number of times and bounds each attempt with a timeout. Every
activity is therefore written to be safe to run more than once with the same
arguments.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path

from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.alerts import AlertEvent, AlertScheduler
from agent_orchestrator.core.events import EventBus
from agent_orchestrator.db.engine import get_db
from agent_orchestrator.db.models import ALERT_TRIGGERS, PRIORITIES, TERMINAL_TASK_STATUSES

logger = logging.getLogger(__name__)


class ActivityError(Exception):
    """Raised when an activity still fails after its last retry."""


@dataclass
class AgentTaskInput:
    agent_id: str
    agent_name: str
    task_id: str
    title: str
    priority: str = "medium"
    agent_type: str | None = None
    parent_agent_id: str | None = None
    soul_md: str | None = None
    skills: list[str] = field(default_factory=list)
    config: dict = field(default_factory=dict)
    project_id: str | None = None
    linear_issue_id: str | None = None

    def __post_init__(self):
        if self.priority not in PRIORITIES:
            raise ValueError(f"Invalid priority: {self.priority}")


@dataclass(frozen=True)
class MonitorResult:
    status: str
    reason: str | None = None


@dataclass(frozen=True)
class NotificationPayload:
    type: str
    agent_id: str
    task_id: str
    title: str
    priority: str = "medium"
    reason: str | None = None
    project_id: str | None = None

    def __post_init__(self):
        if self.type not in ALERT_TRIGGERS:
            raise ValueError(f"Invalid notification type: {self.type}")


class Activities:
    """Activity implementations bound to one store, bus and alert scheduler."""

    def __init__(self, db_path: Path, bus: EventBus, alerts: AlertScheduler):
        self.db_path = db_path
        self.bus = bus
        self.alerts = alerts

    def register_agent(self, input: AgentTaskInput) -> None:
        """Create the agent record if it does not exist yet."""
        with get_db(self.db_path) as db:
            _, created = agents_mod.ensure_agent(
                db,
                input.agent_id,
                input.agent_name,
                agent_type=input.agent_type or "sub-agent",
                parent_agent_id=input.parent_agent_id,
                soul_md=input.soul_md,
                skills=input.skills,
                config=input.config,
            )
        if created:
            logger.info("Registered agent %s", input.agent_id)
        self.bus.publish(
            "agent:status",
            {"agent_id": input.agent_id, "action": "registered"},
        )

    def start_agent_task(self, input: AgentTaskInput) -> str:
        """Create the task (once) and put its agent to work on it.

        Returns the task status. A task that already finished is left alone
        and its agent is not put back to work.
        """
        with get_db(self.db_path) as db:
            task = tasks_mod.get_agent_task(db, input.task_id)
            if task is None:
                task = tasks_mod.create_agent_task(
                    db,
                    input.task_id,
                    input.agent_id,
                    input.title,
                    priority=input.priority,
                    project_id=input.project_id,
                    linear_issue_id=input.linear_issue_id,
                )
            elif task.agent_id != input.agent_id:
                raise ValueError(
                    f"Task '{task.id}' is owned by agent '{task.agent_id}', not '{input.agent_id}'"
                )
            elif task.status in TERMINAL_TASK_STATUSES:
                logger.info("Task '%s' already %s, not restarting it", task.id, task.status)
                return task.status
            agents_mod.set_agent_status(db, input.agent_id, "working", task.id)
        self.bus.publish(
            "agent:status",
            {"agent_id": input.agent_id, "action": "task_started", "task_id": input.task_id},
        )
        return task.status

    def monitor_agent(self, agent_id: str, task_id: str) -> MonitorResult:
        """Point-in-time read of the agent and its task."""
        with get_db(self.db_path) as db:
            if not agents_mod.touch_heartbeat(db, agent_id):
                return MonitorResult("error", "Agent not found")
            task = tasks_mod.get_agent_task(db, task_id)

        if task is None:
            return MonitorResult("error", "Task not found")
        if task.status == "completed":
            return MonitorResult("completed")
        if task.status == "cancelled":
            return MonitorResult("error", "Task cancelled externally")
        if task.status == "blocked":
            return MonitorResult("blocked", task.blocked_reason or "Unknown")
        return MonitorResult("working")

    def update_dashboard(
        self,
        agent_id: str,
        agent_status: str,
        task_id: str,
        task_status: str | None = None,
        blocked_reason: str | None = None,
    ) -> None:
        """Persist an agent (and optionally task) transition and announce it."""
        with get_db(self.db_path) as db:
            agents_mod.set_agent_status(db, agent_id, agent_status, task_id)
            if task_status:
                tasks_mod.update_task_status(db, task_id, task_status, blocked_reason)
        self.bus.publish(
            "agent:status",
            {
                "agent_id": agent_id,
                "status": agent_status,
                "task_id": task_id,
                "task_status": task_status,
            },
        )

    def send_notification(self, payload: NotificationPayload) -> None:
        self.alerts.process_event(
            AlertEvent(
                trigger=payload.type,
                agent_id=payload.agent_id,
                task_id=payload.task_id,
                title=payload.title,
                priority=payload.priority or "medium",
                reason=payload.reason,
                project_id=payload.project_id,
            )
        )

    def cancel_alerts(self, agent_id: str, task_id: str | None = None) -> int:
        return self.alerts.cancel_pending_alerts(agent_id, task_id)


class ActivityRunner:
    """Runs activities with a bounded retry policy.

    Each attempt runs on a worker thread so that it can be abandoned after
    ``timeout`` seconds. Failed attempts are retried after an exponential
    backoff; once ``max_attempts`` is reached the last error is raised as
    ``ActivityError``. Errors listed in ``non_retryable`` fail at once.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        timeout: float = 600.0,
        backoff: float = 1.0,
        max_workers: int = 32,
        non_retryable: tuple[type[Exception], ...] = (ValueError,),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff = backoff
        self.non_retryable = non_retryable
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="activity")

    def call(self, fn, *args, **kwargs):
        name = getattr(fn, "__name__", repr(fn))
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            future = self._executor.submit(fn, *args, **kwargs)
            try:
                return future.result(timeout=self.timeout)
            except FutureTimeoutError as e:
                future.cancel()
                error: Exception = TimeoutError(f"{name} timed out after {self.timeout}s")
                error.__cause__ = e
            except Exception as e:
                error = e

            if attempt == self.max_attempts or isinstance(error, self.non_retryable):
                raise ActivityError(
                    f"Activity {name} failed after {attempt} attempt(s): {error}"
                ) from error

            logger.warning(
                "Activity %s failed (attempt %d/%d): %s",
                name, attempt, self.max_attempts, error,
            )
            if delay > 0:
                time.sleep(delay)
            delay *= 2

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
