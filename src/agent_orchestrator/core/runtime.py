"""Runtime: owns the shared alert machinery and runs one thread per workflow."""

import logging
import threading
from typing import Callable

from agent_orchestrator.config import Config
from agent_orchestrator.core.activities import Activities, ActivityRunner, AgentTaskInput
from agent_orchestrator.core.alerts import AlertScheduler, NotificationSink
from agent_orchestrator.core.events import EventBus
from agent_orchestrator.core.rate_control import RateController
from agent_orchestrator.core.workflow import (
    AgentTaskWorkflow,
    WorkflowProgress,
    WorkflowResult,
)

logger = logging.getLogger(__name__)


class WorkflowFailedError(Exception):
    """Raised by WorkflowHandle.result() when the workflow died with an error."""


class WorkflowHandle:
    """A running (or finished) workflow and the thread executing it."""

    def __init__(self, workflow: AgentTaskWorkflow):
        self.workflow = workflow
        self.task_id = workflow.input.task_id
        self.agent_id = workflow.input.agent_id
        self._result: WorkflowResult | None = None
        self._error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run, name=f"workflow-{self.task_id}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            self._result = self.workflow.run()
        except Exception as e:
            self._error = e
            logger.exception("Workflow for task '%s' failed", self.task_id)

    def done(self) -> bool:
        return not self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def result(self, timeout: float | None = None) -> WorkflowResult:
        """Wait for the workflow to finish and return its result."""
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError(f"Workflow for task '{self.task_id}' still running")
        if self._error is not None:
            raise WorkflowFailedError(
                f"Workflow for task '{self.task_id}' failed: {self._error}"
            ) from self._error
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error

    def signal(self, name: str, *args) -> None:
        self.workflow.signal(name, *args)

    def status(self) -> str:
        return self.workflow.status()

    def progress(self) -> WorkflowProgress:
        return self.workflow.progress()

    def to_dict(self) -> dict:
        data = {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "running": not self.done(),
            "progress": self.progress().to_dict(),
            "result": None,
            "error": None,
        }
        if self._result is not None:
            data["result"] = self._result.to_dict()
        if self._error is not None:
            data["error"] = str(self._error)
        return data


class Orchestrator:
    """Builds the shared components once and hands them to every workflow."""

    def __init__(
        self,
        config: Config,
        bus: EventBus | None = None,
        push_sender=None,
        timer_factory: Callable = threading.Timer,
        rate_controller: RateController | None = None,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.rate_controller = rate_controller or RateController(
            digest_threshold=config.digest_threshold,
            digest_window=config.digest_window,
            global_push_limit=config.global_push_limit,
            agent_push_limit=config.agent_push_limit,
            push_window=config.push_window,
        )
        if push_sender is None and config.slack_bot_token and config.slack_channel:
            from agent_orchestrator.integrations.slack import SlackPushSender

            push_sender = SlackPushSender(config.slack_bot_token, config.slack_channel)
        self.sink = NotificationSink(config.db_path, self.bus, push_sender)
        self.alerts = AlertScheduler(
            config.db_path, self.sink, self.rate_controller, timer_factory=timer_factory
        )
        self.activities = Activities(config.db_path, self.bus, self.alerts)
        self.runner = ActivityRunner(
            max_attempts=config.activity_max_attempts,
            timeout=config.activity_timeout,
            backoff=config.activity_backoff,
        )
        self._lock = threading.Lock()
        self._workflows: dict[str, WorkflowHandle] = {}

    def start_workflow(self, input: AgentTaskInput) -> WorkflowHandle:
        """Start a workflow for a task. A task already running returns its existing handle."""
        with self._lock:
            existing = self._workflows.get(input.task_id)
            if existing is not None and not existing.done():
                return existing

            workflow = AgentTaskWorkflow(
                input,
                self.activities,
                self.runner,
                poll_interval=self.config.poll_interval,
                sleep_timeout=self.config.sleep_timeout,
                unblock_timeout=self.config.unblock_timeout,
            )
            handle = WorkflowHandle(workflow)
            self._workflows[input.task_id] = handle
            handle.start()
        logger.info("Started workflow for task '%s'", input.task_id)
        return handle

    def get_workflow(self, task_id: str) -> WorkflowHandle | None:
        with self._lock:
            return self._workflows.get(task_id)

    def list_workflows(self) -> list[WorkflowHandle]:
        with self._lock:
            return list(self._workflows.values())

    def signal(self, task_id: str, name: str, *args) -> bool:
        """Signal a running workflow. Returns False if no workflow is running for task_id."""
        handle = self.get_workflow(task_id)
        if handle is None or handle.done():
            return False
        handle.signal(name, *args)
        return True

    def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every running workflow, deliver the pending batch, and stop timers."""
        handles = self.list_workflows()
        for handle in handles:
            if not handle.done():
                handle.signal("cancel")
        for handle in handles:
            handle.join(timeout)
        try:
            self.alerts.flush_batch()
        except Exception:
            logger.exception("Failed to flush completion batch on shutdown")
        self.alerts.shutdown()
        self.runner.shutdown()
        logger.info("Orchestrator stopped")
