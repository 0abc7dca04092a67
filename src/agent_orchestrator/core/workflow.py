"""Agent task workflow: the lifecycle state machine for one AgentTask.

A workflow registers its agent, starts the task, then polls the monitor
probe until the task completes, errors, is cancelled, or its agent sleeps
past the sleep ceiling. Blocked tasks wait for an ``unblock`` signal; if the
block outlasts the unblock ceiling a single stale-task alert goes out and the
wait continues.

Signals (sleep, wake, unblock, cancel) are only enqueued by the caller's
thread. The workflow thread drains them between steps and while suspended,
so all workflow state is read and written by that one thread. Queries read an
immutable progress snapshot that the workflow thread replaces wholesale.
"""

import logging
import queue
import time
from dataclasses import dataclass

from agent_orchestrator.core.activities import (
    Activities,
    ActivityError,
    ActivityRunner,
    AgentTaskInput,
    NotificationPayload,
)
from agent_orchestrator.db.models import TERMINAL_TASK_STATUSES

logger = logging.getLogger(__name__)

WORKFLOW_SIGNALS = ("sleep", "wake", "unblock", "cancel")


@dataclass(frozen=True)
class WorkflowProgress:
    status: str
    task_title: str
    blocked_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "task_title": self.task_title,
            "blocked_reason": self.blocked_reason,
        }


@dataclass(frozen=True)
class WorkflowResult:
    status: str
    agent_id: str
    task_id: str
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "error": self.error,
        }


class _Cancelled(Exception):
    """Unwinds a suspended workflow when a cancel signal is applied."""


class AgentTaskWorkflow:
    def __init__(
        self,
        input: AgentTaskInput,
        activities: Activities,
        runner: ActivityRunner,
        poll_interval: float = 10.0,
        sleep_timeout: float = 24 * 60 * 60.0,
        unblock_timeout: float = 2 * 60 * 60.0,
    ):
        self.input = input
        self.activities = activities
        self.runner = runner
        self.poll_interval = poll_interval
        self.sleep_timeout = sleep_timeout
        self.unblock_timeout = unblock_timeout

        self._signals: queue.Queue = queue.Queue()
        self._sleeping = False
        self._blocked = False
        self._cancelled = False
        self._progress = WorkflowProgress("starting", input.title)

    # ── Signals ──────────────────────────────────────────────────────────────

    def signal(self, name: str, *args) -> None:
        """Enqueue a control signal. Safe to call from any thread."""
        if name not in WORKFLOW_SIGNALS:
            raise ValueError(f"Unknown signal: {name}")
        self._signals.put((name, args))

    def sleep(self) -> None:
        self.signal("sleep")

    def wake(self) -> None:
        self.signal("wake")

    def unblock(self, reason: str | None = None) -> None:
        self.signal("unblock", reason)

    def cancel(self) -> None:
        self.signal("cancel")

    # ── Queries ──────────────────────────────────────────────────────────────

    def status(self) -> str:
        return self._progress.status

    def progress(self) -> WorkflowProgress:
        return self._progress

    # ── Run loop ─────────────────────────────────────────────────────────────

    def run(self) -> WorkflowResult:
        """Drive the task to a terminal result. Raises ActivityError if an activity gives up."""
        try:
            return self._run()
        except ActivityError:
            self._set_progress("failed", self._progress.blocked_reason)
            raise

    def _run(self) -> WorkflowResult:
        inp = self.input
        self._call(self.activities.register_agent, inp)
        self._set_progress("registered")
        task_status = self._call(self.activities.start_agent_task, inp)
        if task_status in TERMINAL_TASK_STATUSES:
            logger.info("Task '%s' already %s, nothing to run", inp.task_id, task_status)
            self._set_progress(task_status)
            return WorkflowResult(task_status, inp.agent_id, inp.task_id)
        self._set_progress("working")
        logger.info("Workflow started for task '%s' (agent %s)", inp.task_id, inp.agent_id)

        try:
            while True:
                self._drain()
                if self._cancelled:
                    break

                if self._sleeping:
                    result = self._sleep_until_woken()
                    if result is not None:
                        return result

                outcome = self._call(self.activities.monitor_agent, inp.agent_id, inp.task_id)

                if outcome.status == "completed":
                    return self._complete()

                if outcome.status == "error":
                    return self._fail(outcome.reason)

                if outcome.status == "blocked":
                    self._wait_out_block(outcome.reason)

                self._wait_until(lambda: False, self.poll_interval)
        except _Cancelled:
            pass

        return self._finish_cancelled()

    def _sleep_until_woken(self) -> WorkflowResult | None:
        inp = self.input
        self._set_progress("sleeping")
        self._call(self.activities.update_dashboard, inp.agent_id, "sleeping", inp.task_id)
        logger.info("Agent %s sleeping", inp.agent_id)

        if not self._wait_until(lambda: not self._sleeping, self.sleep_timeout):
            # Idle, not offline: the agent stays assignable once this task is dropped.
            logger.info("Agent %s slept past %ss, going idle", inp.agent_id, self.sleep_timeout)
            self._set_progress("idle")
            self._call(self.activities.update_dashboard, inp.agent_id, "idle", inp.task_id, "cancelled")
            return WorkflowResult("idle", inp.agent_id, inp.task_id)

        self._call(self.activities.update_dashboard, inp.agent_id, "working", inp.task_id)
        self._set_progress("working")
        logger.info("Agent %s woke up", inp.agent_id)
        return None

    def _wait_out_block(self, reason: str | None) -> None:
        inp = self.input
        self._blocked = True
        self._set_progress("blocked", reason)
        logger.info("Task '%s' blocked: %s", inp.task_id, reason)

        self._call(
            self.activities.update_dashboard,
            inp.agent_id, "blocked", inp.task_id, "blocked", reason,
        )
        self._call(self.activities.send_notification, self._payload("blocked", reason))

        if not self._wait_until(lambda: not self._blocked, self.unblock_timeout):
            logger.warning("Task '%s' still blocked after %ss", inp.task_id, self.unblock_timeout)
            self._call(self.activities.send_notification, self._payload("stale_task"))
            self._wait_until(lambda: not self._blocked, None)

        cancelled = self._call(self.activities.cancel_alerts, inp.agent_id, inp.task_id)
        self._call(
            self.activities.update_dashboard,
            inp.agent_id, "working", inp.task_id, "in_progress",
        )
        self._set_progress("working")
        logger.info("Task '%s' unblocked (%d pending alert(s) cancelled)", inp.task_id, cancelled)

    def _complete(self) -> WorkflowResult:
        inp = self.input
        self._set_progress("completed")
        self._call(self.activities.update_dashboard, inp.agent_id, "idle", inp.task_id, "completed")
        self._call(self.activities.send_notification, self._payload("completed"))
        logger.info("Task '%s' completed", inp.task_id)
        return WorkflowResult("completed", inp.agent_id, inp.task_id)

    def _fail(self, reason: str | None) -> WorkflowResult:
        inp = self.input
        self._set_progress("error")
        self._call(self.activities.update_dashboard, inp.agent_id, "idle", inp.task_id, "cancelled")
        self._call(self.activities.send_notification, self._payload("error", reason))
        logger.warning("Task '%s' errored: %s", inp.task_id, reason)
        return WorkflowResult("error", inp.agent_id, inp.task_id, error=reason)

    def _finish_cancelled(self) -> WorkflowResult:
        inp = self.input
        self._set_progress("cancelled")
        self._call(self.activities.update_dashboard, inp.agent_id, "offline", inp.task_id, "cancelled")
        logger.info("Workflow for task '%s' cancelled", inp.task_id)
        return WorkflowResult("cancelled", inp.agent_id, inp.task_id)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _call(self, fn, *args):
        return self.runner.call(fn, *args)

    def _payload(self, trigger: str, reason: str | None = None) -> NotificationPayload:
        return NotificationPayload(
            type=trigger,
            agent_id=self.input.agent_id,
            task_id=self.input.task_id,
            title=self.input.title,
            priority=self.input.priority,
            reason=reason,
            project_id=self.input.project_id,
        )

    def _set_progress(self, status: str, blocked_reason: str | None = None) -> None:
        self._progress = WorkflowProgress(status, self.input.title, blocked_reason)

    def _apply(self, name: str, args: tuple) -> None:
        if name == "cancel":
            self._cancelled = True
        elif name == "sleep":
            self._sleeping = True
        elif name == "wake":
            if not self._sleeping:
                logger.debug("Ignoring wake for task '%s': not sleeping", self.input.task_id)
            self._sleeping = False
        elif name == "unblock":
            if not self._blocked:
                logger.debug("Ignoring unblock for task '%s': not blocked", self.input.task_id)
                return
            self._blocked = False
            reason = args[0] if args else None
            if reason:
                logger.info("Task '%s' resolution: %s", self.input.task_id, reason)

    def _drain(self) -> None:
        while True:
            try:
                name, args = self._signals.get_nowait()
            except queue.Empty:
                return
            self._apply(name, args)

    def _wait_until(self, predicate, timeout: float | None) -> bool:
        """Block on the control channel until predicate holds or timeout elapses.

        Returns the final value of predicate. A cancel signal raises _Cancelled
        immediately, whatever the predicate.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self._drain()
            if self._cancelled:
                raise _Cancelled()
            if predicate():
                return True

            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False

            try:
                name, args = self._signals.get(timeout=remaining)
            except queue.Empty:
                continue
            self._apply(name, args)
