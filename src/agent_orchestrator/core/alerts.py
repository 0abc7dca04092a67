"""Alert scheduling: per-rule delay and debounce, completion batching, delivery.

An incoming event is matched against the enabled alert rules for its trigger
and priority. Each matching rule either fires at once (delay 0), arms a
timer keyed by (rule, agent, task) that replaces any timer already armed for
that key, or, for the completed-batch rule, joins a shared batch that is
flushed as a single message.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable

from agent_orchestrator.core import alert_rules as rules_mod
from agent_orchestrator.core import messages as messages_mod
from agent_orchestrator.core.events import EventBus
from agent_orchestrator.core.rate_control import RateController
from agent_orchestrator.db.engine import get_db
from agent_orchestrator.db.models import AlertRule, Message

logger = logging.getLogger(__name__)

PendingKey = tuple[str, str, str]


@dataclass(frozen=True)
class AlertEvent:
    trigger: str
    agent_id: str
    task_id: str
    title: str
    priority: str = "medium"
    reason: str | None = None
    project_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(eq=False)
class PendingAlert:
    event: AlertEvent
    rule: AlertRule
    scheduled_at: float = field(default_factory=time.time)
    timer: object = None


def build_message(event: AlertEvent) -> str:
    """Human readable text for a single alert."""
    reason = event.reason or "Unknown"
    if event.trigger == "blocked":
        return f'[{event.priority.upper()}] Agent "{event.agent_id}" blocked on "{event.title}": {reason}'
    if event.trigger == "completed":
        return f'Agent "{event.agent_id}" completed "{event.title}"'
    if event.trigger == "error":
        return f'[ERROR] Agent "{event.agent_id}" error on "{event.title}": {reason}'
    if event.trigger == "stale_task":
        return f'[STALE] Task "{event.title}" blocked for >2h (agent: {event.agent_id})'
    if event.trigger == "idle_too_long":
        return f'Agent "{event.agent_id}" idle for >30min with pending tasks'
    return f"Alert: {event.trigger} - {event.title}"


def build_batch_message(events: list[AlertEvent], window_minutes: int) -> str:
    """Text for a flushed batch of completion events."""
    if len(events) == 1:
        return f'Task completed: "{events[0].title}" (agent: {events[0].agent_id})'
    titles = ", ".join(f'"{e.title}"' for e in events)
    return f"{len(events)} tasks completed in the last {window_minutes} minutes: {titles}"


def message_type_for(trigger: str) -> str:
    if trigger == "error":
        return "error"
    if trigger == "completed":
        return "task_complete"
    return "state_change"


# ── Sink ─────────────────────────────────────────────────────────────────────


class NotificationSink:
    """Persists a message, then announces it on the bus and the push channel.

    The message is always written first; bus and push failures are logged
    and never undo the write.
    """

    def __init__(self, db_path: Path, bus: EventBus, push_sender=None):
        self.db_path = db_path
        self.bus = bus
        self.push_sender = push_sender

    def deliver(
        self,
        message_type: str,
        content: str,
        payload: dict,
        project_id: str | None = None,
        channel: str = "in_app",
        trigger: str = "custom",
    ) -> Message:
        with get_db(self.db_path) as db:
            message = messages_mod.create_message(db, message_type, content, project_id=project_id)

        try:
            self.bus.publish("message:created", {**payload, "message_id": message.id})
        except Exception:
            logger.exception("Failed to publish message %s on the event bus", message.id)

        if channel in ("push", "both") and self.push_sender is not None:
            try:
                self.push_sender.send(trigger, content)
            except Exception:
                logger.exception("Failed to push message %s", message.id)

        return message


# ── Scheduler ────────────────────────────────────────────────────────────────


class AlertScheduler:
    """Turns triggered events into persisted notifications.

    One instance is shared by every workflow. The pending timer map, the
    batch queue and the batch timer are guarded by one lock; timers re-check
    under that lock that they are still the live entry for their key, so an
    alert that was replaced or cancelled never fires.
    """

    def __init__(
        self,
        db_path: Path,
        sink: NotificationSink,
        rate_controller: RateController,
        timer_factory: Callable = threading.Timer,
    ):
        self.db_path = db_path
        self.sink = sink
        self.rate_controller = rate_controller
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._pending: dict[PendingKey, PendingAlert] = {}
        self._batch_queue: list[AlertEvent] = []
        self._batch_timer = None
        self._batch_rule: AlertRule | None = None

    def process_event(self, event: AlertEvent) -> None:
        """Match an event against the enabled rules and schedule each match."""
        with get_db(self.db_path) as db:
            rules = rules_mod.get_alert_rules_for_trigger(db, event.trigger, event.priority)
        self.rate_controller.track_event()

        fire_now: list[AlertRule] = []
        with self._lock:
            for rule in rules:
                if self._schedule_locked(event, rule):
                    fire_now.append(rule)

        for rule in fire_now:
            self._fire(event, rule)

    def cancel_pending_alerts(self, agent_id: str, task_id: str | None = None) -> int:
        """Cancel every pending alert for an agent (and task, if given). Returns the count."""
        with self._lock:
            keys = [
                key for key, pending in self._pending.items()
                if pending.event.agent_id == agent_id
                and (task_id is None or pending.event.task_id == task_id)
            ]
            for key in keys:
                self._pending.pop(key).timer.cancel()
        if keys:
            logger.info("Cancelled %d pending alert(s) for agent %s", len(keys), agent_id)
        return len(keys)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_keys(self) -> list[PendingKey]:
        with self._lock:
            return list(self._pending)

    def batch_size(self) -> int:
        with self._lock:
            return len(self._batch_queue)

    def shutdown(self) -> None:
        """Cancel every timer. Queued batch events are dropped."""
        with self._lock:
            for pending in self._pending.values():
                pending.timer.cancel()
            self._pending.clear()
            if self._batch_timer is not None:
                self._batch_timer.cancel()
                self._batch_timer = None
            dropped = len(self._batch_queue)
            self._batch_queue = []
        if dropped:
            logger.warning("Dropped %d batched completion(s) on shutdown", dropped)

    # ── Scheduling ───────────────────────────────────────────────────────────

    def _schedule_locked(self, event: AlertEvent, rule: AlertRule) -> bool:
        """Schedule one (event, rule) pair. Returns True if it must fire now."""
        key = (rule.id, event.agent_id, event.task_id)

        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.timer.cancel()
            logger.debug("Replaced pending alert %s", key)

        if rule.id == rules_mod.BATCH_RULE_ID:
            if event.priority != "high":
                self._add_to_batch_locked(event, rule)
            return False

        if rule.delay_ms == 0:
            return True

        pending = PendingAlert(event=event, rule=rule)
        pending.timer = self._start_timer(rule.delay_ms / 1000, self._on_timer, key, pending)
        self._pending[key] = pending
        return False

    def _start_timer(self, delay: float, callback, *args):
        timer = self._timer_factory(delay, callback, args=args)
        timer.daemon = True
        timer.start()
        return timer

    def _on_timer(self, key: PendingKey, pending: PendingAlert) -> None:
        with self._lock:
            if self._pending.get(key) is not pending:
                return
            del self._pending[key]
        try:
            self._fire(pending.event, pending.rule)
        except Exception:
            logger.exception("Failed to fire delayed alert %s", key)

    # ── Batching ─────────────────────────────────────────────────────────────

    def _add_to_batch_locked(self, event: AlertEvent, rule: AlertRule) -> None:
        self._batch_queue.append(event)
        if self._batch_timer is None:
            self._batch_rule = rule
            self._batch_timer = self._start_timer(rule.delay_ms / 1000, self._on_batch_timer)

    def _on_batch_timer(self) -> None:
        try:
            self.flush_batch()
        except Exception:
            logger.exception("Failed to flush completion batch")

    def flush_batch(self) -> Message | None:
        """Deliver every queued completion as one message."""
        with self._lock:
            events = self._batch_queue
            rule = self._batch_rule
            self._batch_queue = []
            if self._batch_timer is not None:
                self._batch_timer.cancel()
                self._batch_timer = None

        if not events:
            return None

        window_minutes = max(1, round(rule.delay_ms / 60_000)) if rule else 15
        content = build_batch_message(events, window_minutes)
        logger.info("Flushing batch of %d completion(s)", len(events))
        return self.sink.deliver(
            "task_complete",
            content,
            {
                "batch": True,
                "count": len(events),
                "digest_mode": self.rate_controller.is_digest_mode(),
            },
            project_id=events[0].project_id,
            channel="in_app",
            trigger="completed",
        )

    # ── Delivery ─────────────────────────────────────────────────────────────

    def _fire(self, event: AlertEvent, rule: AlertRule) -> Message:
        content = build_message(event)
        channel = self.rate_controller.resolve_channel(event.agent_id, rule.channel)
        logger.info("Firing %s alert via %s (rule %s)", event.trigger, channel, rule.id)
        return self.sink.deliver(
            message_type_for(event.trigger),
            content,
            {
                "alert": event.to_dict(),
                "rule_id": rule.id,
                "channel": channel,
                "digest_mode": self.rate_controller.is_digest_mode(),
            },
            project_id=event.project_id,
            channel=channel,
            trigger=event.trigger,
        )
