"""Data models for agent orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime

AGENT_STATUSES = ("idle", "working", "sleeping", "blocked", "offline")
TASK_STATUSES = ("pending", "in_progress", "blocked", "completed", "cancelled")
TERMINAL_TASK_STATUSES = ("completed", "cancelled")
PRIORITIES = ("high", "medium", "low")
ALERT_TRIGGERS = ("blocked", "completed", "error", "idle_too_long", "stale_task")
PRIORITY_FILTERS = ("high", "medium", "low", "all")
ALERT_CHANNELS = ("push", "in_app", "both")
MESSAGE_TYPES = ("task_complete", "error", "state_change", "custom")


@dataclass
class Agent:
    id: str
    name: str
    type: str = "sub-agent"
    parent_agent_id: str | None = None
    status: str = "idle"
    soul_md: str | None = None
    skills: list[str] = field(default_factory=list)
    current_task_id: str | None = None
    last_heartbeat: datetime | None = None
    config: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class AgentTask:
    id: str
    agent_id: str
    title: str
    status: str = "pending"
    priority: str = "medium"
    linear_issue_id: str | None = None
    project_id: str | None = None
    blocked_reason: str | None = None
    blocked_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AlertRule:
    id: str
    trigger: str
    priority_filter: str = "all"
    delay_ms: int = 0
    channel: str = "in_app"
    enabled: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Message:
    id: int | None = None
    type: str = "custom"
    content: str = ""
    todo_id: str | None = None
    session_id: str | None = None
    project_id: str | None = None
    read: bool = False
    created_at: datetime | None = None
