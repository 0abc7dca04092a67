"""MCP server exposing the agent orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_orchestrator.config import Config, get_config
from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import alert_rules as rules_mod
from agent_orchestrator.core import messages as messages_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.activities import AgentTaskInput, NotificationPayload
from agent_orchestrator.core.runtime import Orchestrator
from agent_orchestrator.db.engine import get_db


@dataclass
class AppContext:
    orchestrator: Orchestrator
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the orchestrator on startup, cancel its workflows on shutdown."""
    config = get_config()
    orchestrator = Orchestrator(config)
    try:
        yield AppContext(orchestrator=orchestrator, config=config)
    finally:
        orchestrator.shutdown()


mcp = FastMCP("agent-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _db(ctx: Context):
    return get_db(_ctx(ctx).config.db_path)


# ── Workflow Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def start_agent_task(
    ctx: Context,
    agent_id: str,
    task_id: str,
    title: str,
    agent_name: str | None = None,
    priority: str = "medium",
    project_id: str | None = None,
    linear_issue_id: str | None = None,
    skills: list[str] | None = None,
) -> dict:
    """Start a workflow that tracks an agent working on a task.
    Priority: high, medium or low. Starting a task that already runs returns its workflow."""
    try:
        workflow_input = AgentTaskInput(
            agent_id=agent_id,
            agent_name=agent_name or agent_id,
            task_id=task_id,
            title=title,
            priority=priority,
            skills=skills or [],
            project_id=project_id,
            linear_issue_id=linear_issue_id,
        )
    except ValueError as e:
        return {"error": str(e)}
    handle = _ctx(ctx).orchestrator.start_workflow(workflow_input)
    return handle.to_dict()


@mcp.tool()
def signal_workflow(ctx: Context, task_id: str, signal: str, reason: str | None = None) -> dict:
    """Send a signal to a running workflow: sleep, wake, unblock or cancel.
    The reason is only used by unblock."""
    orchestrator = _ctx(ctx).orchestrator
    args = [reason] if signal == "unblock" and reason else []
    try:
        accepted = orchestrator.signal(task_id, signal, *args)
    except ValueError as e:
        return {"error": str(e)}
    if not accepted:
        return {"error": f"No running workflow for task: {task_id}"}
    return {"task_id": task_id, "signal": signal, "accepted": True}


@mcp.tool()
def get_workflow_progress(ctx: Context, task_id: str) -> dict:
    """Current status of a task's workflow."""
    handle = _ctx(ctx).orchestrator.get_workflow(task_id)
    if not handle:
        return {"error": f"No workflow found for task: {task_id}"}
    return handle.to_dict()


@mcp.tool()
def list_workflows(ctx: Context, running_only: bool = False) -> list[dict]:
    """List workflows started by this server."""
    handles = _ctx(ctx).orchestrator.list_workflows()
    if running_only:
        handles = [h for h in handles if not h.done()]
    return [h.to_dict() for h in handles]


# ── Reporting Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def report_blocked(ctx: Context, task_id: str, reason: str) -> dict:
    """Report that a task is blocked. Its workflow notices on the next poll."""
    try:
        with _db(ctx) as db:
            task = tasks_mod.update_task_status(db, task_id, "blocked", reason)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


@mcp.tool()
def report_progress(ctx: Context, task_id: str) -> dict:
    """Report that a task is back in progress."""
    with _db(ctx) as db:
        task = tasks_mod.update_task_status(db, task_id, "in_progress")
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


@mcp.tool()
def report_completed(ctx: Context, task_id: str) -> dict:
    """Report that a task is done."""
    with _db(ctx) as db:
        task = tasks_mod.update_task_status(db, task_id, "completed")
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


@mcp.tool()
def get_agent_task(ctx: Context, task_id: str) -> dict:
    """Get a task's stored state."""
    with _db(ctx) as db:
        task = tasks_mod.get_agent_task(db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


@mcp.tool()
def list_agents(ctx: Context, status: str | None = None) -> list[dict]:
    """List agents, optionally filtered by status (idle/working/sleeping/blocked/offline)."""
    with _db(ctx) as db:
        agents = agents_mod.list_agents(db, status=status)
    return [_agent_to_dict(a) for a in agents]


# ── Notification Tools ────────────────────────────────────────────────────────


@mcp.tool()
def send_notification(
    ctx: Context,
    type: str,
    agent_id: str,
    task_id: str,
    title: str,
    priority: str = "medium",
    reason: str | None = None,
    project_id: str | None = None,
) -> dict:
    """Raise an alert event (blocked, completed, error, stale_task, idle_too_long).
    Matching alert rules decide when and where it is delivered."""
    orchestrator = _ctx(ctx).orchestrator
    try:
        payload = NotificationPayload(
            type=type,
            agent_id=agent_id,
            task_id=task_id,
            title=title,
            priority=priority,
            reason=reason,
            project_id=project_id,
        )
        orchestrator.activities.send_notification(payload)
    except ValueError as e:
        return {"error": str(e)}
    return {"accepted": True, "pending": orchestrator.alerts.pending_count()}


@mcp.tool()
def cancel_alerts(ctx: Context, agent_id: str, task_id: str | None = None) -> dict:
    """Cancel pending delayed alerts for an agent, optionally only for one task."""
    cancelled = _ctx(ctx).orchestrator.activities.cancel_alerts(agent_id, task_id)
    return {"agent_id": agent_id, "task_id": task_id, "cancelled": cancelled}


@mcp.tool()
def list_messages(
    ctx: Context,
    unread_only: bool = False,
    project_id: str | None = None,
    limit: int = 20,
) -> list[dict]:
    """List notification messages, newest first."""
    with _db(ctx) as db:
        messages = messages_mod.list_messages(
            db, unread_only=unread_only, project_id=project_id, limit=limit
        )
    return [_message_to_dict(m) for m in messages]


@mcp.tool()
def mark_message_read(ctx: Context, message_id: int) -> dict:
    """Mark a notification message as read."""
    with _db(ctx) as db:
        message = messages_mod.mark_message_read(db, message_id)
    if not message:
        return {"error": f"Message not found: {message_id}"}
    return _message_to_dict(message)


@mcp.tool()
def list_alert_rules(ctx: Context) -> list[dict]:
    """List alert rules with their delay and channel."""
    with _db(ctx) as db:
        rules = rules_mod.list_alert_rules(db)
    return [
        {
            "id": r.id,
            "trigger": r.trigger,
            "priority_filter": r.priority_filter,
            "delay_ms": r.delay_ms,
            "channel": r.channel,
            "enabled": r.enabled,
        }
        for r in rules
    ]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "agent_id": task.agent_id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "project_id": task.project_id,
        "blocked_reason": task.blocked_reason,
        "blocked_at": task.blocked_at.isoformat() if task.blocked_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


def _agent_to_dict(agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "type": agent.type,
        "status": agent.status,
        "current_task_id": agent.current_task_id,
        "last_heartbeat": agent.last_heartbeat.isoformat() if agent.last_heartbeat else None,
    }


def _message_to_dict(message) -> dict:
    return {
        "id": message.id,
        "type": message.type,
        "content": message.content,
        "project_id": message.project_id,
        "read": message.read,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
