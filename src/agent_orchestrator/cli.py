"""CLI entry point for the agent orchestrator."""

import json
import logging
import sys

import click

from agent_orchestrator.config import get_config
from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import alert_rules as rules_mod
from agent_orchestrator.core import messages as messages_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.activities import AgentTaskInput, NotificationPayload
from agent_orchestrator.core.runtime import Orchestrator, WorkflowFailedError
from agent_orchestrator.db.engine import get_db
from agent_orchestrator.db.models import ALERT_CHANNELS, ALERT_TRIGGERS, PRIORITIES


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """ao - Agent Orchestrator CLI"""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Setup ─────────────────────────────────────────────────────────────────────


@main.command("init")
def init_command():
    """Create the database and seed the default alert rules."""
    config = get_config()
    with _get_db() as db:
        rules = rules_mod.list_alert_rules(db)
    click.echo(f"Database ready: {config.db_path}")
    click.echo(f"  Alert rules: {len(rules)}")


# ── Workflow Commands ─────────────────────────────────────────────────────────


@main.command("run")
@click.argument("agent_id")
@click.argument("task_id")
@click.argument("title")
@click.option("--agent-name", default=None, help="Display name (defaults to the agent id)")
@click.option("--priority", "-p", default="medium", type=click.Choice(PRIORITIES), help="Task priority")
@click.option("--project", default=None, help="Project ID")
@click.option("--linear-issue", default=None, help="Linked Linear issue ID")
@click.option("--agent-type", default=None, type=click.Choice(["primary", "sub-agent"]), help="Agent type")
@click.option("--parent", default=None, help="Parent agent ID")
@click.option("--skill", "skills", multiple=True, help="Agent skill (repeatable)")
def run_command(agent_id, task_id, title, agent_name, priority, project, linear_issue,
                agent_type, parent, skills):
    """Run a task workflow in the foreground until it finishes.

    Ctrl-C cancels the workflow.
    """
    config = get_config()
    orchestrator = Orchestrator(config)
    workflow_input = AgentTaskInput(
        agent_id=agent_id,
        agent_name=agent_name or agent_id,
        task_id=task_id,
        title=title,
        priority=priority,
        agent_type=agent_type,
        parent_agent_id=parent,
        skills=list(skills),
        project_id=project,
        linear_issue_id=linear_issue,
    )

    handle = orchestrator.start_workflow(workflow_input)
    click.echo(f"Workflow started for task '{task_id}' (agent {agent_id})")
    try:
        while not handle.done():
            try:
                handle.join(0.5)
            except KeyboardInterrupt:
                click.echo("Cancelling...")
                handle.signal("cancel")

        try:
            result = handle.result()
        except WorkflowFailedError as e:
            click.echo(f"Workflow failed: {e}", err=True)
            sys.exit(1)
    finally:
        orchestrator.shutdown()

    click.echo(f"Result: {result.status}")
    if result.error:
        click.echo(f"  Error: {result.error}")
    if result.status == "error":
        sys.exit(1)


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Inspect agents."""
    pass


@agent_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(status, json_output):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, status=status)

    if json_output:
        click.echo(json.dumps([_agent_dict(a) for a in agents], indent=2))
        return

    if not agents:
        click.echo("No agents found.")
        return

    for agent in agents:
        task = f" [task: {agent.current_task_id}]" if agent.current_task_id else ""
        click.echo(f"  {agent.id}: {agent.name} ({agent.status}){task}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect tasks and report their state."""
    pass


@task_group.command("list")
@click.option("--agent", default=None, help="Filter by agent ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(agent, status, json_output):
    """List agent tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_agent_tasks(db, agent_id=agent, status=status)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "pending": "○",
        "in_progress": "●",
        "blocked": "✗",
        "completed": "✓",
        "cancelled": "-",
    }
    for task in tasks:
        icon = status_icons.get(task.status, "?")
        reason = f" [blocked: {task.blocked_reason}]" if task.blocked_reason else ""
        click.echo(f"  {icon} {task.id}: {task.title} ({task.status}, {task.priority}){reason}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_agent_task(db, task_id)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)

    click.echo(f"Task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Agent: {task.agent_id}")
    click.echo(f"  Status: {task.status}")
    click.echo(f"  Priority: {task.priority}")
    if task.project_id:
        click.echo(f"  Project: {task.project_id}")
    if task.linear_issue_id:
        click.echo(f"  Linear issue: {task.linear_issue_id}")
    if task.blocked_reason:
        click.echo(f"  Blocked: {task.blocked_reason} (since {task.blocked_at})")
    if task.started_at:
        click.echo(f"  Started: {task.started_at}")
    if task.completed_at:
        click.echo(f"  Finished: {task.completed_at}")


def _report_status(task_id: str, status: str, reason: str | None = None):
    with _get_db() as db:
        task = tasks_mod.update_task_status(db, task_id, status, reason)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    click.echo(f"Task {task.id}: {task.status}")


@task_group.command("block")
@click.argument("task_id")
@click.argument("reason")
def task_block(task_id, reason):
    """Report a task as blocked."""
    _report_status(task_id, "blocked", reason)


@task_group.command("resume")
@click.argument("task_id")
def task_resume(task_id):
    """Report a task as back in progress."""
    _report_status(task_id, "in_progress")


@task_group.command("complete")
@click.argument("task_id")
def task_complete(task_id):
    """Report a task as completed."""
    _report_status(task_id, "completed")


@task_group.command("cancel")
@click.argument("task_id")
def task_cancel(task_id):
    """Cancel a task outside its workflow."""
    _report_status(task_id, "cancelled")


# ── Alert Rule Commands ───────────────────────────────────────────────────────


@main.group("rules")
def rules_group():
    """Manage alert rules."""
    pass


@rules_group.command("list")
def rules_list():
    """List alert rules."""
    with _get_db() as db:
        rules = rules_mod.list_alert_rules(db)
    for rule in rules:
        state = "on" if rule.enabled else "off"
        click.echo(
            f"  {rule.id}: {rule.trigger}/{rule.priority_filter} "
            f"delay={rule.delay_ms}ms channel={rule.channel} ({state})"
        )


@rules_group.command("set")
@click.argument("rule_id")
@click.option("--delay-ms", default=None, type=click.IntRange(min=0), help="Delay before firing")
@click.option("--channel", default=None, type=click.Choice(ALERT_CHANNELS), help="Delivery channel")
@click.option("--enable/--disable", "enabled", default=None, help="Enable or disable the rule")
def rules_set(rule_id, delay_ms, channel, enabled):
    """Edit an alert rule."""
    with _get_db() as db:
        if not rules_mod.get_alert_rule(db, rule_id):
            click.echo(f"Alert rule not found: {rule_id}", err=True)
            sys.exit(1)
        rule = rules_mod.update_alert_rule(
            db, rule_id, delay_ms=delay_ms, channel=channel, enabled=enabled
        )
    state = "on" if rule.enabled else "off"
    click.echo(f"Updated {rule.id}: delay={rule.delay_ms}ms channel={rule.channel} ({state})")


@rules_group.command("reset")
def rules_reset():
    """Restore the default alert rules."""
    with _get_db() as db:
        rules = rules_mod.reset_alert_rules(db)
    click.echo(f"Restored {len(rules)} default alert rules")


# ── Message Commands ──────────────────────────────────────────────────────────


@main.group("messages")
def messages_group():
    """Read notification messages."""
    pass


@messages_group.command("list")
@click.option("--unread", is_flag=True, help="Only unread messages")
@click.option("--limit", default=20, type=int, help="Maximum number of messages")
def messages_list(unread, limit):
    """List messages, newest first."""
    with _get_db() as db:
        messages = messages_mod.list_messages(db, unread_only=unread, limit=limit)
    if not messages:
        click.echo("No messages.")
        return
    for msg in messages:
        marker = " " if msg.read else "*"
        click.echo(f" {marker} #{msg.id} [{msg.type}] {msg.content}")


@messages_group.command("read")
@click.argument("message_id", type=int)
def messages_read(message_id):
    """Mark a message as read."""
    with _get_db() as db:
        msg = messages_mod.mark_message_read(db, message_id)
    if not msg:
        click.echo(f"Message not found: {message_id}", err=True)
        sys.exit(1)
    click.echo(f"Marked #{msg.id} as read")


@main.command("notify")
@click.argument("trigger", type=click.Choice(ALERT_TRIGGERS))
@click.argument("agent_id")
@click.argument("task_id")
@click.argument("title")
@click.option("--priority", "-p", default="medium", type=click.Choice(PRIORITIES), help="Event priority")
@click.option("--reason", default=None, help="Reason shown in the alert text")
@click.option("--project", default=None, help="Project ID")
def notify_command(trigger, agent_id, task_id, title, priority, reason, project):
    """Raise an alert event through the alert rules.

    Rules with no delay deliver at once and batched completions are flushed
    on exit. Delayed rules need a long-running process (`ao serve`).
    """
    config = get_config()
    orchestrator = Orchestrator(config)
    try:
        orchestrator.activities.send_notification(
            NotificationPayload(
                type=trigger,
                agent_id=agent_id,
                task_id=task_id,
                title=title,
                priority=priority,
                reason=reason,
                project_id=project,
            )
        )
        pending = orchestrator.alerts.pending_count()
    finally:
        orchestrator.shutdown()

    with _get_db() as db:
        unread = messages_mod.list_messages(db, unread_only=True)
    click.echo(f"Processed {trigger} event for {agent_id}/{task_id}")
    click.echo(f"  Unread messages: {len(unread)}")
    if pending:
        click.echo(f"  Dropped {pending} delayed alert(s); use `ao serve` to keep them", err=True)


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the control API and live event stream."""
    from agent_orchestrator.web.app import run_server

    click.echo(f"Serving on http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _agent_dict(agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "type": agent.type,
        "status": agent.status,
        "current_task_id": agent.current_task_id,
        "parent_agent_id": agent.parent_agent_id,
        "skills": agent.skills,
        "last_heartbeat": agent.last_heartbeat.isoformat() if agent.last_heartbeat else None,
    }


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "agent_id": task.agent_id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "project": task.project_id,
        "blocked_reason": task.blocked_reason,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


if __name__ == "__main__":
    main()
