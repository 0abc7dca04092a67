"""Agent task operations."""

import logging
import sqlite3
from datetime import datetime

from agent_orchestrator.db.models import (
    PRIORITIES,
    TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    AgentTask,
)

logger = logging.getLogger(__name__)


def create_agent_task(
    db: sqlite3.Connection,
    task_id: str,
    agent_id: str,
    title: str,
    priority: str = "medium",
    status: str = "in_progress",
    project_id: str | None = None,
    linear_issue_id: str | None = None,
) -> AgentTask:
    """Create a new agent task owned by agent_id."""
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    if status not in ("pending", "in_progress"):
        raise ValueError(f"A task cannot be created as '{status}'")

    started_at = datetime.now().isoformat() if status == "in_progress" else None
    db.execute(
        """INSERT INTO agent_tasks
           (id, agent_id, linear_issue_id, project_id, title, status, priority, started_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, agent_id, linear_issue_id, project_id, title, status, priority, started_at),
    )
    db.commit()
    return get_agent_task(db, task_id)


def get_agent_task(db: sqlite3.Connection, task_id: str) -> AgentTask | None:
    """Get an agent task by ID."""
    row = db.execute("SELECT * FROM agent_tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_agent_tasks(
    db: sqlite3.Connection,
    agent_id: str | None = None,
    status: str | None = None,
) -> list[AgentTask]:
    """List agent tasks with optional filters."""
    query = "SELECT * FROM agent_tasks WHERE 1=1"
    params: list = []

    if agent_id:
        query += " AND agent_id = ?"
        params.append(agent_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    blocked_reason: str | None = None,
) -> AgentTask | None:
    """Update a task's status. Returns the updated task.

    Keeps the blocked fields in step with the status: they are set when the
    task becomes blocked (an existing block keeps its original blocked_at)
    and cleared otherwise. completed_at is written once, on the first move
    into a terminal status; a terminal task is left untouched.
    """
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status: {status}")

    task = get_agent_task(db, task_id)
    if not task:
        return None

    if task.status in TERMINAL_TASK_STATUSES:
        if task.status != status:
            logger.info(
                "Ignoring status change %s -> %s for terminal task '%s'",
                task.status, status, task_id,
            )
        return task

    now = datetime.now().isoformat()
    updates: dict = {"status": status}

    if status == "blocked":
        updates["blocked_reason"] = blocked_reason or task.blocked_reason or "Unknown"
        updates["blocked_at"] = task.blocked_at.isoformat() if task.blocked_at else now
    else:
        updates["blocked_reason"] = None
        updates["blocked_at"] = None

    if status in TERMINAL_TASK_STATUSES:
        updates["completed_at"] = now

    if status == "in_progress" and task.started_at is None:
        updates["started_at"] = now

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]

    db.execute(
        f"UPDATE agent_tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    db.commit()
    return get_agent_task(db, task_id)


def _row_to_task(row: sqlite3.Row) -> AgentTask:
    return AgentTask(
        id=row["id"],
        agent_id=row["agent_id"],
        title=row["title"],
        status=row["status"],
        priority=row["priority"] or "medium",
        linear_issue_id=row["linear_issue_id"],
        project_id=row["project_id"],
        blocked_reason=row["blocked_reason"],
        blocked_at=_parse_dt(row["blocked_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
