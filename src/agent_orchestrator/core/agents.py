"""Agent records: registration, status transitions, and heartbeats."""

import json
import sqlite3
from datetime import datetime

from agent_orchestrator.db.models import AGENT_STATUSES, Agent

# Statuses in which an agent holds a current task.
TASK_HOLDING_STATUSES = ("working", "blocked")


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        parent_agent_id=row["parent_agent_id"],
        status=row["status"],
        soul_md=row["soul_md"],
        skills=json.loads(row["skills"]) if row["skills"] else [],
        current_task_id=row["current_task_id"],
        last_heartbeat=_parse_dt(row["last_heartbeat"]),
        config=json.loads(row["config"]) if row["config"] else {},
        created_at=_parse_dt(row["created_at"]),
    )


# ── CRUD ─────────────────────────────────────────────────────────────────────


def create_agent(
    db: sqlite3.Connection,
    agent_id: str,
    name: str,
    agent_type: str = "sub-agent",
    parent_agent_id: str | None = None,
    soul_md: str | None = None,
    skills: list[str] | None = None,
    config: dict | None = None,
) -> Agent:
    """Create a new agent in the idle state."""
    db.execute(
        """INSERT INTO agents (id, name, type, parent_agent_id, status, soul_md, skills, config)
           VALUES (?, ?, ?, ?, 'idle', ?, ?, ?)""",
        (
            agent_id,
            name,
            agent_type,
            parent_agent_id,
            soul_md,
            json.dumps(skills) if skills else None,
            json.dumps(config) if config else None,
        ),
    )
    db.commit()
    return get_agent(db, agent_id)


def ensure_agent(
    db: sqlite3.Connection,
    agent_id: str,
    name: str,
    **kwargs,
) -> tuple[Agent, bool]:
    """Get an agent, creating it if it does not exist yet.

    Returns (agent, created). An existing record is never modified.
    """
    agent = get_agent(db, agent_id)
    if agent:
        return agent, False
    try:
        return create_agent(db, agent_id, name, **kwargs), True
    except sqlite3.IntegrityError:
        # Lost a race with a concurrent registration of the same id
        return get_agent(db, agent_id), False


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    """Get an agent by ID."""
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(db: sqlite3.Connection, status: str | None = None) -> list[Agent]:
    """List agents, optionally filtered by status."""
    query = "SELECT * FROM agents"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def set_agent_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: str,
    task_id: str | None = None,
) -> Agent | None:
    """Move an agent to a new status and refresh its heartbeat.

    An agent holds a current task only while working or blocked: those
    statuses require task_id, every other status clears it.
    """
    if status not in AGENT_STATUSES:
        raise ValueError(f"Invalid agent status: {status}")
    if status in TASK_HOLDING_STATUSES and not task_id:
        raise ValueError(f"Agent status '{status}' requires a task id")

    agent = get_agent(db, agent_id)
    if not agent:
        return None

    current_task_id = task_id if status in TASK_HOLDING_STATUSES else None
    db.execute(
        """UPDATE agents
           SET status = ?, current_task_id = ?, last_heartbeat = ?
           WHERE id = ?""",
        (status, current_task_id, datetime.now().isoformat(), agent_id),
    )
    db.commit()
    return get_agent(db, agent_id)


def touch_heartbeat(db: sqlite3.Connection, agent_id: str) -> bool:
    """Refresh an agent's heartbeat timestamp. Returns False if the agent is unknown."""
    cur = db.execute(
        "UPDATE agents SET last_heartbeat = ? WHERE id = ?",
        (datetime.now().isoformat(), agent_id),
    )
    db.commit()
    return cur.rowcount > 0
