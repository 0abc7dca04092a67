"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT DEFAULT 'sub-agent' CHECK (type IN ('primary', 'sub-agent')),
    parent_agent_id TEXT,
    status TEXT DEFAULT 'idle' CHECK (status IN ('idle', 'working', 'sleeping', 'blocked', 'offline')),
    soul_md TEXT,
    skills TEXT,
    current_task_id TEXT,
    last_heartbeat TEXT,
    config TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agent_tasks (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    linear_issue_id TEXT,
    project_id TEXT,
    title TEXT NOT NULL,
    status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'in_progress', 'blocked', 'completed', 'cancelled')),
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('high', 'medium', 'low')),
    blocked_reason TEXT,
    blocked_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS alert_rules (
    id TEXT PRIMARY KEY,
    trigger TEXT NOT NULL CHECK (trigger IN ('blocked', 'completed', 'error', 'idle_too_long', 'stale_task')),
    priority_filter TEXT DEFAULT 'all' CHECK (priority_filter IN ('high', 'medium', 'low', 'all')),
    delay_ms INTEGER NOT NULL DEFAULT 0 CHECK (delay_ms >= 0),
    channel TEXT DEFAULT 'in_app' CHECK (channel IN ('push', 'in_app', 'both')),
    enabled INTEGER DEFAULT 1,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK (type IN ('task_complete', 'error', 'state_change', 'custom')),
    content TEXT NOT NULL,
    todo_id TEXT,
    session_id TEXT,
    project_id TEXT,
    read INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_agent_tasks_agent_id ON agent_tasks(agent_id);
CREATE INDEX IF NOT EXISTS idx_alert_rules_trigger ON alert_rules(trigger);
CREATE INDEX IF NOT EXISTS idx_messages_read ON messages(read);
"""

# (id, trigger, priority_filter, delay_ms, channel)
DEFAULT_ALERT_RULES = [
    ("blocked-high", "blocked", "high", 0, "both"),
    ("blocked-medium", "blocked", "medium", 600_000, "both"),
    ("blocked-low", "blocked", "low", 3_600_000, "in_app"),
    ("error-all", "error", "all", 0, "both"),
    ("completed-high", "completed", "high", 0, "in_app"),
    ("completed-batch", "completed", "all", 900_000, "in_app"),
    ("idle-all", "idle_too_long", "all", 1_800_000, "in_app"),
    ("stale-all", "stale_task", "all", 7_200_000, "push"),
]


def seed_alert_rules(conn: sqlite3.Connection, force: bool = False) -> int:
    """Insert the default alert rules when the table is empty (or always, with force).

    Returns the number of rules written.
    """
    if not force:
        count = conn.execute("SELECT COUNT(*) FROM alert_rules").fetchone()[0]
        if count:
            return 0
    else:
        conn.execute("DELETE FROM alert_rules")

    conn.executemany(
        """INSERT OR IGNORE INTO alert_rules (id, trigger, priority_filter, delay_ms, channel)
           VALUES (?, ?, ?, ?, ?)""",
        DEFAULT_ALERT_RULES,
    )
    conn.commit()
    return len(DEFAULT_ALERT_RULES)


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables and default rules if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    seed_alert_rules(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
