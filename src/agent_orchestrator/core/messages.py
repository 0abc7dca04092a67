"""Notification message storage."""

import sqlite3
from datetime import datetime

from agent_orchestrator.db.models import MESSAGE_TYPES, Message


def create_message(
    db: sqlite3.Connection,
    message_type: str,
    content: str,
    project_id: str | None = None,
    todo_id: str | None = None,
    session_id: str | None = None,
) -> Message:
    """Persist a new unread message."""
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Invalid message type: {message_type}")
    cur = db.execute(
        """INSERT INTO messages (type, content, todo_id, session_id, project_id)
           VALUES (?, ?, ?, ?, ?)""",
        (message_type, content, todo_id, session_id, project_id),
    )
    db.commit()
    return get_message(db, cur.lastrowid)


def get_message(db: sqlite3.Connection, message_id: int) -> Message | None:
    """Get a message by ID."""
    row = db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    if not row:
        return None
    return _row_to_message(row)


def list_messages(
    db: sqlite3.Connection,
    unread_only: bool = False,
    project_id: str | None = None,
    limit: int | None = None,
) -> list[Message]:
    """List messages, newest first."""
    query = "SELECT * FROM messages WHERE 1=1"
    params: list = []
    if unread_only:
        query += " AND read = 0"
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    query += " ORDER BY id DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_message(r) for r in rows]


def mark_message_read(db: sqlite3.Connection, message_id: int) -> Message | None:
    """Mark a message as read."""
    db.execute("UPDATE messages SET read = 1 WHERE id = ?", (message_id,))
    db.commit()
    return get_message(db, message_id)


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        type=row["type"],
        content=row["content"],
        todo_id=row["todo_id"],
        session_id=row["session_id"],
        project_id=row["project_id"],
        read=bool(row["read"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
