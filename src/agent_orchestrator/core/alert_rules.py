"""Alert rule lookup and editing."""

import sqlite3
from datetime import datetime

from agent_orchestrator.db.engine import seed_alert_rules
from agent_orchestrator.db.models import ALERT_CHANNELS, ALERT_TRIGGERS, AlertRule

# Rule whose non-high-priority events are collected into one digest message.
BATCH_RULE_ID = "completed-batch"


def get_alert_rule(db: sqlite3.Connection, rule_id: str) -> AlertRule | None:
    """Get an alert rule by ID."""
    row = db.execute("SELECT * FROM alert_rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        return None
    return _row_to_rule(row)


def list_alert_rules(db: sqlite3.Connection) -> list[AlertRule]:
    """List all alert rules."""
    rows = db.execute("SELECT * FROM alert_rules ORDER BY trigger, id").fetchall()
    return [_row_to_rule(r) for r in rows]


def get_alert_rules_for_trigger(
    db: sqlite3.Connection,
    trigger: str,
    priority: str | None = None,
) -> list[AlertRule]:
    """Enabled rules for a trigger. A priority_filter of 'all' matches any priority."""
    if trigger not in ALERT_TRIGGERS:
        raise ValueError(f"Invalid alert trigger: {trigger}")
    query = "SELECT * FROM alert_rules WHERE trigger = ? AND enabled = 1"
    params: list = [trigger]
    if priority:
        query += " AND (priority_filter = 'all' OR priority_filter = ?)"
        params.append(priority)
    query += " ORDER BY id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_rule(r) for r in rows]


def update_alert_rule(
    db: sqlite3.Connection,
    rule_id: str,
    **kwargs,
) -> AlertRule | None:
    """Update the editable fields of a rule: delay_ms, channel, enabled."""
    allowed = {"delay_ms", "channel", "enabled"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}

    if "delay_ms" in updates and int(updates["delay_ms"]) < 0:
        raise ValueError("delay_ms must be >= 0")
    if "channel" in updates and updates["channel"] not in ALERT_CHANNELS:
        raise ValueError(f"Invalid alert channel: {updates['channel']}")
    if "enabled" in updates:
        updates["enabled"] = 1 if updates["enabled"] else 0

    if not updates:
        return get_alert_rule(db, rule_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [rule_id]
    db.execute(
        f"UPDATE alert_rules SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_alert_rule(db, rule_id)


def reset_alert_rules(db: sqlite3.Connection) -> list[AlertRule]:
    """Replace every rule with the default seed set."""
    seed_alert_rules(db, force=True)
    return list_alert_rules(db)


def _row_to_rule(row: sqlite3.Row) -> AlertRule:
    return AlertRule(
        id=row["id"],
        trigger=row["trigger"],
        priority_filter=row["priority_filter"],
        delay_ms=row["delay_ms"],
        channel=row["channel"],
        enabled=bool(row["enabled"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
