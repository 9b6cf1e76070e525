"""
CRUD operations for AgentLoop.
All functions are async and receive the aiosqlite connection from the caller.

Write helpers used by the loop transition layer (`message_advance`,
`message_set_loop_broken`, `alert_create_if_absent`, `alert_resolve_for_message`)
do not commit: the caller wraps them in `database.transaction` so a transition
and the alert resolution it triggers are committed (or rolled back) together.
Every other writer here commits through `transaction` as well.
"""
import json
import uuid
import logging
import sqlite3
from datetime import datetime, timezone, timedelta
from typing import Optional, Iterable

import aiosqlite

from agentloop.db.database import transaction
from agentloop.db.models import Message, Alert, AgentInfo, Event
from agentloop.loop.status import MessageStatus

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {"handoff", "update", "request", "fyi"}

# Columns the transition layer may write alongside a status change
_STAGE_COLUMNS = {
    "seen_at", "replied_at", "acted_at", "reported_at",
    "expected_reply_by", "expected_action_by", "expected_report_by",
    "linked_task_id", "final_report",
}
_DEADLINE_COLUMNS = {"expected_reply_by", "expected_action_by", "expected_report_by"}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _now_ms() -> int:
    return to_ms(datetime.now(timezone.utc))


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds for an aware datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def from_ms(ms: Optional[int]) -> Optional[datetime]:
    if ms is None:
        return None
    return _EPOCH + timedelta(milliseconds=ms)


# ─────────────────────────────────────────────
# Agent registry
# ─────────────────────────────────────────────

async def agent_register(db: aiosqlite.Connection, name: str, description: str = "") -> AgentInfo:
    """Register an agent by name. Registering an existing name returns the existing agent."""
    name = name.strip()
    if not name:
        raise ValueError("Agent name must not be empty")
    aid = str(uuid.uuid4())
    now = _now_ms()
    try:
        async with transaction(db):
            await db.execute(
                "INSERT INTO agents (id, name, description, registered_at) VALUES (?, ?, ?, ?)",
                (aid, name, description, now),
            )
    except sqlite3.IntegrityError:
        # UNIQUE (case-insensitive) on agents.name: return the registered one
        existing = await agent_get(db, name)
        if existing is None:
            raise
        logger.info(f"Agent '{name}' already registered as {existing.id}")
        return existing
    logger.info(f"Agent registered: {aid} '{name}'")
    return AgentInfo(id=aid, name=name, description=description, registered_at=from_ms(now))


async def agent_get(db: aiosqlite.Connection, agent_ref: str) -> Optional[AgentInfo]:
    """Look an agent up by id, then by case-insensitive name."""
    async with db.execute(
        "SELECT * FROM agents WHERE id = ? OR name = ? COLLATE NOCASE ORDER BY id = ? DESC LIMIT 1",
        (agent_ref, agent_ref, agent_ref),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_agent(row)


async def agent_list(db: aiosqlite.Connection) -> list[AgentInfo]:
    async with db.execute("SELECT * FROM agents ORDER BY registered_at") as cur:
        rows = await cur.fetchall()
    return [_row_to_agent(r) for r in rows]


async def resolve_agent_name(db: aiosqlite.Connection, agent_ref: str) -> str:
    """Lowercase display name for an agent id or name; unknown refs are returned lowercased."""
    agent = await agent_get(db, agent_ref)
    if agent is not None:
        return agent.name.lower()
    return agent_ref.lower()


async def agent_refs(db: aiosqlite.Connection, agent_ref: str) -> set[str]:
    """All lowercase forms (id and name) under which messages may address this agent."""
    refs = {agent_ref.lower()}
    agent = await agent_get(db, agent_ref)
    if agent is not None:
        refs.update({agent.id.lower(), agent.name.lower()})
    return refs


def _row_to_agent(row: aiosqlite.Row) -> AgentInfo:
    return AgentInfo(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        registered_at=from_ms(row["registered_at"]),
    )


# ─────────────────────────────────────────────
# Message store
# ─────────────────────────────────────────────

async def message_create(
    db: aiosqlite.Connection,
    from_agent: str,
    to_agent: str,
    msg_type: str,
    content: str,
    linked_task_id: Optional[str] = None,
    status: int = MessageStatus.DELIVERED,
) -> Message:
    if msg_type not in MESSAGE_TYPES:
        raise ValueError(f"Invalid message type '{msg_type}'. Must be one of {sorted(MESSAGE_TYPES)}")
    if status not in (MessageStatus.PENDING, MessageStatus.DELIVERED):
        raise ValueError("New messages start as pending (0) or delivered (1)")
    mid = str(uuid.uuid4())
    now = _now_ms()
    async with transaction(db):
        await db.execute(
            "INSERT INTO messages (id, from_agent, to_agent, msg_type, content, status_code, created_at, linked_task_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (mid, from_agent, to_agent, msg_type, content, int(status), now, linked_task_id),
        )
    await emit_event(db, "msg.new", mid, {
        "message_id": mid, "from": from_agent, "to": to_agent, "type": msg_type,
        "content": content[:200],  # truncate for event payload
    })
    logger.debug(f"Message created: {mid} {from_agent} -> {to_agent} ({msg_type})")
    return Message(
        id=mid, from_agent=from_agent, to_agent=to_agent, msg_type=msg_type,
        content=content, status_code=int(status), created_at=from_ms(now),
        linked_task_id=linked_task_id,
    )


async def message_get(db: aiosqlite.Connection, message_id: str) -> Optional[Message]:
    async with db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def message_open_ids(db: aiosqlite.Connection, limit: Optional[int] = None) -> list[str]:
    """Ids of the messages the breach scanner must look at: not reported and not broken."""
    sql = "SELECT id FROM messages WHERE loop_broken = 0 AND status_code < ? ORDER BY created_at ASC"
    params: tuple = (int(MessageStatus.REPORTED),)
    if limit is not None:
        sql += " LIMIT ?"
        params += (limit,)
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [r["id"] for r in rows]


async def message_list_for_agent(
    db: aiosqlite.Connection,
    agent_ref: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 1000,
) -> list[Message]:
    """Messages addressed to an agent (by id or name), newest first. No agent means all messages."""
    clauses = []
    params: list = []
    if agent_ref is not None:
        refs = sorted(await agent_refs(db, agent_ref))
        clauses.append(f"lower(to_agent) IN ({', '.join('?' for _ in refs)})")
        params.extend(refs)
    if since is not None:
        clauses.append("created_at >= ?")
        params.append(to_ms(since))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    async with db.execute(
        f"SELECT * FROM messages {where} ORDER BY created_at DESC LIMIT ?", params
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]

async def message_list_sent_by(
    db: aiosqlite.Connection,
    agent_ref: str,
    limit: int = 100,
) -> list[Message]:
    """Messages sent by an agent (by id or name), newest first."""
    refs = sorted(await agent_refs(db, agent_ref))
    params: list = [*refs, limit]
    async with db.execute(
        f"SELECT * FROM messages WHERE lower(from_agent) IN ({', '.join('?' for _ in refs)}) "
        "ORDER BY created_at DESC, rowid DESC LIMIT ?",
        params,
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


async def message_list_between(
    db: aiosqlite.Connection,
    agent_a: str,
    agent_b: str,
    limit: int = 50,
) -> list[Message]:
    """Messages exchanged between two agents in either direction, newest first."""
    refs_a = sorted(await agent_refs(db, agent_a))
    refs_b = sorted(await agent_refs(db, agent_b))
    in_a = f"({', '.join('?' for _ in refs_a)})"
    in_b = f"({', '.join('?' for _ in refs_b)})"
    params: list = [*refs_a, *refs_b, *refs_b, *refs_a, limit]
    async with db.execute(
        "SELECT * FROM messages WHERE "
        f"(lower(from_agent) IN {in_a} AND lower(to_agent) IN {in_b}) OR "
        f"(lower(from_agent) IN {in_b} AND lower(to_agent) IN {in_a}) "
        "ORDER BY created_at DESC, rowid DESC LIMIT ?",
        params,
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]



async def message_advance(
    db: aiosqlite.Connection,
    message_id: str,
    target: int,
    fields: dict,
) -> bool:
    """Compare-and-set a message forward to `target`.

    The row is updated only while its status_code is still below `target`, so
    concurrent callers cannot regress the status or rewrite a stage's fields.
    Returns False when the message was already at or past `target`.
    """
    unknown = set(fields) - _STAGE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot set message columns: {sorted(unknown)}")
    assignments = ["status_code = ?"] + [f"{col} = ?" for col in fields]
    params = [int(target), *fields.values(), message_id, int(target)]
    async with db.execute(
        f"UPDATE messages SET {', '.join(assignments)} WHERE id = ? AND status_code < ?",
        params,
    ) as cur:
        updated = cur.rowcount
    return updated == 1


async def message_set_loop_broken(db: aiosqlite.Connection, message_id: str, reason: str) -> bool:
    """Flag an open loop as broken. Returns False if it was already broken or already reported."""
    async with db.execute(
        "UPDATE messages SET loop_broken = 1, loop_broken_reason = ? "
        "WHERE id = ? AND loop_broken = 0 AND status_code < ?",
        (reason, message_id, int(MessageStatus.REPORTED)),
    ) as cur:
        updated = cur.rowcount
    return updated == 1


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        from_agent=row["from_agent"],
        to_agent=row["to_agent"],
        msg_type=row["msg_type"],
        content=row["content"],
        status_code=row["status_code"],
        created_at=from_ms(row["created_at"]),
        seen_at=from_ms(row["seen_at"]),
        replied_at=from_ms(row["replied_at"]),
        acted_at=from_ms(row["acted_at"]),
        reported_at=from_ms(row["reported_at"]),
        expected_reply_by=from_ms(row["expected_reply_by"]),
        expected_action_by=from_ms(row["expected_action_by"]),
        expected_report_by=from_ms(row["expected_report_by"]),
        loop_broken=bool(row["loop_broken"]),
        loop_broken_reason=row["loop_broken_reason"],
        linked_task_id=row["linked_task_id"],
        final_report=row["final_report"],
    )


# ─────────────────────────────────────────────
# Alert store
# ─────────────────────────────────────────────

async def alert_create_if_absent(
    db: aiosqlite.Connection,
    message_id: str,
    agent_name: str,
    alert_type: str,
    severity: str,
    status: str,
    escalated_to: Optional[str],
    now: int,
    breach_guard: Optional[tuple[str, int]] = None,
) -> Optional[Alert]:
    """Insert an open alert unless one already exists for (message_id, alert_type).

    With `breach_guard=(deadline_column, clearing_status)` the insert only happens
    while the message is still in breach at `now`: not broken, deadline set and
    strictly passed, status below the stage that clears the breach. Guard and
    insert are one statement, so a scan racing a transition cannot resurrect an
    alert the transition has just made obsolete.

    Returns the new alert, or None if it was deduplicated or the guard failed.
    """
    aid = str(uuid.uuid4())
    values = (aid, message_id, agent_name, alert_type, severity, status, escalated_to, now)
    if breach_guard is None:
        sql = (
            "INSERT INTO alerts (id, message_id, agent_name, alert_type, severity, status, escalated_to, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        params = values
    else:
        column, clearing_status = breach_guard
        if column not in _DEADLINE_COLUMNS:
            raise ValueError(f"Unknown deadline column '{column}'")
        sql = (
            "INSERT INTO alerts (id, message_id, agent_name, alert_type, severity, status, escalated_to, created_at) "
            "SELECT ?, ?, ?, ?, ?, ?, ?, ? WHERE EXISTS ("
            f"  SELECT 1 FROM messages WHERE id = ? AND loop_broken = 0"
            f"  AND {column} IS NOT NULL AND {column} < ? AND status_code < ?"
            ")"
        )
        params = values + (message_id, now, clearing_status)
    try:
        async with db.execute(sql, params) as cur:
            inserted = cur.rowcount
    except sqlite3.IntegrityError:
        # Partial UNIQUE index on open (message_id, alert_type): already alerted
        logger.debug(f"Alert {alert_type} for {message_id} already open, skipping")
        return None
    if inserted != 1:
        return None
    return Alert(
        id=aid, message_id=message_id, agent_name=agent_name, alert_type=alert_type,
        severity=severity, status=status, escalated_to=escalated_to,
        created_at=from_ms(now), resolved_at=None,
    )


async def alert_resolve_for_message(
    db: aiosqlite.Connection,
    message_id: str,
    now: int,
    alert_types: Optional[Iterable[str]] = None,
) -> list[Alert]:
    """Resolve open alerts of a message (optionally only some types). Returns the resolved alerts."""
    sql = (
        "UPDATE alerts SET status = 'resolved', resolved_at = ? "
        "WHERE message_id = ? AND status IN ('active', 'escalated')"
    )
    params: list = [now, message_id]
    if alert_types is not None:
        types_ = sorted(set(alert_types))
        if not types_:
            return []
        sql += f" AND alert_type IN ({', '.join('?' for _ in types_)})"
        params.extend(types_)
    sql += " RETURNING *"
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [_row_to_alert(r) for r in rows]


async def alert_get(db: aiosqlite.Connection, alert_id: str) -> Optional[Alert]:
    async with db.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_alert(row)


async def alert_list_active(
    db: aiosqlite.Connection,
    agent_name: Optional[str] = None,
    alert_type: Optional[str] = None,
    severity: Optional[str] = None,
    limit: int = 100,
) -> list[Alert]:
    """Open (active or escalated) alerts, newest first."""
    clauses = ["status IN ('active', 'escalated')"]
    params: list = []
    if agent_name:
        clauses.append("agent_name = ? COLLATE NOCASE")
        params.append(agent_name)
    if alert_type:
        clauses.append("alert_type = ?")
        params.append(alert_type)
    if severity:
        clauses.append("severity = ?")
        params.append(severity)
    params.append(limit)
    async with db.execute(
        f"SELECT * FROM alerts WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, rowid DESC LIMIT ?",
        params,
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_alert(r) for r in rows]


async def alert_list_for_message(db: aiosqlite.Connection, message_id: str) -> list[Alert]:
    async with db.execute(
        "SELECT * FROM alerts WHERE message_id = ? ORDER BY created_at ASC, rowid ASC", (message_id,)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_alert(r) for r in rows]


def _row_to_alert(row: aiosqlite.Row) -> Alert:
    return Alert(
        id=row["id"],
        message_id=row["message_id"],
        agent_name=row["agent_name"],
        alert_type=row["alert_type"],
        severity=row["severity"],
        status=row["status"],
        escalated_to=row["escalated_to"],
        created_at=from_ms(row["created_at"]),
        resolved_at=from_ms(row["resolved_at"]),
    )


# ─────────────────────────────────────────────
# Event fan-out (for SSE)
# ─────────────────────────────────────────────

async def emit_event(db: aiosqlite.Connection, event_type: str, message_id: Optional[str], payload: dict) -> None:
    async with transaction(db):
        await db.execute(
            "INSERT INTO events (event_type, message_id, payload, created_at) VALUES (?, ?, ?, ?)",
            (event_type, message_id, json.dumps(payload), _now_ms()),
        )


async def events_since(db: aiosqlite.Connection, after_id: int = 0, limit: int = 50) -> list[Event]:
    """Fetch events newer than `after_id` for the SSE pump to deliver."""
    async with db.execute(
        "SELECT * FROM events WHERE id > ? ORDER BY id ASC LIMIT ?",
        (after_id, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [Event(
        id=row["id"],
        event_type=row["event_type"],
        message_id=row["message_id"],
        payload=row["payload"],
        created_at=from_ms(row["created_at"]),
    ) for row in rows]


async def events_delete_old(db: aiosqlite.Connection, max_age_seconds: int = 600) -> int:
    """Prune delivered events older than max_age_seconds to keep the table small."""
    cutoff = to_ms(datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds))
    async with transaction(db):
        async with db.execute("DELETE FROM events WHERE created_at < ?", (cutoff,)) as cur:
            deleted = cur.rowcount
    if deleted > 0:
        logger.debug(f"Pruned {deleted} old events.")
    return deleted
