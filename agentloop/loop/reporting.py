"""
Read-side loop views: per-message status, inbox and outbox overviews,
conversations and compliance.
"""
from collections import defaultdict
from datetime import datetime, timezone, timedelta
from typing import Optional

import aiosqlite

from agentloop.db import crud
from agentloop.db.models import Message
from agentloop.loop.scanner import overdue_stages
from agentloop.loop.status import MessageStatus, coerce_status, is_at_or_past


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def message_view(message: Message) -> dict:
    status = coerce_status(message.status_code)
    return {
        "message_id": message.id,
        "from": message.from_agent,
        "to": message.to_agent,
        "type": message.msg_type,
        "content": message.content,
        "status": int(status),
        "status_label": status.label,
        "created_at": _iso(message.created_at),
        "seen_at": _iso(message.seen_at),
        "replied_at": _iso(message.replied_at),
        "acted_at": _iso(message.acted_at),
        "reported_at": _iso(message.reported_at),
        "expected_reply_by": _iso(message.expected_reply_by),
        "expected_action_by": _iso(message.expected_action_by),
        "expected_report_by": _iso(message.expected_report_by),
        "loop_broken": message.loop_broken,
        "loop_broken_reason": message.loop_broken_reason,
        "linked_task_id": message.linked_task_id,
        "final_report": message.final_report,
    }


async def message_status(db: aiosqlite.Connection, message_id: str) -> Optional[dict]:
    message = await crud.message_get(db, message_id)
    if message is None:
        return None
    return message_view(message)


async def inbox_overview(db: aiosqlite.Connection, agent_ref: str, limit: int = 100) -> dict:
    """Unseen / unreplied counts for an agent's inbox, grouped by sender."""
    messages = await crud.message_list_for_agent(db, agent_ref, limit=limit)
    by_sender: dict[str, list[Message]] = defaultdict(list)
    for m in messages:
        by_sender[m.from_agent].append(m)

    def _unseen(msgs):
        return sum(1 for m in msgs if not is_at_or_past(m.status_code, MessageStatus.SEEN))

    return {
        "agent": agent_ref,
        "total_messages": len(messages),
        "unseen_count": _unseen(messages),
        "unreplied_count": sum(1 for m in messages if not is_at_or_past(m.status_code, MessageStatus.REPLIED)),
        "by_sender": [
            {
                "sender": sender,
                "message_count": len(msgs),
                "unseen_count": _unseen(msgs),
                "last_message_id": msgs[0].id,
            }
            for sender, msgs in by_sender.items()
        ],
    }

def _preview(content: str, width: int = 100) -> str:
    return content[:width] + ("..." if len(content) > width else "")


async def outbox_overview(db: aiosqlite.Connection, agent_ref: str, limit: int = 100) -> dict:
    """Messages an agent has sent with their loop status, grouped by recipient."""
    messages = await crud.message_list_sent_by(db, agent_ref, limit=limit)
    by_recipient: dict[str, list[Message]] = defaultdict(list)
    for m in messages:
        by_recipient[m.to_agent].append(m)

    return {
        "agent": agent_ref,
        "total_messages": len(messages),
        "messages": [
            {**message_view(m), "content": _preview(m.content)}
            for m in messages
        ],
        "by_recipient": [
            {
                "recipient": recipient,
                "message_count": len(msgs),
                "unseen_count": sum(1 for m in msgs if not is_at_or_past(m.status_code, MessageStatus.SEEN)),
                "unreplied_count": sum(1 for m in msgs if not is_at_or_past(m.status_code, MessageStatus.REPLIED)),
                "last_message_id": msgs[0].id,
            }
            for recipient, msgs in by_recipient.items()
        ],
    }


async def conversation_status(
    db: aiosqlite.Connection,
    agent_a: str,
    agent_b: str,
    limit: int = 50,
) -> list[dict]:
    """Both directions of a conversation, newest first, each message with its status."""
    return [message_view(m) for m in await crud.message_list_between(db, agent_a, agent_b, limit=limit)]



def _compliance(agent_name: str, messages: list[Message], now: datetime) -> dict:
    total = len(messages)
    closed = sum(1 for m in messages if is_at_or_past(m.status_code, MessageStatus.REPORTED))
    broken = sum(1 for m in messages if m.loop_broken)
    # Broken loops still count the deadlines they missed
    sla_breaches = sum(len(overdue_stages(m, now)) for m in messages)
    return {
        "agent_name": agent_name,
        "total_messages": total,
        "loops_closed": closed,
        "loops_broken": broken,
        "sla_breaches": sla_breaches,
        "in_progress": total - closed - broken,
        "compliance_percent": round(closed / total * 100) if total else 100,
    }


async def agent_loop_compliance(
    db: aiosqlite.Connection,
    agent_ref: Optional[str] = None,
    since_days: int = 7,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Loop completion and SLA breach counts per recipient over the last `since_days`."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=since_days)
    messages = await crud.message_list_for_agent(db, agent_ref, since=since, limit=10000)

    if agent_ref is not None:
        name = await crud.resolve_agent_name(db, agent_ref)
        return [_compliance(name, messages, now)]

    by_agent: dict[str, list[Message]] = defaultdict(list)
    for m in messages:
        by_agent[await crud.resolve_agent_name(db, m.to_agent)].append(m)
    return [_compliance(name, msgs, now) for name, msgs in sorted(by_agent.items())]
