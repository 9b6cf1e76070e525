"""
Loop status transitions.

This module is the only writer of a message's lifecycle fields and the only
resolver of loop alerts. Every stage change is a compare-and-set on the message
row (see `crud.message_advance`): calling a transition on a message that is
already at or past the target stage is a no-op reported through
`already_at_or_past`, never an error, so at-least-once callers can retry freely.

Alert resolution runs after the message row has moved, inside the same
`transaction` block, so both writes commit together or neither does. A breach
scan that races the transition either fails its breach guard (the message is
no longer in breach) or inserts an alert that this resolution then closes.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Iterable

import aiosqlite

from agentloop.db import crud
from agentloop.db.database import transaction
from agentloop.db.models import Alert, Message
from agentloop.errors import LoopError, MessageNotFound, PermissionDenied
from agentloop.loop.escalation import ESCALATE_PM, policy_for
from agentloop.loop.status import MessageStatus, coerce_status, deadline_for, is_at_or_past

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    message_id: str
    status: MessageStatus
    already_at_or_past: bool
    resolved_alerts: list[Alert] = field(default_factory=list)
    created_alert: Optional[Alert] = None

    @property
    def already_seen(self) -> bool:
        return self.already_at_or_past

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "status": int(self.status),
            "status_label": self.status.label,
            "already_at_or_past": self.already_at_or_past,
            "resolved_alerts": [a.id for a in self.resolved_alerts],
        }


@dataclass
class EscalationResult:
    message_id: str
    status: MessageStatus
    escalated_to: Optional[str]
    alert: Optional[Alert] = None
    created: bool = False

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "status": int(self.status),
            "escalated": self.alert is not None,
            "created": self.created,
            "escalated_to": self.escalated_to,
            "alert_id": self.alert.id if self.alert else None,
        }


@dataclass
class BatchSeenResult:
    marked_count: int = 0
    failed: list[dict] = field(default_factory=list)   # [{"id": ..., "reason": ...}]

    def to_dict(self) -> dict:
        return {"marked_count": self.marked_count, "failed": self.failed}


def _now_ms(now: Optional[datetime]) -> int:
    return crud.to_ms(now or datetime.now(timezone.utc))


def _deadline_ms(stage: MessageStatus, entered_ms: int) -> int:
    return crud.to_ms(deadline_for(stage, crud.from_ms(entered_ms)))


async def _load(db: aiosqlite.Connection, message_id: str) -> Message:
    message = await crud.message_get(db, message_id)
    if message is None:
        raise MessageNotFound(message_id)
    return message


async def _check_recipient(db: aiosqlite.Connection, message: Message, caller: str) -> None:
    """Allow the caller if it names the recipient by id or by (case-insensitive) name."""
    caller = (caller or "").strip()
    if caller and caller == message.to_agent:
        return
    recipient = await crud.resolve_agent_name(db, message.to_agent)
    if caller.lower() in (recipient, message.to_agent.lower()):
        return
    # Caller may identify itself by agent id while the message addresses a name
    if caller and await crud.resolve_agent_name(db, caller) == recipient:
        return
    raise PermissionDenied(message.id, caller)


async def _emit_alert_created(db: aiosqlite.Connection, alert: Alert) -> None:
    await crud.emit_event(db, "alert.created", alert.message_id, {
        "alert_id": alert.id, "message_id": alert.message_id, "alert_type": alert.alert_type,
        "severity": alert.severity, "escalated_to": alert.escalated_to, "agent_name": alert.agent_name,
    })


async def _advance(
    db: aiosqlite.Connection,
    message: Message,
    target: MessageStatus,
    fields: dict,
    now_ms: int,
    resolve_types: Optional[Iterable[str]],
    event_type: str,
) -> TransitionResult:
    async with transaction(db):
        applied = await crud.message_advance(db, message.id, int(target), fields)
        resolved = await crud.alert_resolve_for_message(db, message.id, now_ms, resolve_types) if applied else []

    if not applied:
        current = await crud.message_get(db, message.id)
        status = coerce_status(current.status_code if current else message.status_code)
        logger.debug(f"{event_type} no-op for {message.id}: already {status.label}")
        return TransitionResult(message_id=message.id, status=status, already_at_or_past=True)

    payload = {"message_id": message.id, "status": int(target), "status_label": target.label}
    payload.update({k: v for k, v in fields.items() if k.endswith("_at") or k.startswith("expected_")})
    await crud.emit_event(db, event_type, message.id, payload)
    for alert in resolved:
        await crud.emit_event(db, "alert.resolved", message.id, {
            "alert_id": alert.id, "message_id": message.id, "alert_type": alert.alert_type,
        })
    logger.info(
        f"Message {message.id} -> {target.label}"
        + (f" (resolved {len(resolved)} alert(s))" if resolved else "")
    )
    return TransitionResult(
        message_id=message.id, status=target, already_at_or_past=False, resolved_alerts=resolved,
    )


async def mark_seen(
    db: aiosqlite.Connection,
    message_id: str,
    caller: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Recipient opened the message: starts the reply SLA."""
    message = await _load(db, message_id)
    await _check_recipient(db, message, caller)
    now_ms = _now_ms(now)
    return await _advance(
        db, message, MessageStatus.SEEN,
        {"seen_at": now_ms, "expected_reply_by": _deadline_ms(MessageStatus.SEEN, now_ms)},
        now_ms, resolve_types=[], event_type="loop.seen",
    )


async def mark_replied(
    db: aiosqlite.Connection,
    message_id: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """A reply to the message exists: starts the action SLA.

    No identity check; the reply itself is the proof.
    """
    message = await _load(db, message_id)
    now_ms = _now_ms(now)
    return await _advance(
        db, message, MessageStatus.REPLIED,
        {"replied_at": now_ms, "expected_action_by": _deadline_ms(MessageStatus.REPLIED, now_ms)},
        now_ms, resolve_types=["reply_overdue"], event_type="loop.replied",
    )


async def mark_acted(
    db: aiosqlite.Connection,
    message_id: str,
    caller: str,
    linked_task_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Recipient started working on the message: starts the report SLA."""
    message = await _load(db, message_id)
    await _check_recipient(db, message, caller)
    now_ms = _now_ms(now)
    fields = {"acted_at": now_ms, "expected_report_by": _deadline_ms(MessageStatus.ACTED, now_ms)}
    if linked_task_id is not None:
        fields["linked_task_id"] = linked_task_id
    return await _advance(
        db, message, MessageStatus.ACTED, fields,
        now_ms, resolve_types=["reply_overdue", "action_overdue"], event_type="loop.acted",
    )


async def mark_reported(
    db: aiosqlite.Connection,
    message_id: str,
    caller: str,
    report: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Recipient reported completion: closes the loop and resolves every open alert."""
    message = await _load(db, message_id)
    await _check_recipient(db, message, caller)
    now_ms = _now_ms(now)
    return await _advance(
        db, message, MessageStatus.REPORTED,
        {"reported_at": now_ms, "final_report": report},
        now_ms, resolve_types=None, event_type="loop.reported",
    )


async def mark_loop_broken(
    db: aiosqlite.Connection,
    message_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Declare that the loop will not complete. Status is left untouched.

    The message drops out of breach detection for good and a critical
    `loop_broken` alert is escalated. A loop that is already broken or already
    reported is left alone.
    """
    message = await _load(db, message_id)
    now_ms = _now_ms(now)
    rule = policy_for("loop_broken")
    agent_name = await crud.resolve_agent_name(db, message.to_agent)
    alert = None
    async with transaction(db):
        flagged = await crud.message_set_loop_broken(db, message.id, reason)
        if flagged:
            alert = await crud.alert_create_if_absent(
                db, message.id, agent_name, "loop_broken",
                rule.severity, rule.status, rule.escalated_to, now_ms,
            )

    if not flagged:
        current = await crud.message_get(db, message.id)
        status = coerce_status(current.status_code if current else message.status_code)
        logger.debug(f"loop.broken no-op for {message.id}: already broken or {status.label}")
        return TransitionResult(message_id=message.id, status=status, already_at_or_past=True)

    status = coerce_status(message.status_code)
    await crud.emit_event(db, "loop.broken", message.id, {"message_id": message.id, "reason": reason})
    if alert is not None:
        await _emit_alert_created(db, alert)
    logger.warning(f"Loop broken for message {message.id} ({agent_name}): {reason}")
    return TransitionResult(
        message_id=message.id, status=status, already_at_or_past=False, created_alert=alert,
    )


async def escalate_to_manager(
    db: aiosqlite.Connection,
    message_id: str,
    reason: str,
    escalate_to: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EscalationResult:
    """Escalate a message by hand: a critical alert addressed to `escalate_to` (default the PM).

    The message keeps its status and stays under breach detection. At most one
    such alert is open per message; a second call, or a call on a loop that was
    already declared broken, returns the alert that is already open. Reported
    messages are not escalated.
    """
    message = await _load(db, message_id)
    target = (escalate_to or ESCALATE_PM).strip().lower()
    if not target:
        raise ValueError("escalate_to must not be empty")
    now_ms = _now_ms(now)
    rule = policy_for("loop_broken")
    agent_name = await crud.resolve_agent_name(db, message.to_agent)
    alert = None
    async with transaction(db):
        current = await crud.message_get(db, message.id)
        status = coerce_status(current.status_code if current else message.status_code)
        if not is_at_or_past(status, MessageStatus.REPORTED):
            alert = await crud.alert_create_if_absent(
                db, message.id, agent_name, "loop_broken",
                rule.severity, rule.status, target, now_ms,
            )

    if alert is not None:
        await _emit_alert_created(db, alert)
        logger.warning(f"Message {message.id} ({agent_name}) escalated to {target}: {reason}")
        return EscalationResult(message_id=message.id, status=status, escalated_to=target, alert=alert, created=True)

    if is_at_or_past(status, MessageStatus.REPORTED):
        logger.debug(f"escalation no-op for {message.id}: already reported")
        return EscalationResult(message_id=message.id, status=status, escalated_to=None)

    existing = next(
        (a for a in await crud.alert_list_for_message(db, message.id)
         if a.alert_type == "loop_broken" and a.is_open),
        None,
    )
    logger.debug(f"escalation no-op for {message.id}: alert already open")
    return EscalationResult(
        message_id=message.id, status=status,
        escalated_to=existing.escalated_to if existing else None, alert=existing,
    )


async def mark_multiple_seen(
    db: aiosqlite.Connection,
    message_ids: list[str],
    caller: str,
    now: Optional[datetime] = None,
) -> BatchSeenResult:
    """Apply mark_seen to each id in order. Per-item failures are collected, never raised."""
    result = BatchSeenResult()
    for message_id in message_ids:
        try:
            outcome = await mark_seen(db, message_id, caller, now=now)
        except LoopError as e:
            result.failed.append({"id": message_id, "reason": str(e)})
            continue
        except Exception as e:
            logger.exception(f"mark_seen failed for {message_id}")
            result.failed.append({"id": message_id, "reason": f"{type(e).__name__}: {e}"})
            continue
        if not outcome.already_seen:
            result.marked_count += 1
    return result
