"""
Unit tests for the loop status transitions.
Time is passed explicitly through `now=` so stage timestamps and deadlines can
be asserted exactly.
"""
import asyncio
import itertools
from datetime import timedelta

import pytest

from agentloop.db import crud
from agentloop.errors import LoopError, MessageNotFound, PermissionDenied
from agentloop.loop import transitions
from agentloop.loop.scanner import run_breach_scan
from agentloop.loop.status import MessageStatus, SLA_ACTION, SLA_REPLY, SLA_REPORT


async def _message(db, to_agent="bob", linked_task_id=None):
    return await crud.message_create(db, "alice", to_agent, "request", "please review", linked_task_id)


async def _events(db, event_type):
    async with db.execute("SELECT * FROM events WHERE event_type = ?", (event_type,)) as cur:
        return await cur.fetchall()


# ─────────────────────────────────────────────
# Stage transitions and deadlines
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_new_message_is_delivered(db):
    m = await _message(db)
    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.DELIVERED
    assert stored.seen_at is None and stored.expected_reply_by is None
    assert stored.loop_broken is False


@pytest.mark.asyncio
async def test_mark_seen_sets_reply_deadline(db, t0):
    m = await _message(db)
    result = await transitions.mark_seen(db, m.id, "bob", now=t0)
    assert result.already_seen is False
    assert result.status == MessageStatus.SEEN

    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.SEEN
    assert stored.seen_at == t0
    assert stored.expected_reply_by - stored.seen_at == SLA_REPLY


@pytest.mark.asyncio
async def test_mark_seen_is_idempotent(db, t0):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    again = await transitions.mark_seen(db, m.id, "bob", now=t0 + timedelta(minutes=5))

    assert again.already_seen is True
    stored = await crud.message_get(db, m.id)
    assert stored.seen_at == t0
    assert stored.expected_reply_by == t0 + SLA_REPLY
    assert len(await _events(db, "loop.seen")) == 1


@pytest.mark.asyncio
async def test_each_stage_sets_exact_sla(db, t0):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    await transitions.mark_replied(db, m.id, now=t0 + timedelta(minutes=3))
    await transitions.mark_acted(db, m.id, "bob", now=t0 + timedelta(minutes=40))

    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.ACTED
    assert stored.expected_reply_by - stored.seen_at == SLA_REPLY
    assert stored.expected_action_by - stored.replied_at == SLA_ACTION
    assert stored.expected_report_by - stored.acted_at == SLA_REPORT


@pytest.mark.asyncio
async def test_regression_is_a_noop(db, t0):
    m = await _message(db)
    await transitions.mark_acted(db, m.id, "bob", now=t0)

    seen = await transitions.mark_seen(db, m.id, "bob", now=t0 + timedelta(minutes=1))
    replied = await transitions.mark_replied(db, m.id, now=t0 + timedelta(minutes=2))

    assert seen.already_seen is True
    assert replied.already_at_or_past is True
    assert replied.status == MessageStatus.ACTED
    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.ACTED
    assert stored.seen_at is None
    assert stored.replied_at is None
    assert stored.acted_at == t0


@pytest.mark.asyncio
async def test_status_never_decreases_in_any_order(db, t0):
    ops = ["seen", "replied", "acted", "reported"]

    async def apply(op, message_id, now):
        if op == "seen":
            return await transitions.mark_seen(db, message_id, "bob", now=now)
        if op == "replied":
            return await transitions.mark_replied(db, message_id, now=now)
        if op == "acted":
            return await transitions.mark_acted(db, message_id, "bob", now=now)
        return await transitions.mark_reported(db, message_id, "bob", "done", now=now)

    for order in itertools.permutations(ops):
        m = await _message(db)
        last = MessageStatus.DELIVERED
        # Every call twice, as an at-least-once caller would
        for i, op in enumerate(order + order):
            await apply(op, m.id, t0 + timedelta(seconds=i))
            current = (await crud.message_get(db, m.id)).status_code
            assert current >= last
            last = current
        assert last == MessageStatus.REPORTED


@pytest.mark.asyncio
async def test_mark_acted_linked_task(db, t0):
    m = await _message(db, linked_task_id="TASK-1")
    await transitions.mark_acted(db, m.id, "bob", now=t0)
    assert (await crud.message_get(db, m.id)).linked_task_id == "TASK-1"

    other = await _message(db)
    await transitions.mark_acted(db, other.id, "bob", linked_task_id="TASK-2", now=t0)
    assert (await crud.message_get(db, other.id)).linked_task_id == "TASK-2"


@pytest.mark.asyncio
async def test_mark_reported_stores_report(db, t0):
    m = await _message(db)
    result = await transitions.mark_reported(db, m.id, "bob", "Shipped in 2.1.1", now=t0)
    assert result.status == MessageStatus.REPORTED

    stored = await crud.message_get(db, m.id)
    assert stored.final_report == "Shipped in 2.1.1"
    assert stored.reported_at == t0
    assert (await transitions.mark_reported(db, m.id, "bob", "again")).already_at_or_past is True
    assert (await crud.message_get(db, m.id)).final_report == "Shipped in 2.1.1"


# ─────────────────────────────────────────────
# Errors and recipient identity
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unknown_message(db):
    with pytest.raises(MessageNotFound) as exc:
        await transitions.mark_seen(db, "missing-id", "bob")
    assert exc.value.message_id == "missing-id"
    assert isinstance(exc.value, LoopError)

    for call in (
        transitions.mark_replied(db, "missing-id"),
        transitions.mark_acted(db, "missing-id", "bob"),
        transitions.mark_reported(db, "missing-id", "bob", "r"),
        transitions.mark_loop_broken(db, "missing-id", "r"),
    ):
        with pytest.raises(MessageNotFound):
            await call


@pytest.mark.asyncio
async def test_only_recipient_may_transition(db, t0):
    m = await _message(db)
    for call in (
        transitions.mark_seen(db, m.id, "mallory", now=t0),
        transitions.mark_acted(db, m.id, "mallory", now=t0),
        transitions.mark_reported(db, m.id, "mallory", "r", now=t0),
    ):
        with pytest.raises(PermissionDenied):
            await call
    assert (await crud.message_get(db, m.id)).status_code == MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_mark_replied_has_no_identity_check(db, t0):
    m = await _message(db)
    result = await transitions.mark_replied(db, m.id, now=t0)
    assert result.status == MessageStatus.REPLIED


@pytest.mark.asyncio
async def test_recipient_name_is_case_insensitive(db, t0):
    m = await _message(db, to_agent="Bob")
    result = await transitions.mark_seen(db, m.id, "BOB", now=t0)
    assert result.already_seen is False


@pytest.mark.asyncio
async def test_recipient_addressed_by_id(db, t0):
    bob = await crud.agent_register(db, "bob")
    m = await _message(db, to_agent=bob.id)

    assert (await transitions.mark_seen(db, m.id, bob.id, now=t0)).already_seen is False
    # The registered name is accepted for an id-addressed message
    assert (await transitions.mark_acted(db, m.id, "Bob", now=t0)).already_at_or_past is False


@pytest.mark.asyncio
async def test_caller_identified_by_id(db, t0):
    bob = await crud.agent_register(db, "bob")
    m = await _message(db, to_agent="bob")
    assert (await transitions.mark_seen(db, m.id, bob.id, now=t0)).already_seen is False


# ─────────────────────────────────────────────
# Alert resolution
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_mark_replied_resolves_reply_overdue(db, t0):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    scan = await run_breach_scan(db, now=t0 + timedelta(minutes=16))
    assert [a.alert_type for a in scan.alerts_created] == ["reply_overdue"]

    result = await transitions.mark_replied(db, m.id, now=t0 + timedelta(minutes=17))
    assert [a.alert_type for a in result.resolved_alerts] == ["reply_overdue"]
    assert await crud.alert_list_active(db) == []
    assert len(await _events(db, "alert.resolved")) == 1


@pytest.mark.asyncio
async def test_mark_acted_resolves_reply_and_action_overdue(db, t0):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    await run_breach_scan(db, now=t0 + timedelta(minutes=16))
    await transitions.mark_replied(db, m.id, now=t0 + timedelta(minutes=20))
    await run_breach_scan(db, now=t0 + timedelta(minutes=20) + SLA_ACTION + timedelta(minutes=1))
    assert {a.alert_type for a in await crud.alert_list_active(db)} == {"action_overdue"}

    result = await transitions.mark_acted(db, m.id, "bob", now=t0 + timedelta(hours=3))
    assert [a.alert_type for a in result.resolved_alerts] == ["action_overdue"]
    assert await crud.alert_list_active(db) == []


@pytest.mark.asyncio
async def test_mark_acted_resolves_reply_overdue(db, t0):
    """An open reply_overdue alert is resolved once the recipient acts."""
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    await run_breach_scan(db, now=t0 + timedelta(minutes=16))

    acted_at = t0 + timedelta(minutes=30)
    await transitions.mark_acted(db, m.id, "bob", now=acted_at)

    alerts = await crud.alert_list_for_message(db, m.id)
    assert len(alerts) == 1
    assert alerts[0].alert_type == "reply_overdue"
    assert alerts[0].status == "resolved"
    assert alerts[0].resolved_at == acted_at

    # No action_overdue for a message that is already past the action stage
    later = await run_breach_scan(db, now=t0 + timedelta(hours=5))
    assert later.alerts_created == []


@pytest.mark.asyncio
async def test_mark_reported_resolves_all_alerts(db, t0):
    m = await _message(db)
    await transitions.mark_acted(db, m.id, "bob", now=t0)
    await run_breach_scan(db, now=t0 + SLA_REPORT + timedelta(minutes=1))
    await transitions.mark_loop_broken(db, m.id, "waiting on vendor", now=t0 + SLA_REPORT + timedelta(minutes=2))
    assert {a.alert_type for a in await crud.alert_list_active(db)} == {"report_overdue", "loop_broken"}

    result = await transitions.mark_reported(db, m.id, "bob", "done", now=t0 + SLA_REPORT + timedelta(hours=1))
    assert {a.alert_type for a in result.resolved_alerts} == {"report_overdue", "loop_broken"}
    assert await crud.alert_list_active(db) == []


# ─────────────────────────────────────────────
# Broken loops
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_mark_loop_broken(db, t0):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    result = await transitions.mark_loop_broken(db, m.id, "dependency down", now=t0)

    assert result.already_at_or_past is False
    assert result.status == MessageStatus.SEEN
    alert = result.created_alert
    assert alert.alert_type == "loop_broken"
    assert (alert.severity, alert.status, alert.escalated_to) == ("critical", "escalated", "pm")
    assert alert.agent_name == "bob"

    stored = await crud.message_get(db, m.id)
    assert stored.loop_broken is True
    assert stored.loop_broken_reason == "dependency down"
    assert stored.status_code == MessageStatus.SEEN


@pytest.mark.asyncio
async def test_mark_loop_broken_twice_keeps_one_alert(db, t0):
    m = await _message(db)
    await transitions.mark_loop_broken(db, m.id, "first", now=t0)
    again = await transitions.mark_loop_broken(db, m.id, "second", now=t0 + timedelta(minutes=1))

    assert again.already_at_or_past is True
    assert again.created_alert is None
    assert len(await crud.alert_list_for_message(db, m.id)) == 1
    assert (await crud.message_get(db, m.id)).loop_broken_reason == "first"


@pytest.mark.asyncio
async def test_mark_loop_broken_after_report_is_a_noop(db, t0):
    m = await _message(db)
    await transitions.mark_reported(db, m.id, "bob", "done", now=t0)
    result = await transitions.mark_loop_broken(db, m.id, "too late", now=t0 + timedelta(minutes=1))

    assert result.already_at_or_past is True
    assert result.status == MessageStatus.REPORTED
    assert result.created_alert is None
    assert await crud.alert_list_for_message(db, m.id) == []
    stored = await crud.message_get(db, m.id)
    assert stored.loop_broken is False
    assert stored.loop_broken_reason is None
    assert await _events(db, "loop.broken") == []


# ─────────────────────────────────────────────
# Manual escalation
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_escalate_defaults_to_pm(db, t0):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)
    result = await transitions.escalate_to_manager(db, m.id, "stuck for a day", now=t0)

    assert result.created is True
    assert result.escalated_to == "pm"
    assert result.status == MessageStatus.SEEN
    alert = result.alert
    assert alert.is_open
    assert (alert.alert_type, alert.severity, alert.status) == ("loop_broken", "critical", "escalated")
    assert (alert.agent_name, alert.escalated_to) == ("bob", "pm")

    stored = await crud.message_get(db, m.id)
    assert stored.loop_broken is False
    assert stored.status_code == MessageStatus.SEEN
    created = await _events(db, "alert.created")
    assert len(created) == 1
    assert created[0]["message_id"] == m.id


@pytest.mark.asyncio
async def test_escalate_to_named_target(db, t0):
    m = await _message(db)
    result = await transitions.escalate_to_manager(db, m.id, "needs sign-off", escalate_to=" Owner ", now=t0)
    assert result.escalated_to == "owner"
    assert result.to_dict()["escalated_to"] == "owner"
    assert (await crud.alert_list_active(db))[0].escalated_to == "owner"

    with pytest.raises(ValueError):
        await transitions.escalate_to_manager(db, m.id, "blank target", escalate_to="  ")


@pytest.mark.asyncio
async def test_escalate_twice_returns_open_alert(db, t0):
    m = await _message(db)
    first = await transitions.escalate_to_manager(db, m.id, "first", now=t0)
    again = await transitions.escalate_to_manager(db, m.id, "second", escalate_to="owner", now=t0 + timedelta(minutes=1))

    assert again.created is False
    assert again.alert.id == first.alert.id
    assert again.escalated_to == "pm"
    assert len(await crud.alert_list_for_message(db, m.id)) == 1
    assert len(await _events(db, "alert.created")) == 1


@pytest.mark.asyncio
async def test_escalate_broken_loop_reuses_its_alert(db, t0):
    m = await _message(db)
    broken = await transitions.mark_loop_broken(db, m.id, "vendor down", now=t0)
    result = await transitions.escalate_to_manager(db, m.id, "still down", now=t0 + timedelta(hours=1))

    assert result.created is False
    assert result.alert.id == broken.created_alert.id


@pytest.mark.asyncio
async def test_escalation_is_resolved_by_report(db, t0):
    m = await _message(db)
    escalated = await transitions.escalate_to_manager(db, m.id, "late", now=t0)
    reported = await transitions.mark_reported(db, m.id, "bob", "done", now=t0 + timedelta(minutes=5))

    assert [a.id for a in reported.resolved_alerts] == [escalated.alert.id]
    assert not (await crud.alert_get(db, escalated.alert.id)).is_open


@pytest.mark.asyncio
async def test_escalate_reported_message_is_a_noop(db, t0):
    m = await _message(db)
    await transitions.mark_reported(db, m.id, "bob", "done", now=t0)
    result = await transitions.escalate_to_manager(db, m.id, "too late", now=t0 + timedelta(minutes=1))

    assert result.alert is None
    assert result.created is False
    assert result.to_dict()["escalated"] is False
    assert await crud.alert_list_for_message(db, m.id) == []


@pytest.mark.asyncio
async def test_escalate_unknown_message(db):
    with pytest.raises(MessageNotFound):
        await transitions.escalate_to_manager(db, "missing-id", "why")



# ─────────────────────────────────────────────
# Batch seen
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_mark_multiple_seen_partial_success(db, t0):
    a = await _message(db)
    b = await _message(db)
    already = await _message(db)
    foreign = await _message(db, to_agent="carol")
    await transitions.mark_seen(db, already.id, "bob", now=t0)

    result = await transitions.mark_multiple_seen(
        db, [a.id, "missing-id", already.id, foreign.id, b.id], "bob", now=t0,
    )

    assert result.marked_count == 2
    assert [f["id"] for f in result.failed] == ["missing-id", foreign.id]
    assert all(f["reason"] for f in result.failed)
    assert (await crud.message_get(db, b.id)).status_code == MessageStatus.SEEN
    assert (await crud.message_get(db, foreign.id)).status_code == MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_mark_multiple_seen_empty(db):
    result = await transitions.mark_multiple_seen(db, [], "bob")
    assert result.to_dict() == {"marked_count": 0, "failed": []}


# ─────────────────────────────────────────────
# Atomicity and concurrency
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failed_alert_resolution_rolls_back_transition(db, t0, monkeypatch):
    m = await _message(db)
    await transitions.mark_seen(db, m.id, "bob", now=t0)

    async def fail(*args, **kwargs):
        raise RuntimeError("alerts table unavailable")

    monkeypatch.setattr(crud, "alert_resolve_for_message", fail)
    with pytest.raises(RuntimeError):
        await transitions.mark_replied(db, m.id, now=t0 + timedelta(minutes=1))
    monkeypatch.undo()

    # A later, unrelated commit must not publish the half-applied transition
    await _message(db, to_agent="carol")
    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.SEEN
    assert stored.replied_at is None
    assert stored.expected_action_by is None
    assert await _events(db, "loop.replied") == []

    retried = await transitions.mark_replied(db, m.id, now=t0 + timedelta(minutes=2))
    assert retried.already_at_or_past is False
    assert (await crud.message_get(db, m.id)).replied_at == t0 + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_concurrent_mark_seen_has_one_winner(db, t0):
    m = await _message(db)
    step = timedelta(milliseconds=1)

    results = await asyncio.gather(*(
        transitions.mark_seen(db, m.id, "bob", now=t0 + i * step) for i in range(12)
    ))

    winners = [i for i, r in enumerate(results) if not r.already_seen]
    assert len(winners) == 1
    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.SEEN
    assert stored.seen_at == t0 + winners[0] * step
    assert stored.expected_reply_by == stored.seen_at + SLA_REPLY
    assert len(await _events(db, "loop.seen")) == 1


@pytest.mark.asyncio
async def test_concurrent_transitions_never_regress(db, t0):
    m = await _message(db)
    await asyncio.gather(
        transitions.mark_reported(db, m.id, "bob", "done", now=t0),
        transitions.mark_seen(db, m.id, "bob", now=t0),
        transitions.mark_acted(db, m.id, "bob", now=t0),
        transitions.mark_replied(db, m.id, now=t0),
    )
    stored = await crud.message_get(db, m.id)
    assert stored.status_code == MessageStatus.REPORTED
    assert stored.final_report == "done"
