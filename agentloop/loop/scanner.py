"""
Breach scanner: periodic SLA sweep over open loops.

The scanner is stateless and only ever creates alerts; resolution belongs to
the transition layer. Each candidate breach is written with a single guarded
insert-if-absent statement, so concurrent sweeps cannot double-fire and a sweep
racing a transition cannot recreate an alert that transition just resolved.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from agentloop.db import crud
from agentloop.db.database import transaction
from agentloop.db.models import Alert, Message
from agentloop.loop.escalation import policy_for
from agentloop.loop.status import BREACH_RULES, is_at_or_past

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    checked_at: datetime
    checked: int = 0
    alerts_created: list[Alert] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def escalations(self) -> int:
        return sum(1 for a in self.alerts_created if a.escalated_to)

    def to_dict(self) -> dict:
        return {
            "checked_at": self.checked_at.isoformat(),
            "checked": self.checked,
            "alerts_created": len(self.alerts_created),
            "escalations": self.escalations,
            "failed": self.failed,
        }


def breaches_for(message: Message, now: datetime) -> list[str]:
    """Breach types the scanner should alert on; broken loops never breach."""
    if message.loop_broken:
        return []
    return overdue_stages(message, now)


def overdue_stages(message: Message, now: datetime) -> list[str]:
    """Breach types whose deadline has passed at `now` without the next stage.

    Strict: a deadline equal to `now` is not breached. Missing deadlines are skipped.
    """
    found = []
    for alert_type, (column, clearing_stage) in BREACH_RULES.items():
        deadline = getattr(message, column)
        if deadline is None:
            continue
        if now > deadline and not is_at_or_past(message.status_code, clearing_stage):
            found.append(alert_type)
    return found


async def _scan_message(db: aiosqlite.Connection, message: Message, now: datetime, now_ms: int) -> list[Alert]:
    """Create the alerts `message` is due at `now`, all in one transaction."""
    # Checked before any write: a record that cannot be evaluated leaves nothing behind
    breaches = breaches_for(message, now)
    if not breaches:
        return []
    agent_name = await crud.resolve_agent_name(db, message.to_agent)
    created = []
    async with transaction(db):
        for alert_type in breaches:
            rule = policy_for(alert_type)
            column, clearing_stage = BREACH_RULES[alert_type]
            alert = await crud.alert_create_if_absent(
                db, message.id, agent_name, alert_type,
                rule.severity, rule.status, rule.escalated_to, now_ms,
                breach_guard=(column, int(clearing_stage)),
            )
            if alert is not None:
                created.append(alert)
    return created


async def run_breach_scan(db: aiosqlite.Connection, now: Optional[datetime] = None) -> ScanResult:
    """Sweep every open, unbroken message once and raise alerts for new breaches."""
    now = now or datetime.now(timezone.utc)
    now_ms = crud.to_ms(now)
    # Compare at the stored (millisecond) resolution
    now = crud.from_ms(now_ms)
    result = ScanResult(checked_at=now)

    for message_id in await crud.message_open_ids(db):
        result.checked += 1
        try:
            # Re-read each record so the check sees its latest state
            message = await crud.message_get(db, message_id)
            if message is None:
                continue
            created = await _scan_message(db, message, now, now_ms)
        except Exception:
            # One bad record must not stop the sweep
            logger.exception(f"Breach check failed for message {message_id}")
            result.failed.append(message_id)
            continue
        for alert in created:
            result.alerts_created.append(alert)
            await crud.emit_event(db, "alert.created", message_id, {
                "alert_id": alert.id, "message_id": message_id, "alert_type": alert.alert_type,
                "severity": alert.severity, "escalated_to": alert.escalated_to,
                "agent_name": alert.agent_name,
            })
            log = logger.warning if alert.severity == "critical" else logger.info
            log(
                f"SLA breach: {alert.alert_type} for {alert.agent_name} on message {message_id}"
                + (f", escalated to {alert.escalated_to}" if alert.escalated_to else "")
            )

    if result.alerts_created or result.failed:
        await crud.emit_event(db, "scan.completed", None, result.to_dict())
    logger.debug(
        f"Breach scan: checked={result.checked} created={len(result.alerts_created)} failed={len(result.failed)}"
    )
    return result


async def breach_scan_loop(get_db, interval_seconds: int, event_retention: int = 600) -> None:
    """Run the breach scan forever. A failed sweep is logged and retried on the next tick."""
    logger.info(f"Breach scanner started (interval={interval_seconds}s)")
    while True:
        try:
            db = await get_db()
            await run_breach_scan(db)
            await crud.events_delete_old(db, max_age_seconds=event_retention)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Breach scan failed")
        await asyncio.sleep(interval_seconds)
