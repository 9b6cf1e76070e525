"""
Loop status ordering and stage deadlines.

Status flow: pending -> delivered -> seen -> replied -> acted -> reported

Every "is this message past stage X" question goes through `is_at_or_past`,
so the ordering contract lives in one place.
"""
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Optional


class MessageStatus(IntEnum):
    PENDING = 0
    DELIVERED = 1
    SEEN = 2
    REPLIED = 3
    ACTED = 4
    REPORTED = 5

    @property
    def label(self) -> str:
        return self.name.lower()


# SLA durations: a stage must be left within this window after entering it.
SLA_REPLY = timedelta(minutes=15)
SLA_ACTION = timedelta(hours=2)
SLA_REPORT = timedelta(hours=24)

# Stage -> (deadline column it starts, SLA duration)
STAGE_DEADLINES: dict[MessageStatus, tuple[str, timedelta]] = {
    MessageStatus.SEEN: ("expected_reply_by", SLA_REPLY),
    MessageStatus.REPLIED: ("expected_action_by", SLA_ACTION),
    MessageStatus.ACTED: ("expected_report_by", SLA_REPORT),
}

# Breach type -> (deadline column, stage that clears it)
BREACH_RULES: dict[str, tuple[str, MessageStatus]] = {
    "reply_overdue": ("expected_reply_by", MessageStatus.REPLIED),
    "action_overdue": ("expected_action_by", MessageStatus.ACTED),
    "report_overdue": ("expected_report_by", MessageStatus.REPORTED),
}


def coerce_status(value: Optional[int]) -> MessageStatus:
    """Map a stored status code to MessageStatus; missing codes count as delivered."""
    if value is None:
        return MessageStatus.DELIVERED
    return MessageStatus(int(value))


def is_at_or_past(current: Optional[int], stage: MessageStatus) -> bool:
    return coerce_status(current) >= stage


def status_label(value: Optional[int]) -> str:
    return coerce_status(value).label


def deadline_for(stage: MessageStatus, entered_at: datetime) -> Optional[datetime]:
    """Deadline started by entering `stage` at `entered_at`, or None if the stage has no SLA."""
    rule = STAGE_DEADLINES.get(stage)
    if rule is None:
        return None
    return entered_at + rule[1]
