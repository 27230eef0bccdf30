"""Pure time arithmetic for reminders and expiry notices.

Nothing here touches the clock or the store: callers pass ``now`` in, which
keeps the policy testable with fixed instants.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import List, NamedTuple

from app.types.booking_contract import RecipientType


class ReminderOffset(NamedTuple):
    offset: timedelta
    audience: RecipientType
    label: str  # shown to the recipient, e.g. "in 24 hours"


REMINDER_POLICY: List[ReminderOffset] = [
    ReminderOffset(timedelta(hours=24), "customer", "24 hours"),
    ReminderOffset(timedelta(hours=1), "customer", "1 hour"),
    ReminderOffset(timedelta(minutes=15), "merchant", "15 minutes"),
]


class FireTime(NamedTuple):
    at: datetime
    audience: RecipientType
    label: str


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware")


def reminder_offsets(appointment_time: datetime) -> List[tuple[timedelta, RecipientType]]:
    """The fixed offsets before ``appointment_time`` at which reminders fire."""
    _require_aware(appointment_time, "appointment_time")
    return [(p.offset, p.audience) for p in REMINDER_POLICY]


def fire_times(appointment_time: datetime, now: datetime) -> List[FireTime]:
    """Fire times still strictly in the future at ``now``.

    An appointment booked 30 minutes out yields only the merchant's
    15-minute reminder; one already in the past yields nothing.
    """
    _require_aware(now, "now")
    labels = {p.offset: p.label for p in REMINDER_POLICY}
    out = []
    for offset, audience in reminder_offsets(appointment_time):
        at = appointment_time - offset
        if at > now:
            out.append(FireTime(at, audience, labels[offset]))
    return out


def is_due(scheduled_for: datetime, now: datetime, lookback: timedelta) -> bool:
    """True iff ``scheduled_for`` falls in the due window ``(now - lookback, now]``."""
    return now - lookback < scheduled_for <= now


def days_until_expiry(expiry: datetime, now: datetime) -> int:
    return math.ceil((expiry - now) / timedelta(days=1))


def expiry_notice_due(days: int) -> bool:
    """Whether an expiry warning goes out on a sweep ``days`` before expiry.

    Daily in the last week, every third day in the week before, weekly
    further out. ``days <= 0`` is expiry itself and handled separately.
    """
    if days <= 0:
        return False
    if days <= 7:
        return True
    if days <= 14:
        return days % 3 == 0
    return days % 7 == 0
