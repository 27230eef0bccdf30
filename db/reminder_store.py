"""Persistence for scheduled reminders.

Every state change is a single conditional UPDATE on ``sent = false`` (plus
``claimed_at IS NULL`` for claims), so two sweeps racing on the same row
cannot both win: the loser sees ``rowcount == 0`` and treats it as a no-op.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.types.booking_contract import ReminderDraft
from db.db import Reminder, new_id, session_scope, utcnow

_LOGGER = logging.getLogger(__name__)


def _row(draft: ReminderDraft, created_at: datetime) -> Reminder:
    if draft.scheduled_for <= created_at:
        raise ValueError("reminder must be scheduled in the future")
    return Reminder(
        reminder_id=new_id(),
        appointment_id=draft.appointment_id,
        recipient_type=draft.recipient_type,
        scheduled_for=draft.scheduled_for,
        payload=json.loads(draft.payload.model_dump_json()),
        sent=False,
        failed=False,
        created_at=created_at,
    )


class ReminderStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # 1. Insert --------------------------------------------------------
    async def create(self, draft: ReminderDraft, created_at: datetime | None = None) -> str:
        ids = await self.create_many([draft], created_at)
        return ids[0]

    async def create_many(
        self, drafts: Sequence[ReminderDraft], created_at: datetime | None = None
    ) -> list[str]:
        """Insert all drafts in one transaction; either every row lands or none."""
        created_at = created_at or utcnow()
        rows = [_row(d, created_at) for d in drafts]
        if not rows:
            return []
        async with session_scope(self._session_maker) as s:
            s.add_all(rows)
            await s.commit()
        return [r.reminder_id for r in rows]

    # 2. Reads ---------------------------------------------------------
    async def get(self, reminder_id: str) -> dict[str, Any] | None:
        async with session_scope(self._session_maker) as s:
            obj = await s.get(Reminder, reminder_id)
            return obj.to_dict() if obj else None

    async def query_due(self, now: datetime, lookback: timedelta) -> list[dict[str, Any]]:
        """Unclaimed, unsent reminders with ``now - lookback < scheduled_for <= now``."""
        stmt = select(Reminder).where(
            Reminder.sent.is_(False),
            Reminder.claimed_at.is_(None),
            Reminder.scheduled_for <= now,
            Reminder.scheduled_for > now - lookback,
        )
        async with session_scope(self._session_maker) as s:
            res = await s.execute(stmt)
            return [r.to_dict() for r in res.scalars()]

    async def count_missed(self, now: datetime, lookback: timedelta) -> int:
        """Pending reminders whose due window closed before any sweep claimed them."""
        stmt = select(func.count()).select_from(Reminder).where(
            Reminder.sent.is_(False),
            Reminder.claimed_at.is_(None),
            Reminder.scheduled_for <= now - lookback,
        )
        async with session_scope(self._session_maker) as s:
            return (await s.execute(stmt)).scalar_one()

    async def list_for_appointment(self, appointment_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(Reminder)
            .where(Reminder.appointment_id == appointment_id)
            .order_by(Reminder.scheduled_for)
        )
        async with session_scope(self._session_maker) as s:
            res = await s.execute(stmt)
            return [r.to_dict() for r in res.scalars()]

    # 3. Conditional state changes -------------------------------------
    async def _conditional_update(self, reminder_id: str, where: list, values: dict) -> bool:
        stmt = (
            update(Reminder)
            .where(Reminder.reminder_id == reminder_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_maker) as s:
            res = await s.execute(stmt)
            won = res.rowcount == 1
            await s.commit()
        return won

    async def claim(self, reminder_id: str, now: datetime | None = None) -> bool:
        """Take ownership of a due reminder. False if another sweep got there first."""
        return await self._conditional_update(
            reminder_id,
            [Reminder.sent.is_(False), Reminder.claimed_at.is_(None)],
            {"claimed_at": now or utcnow()},
        )

    async def mark_sent(self, reminder_id: str, now: datetime | None = None) -> bool:
        won = await self._conditional_update(
            reminder_id,
            [Reminder.sent.is_(False)],
            {"sent": True, "sent_at": now or utcnow()},
        )
        if not won:
            _LOGGER.info("Reminder %s already terminal; mark_sent is a no-op", reminder_id)
        return won

    async def mark_failed(self, reminder_id: str, error: str, now: datetime | None = None) -> bool:
        # A failed attempt still consumes the reminder: it is never fired again.
        won = await self._conditional_update(
            reminder_id,
            [Reminder.sent.is_(False)],
            {"sent": True, "failed": True, "error": error[:2000], "sent_at": now or utcnow()},
        )
        if not won:
            _LOGGER.info("Reminder %s already terminal; mark_failed is a no-op", reminder_id)
        return won

    # 4. Cancellation --------------------------------------------------
    async def cancel_pending(self, appointment_id: str) -> int:
        """Drop reminders of an appointment that no sweep has picked up yet."""
        stmt = delete(Reminder).where(
            Reminder.appointment_id == appointment_id,
            Reminder.sent.is_(False),
            Reminder.claimed_at.is_(None),
        )
        async with session_scope(self._session_maker) as s:
            res = await s.execute(stmt)
            removed = res.rowcount
            await s.commit()
        return removed
