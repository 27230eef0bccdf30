"""Reminder scheduling and the recurring reminder sweep.

Lifecycle of a reminder row::

    pending ──claim──▶ claimed ──▶ sent | failed

Delivery is at-most-once: a process that dies after ``claim`` and before
``mark_*`` leaves the row claimed, and no later sweep picks it up again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from pydantic import ValidationError

from app.errors import StoreError
from app.services.notifications import NotificationDispatcher
from app.services.reminder_policy import fire_times, is_due
from app.services.templates import appointment_context
from app.types.booking_contract import (
    AppointmentSnapshot, DispatchResult, MerchantSnapshot, ReminderDraft,
    ReminderPayload, SweepReport,
)
from db.db import bounded, utcnow
from db.reminder_store import ReminderStore

_LOGGER = logging.getLogger(__name__)

NOT_SCHEDULABLE = {"cancelled", "completed"}


class _Outcome(NamedTuple):
    reminder_id: str
    status: str  # sent | failed | skipped | error
    error: Optional[str] = None


class ReminderScheduler:
    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        *,
        lookback: timedelta = timedelta(minutes=5),
        concurrency: int = 10,
        store_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._lookback = lookback
        self._concurrency = max(1, concurrency)
        self._store_timeout = store_timeout
        self._clock = clock

    def _bounded(self, awaitable):
        return bounded(awaitable, self._store_timeout)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(self, appointment: Dict[str, Any], merchant: Dict[str, Any],
                       now: Optional[datetime] = None) -> List[str]:
        """Persist one reminder per fire time still ahead of ``now``.

        The appointment and merchant are snapshotted into the payload.
        Returns the new reminder ids (possibly none).
        """
        now = now or self._clock()
        snapshot = AppointmentSnapshot.model_validate(appointment)
        if snapshot.status in NOT_SCHEDULABLE:
            _LOGGER.debug("Appointment %s is %s; no reminders", snapshot.appointment_id, snapshot.status)
            return []
        merchant_snapshot = MerchantSnapshot.model_validate(merchant)

        drafts = [
            ReminderDraft(
                appointment_id=snapshot.appointment_id,
                recipient_type=ft.audience,
                scheduled_for=ft.at,
                payload=ReminderPayload(
                    appointment=snapshot, merchant=merchant_snapshot, time_until=ft.label,
                ),
            )
            for ft in fire_times(snapshot.date_time, now)
        ]
        ids = await self._store.create_many(drafts, created_at=now)
        _LOGGER.info("Scheduled %d reminder(s) for appointment %s", len(ids), snapshot.appointment_id)
        return ids

    async def reschedule(self, appointment: Dict[str, Any], merchant: Dict[str, Any],
                         now: Optional[datetime] = None) -> List[str]:
        """Drop the appointment's pending reminders and schedule afresh."""
        await self.cancel(appointment["appointment_id"])
        return await self.schedule(appointment, merchant, now)

    async def cancel(self, appointment_id: str) -> int:
        removed = await self._store.cancel_pending(appointment_id)
        if removed:
            _LOGGER.info("Cancelled %d pending reminder(s) for appointment %s", removed, appointment_id)
        return removed

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Fire every reminder inside the due window ending at ``now``.

        A store failure while listing aborts the sweep (nothing was touched,
        the next cycle retries). After that each reminder is independent: its
        outcome is recorded in the report and never stops the others.
        """
        now = now or self._clock()
        report = SweepReport(name="reminders", started_at=now)
        try:
            listed = await self._bounded(self._store.query_due(now, self._lookback))
            report.missed = await self._bounded(self._store.count_missed(now, self._lookback))
        except StoreError:
            _LOGGER.exception("Reminder sweep aborted: could not list due reminders")
            raise

        due = [r for r in listed if is_due(r["scheduled_for"], now, self._lookback)]
        if len(due) != len(listed):
            _LOGGER.error("Store returned %d reminder(s) outside the due window; ignored",
                          len(listed) - len(due))

        if report.missed:
            _LOGGER.warning(
                "%d pending reminder(s) are older than the %s due window and will not fire",
                report.missed, self._lookback,
            )
        report.due = len(due)
        if not due:
            return report

        sem = asyncio.Semaphore(self._concurrency)

        async def run(record: Dict[str, Any]) -> _Outcome:
            async with sem:
                try:
                    return await self._process(record, now)
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.exception("Reminder %s: sweep step failed", record["reminder_id"])
                    return _Outcome(record["reminder_id"], "error", str(exc))

        for outcome in await asyncio.gather(*(run(r) for r in due)):
            if outcome.status == "sent":
                report.sent += 1
            elif outcome.status == "skipped":
                report.skipped += 1
            else:
                report.failed += 1
                report.errors.append(f"{outcome.reminder_id}: {outcome.error}")

        _LOGGER.info(
            "Reminder sweep: %d due, %d sent, %d failed, %d skipped",
            report.due, report.sent, report.failed, report.skipped,
        )
        return report

    async def _process(self, record: Dict[str, Any], now: datetime) -> _Outcome:
        reminder_id = record["reminder_id"]
        if not await self._bounded(self._store.claim(reminder_id, now)):
            _LOGGER.info("Reminder %s already claimed by another sweep", reminder_id)
            return _Outcome(reminder_id, "skipped")

        try:
            payload = ReminderPayload.model_validate(record["payload"])
        except ValidationError as exc:
            error = f"malformed payload: {exc.error_count()} validation error(s)"
            await self._bounded(self._store.mark_failed(reminder_id, error, self._clock()))
            return _Outcome(reminder_id, "failed", error)

        results = await self._deliver(record["recipient_type"], payload)
        if any(r.success for r in results):
            await self._bounded(self._store.mark_sent(reminder_id, self._clock()))
            return _Outcome(reminder_id, "sent")

        error = "; ".join(f"{r.channel}: {r.error}" for r in results) or "no deliverable channel"
        _LOGGER.warning("Reminder %s failed on every channel: %s", reminder_id, error)
        await self._bounded(self._store.mark_failed(reminder_id, error, self._clock()))
        return _Outcome(reminder_id, "failed", error)

    async def _deliver(self, recipient_type: str, payload: ReminderPayload) -> List[DispatchResult]:
        appointment = payload.appointment
        data = appointment_context(
            appointment.model_dump(), payload.merchant.model_dump(), time_until=payload.time_until,
        )
        calls = []
        if recipient_type == "customer":
            customer = appointment.customer_info
            if customer.email:
                calls.append(self._dispatcher.dispatch("email", customer.email, "appointment_reminder", data))
            if customer.phone:
                calls.append(self._dispatcher.dispatch("sms", customer.phone, "appointment_reminder", data))
        else:
            merchant_id = payload.merchant.merchant_id
            calls.append(self._dispatcher.dispatch("push", merchant_id, "merchant_reminder", data))
            calls.append(self._dispatcher.dispatch("in_app", merchant_id, "merchant_reminder", data))
        return list(await asyncio.gather(*calls))
