"""Appointment lifecycle: booking writes plus the side effects that follow.

The ``on_*`` handlers run after the appointment row has been written. They
notify, (re)schedule reminders and release time slots, and none of them ever
raises: a booking is never rolled back because a side effect failed.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from app.errors import BookingError, DataIntegrityError, PreconditionFailed, StoreError
from app.services.notifications import NotificationDispatcher
from app.services.reminder_scheduler import ReminderScheduler
from app.services.templates import appointment_context
from app.types.booking_contract import AppointmentCreate, AppointmentUpdate
from db.db import utcnow
from db.documents import DocumentStore, WriteOp, chunked

_LOGGER = logging.getLogger(__name__)

STATUS_TEMPLATES = {
    "confirmed": "appointment_confirmed",
    "cancelled": "appointment_cancelled",
    "rescheduled": "appointment_rescheduled",
}


def _store_retry():
    return retry(
        wait=wait_random_exponential(multiplier=0.2, max=2),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(StoreError),
        reraise=True,
    )


class AppointmentLifecycle:
    def __init__(
        self,
        documents: DocumentStore,
        dispatcher: NotificationDispatcher,
        scheduler: ReminderScheduler,
        *,
        timezone: str = "UTC",
    ):
        self._documents = documents
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._tz = ZoneInfo(timezone)

    def _slot_key(self, when: datetime) -> tuple[date, str]:
        local = when.astimezone(self._tz)
        return local.date(), f"{local:%H:%M}"

    async def _best_effort(self, step: str, appointment_id: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Appointment %s: %s failed", appointment_id, step)
            return None

    # ------------------------------------------------------------------
    # Booking writes
    # ------------------------------------------------------------------

    async def _after_write(self, defer: Optional[Callable[..., Any]], handler, *args) -> None:
        if defer is None:
            await handler(*args)
        else:
            defer(handler, *args)

    async def book(self, request: AppointmentCreate,
                   defer: Optional[Callable[..., Any]] = None) -> Dict[str, Any]:
        """Persist a booking, then run ``on_created``.

        ``defer`` (e.g. ``BackgroundTasks.add_task``) hands the handler off
        instead of awaiting it inline.
        """
        merchant = await self._documents.get("merchants", request.merchant_id)
        if merchant is None:
            raise DataIntegrityError(f"merchant {request.merchant_id} does not exist")
        if not merchant.get("is_active"):
            raise BookingError(f"merchant {request.merchant_id} is not accepting bookings")

        now = utcnow()
        appointment_id = await self._documents.create("appointments", None, {
            **request.model_dump(mode="python"),
            "created_at": now,
            "updated_at": now,
        })
        appointment = await self._documents.get("appointments", appointment_id)
        await self._best_effort("slot reservation", appointment_id, self.reserve_slot(appointment))
        await self._after_write(defer, self.on_created, appointment, merchant)
        return appointment

    async def update(self, appointment_id: str, request: AppointmentUpdate,
                     defer: Optional[Callable[..., Any]] = None) -> Dict[str, Any]:
        before = await self._documents.get("appointments", appointment_id)
        if before is None:
            raise DataIntegrityError(f"appointment {appointment_id} does not exist")
        changes = request.model_dump(exclude_none=True)
        await self._documents.update("appointments", appointment_id, {**changes, "updated_at": utcnow()})
        after = await self._documents.get("appointments", appointment_id)
        await self._after_write(defer, self.on_updated, before, after)
        return after

    async def delete(self, appointment_id: str,
                     defer: Optional[Callable[..., Any]] = None) -> Dict[str, Any]:
        appointment = await self._documents.get("appointments", appointment_id)
        if appointment is None:
            raise DataIntegrityError(f"appointment {appointment_id} does not exist")
        await self._documents.delete("appointments", appointment_id)
        await self._after_write(defer, self.on_deleted, appointment)
        return appointment

    # ------------------------------------------------------------------
    # Lifecycle handlers
    # ------------------------------------------------------------------

    async def on_created(self, appointment: Dict[str, Any], merchant: Optional[Dict[str, Any]] = None) -> None:
        appointment_id = appointment["appointment_id"]
        if merchant is None:
            merchant = await self._best_effort(
                "merchant lookup", appointment_id,
                self._documents.get("merchants", appointment["merchant_id"]),
            )
        if merchant is None:
            _LOGGER.error("Appointment %s: merchant %s missing; no notifications",
                          appointment_id, appointment["merchant_id"])
            return

        data = appointment_context(appointment, merchant)
        customer = appointment.get("customer_info") or {}
        await self._dispatcher.dispatch("push", merchant["merchant_id"], "new_appointment", data)
        if customer.get("email"):
            await self._dispatcher.dispatch("email", customer["email"], "appointment_confirmation", data)
        await self._best_effort(
            "reminder scheduling", appointment_id, self._schedule(appointment, merchant, reschedule=False),
        )

    async def on_updated(self, before: Dict[str, Any], after: Dict[str, Any]) -> None:
        appointment_id = after["appointment_id"]
        status_changed = before["status"] != after["status"]
        time_changed = before["date_time"] != after["date_time"]
        if not (status_changed or time_changed):
            return

        merchant = await self._best_effort(
            "merchant lookup", appointment_id, self._documents.get("merchants", after["merchant_id"]),
        )

        template = STATUS_TEMPLATES.get(after["status"]) if status_changed else None
        if template and merchant is not None:
            await self._notify_customer(after, merchant, template)

        if time_changed:
            await self._best_effort("slot move", appointment_id, self._move_slot(before, after))

        if after["status"] in ("cancelled", "completed"):
            await self._best_effort("reminder cancellation", appointment_id,
                                    self._scheduler.cancel(appointment_id))
        elif time_changed and merchant is not None:
            await self._best_effort("reminder rescheduling", appointment_id,
                                    self._schedule(after, merchant, reschedule=True))

    async def on_deleted(self, appointment: Dict[str, Any]) -> None:
        appointment_id = appointment["appointment_id"]
        await self._best_effort("slot release", appointment_id, self.release_slot(appointment))
        await self._best_effort("reminder cancellation", appointment_id,
                                self._scheduler.cancel(appointment_id))
        if appointment["status"] == "cancelled":
            return  # the customer already heard about it
        merchant = await self._best_effort(
            "merchant lookup", appointment_id, self._documents.get("merchants", appointment["merchant_id"]),
        )
        await self._notify_customer(appointment, merchant or {}, "appointment_cancelled")

    async def _notify_customer(self, appointment: Dict[str, Any], merchant: Dict[str, Any],
                               template: str) -> None:
        customer = appointment.get("customer_info") or {}
        data = appointment_context(appointment, merchant, status=appointment["status"])
        if customer.get("email"):
            await self._dispatcher.dispatch("email", customer["email"], template, data)
        if customer.get("phone"):
            await self._dispatcher.dispatch("sms", customer["phone"], template, data)

    async def _schedule(self, appointment: Dict[str, Any], merchant: Dict[str, Any],
                        reschedule: bool) -> List[str]:
        call = self._scheduler.reschedule if reschedule else self._scheduler.schedule

        @_store_retry()
        async def attempt():
            return await call(appointment, merchant)

        return await attempt()

    # ------------------------------------------------------------------
    # Time slots
    # ------------------------------------------------------------------

    async def _matching_slot(self, appointment: Dict[str, Any], available: bool) -> Optional[Dict[str, Any]]:
        slot_date, start_time = self._slot_key(appointment["date_time"])
        conditions = [
            ("merchant_id", "==", appointment["merchant_id"]),
            ("slot_date", "==", slot_date),
            ("start_time", "==", start_time),
            ("is_available", "==", available),
        ]
        if not available:
            # a booked slot only matches the appointment holding it
            conditions.append(("appointment_id", "==", appointment["appointment_id"]))
        rows = await self._documents.query("time_slots", conditions, limit=1)
        return rows[0] if rows else None

    async def _move_slot(self, before: Dict[str, Any], after: Dict[str, Any]) -> None:
        await self.release_slot(before)
        if after["status"] not in ("cancelled", "completed"):
            await self.reserve_slot(after)

    async def reserve_slot(self, appointment: Dict[str, Any]) -> bool:
        slot = await self._matching_slot(appointment, available=True)
        if slot is None:
            return False
        try:
            await self._documents.update(
                "time_slots", slot["slot_id"],
                {"is_available": False, "appointment_id": appointment["appointment_id"], "updated_at": utcnow()},
                expect={"is_available": True},
            )
        except PreconditionFailed:
            _LOGGER.warning("Slot %s was taken concurrently", slot["slot_id"])
            return False
        return True

    async def release_slot(self, appointment: Dict[str, Any]) -> bool:
        """Free the slot this appointment holds at its merchant, local date and start time."""
        slot = await self._matching_slot(appointment, available=False)
        if slot is None:
            return False
        try:
            await self._documents.update(
                "time_slots", slot["slot_id"],
                {"is_available": True, "appointment_id": None, "updated_at": utcnow()},
                expect={"appointment_id": appointment["appointment_id"]},
            )
        except PreconditionFailed:
            _LOGGER.warning("Slot %s changed hands before release", slot["slot_id"])
            return False
        _LOGGER.info("Released slot %s for appointment %s", slot["slot_id"], appointment["appointment_id"])
        return True

    async def generate_time_slots(self, merchant_id: str, slot_date: date, start_time: str,
                                  end_time: str, slot_minutes: int = 30) -> int:
        """Create back-to-back available slots covering ``[start_time, end_time)``."""
        if slot_minutes <= 0:
            raise ValueError("slot_minutes must be positive")
        start = datetime.combine(slot_date, datetime.strptime(start_time, "%H:%M").time())
        end = datetime.combine(slot_date, datetime.strptime(end_time, "%H:%M").time())
        step = timedelta(minutes=slot_minutes)
        now = utcnow()

        ops = []
        current = start
        while current < end:
            nxt = current + step
            ops.append(WriteOp.create("time_slots", {
                "merchant_id": merchant_id,
                "slot_date": slot_date,
                "start_time": f"{current:%H:%M}",
                "end_time": f"{nxt:%H:%M}",
                "is_available": True,
                "appointment_id": None,
                "created_at": now,
                "updated_at": now,
            }))
            current = nxt

        for batch in chunked(ops):
            await self._documents.batch_write(batch)
        _LOGGER.info("Generated %d slot(s) for merchant %s on %s", len(ops), merchant_id, slot_date)
        return len(ops)
