from datetime import date, datetime, time, timedelta, timezone

import pytest

from app.errors import BookingError, DataIntegrityError
from app.types.booking_contract import AppointmentCreate, AppointmentUpdate
from db.db import utcnow
from tests.conftest import add_appointment, add_merchant


def _future_slot_time(days=3, hour=10, minute=0):
    day = (utcnow() + timedelta(days=days)).date()
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


async def _slots(services, **conditions):
    return await services.documents.query(
        "time_slots", [(k, "==", v) for k, v in conditions.items()], order_by="start_time"
    )


@pytest.mark.asyncio
async def test_generate_time_slots(services):
    count = await services.appointments.generate_time_slots("m1", date(2025, 3, 10), "09:00", "11:00")

    slots = await _slots(services, merchant_id="m1")
    assert count == 4
    assert [(s["start_time"], s["end_time"]) for s in slots] == [
        ("09:00", "09:30"), ("09:30", "10:00"), ("10:00", "10:30"), ("10:30", "11:00"),
    ]
    assert all(s["is_available"] and s["slot_date"] == date(2025, 3, 10) for s in slots)


@pytest.mark.asyncio
async def test_book_reserves_slot_schedules_reminders_and_notifies(services, channels):
    await add_merchant(services.documents)
    when = _future_slot_time()
    await services.appointments.generate_time_slots("m1", when.date(), "09:00", "12:00", 60)

    appt = await services.appointments.book(AppointmentCreate(
        merchant_id="m1",
        customer_info={"name": "Sam", "email": "Sam@Example.test"},
        service_name="Massage",
        price=80,
        date_time=when,
    ))

    taken = await _slots(services, merchant_id="m1", is_available=False)
    assert [(s["start_time"], s["appointment_id"]) for s in taken] == [("10:00", appt["appointment_id"])]
    reminders = await services.reminders.list_for_appointment(appt["appointment_id"])
    assert [r["recipient_type"] for r in reminders] == ["customer", "customer", "merchant"]
    assert [e["to"] for e in channels.emails] == ["sam@example.test"]
    assert channels.pushes[0]["title"] == "New Appointment"


@pytest.mark.asyncio
async def test_booking_inactive_or_unknown_merchant_fails(services):
    await add_merchant(services.documents, is_active=False)
    request = dict(customer_info={"name": "Sam"}, service_name="Cut", date_time=_future_slot_time())
    with pytest.raises(BookingError):
        await services.appointments.book(AppointmentCreate(merchant_id="m1", **request))
    with pytest.raises(DataIntegrityError):
        await services.appointments.book(AppointmentCreate(merchant_id="nobody", **request))


@pytest.mark.asyncio
async def test_booking_survives_notification_failures(services, channels):
    await add_merchant(services.documents, fcm_tokens=[])
    channels.failing.add("sam@example.test")

    appt = await services.appointments.book(AppointmentCreate(
        merchant_id="m1", customer_info={"name": "Sam", "email": "sam@example.test"},
        service_name="Cut", date_time=_future_slot_time(),
    ))

    assert await services.documents.get("appointments", appt["appointment_id"]) is not None


@pytest.mark.asyncio
async def test_time_change_reschedules_and_cancel_drops_reminders(services, channels):
    await add_merchant(services.documents)
    appt = await services.appointments.book(AppointmentCreate(
        merchant_id="m1", customer_info={"name": "Sam", "email": "sam@example.test"},
        service_name="Cut", date_time=_future_slot_time(days=3),
    ))
    aid = appt["appointment_id"]

    later = _future_slot_time(days=5)
    await services.appointments.update(aid, AppointmentUpdate(date_time=later, status="rescheduled"))
    reminders = await services.reminders.list_for_appointment(aid)
    assert len(reminders) == 3
    assert reminders[0]["scheduled_for"] == later - timedelta(hours=24)
    assert channels.emails[-1]["subject"] == "Appointment Rescheduled - Bookings"

    await services.appointments.update(aid, AppointmentUpdate(status="cancelled"))
    assert await services.reminders.list_for_appointment(aid) == []
    assert channels.emails[-1]["subject"] == "Appointment Cancelled - Bookings"


@pytest.mark.asyncio
async def test_delete_releases_exactly_the_matching_slot(services, channels):
    await add_merchant(services.documents)
    await add_merchant(services.documents, "m2")
    when = _future_slot_time(hour=14, minute=30)
    for merchant_id in ("m1", "m2"):
        await services.appointments.generate_time_slots(merchant_id, when.date(), "14:00", "15:30")
    booked = await services.documents.query("time_slots", [("start_time", "in", ["14:30", "15:00"])])
    for slot in booked:
        holder = "a1" if (slot["merchant_id"], slot["start_time"]) == ("m1", "14:30") else "x"
        await services.documents.update("time_slots", slot["slot_id"], {"is_available": False, "appointment_id": holder})
    await add_appointment(services.documents, "a1", merchant_id="m1", when=when)

    await services.appointments.delete("a1")

    assert await services.documents.get("appointments", "a1") is None
    freed = await _slots(services, merchant_id="m1", is_available=True)
    assert [s["start_time"] for s in freed] == ["14:00", "14:30"]
    still_booked = await services.documents.query("time_slots", [("is_available", "==", False)])
    assert sorted((s["merchant_id"], s["start_time"]) for s in still_booked) == [
        ("m1", "15:00"), ("m2", "14:30"), ("m2", "15:00"),
    ]
    assert channels.emails[-1]["subject"] == "Appointment Cancelled - Bookings"


@pytest.mark.asyncio
async def test_delete_without_matching_slot_touches_nothing(services):
    await add_merchant(services.documents)
    when = _future_slot_time(hour=9)
    await services.appointments.generate_time_slots("m1", when.date(), "10:00", "11:00")
    await add_appointment(services.documents, "a1", when=when)

    await services.appointments.delete("a1")

    assert len(await _slots(services, merchant_id="m1", is_available=True)) == 2


@pytest.mark.asyncio
async def test_reschedule_moves_slot_and_delete_leaves_other_bookings(services):
    await add_merchant(services.documents)
    ten = _future_slot_time(hour=10)
    eleven = _future_slot_time(hour=11)
    await services.appointments.generate_time_slots("m1", ten.date(), "10:00", "12:00", 60)
    customer = {"name": "Sam", "email": "sam@example.test"}

    first = await services.appointments.book(AppointmentCreate(
        merchant_id="m1", customer_info=customer, service_name="Cut", date_time=ten,
    ))
    await services.appointments.update(first["appointment_id"], AppointmentUpdate(date_time=eleven))
    after_move = await _slots(services, merchant_id="m1")
    assert [(s["start_time"], s["is_available"], s["appointment_id"]) for s in after_move] == [
        ("10:00", True, None), ("11:00", False, first["appointment_id"]),
    ]

    # 10:00 was handed back, so another booking can take it
    second = await services.appointments.book(AppointmentCreate(
        merchant_id="m1", customer_info=customer, service_name="Cut", date_time=ten,
    ))
    await services.appointments.delete(first["appointment_id"])

    slots = await _slots(services, merchant_id="m1")
    assert [(s["start_time"], s["is_available"], s["appointment_id"]) for s in slots] == [
        ("10:00", False, second["appointment_id"]), ("11:00", True, None),
    ]


@pytest.mark.asyncio
async def test_delete_does_not_free_slot_held_by_another_appointment(services):
    await add_merchant(services.documents)
    when = _future_slot_time(hour=10)
    await services.appointments.generate_time_slots("m1", when.date(), "10:00", "11:00", 60)
    holder = await services.appointments.book(AppointmentCreate(
        merchant_id="m1", customer_info={"name": "Kim"}, service_name="Cut", date_time=when,
    ))
    await add_appointment(services.documents, "a-stale", when=when)

    await services.appointments.delete("a-stale")

    slots = await _slots(services, merchant_id="m1")
    assert [(s["is_available"], s["appointment_id"]) for s in slots] == [(False, holder["appointment_id"])]
