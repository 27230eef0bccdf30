"""Message templates for every channel.

``render(template, data)`` returns one ``Rendered`` bundle; each channel picks
the fields it needs (email: subject/html, push and in-app: title/body,
SMS: sms). Values from ``data`` are HTML-escaped before they reach markup.
"""

from __future__ import annotations

import html
from datetime import datetime
from typing import Any, Callable, Dict, NamedTuple
from zoneinfo import ZoneInfo

from config import settings

BRAND = "Bookings"


class Rendered(NamedTuple):
    subject: str
    html: str
    title: str
    body: str
    sms: str


def local_date_time(when: datetime, tz: str | None = None) -> tuple[str, str]:
    """(``"Monday, March 3, 2025"``, ``"14:30"``) in the configured timezone."""
    local = when.astimezone(ZoneInfo(tz or settings.DEFAULT_TIMEZONE))
    return f"{local:%A, %B} {local.day}, {local.year}", f"{local:%H:%M}"


def _layout(heading: str, colour: str, greeting: str, lead: str,
            rows: Dict[str, Any], footer: str) -> str:
    details = "".join(
        f"<p><strong>{html.escape(k)}:</strong> {html.escape(str(v))}</p>"
        for k, v in rows.items() if v not in (None, "")
    )
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: {colour};">{html.escape(heading)}</h2>'
        f"<p>{html.escape(greeting)}</p>"
        f"<p>{html.escape(lead)}</p>"
        f'<div style="background-color: #f8f9fa; padding: 20px; border-radius: 8px; '
        f'margin: 20px 0; border-left: 4px solid {colour};">{details}</div>'
        f"<p>{html.escape(footer)}</p>"
        "</div>"
    )


def _g(data: Dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    return default if value is None else str(value)


# ──────────────────────────────
# Appointment templates
# ──────────────────────────────


def _appointment_rows(d: Dict[str, Any], merchant: bool = True) -> Dict[str, Any]:
    rows = {"Service": _g(d, "service_name")}
    if merchant:
        rows["Merchant"] = _g(d, "merchant_name")
    rows["Date"] = _g(d, "appointment_date")
    rows["Time"] = _g(d, "appointment_time")
    return rows


def _appointment_confirmation(d):
    rows = _appointment_rows(d)
    rows["Booking Reference"] = _g(d, "appointment_id")
    return Rendered(
        subject=f"Appointment Confirmation - {BRAND}",
        html=_layout(
            "Appointment Booked!", "#6366F1", f"Dear {_g(d, 'customer_name', 'customer')},",
            "Your appointment has been successfully booked. Here are the details:", rows,
            "Please arrive 10 minutes early. To reschedule or cancel, contact the merchant directly.",
        ),
        title="Appointment booked",
        body=f"{_g(d, 'service_name')} on {_g(d, 'appointment_date')} at {_g(d, 'appointment_time')}",
        sms=(f"{_g(d, 'merchant_name')}: your {_g(d, 'service_name')} is booked for "
             f"{_g(d, 'appointment_date')} at {_g(d, 'appointment_time')}."),
    )


def _appointment_confirmed(d):
    return Rendered(
        subject=f"Your Appointment is Confirmed - {BRAND}",
        html=_layout(
            "Appointment Confirmed!", "#10B981", f"Dear {_g(d, 'customer_name', 'customer')},",
            f"Great news! Your appointment has been confirmed by {_g(d, 'merchant_name')}.",
            _appointment_rows(d, merchant=False), "We look forward to seeing you!",
        ),
        title="Appointment confirmed",
        body=f"{_g(d, 'service_name')} on {_g(d, 'appointment_date')} is confirmed",
        sms=(f"{_g(d, 'merchant_name')} confirmed your {_g(d, 'service_name')} on "
             f"{_g(d, 'appointment_date')} at {_g(d, 'appointment_time')}."),
    )


def _appointment_cancelled(d):
    rows = _appointment_rows(d, merchant=False)
    rows["Reason"] = d.get("reason")
    return Rendered(
        subject=f"Appointment Cancelled - {BRAND}",
        html=_layout(
            "Appointment Cancelled", "#EF4444", f"Dear {_g(d, 'customer_name', 'customer')},",
            "We're sorry to inform you that your appointment has been cancelled.", rows,
            "Please feel free to book another appointment at your convenience.",
        ),
        title="Appointment cancelled",
        body=f"{_g(d, 'service_name')} on {_g(d, 'appointment_date')} was cancelled",
        sms=(f"Your {_g(d, 'service_name')} with {_g(d, 'merchant_name')} on "
             f"{_g(d, 'appointment_date')} has been cancelled."),
    )


def _appointment_rescheduled(d):
    return Rendered(
        subject=f"Appointment Rescheduled - {BRAND}",
        html=_layout(
            "Appointment Rescheduled", "#3B82F6", f"Dear {_g(d, 'customer_name', 'customer')},",
            "Your appointment has moved. The new details are:", _appointment_rows(d),
            "If the new time does not suit you, please contact the merchant.",
        ),
        title="Appointment rescheduled",
        body=f"Now {_g(d, 'appointment_date')} at {_g(d, 'appointment_time')}",
        sms=(f"Your {_g(d, 'service_name')} with {_g(d, 'merchant_name')} moved to "
             f"{_g(d, 'appointment_date')} at {_g(d, 'appointment_time')}."),
    )


def _appointment_reminder(d):
    return Rendered(
        subject=f"Appointment Reminder - {BRAND}",
        html=_layout(
            "Appointment Reminder", "#F59E0B", f"Dear {_g(d, 'customer_name', 'customer')},",
            f"This is a friendly reminder about your upcoming appointment in {_g(d, 'time_until')}.",
            _appointment_rows(d), "Please arrive 10 minutes early. We look forward to seeing you!",
        ),
        title="Appointment reminder",
        body=f"{_g(d, 'service_name')} in {_g(d, 'time_until')}",
        sms=(f"Reminder: {_g(d, 'service_name')} with {_g(d, 'merchant_name')} in "
             f"{_g(d, 'time_until')} ({_g(d, 'appointment_time')})."),
    )


def _merchant_reminder(d):
    body = (f"{_g(d, 'customer_name', 'A customer')} for {_g(d, 'service_name')} "
            f"in {_g(d, 'time_until')}")
    return Rendered(
        subject=f"Upcoming Appointment - {BRAND}",
        html=_layout("Upcoming Appointment", "#F59E0B", f"Hi {_g(d, 'merchant_name')},",
                     body, _appointment_rows(d, merchant=False), ""),
        title="Upcoming appointment",
        body=body,
        sms=f"Upcoming: {body}.",
    )


def _new_appointment(d):
    body = (f"{_g(d, 'customer_name', 'A customer')} booked {_g(d, 'service_name')} "
            f"for {_g(d, 'appointment_date')} at {_g(d, 'appointment_time')}")
    return Rendered(
        subject=f"New Appointment - {BRAND}",
        html=_layout("New Appointment", "#6366F1", f"Hi {_g(d, 'merchant_name')},",
                     body, _appointment_rows(d, merchant=False), ""),
        title="New Appointment",
        body=body,
        sms=f"New booking: {body}.",
    )


# ──────────────────────────────
# Subscription templates
# ──────────────────────────────


def _subscription_expiry(d):
    days = _g(d, "days_left")
    unit = "day" if days == "1" else "days"
    lead = f"Your {_g(d, 'plan')} subscription expires in {days} {unit}."
    return Rendered(
        subject=f"Your subscription expires in {days} {unit} - {BRAND}",
        html=_layout(
            "Subscription Expiring", "#F59E0B", f"Hi {_g(d, 'owner_name', _g(d, 'business_name'))},",
            lead, {"Plan": _g(d, "plan"), "Expiry Date": _g(d, "expiry_date")},
            "Renew now to keep accepting bookings without interruption.",
        ),
        title="Subscription Expiring",
        body=lead,
        sms=f"{BRAND}: {lead} Renew to avoid interruption.",
    )


def _subscription_expired(d):
    lead = (f"Your {_g(d, 'plan')} subscription has expired and "
            f"{_g(d, 'business_name', 'your business')} no longer accepts bookings.")
    return Rendered(
        subject=f"Your subscription has expired - {BRAND}",
        html=_layout(
            "Subscription Expired", "#EF4444", f"Hi {_g(d, 'owner_name', _g(d, 'business_name'))},",
            lead, {"Plan": _g(d, "plan"), "Expired On": _g(d, "expiry_date")},
            "Renew your subscription to reactivate your account.",
        ),
        title="Subscription Expired",
        body=lead,
        sms=f"{BRAND}: {lead}",
    )


def _payment_failed(d):
    lead = f"We could not process the payment for your {_g(d, 'plan')} subscription."
    return Rendered(
        subject=f"Payment Failed - {BRAND}",
        html=_layout(
            "Payment Failed", "#EF4444", f"Hi {_g(d, 'owner_name', _g(d, 'business_name'))},",
            lead, {"Amount": f"{_g(d, 'amount')} {_g(d, 'currency')}".strip()},
            "Please update your payment method to keep your subscription active.",
        ),
        title="Payment Failed",
        body=lead,
        sms=f"{BRAND}: {lead}",
    )


def _welcome(d):
    lead = f"Welcome to {BRAND}, {_g(d, 'business_name')}! Your account is ready."
    return Rendered(
        subject=f"Welcome to {BRAND}",
        html=_layout("Welcome!", "#6366F1", f"Hi {_g(d, 'owner_name', _g(d, 'business_name'))},",
                     lead, {"Plan": d.get("plan")}, "We are glad to have you."),
        title="Welcome",
        body=lead,
        sms=lead,
    )


def _default(d):
    message = _g(d, "message", f"You have a new notification from {BRAND}.")
    title = _g(d, "title", "Notification")
    return Rendered(
        subject=f"Notification from {BRAND}",
        html=f"<p>{html.escape(message)}</p>",
        title=title,
        body=message,
        sms=message,
    )


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Rendered]] = {
    "appointment_confirmation": _appointment_confirmation,
    "appointment_confirmed": _appointment_confirmed,
    "appointment_cancelled": _appointment_cancelled,
    "appointment_rescheduled": _appointment_rescheduled,
    "appointment_reminder": _appointment_reminder,
    "merchant_reminder": _merchant_reminder,
    "new_appointment": _new_appointment,
    "subscription_expiry": _subscription_expiry,
    "subscription_expired": _subscription_expired,
    "payment_failed": _payment_failed,
    "welcome": _welcome,
}


def render(template: str, data: Dict[str, Any]) -> Rendered:
    return TEMPLATES.get(template, _default)(data)


def appointment_context(appointment: Dict[str, Any], merchant: Dict[str, Any] | None,
                        **extra: Any) -> Dict[str, Any]:
    """Template data for an appointment (a row dict or a snapshot dump)."""
    customer = appointment.get("customer_info") or {}
    when = appointment["date_time"]
    if isinstance(when, str):
        when = datetime.fromisoformat(when)
    day, clock = local_date_time(when)
    return {
        "appointment_id": appointment.get("appointment_id"),
        "customer_name": customer.get("name"),
        "service_name": appointment.get("service_name"),
        "merchant_name": (merchant or {}).get("business_name"),
        "appointment_date": day,
        "appointment_time": clock,
        **extra,
    }
