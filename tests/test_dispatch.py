import asyncio

import pytest

from app.services.notifications import NotificationDispatcher
from app.services.templates import render
from app.types.booking_contract import PushTokenResult
from tests.conftest import add_merchant


@pytest.mark.asyncio
async def test_provider_exception_becomes_failed_result(services, channels):
    channels.failing.add("down@example.test")

    result = await services.dispatcher.dispatch("email", "down@example.test", "welcome", {})

    assert result.success is False
    assert "unavailable" in result.error


@pytest.mark.asyncio
async def test_missing_recipient_is_a_failure_not_an_exception(services):
    result = await services.dispatcher.dispatch("sms", None, "appointment_reminder", {})
    assert result.success is False
    assert "no phone number" in result.error


@pytest.mark.asyncio
async def test_slow_channel_times_out(services):
    async def slow_email(to, subject, html):
        await asyncio.sleep(5)

    dispatcher = NotificationDispatcher(services.documents, email_sender=slow_email, timeout=0.05)
    result = await dispatcher.dispatch("email", "sam@example.test", "welcome", {})

    assert result.success is False
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_push_prunes_only_permanently_invalid_tokens(services, channels):
    await add_merchant(services.documents, fcm_tokens=["good", "dead", "flaky"])

    def outcome(token):
        if token == "dead":
            return PushTokenResult(token=token, success=False, error="unregistered", invalid=True)
        if token == "flaky":
            return PushTokenResult(token=token, success=False, error="unavailable")
        return PushTokenResult(token=token, success=True)

    channels.push_outcome = outcome

    result = await services.dispatcher.dispatch("push", "m1", "new_appointment", {"service_name": "Cut"})

    assert result.success is True
    assert result.details == {"delivered": 1, "failed": 2, "pruned": 1}
    merchant = await services.documents.get("merchants", "m1")
    assert merchant["fcm_tokens"] == ["good", "flaky"]


@pytest.mark.asyncio
async def test_push_fails_when_every_token_fails(services, channels):
    await add_merchant(services.documents, fcm_tokens=["dead"])
    channels.push_outcome = lambda t: PushTokenResult(token=t, success=False, error="unregistered", invalid=True)

    result = await services.dispatcher.dispatch("push", "m1", "new_appointment", {})

    assert result.success is False
    assert (await services.documents.get("merchants", "m1"))["fcm_tokens"] == []


@pytest.mark.asyncio
async def test_push_without_tokens_fails(services):
    await add_merchant(services.documents, fcm_tokens=[])
    result = await services.dispatcher.dispatch("push", "m1", "new_appointment", {})
    assert result.success is False
    assert "no device tokens" in result.error


@pytest.mark.asyncio
async def test_in_app_creates_notification(services):
    result = await services.dispatcher.dispatch(
        "in_app", "u1", "subscription_expiry", {"plan": "basic", "days_left": 3}, severity="warning",
    )

    assert result.success is True
    note = await services.documents.get("notifications", result.details["notification_id"])
    assert note["title"] == "Subscription Expiring"
    assert note["severity"] == "warning"
    assert note["read"] is False
    assert note["data"]["days_left"] == 3


def test_templates_escape_user_data():
    rendered = render("appointment_confirmation", {"customer_name": "<b>Eve</b>", "service_name": "Cut"})
    assert "<b>Eve</b>" not in rendered.html
    assert "&lt;b&gt;Eve&lt;/b&gt;" in rendered.html


def test_unknown_template_falls_back_to_generic_message():
    rendered = render("weekly_report", {"title": "Weekly Report", "message": "3 new merchants"})
    assert rendered.title == "Weekly Report"
    assert rendered.body == "3 new merchants"
