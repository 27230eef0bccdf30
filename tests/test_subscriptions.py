from datetime import datetime, timedelta, timezone

import pytest

from app.errors import DataIntegrityError, InvalidTransition
from app.services.subscriptions import SubscriptionService, add_months
from app.types.booking_contract import SubscriptionCreate, SubscriptionRenew
from tests.conftest import NOW, add_merchant, add_subscription


@pytest.fixture
def subscriptions(services):
    return SubscriptionService(services.documents, services.dispatcher, clock=lambda: NOW)


def test_add_months_clamps_day():
    jan31 = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)
    assert add_months(jan31, 1) == datetime(2024, 2, 29, 9, 0, tzinfo=timezone.utc)
    assert add_months(jan31, 13) == datetime(2025, 2, 28, 9, 0, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 11, 15, tzinfo=timezone.utc), 2) == datetime(2025, 1, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_create_links_merchant_and_sends_welcome(services, channels, subscriptions):
    await add_merchant(services.documents, is_active=False)

    sub = await subscriptions.create(
        SubscriptionCreate(merchant_id="m1", plan="premium", duration=3, amount=99.0)
    )

    assert sub["status"] == "active"
    assert sub["start_date"] == NOW
    assert sub["expiry_date"] == NOW.replace(month=6)
    merchant = await services.documents.get("merchants", "m1")
    assert merchant["subscription_id"] == sub["subscription_id"]
    assert merchant["is_active"] is True
    assert [e["subject"] for e in channels.emails] == ["Welcome to Bookings"]


@pytest.mark.asyncio
async def test_create_for_unknown_merchant_fails(subscriptions):
    with pytest.raises(DataIntegrityError):
        await subscriptions.create(SubscriptionCreate(merchant_id="nope", plan="basic", duration=1, amount=10))


@pytest.mark.asyncio
async def test_renew_extends_from_later_of_now_and_expiry(services, subscriptions):
    await add_merchant(services.documents)
    await add_subscription(services.documents, expiry=NOW + timedelta(days=10))

    renewed = await subscriptions.renew("s1", SubscriptionRenew(duration=1, amount=35.0))

    assert renewed["expiry_date"] == add_months(NOW + timedelta(days=10), 1)
    assert renewed["amount"] == 35.0


@pytest.mark.asyncio
async def test_renew_after_payment_failure_reactivates(services, subscriptions):
    await add_merchant(services.documents)
    await add_subscription(services.documents, status="payment_failed", expiry=NOW - timedelta(days=2))

    renewed = await subscriptions.renew("s1", SubscriptionRenew(duration=2))

    assert renewed["status"] == "active"
    assert renewed["expiry_date"] == add_months(NOW, 2)


@pytest.mark.asyncio
async def test_expired_subscription_cannot_be_renewed_but_can_be_cancelled(services, subscriptions):
    await add_merchant(services.documents, is_active=False)
    await add_subscription(services.documents, status="expired", expiry=NOW - timedelta(days=2))

    with pytest.raises(InvalidTransition):
        await subscriptions.renew("s1", SubscriptionRenew())

    cancelled = await subscriptions.cancel("s1")
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelled_at"] == NOW

    with pytest.raises(InvalidTransition):
        await subscriptions.cancel("s1")


@pytest.mark.asyncio
async def test_payment_failure_then_success(services, channels, subscriptions):
    await add_merchant(services.documents)
    await add_subscription(services.documents)

    failed = await subscriptions.record_payment_failed("s1")
    assert failed["status"] == "payment_failed"
    assert failed["last_payment_attempt"] == NOW
    assert [e["subject"] for e in channels.emails] == ["Payment Failed - Bookings"]

    recovered = await subscriptions.record_payment_succeeded("s1")
    assert recovered["status"] == "active"
    assert recovered["last_payment_date"] == NOW


@pytest.mark.asyncio
async def test_stripe_payment_intent_events(services, subscriptions):
    await add_merchant(services.documents)
    await add_subscription(services.documents)

    event = {
        "id": "evt_1",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_1", "metadata": {"subscriptionId": "s1"}}},
    }
    assert await subscriptions.handle_stripe_event(event) == "handled"
    assert (await services.documents.get("subscriptions", "s1"))["status"] == "payment_failed"

    event["type"] = "payment_intent.succeeded"
    assert await subscriptions.handle_stripe_event(event) == "handled"
    assert (await services.documents.get("subscriptions", "s1"))["status"] == "active"


@pytest.mark.asyncio
async def test_stripe_subscription_lifecycle_events(services, subscriptions):
    await add_merchant(services.documents)
    stripe_sub = {
        "id": "sub_123",
        "status": "active",
        "currency": "usd",
        "metadata": {"merchantId": "m1", "plan": "basic"},
        "items": {"data": [{"price": {"unit_amount": 2900}}]},
        "current_period_end": int((NOW + timedelta(days=31)).timestamp()),
    }

    created = {"id": "evt_1", "type": "customer.subscription.created", "data": {"object": stripe_sub}}
    assert await subscriptions.handle_stripe_event(created) == "handled"
    # redelivery does not create a second row
    assert await subscriptions.handle_stripe_event(created) == "ignored"

    rows = await services.documents.query("subscriptions", [("stripe_subscription_id", "==", "sub_123")])
    assert len(rows) == 1
    assert rows[0]["amount"] == 29.0
    assert rows[0]["expiry_date"] == NOW + timedelta(days=31)

    past_due = {"id": "evt_2", "type": "customer.subscription.updated",
                "data": {"object": {**stripe_sub, "status": "past_due"}}}
    assert await subscriptions.handle_stripe_event(past_due) == "handled"
    deleted = {"id": "evt_3", "type": "customer.subscription.deleted", "data": {"object": stripe_sub}}
    assert await subscriptions.handle_stripe_event(deleted) == "handled"

    row = await services.documents.get("subscriptions", rows[0]["subscription_id"])
    assert row["status"] == "cancelled"


@pytest.mark.asyncio
async def test_stripe_event_for_unknown_records_is_ignored(subscriptions):
    event = {"id": "evt_9", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_missing"}}}
    assert await subscriptions.handle_stripe_event(event) == "ignored"
    assert await subscriptions.handle_stripe_event({"id": "evt_10", "type": "charge.refunded",
                                                     "data": {"object": {}}}) == "ignored"
