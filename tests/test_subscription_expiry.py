import asyncio
from datetime import timedelta

import pytest

from app.services.subscription_expiry import SubscriptionExpiryEngine
from tests.conftest import NOW, add_merchant, add_subscription


@pytest.mark.asyncio
async def test_expired_subscription_deactivates_merchant_once(services, channels):
    await add_merchant(services.documents)
    await add_subscription(services.documents, expiry=NOW - timedelta(hours=1))

    report = await services.expiry.sweep(now=NOW)

    assert (report.checked, report.expired, report.notified) == (1, 1, 0)
    sub = await services.documents.get("subscriptions", "s1")
    merchant = await services.documents.get("merchants", "m1")
    assert sub["status"] == "expired"
    assert sub["expired_at"] == NOW
    assert merchant["is_active"] is False
    assert merchant["deactivated_at"] == NOW
    assert [e["subject"] for e in channels.emails] == ["Your subscription has expired - Bookings"]

    again = await services.expiry.sweep(now=NOW + timedelta(days=1))
    assert again.checked == 0
    assert len(channels.emails) == 1


@pytest.mark.asyncio
async def test_warning_nine_days_out(services, channels):
    await add_merchant(services.documents)
    await add_subscription(services.documents, expiry=NOW + timedelta(days=8, hours=20))

    report = await services.expiry.sweep(now=NOW)

    assert report.notified == 1
    assert channels.emails[0]["to"] == "owner@zenspa.test"
    assert "9 days" in channels.emails[0]["subject"]
    notes = await services.documents.query("notifications", [("user_id", "==", "m1")])
    assert [n["severity"] for n in notes] == ["warning"]
    sub = await services.documents.get("subscriptions", "s1")
    assert sub["status"] == "active"


@pytest.mark.asyncio
async def test_no_warning_ten_days_out(services, channels):
    await add_merchant(services.documents)
    await add_subscription(services.documents, expiry=NOW + timedelta(days=10))

    report = await services.expiry.sweep(now=NOW)

    assert (report.checked, report.notified, report.expired) == (1, 0, 0)
    assert channels.emails == []


@pytest.mark.asyncio
async def test_missing_merchant_is_skipped_and_left_untouched(services, channels):
    await add_merchant(services.documents, "m2")
    await add_subscription(services.documents, "s1", merchant_id="ghost", expiry=NOW - timedelta(days=1))
    await add_subscription(services.documents, "s2", merchant_id="m2", expiry=NOW - timedelta(days=1))

    report = await services.expiry.sweep(now=NOW)

    assert report.skipped == 1
    assert report.expired == 1
    assert (await services.documents.get("subscriptions", "s1"))["status"] == "active"
    assert (await services.documents.get("subscriptions", "s2"))["status"] == "expired"


@pytest.mark.asyncio
async def test_non_active_subscriptions_are_ignored(services, channels):
    await add_merchant(services.documents)
    await add_subscription(services.documents, status="payment_failed", expiry=NOW - timedelta(days=3))

    report = await services.expiry.sweep(now=NOW)

    assert report.checked == 0
    assert (await services.documents.get("merchants", "m1"))["is_active"] is True


class _SlowMerchantLookup:
    def __init__(self, documents, slow_merchant_id):
        self._documents = documents
        self._slow = slow_merchant_id

    def __getattr__(self, name):
        return getattr(self._documents, name)

    async def get(self, collection, doc_id):
        if collection == "merchants" and doc_id == self._slow:
            await asyncio.sleep(3600)
        return await self._documents.get(collection, doc_id)


@pytest.mark.asyncio
async def test_hung_store_call_skips_only_that_subscription(services, channels):
    for n in (1, 2):
        await add_merchant(services.documents, f"m{n}")
        await add_subscription(services.documents, f"s{n}", merchant_id=f"m{n}",
                               expiry=NOW - timedelta(hours=1))
    engine = SubscriptionExpiryEngine(
        _SlowMerchantLookup(services.documents, "m1"), services.dispatcher, store_timeout=0.2,
    )

    report = await asyncio.wait_for(engine.sweep(now=NOW), 5)

    assert (report.checked, report.expired) == (2, 1)
    assert len(report.errors) == 1 and report.errors[0].startswith("s1:")
    assert (await services.documents.get("subscriptions", "s1"))["status"] == "active"
    assert (await services.documents.get("subscriptions", "s2"))["status"] == "expired"
