from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from app.services.wiring import build_services
from app.types.booking_contract import PushTokenResult
from db.db import create_all, session_maker_for

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


class FakeChannels:
    """Records every provider call; individual recipients can be made to fail."""

    def __init__(self):
        self.emails = []
        self.sms = []
        self.pushes = []
        self.failing = set()
        self.push_outcome = None  # token -> PushTokenResult

    async def send_email(self, to, subject, html):
        if to in self.failing:
            raise RuntimeError(f"mailbox {to} unavailable")
        self.emails.append({"to": to, "subject": subject, "html": html})
        return {"id": f"em_{len(self.emails)}"}

    async def send_sms(self, to, body):
        if to in self.failing:
            raise RuntimeError(f"number {to} unreachable")
        self.sms.append({"to": to, "body": body})

    async def send_push(self, tokens, title, body, data):
        self.pushes.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        if self.push_outcome is not None:
            return [self.push_outcome(t) for t in tokens]
        return [PushTokenResult(token=t, success=True) for t in tokens]


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await create_all(engine)
    yield session_maker_for(engine)
    await engine.dispose()


@pytest.fixture
def channels():
    return FakeChannels()


@pytest.fixture
def services(session_maker, channels):
    return build_services(
        session_maker,
        email_sender=channels.send_email,
        push_sender=channels.send_push,
        sms_sender=channels.send_sms,
    )


async def add_merchant(documents, merchant_id="m1", **overrides):
    data = {
        "business_name": "Zen Spa",
        "owner_name": "Alex Doe",
        "email": "owner@zenspa.test",
        "phone": "+15550000001",
        "is_active": True,
        "fcm_tokens": ["tok-1"],
        "created_at": NOW - timedelta(days=30),
        "updated_at": NOW - timedelta(days=30),
    }
    data.update(overrides)
    await documents.create("merchants", merchant_id, data)
    return await documents.get("merchants", merchant_id)


async def add_appointment(documents, appointment_id="a1", merchant_id="m1", when=None, **overrides):
    data = {
        "merchant_id": merchant_id,
        "customer_info": {"name": "Sam", "email": "sam@example.test", "phone": "+15550000002"},
        "service_name": "Massage",
        "price": 80.0,
        "date_time": when or NOW + timedelta(days=2),
        "status": "confirmed",
        "created_at": NOW,
        "updated_at": NOW,
    }
    data.update(overrides)
    await documents.create("appointments", appointment_id, data)
    return await documents.get("appointments", appointment_id)


async def add_subscription(documents, subscription_id="s1", merchant_id="m1", expiry=None, **overrides):
    data = {
        "merchant_id": merchant_id,
        "plan": "basic",
        "amount": 29.0,
        "currency": "USD",
        "status": "active",
        "start_date": NOW - timedelta(days=30),
        "expiry_date": expiry or NOW + timedelta(days=30),
        "created_at": NOW - timedelta(days=30),
        "updated_at": NOW - timedelta(days=30),
    }
    data.update(overrides)
    await documents.create("subscriptions", subscription_id, data)
    return await documents.get("subscriptions", subscription_id)
