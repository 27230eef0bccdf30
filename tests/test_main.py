import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import main
from app.errors import DataIntegrityError, StoreError


class _StubSubscriptions:
    def __init__(self, error=None):
        self.events = []
        self.error = error

    async def handle_stripe_event(self, event):
        if self.error:
            raise self.error
        self.events.append(event)
        return "handled"

    async def cancel(self, subscription_id):
        raise DataIntegrityError(f"subscription {subscription_id} does not exist")


class _StubAppointments:
    async def book(self, body, defer=None):
        raise DataIntegrityError(f"merchant {body.merchant_id} does not exist")


@pytest.fixture
def stub():
    stub = SimpleNamespace(subscriptions=_StubSubscriptions(), appointments=_StubAppointments())
    main.app.dependency_overrides[main.get_services] = lambda: stub
    yield stub
    main.app.dependency_overrides.clear()


@pytest.fixture
def client():
    # no context manager: startup validation needs a real database URL
    return TestClient(main.app)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_stripe_webhook_dev_mode_accepts_unsigned_json(client, stub, monkeypatch):
    monkeypatch.setattr(main.settings, "STRIPE_WEBHOOK_SECRET", None)
    event = {"id": "evt_1", "type": "payment_intent.succeeded",
             "data": {"object": {"metadata": {"subscriptionId": "s1"}}}}

    res = client.post("/v1/webhooks/stripe", content=json.dumps(event))

    assert res.status_code == 200
    assert res.json() == {"received": True, "result": "handled"}
    assert stub.subscriptions.events[0]["id"] == "evt_1"


def test_stripe_webhook_rejects_bad_signature(client, stub, monkeypatch):
    monkeypatch.setattr(main.settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")

    res = client.post("/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "garbage"})

    assert res.status_code == 400
    assert stub.subscriptions.events == []


def test_stripe_webhook_store_failure_asks_for_redelivery(client, stub, monkeypatch):
    monkeypatch.setattr(main.settings, "STRIPE_WEBHOOK_SECRET", None)
    stub.subscriptions.error = StoreError("db down")

    res = client.post("/v1/webhooks/stripe", content=json.dumps({"id": "e", "type": "x", "data": {"object": {}}}))

    assert res.status_code == 503


def test_unknown_records_map_to_404(client, stub):
    assert client.post("/v1/subscriptions/nope/cancel").status_code == 404
    res = client.post("/v1/appointments", json={
        "merchant_id": "ghost",
        "customer_info": {"name": "Sam"},
        "service_name": "Cut",
        "date_time": "2030-01-01T09:00:00Z",
    })
    assert res.status_code == 404


def test_invalid_booking_payload_is_422(client, stub):
    res = client.post("/v1/appointments", json={"merchant_id": "m1"})
    assert res.status_code == 422
