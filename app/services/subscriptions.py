"""Subscription state machine and Stripe event ingestion.

    active ──▶ payment_failed ──▶ active
      │              │
      ├──▶ expired ──┼──▶ cancelled
      └──────────────┘

``expired`` is only left by cancelling; a lapsed merchant signs up again
through ``create``. Writes that move a status are conditional on the status
they were computed from, so a concurrent sweep or webhook cannot be
overwritten silently.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from app.errors import DataIntegrityError, InvalidTransition
from app.services.notifications import NotificationDispatcher
from app.types.booking_contract import SubscriptionCreate, SubscriptionRenew
from db.db import utcnow
from db.documents import DocumentStore, WriteOp

_LOGGER = logging.getLogger(__name__)

TRANSITIONS: Dict[str, set] = {
    "active": {"payment_failed", "expired", "cancelled"},
    "payment_failed": {"active", "cancelled"},
    "expired": {"cancelled"},
    "cancelled": set(),
}

# Stripe subscription statuses mapped onto ours; anything else is ignored.
STRIPE_STATUS = {
    "active": "active",
    "trialing": "active",
    "past_due": "payment_failed",
    "unpaid": "payment_failed",
    "canceled": "cancelled",
}


def add_months(when: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    index = when.month - 1 + months
    year, month = when.year + index // 12, index % 12 + 1
    day = min(when.day, calendar.monthrange(year, month)[1])
    return when.replace(year=year, month=month, day=day)


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransition("subscription", current, target)


class SubscriptionService:
    def __init__(
        self,
        documents: DocumentStore,
        dispatcher: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._documents = documents
        self._dispatcher = dispatcher
        self._clock = clock

    async def _load(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._documents.get("subscriptions", subscription_id)
        if subscription is None:
            raise DataIntegrityError(f"subscription {subscription_id} does not exist")
        return subscription

    async def _merchant(self, merchant_id: str) -> Dict[str, Any]:
        merchant = await self._documents.get("merchants", merchant_id)
        if merchant is None:
            raise DataIntegrityError(f"merchant {merchant_id} does not exist")
        return merchant

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def create(self, request: SubscriptionCreate,
                     stripe_subscription_id: Optional[str] = None) -> Dict[str, Any]:
        """Start a subscription now and link it to its merchant."""
        now = self._clock()
        merchant = await self._merchant(request.merchant_id)
        op = WriteOp.create("subscriptions", {
            "merchant_id": request.merchant_id,
            "plan": request.plan,
            "amount": request.amount,
            "currency": request.currency,
            "status": "active",
            "start_date": now,
            "expiry_date": add_months(now, request.duration),
            "stripe_subscription_id": stripe_subscription_id,
            "created_at": now,
            "updated_at": now,
        })
        await self._documents.batch_write([
            op,
            WriteOp.update("merchants", request.merchant_id, {
                "subscription_id": op.doc_id,
                "is_active": True,
                "deactivated_at": None,
                "updated_at": now,
            }),
        ])
        _LOGGER.info("Subscription %s (%s) created for merchant %s", op.doc_id, request.plan, request.merchant_id)

        if not merchant.get("subscription_id"):
            await self._dispatcher.dispatch("email", merchant.get("email"), "welcome", {
                "business_name": merchant.get("business_name"),
                "owner_name": merchant.get("owner_name"),
                "plan": request.plan,
            })
        return await self._load(op.doc_id)

    async def cancel(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._load(subscription_id)
        check_transition(subscription["status"], "cancelled")
        now = self._clock()
        await self._documents.update(
            "subscriptions", subscription_id,
            {"status": "cancelled", "cancelled_at": now, "updated_at": now},
            expect={"status": subscription["status"]},
        )
        _LOGGER.info("Subscription %s cancelled (was %s)", subscription_id, subscription["status"])
        return await self._load(subscription_id)

    async def renew(self, subscription_id: str, request: SubscriptionRenew) -> Dict[str, Any]:
        """Extend the expiry by ``request.duration`` months and reactivate.

        The extension counts from the current expiry, or from now when the
        subscription has already run past it.
        """
        subscription = await self._load(subscription_id)
        current = subscription["status"]
        if current != "active":
            check_transition(current, "active")
        now = self._clock()
        base = max(subscription["expiry_date"], now)
        data = {
            "status": "active",
            "expiry_date": add_months(base, request.duration),
            "updated_at": now,
        }
        if request.amount is not None:
            data["amount"] = request.amount
        await self._documents.batch_write([
            WriteOp.update("subscriptions", subscription_id, data, expect={"status": current}),
            WriteOp.update("merchants", subscription["merchant_id"], {
                "is_active": True, "deactivated_at": None, "updated_at": now,
            }),
        ])
        _LOGGER.info("Subscription %s renewed until %s", subscription_id, data["expiry_date"])
        return await self._load(subscription_id)

    # ------------------------------------------------------------------
    # Payment outcomes
    # ------------------------------------------------------------------

    async def record_payment_succeeded(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._load(subscription_id)
        current = subscription["status"]
        if current != "active":
            check_transition(current, "active")
        now = self._clock()
        await self._documents.update(
            "subscriptions", subscription_id,
            {"status": "active", "last_payment_date": now, "updated_at": now},
            expect={"status": current},
        )
        return await self._load(subscription_id)

    async def record_payment_failed(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._load(subscription_id)
        current = subscription["status"]
        now = self._clock()
        if current == "payment_failed":
            await self._documents.update("subscriptions", subscription_id,
                                         {"last_payment_attempt": now, "updated_at": now})
            return await self._load(subscription_id)
        check_transition(current, "payment_failed")
        await self._documents.update(
            "subscriptions", subscription_id,
            {"status": "payment_failed", "last_payment_attempt": now, "updated_at": now},
            expect={"status": current},
        )
        _LOGGER.warning("Payment failed for subscription %s", subscription_id)

        merchant = await self._documents.get("merchants", subscription["merchant_id"])
        if merchant is not None:
            await self._dispatcher.dispatch("email", merchant.get("email"), "payment_failed", {
                "business_name": merchant.get("business_name"),
                "owner_name": merchant.get("owner_name"),
                "plan": subscription["plan"],
                "amount": subscription["amount"],
                "currency": subscription["currency"],
            })
        return await self._load(subscription_id)

    # ------------------------------------------------------------------
    # Stripe webhooks
    # ------------------------------------------------------------------

    async def handle_stripe_event(self, event: Dict[str, Any]) -> str:
        """Apply a verified Stripe event. Returns ``"handled"`` or ``"ignored"``.

        Events that reference unknown records or request an illegal move are
        logged and ignored so Stripe does not keep redelivering them; store
        failures propagate and make the webhook answer 5xx.
        """
        event_type = event["type"]
        obj = event["data"]["object"]
        try:
            if event_type == "payment_intent.succeeded":
                return await self._on_payment_intent(obj, succeeded=True)
            if event_type == "payment_intent.payment_failed":
                return await self._on_payment_intent(obj, succeeded=False)
            if event_type == "customer.subscription.created":
                return await self._on_stripe_subscription_created(obj)
            if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
                status = "cancelled" if event_type.endswith("deleted") else STRIPE_STATUS.get(obj.get("status"))
                return await self._on_stripe_subscription_status(obj["id"], status)
        except (DataIntegrityError, InvalidTransition, ValidationError) as exc:
            _LOGGER.warning("Stripe event %s (%s) ignored: %s", event.get("id"), event_type, exc)
            return "ignored"
        _LOGGER.info("Unhandled Stripe event type %s", event_type)
        return "ignored"

    async def _on_payment_intent(self, intent: Dict[str, Any], succeeded: bool) -> str:
        subscription_id = (intent.get("metadata") or {}).get("subscriptionId")
        if not subscription_id:
            _LOGGER.info("Payment intent %s has no subscriptionId metadata", intent.get("id"))
            return "ignored"
        if succeeded:
            await self.record_payment_succeeded(subscription_id)
        else:
            await self.record_payment_failed(subscription_id)
        return "handled"

    async def _by_stripe_id(self, stripe_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._documents.query(
            "subscriptions", [("stripe_subscription_id", "==", stripe_id)], limit=1
        )
        return rows[0] if rows else None

    async def _on_stripe_subscription_created(self, obj: Dict[str, Any]) -> str:
        if await self._by_stripe_id(obj["id"]) is not None:
            return "ignored"
        metadata = obj.get("metadata") or {}
        items = (obj.get("items") or {}).get("data") or []
        unit_amount = items[0]["price"]["unit_amount"] if items else 0
        request = SubscriptionCreate(
            merchant_id=metadata.get("merchantId") or "",
            plan=metadata.get("plan") or "basic",
            duration=int(metadata.get("duration") or 1),
            amount=(unit_amount or 0) / 100,
            currency=(obj.get("currency") or "usd").upper(),
        )
        created = await self.create(request, stripe_subscription_id=obj["id"])
        period_end = obj.get("current_period_end")
        if period_end:
            expiry = datetime.fromtimestamp(period_end, tz=timezone.utc)
            await self._documents.update("subscriptions", created["subscription_id"], {"expiry_date": expiry})
        return "handled"

    async def _on_stripe_subscription_status(self, stripe_id: str, status: Optional[str]) -> str:
        if status is None:
            return "ignored"
        subscription = await self._by_stripe_id(stripe_id)
        if subscription is None:
            raise DataIntegrityError(f"no subscription for Stripe id {stripe_id}")
        sub_id = subscription["subscription_id"]
        if status == subscription["status"]:
            return "ignored"
        if status == "cancelled":
            await self.cancel(sub_id)
        elif status == "payment_failed":
            await self.record_payment_failed(sub_id)
        else:
            await self.record_payment_succeeded(sub_id)
        return "handled"
