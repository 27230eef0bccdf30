"""Daily subscription expiry sweep.

For every ``active`` subscription the engine works out whole days left and
either expires it (deactivating the merchant in the same batch) or sends a
tiered warning. Per-subscription problems are logged and skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from app.errors import DataIntegrityError, PreconditionFailed, StoreError
from app.services.notifications import NotificationDispatcher
from app.services.reminder_policy import days_until_expiry, expiry_notice_due
from app.services.templates import local_date_time
from app.types.booking_contract import ExpiryReport
from db.db import bounded, utcnow
from db.documents import DocumentStore, WriteOp

_LOGGER = logging.getLogger(__name__)


class SubscriptionExpiryEngine:
    def __init__(
        self,
        documents: DocumentStore,
        dispatcher: NotificationDispatcher,
        *,
        store_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._documents = documents
        self._dispatcher = dispatcher
        self._store_timeout = store_timeout
        self._clock = clock

    async def sweep(self, now: Optional[datetime] = None) -> ExpiryReport:
        now = now or self._clock()
        report = ExpiryReport(started_at=now)
        try:
            active = await bounded(
                self._documents.query("subscriptions", [("status", "==", "active")]), self._store_timeout,
            )
        except StoreError:
            _LOGGER.exception("Expiry sweep aborted: could not list active subscriptions")
            raise

        for subscription in active:
            report.checked += 1
            sub_id = subscription["subscription_id"]
            try:
                outcome = await self._check(subscription, now)
            except DataIntegrityError as exc:
                _LOGGER.error("Subscription %s skipped: %s", sub_id, exc)
                report.skipped += 1
                report.errors.append(f"{sub_id}: {exc}")
                continue
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("Subscription %s: expiry check failed", sub_id)
                report.errors.append(f"{sub_id}: {exc}")
                continue
            if outcome == "expired":
                report.expired += 1
            elif outcome == "notified":
                report.notified += 1

        _LOGGER.info(
            "Expiry sweep: %d checked, %d notified, %d expired, %d skipped",
            report.checked, report.notified, report.expired, report.skipped,
        )
        return report

    async def _check(self, subscription: Dict[str, Any], now: datetime) -> Optional[str]:
        merchant = await bounded(
            self._documents.get("merchants", subscription["merchant_id"]), self._store_timeout,
        )
        if merchant is None:
            raise DataIntegrityError(f"merchant {subscription['merchant_id']} does not exist")

        days = days_until_expiry(subscription["expiry_date"], now)
        if days <= 0:
            return await self._expire(subscription, merchant, now)
        if expiry_notice_due(days):
            await self._warn(subscription, merchant, days)
            return "notified"
        return None

    async def _expire(self, subscription: Dict[str, Any], merchant: Dict[str, Any],
                      now: datetime) -> Optional[str]:
        sub_id = subscription["subscription_id"]
        try:
            await bounded(self._documents.batch_write([
                WriteOp.update(
                    "subscriptions", sub_id,
                    {"status": "expired", "expired_at": now, "updated_at": now},
                    expect={"status": "active"},
                ),
                WriteOp.update(
                    "merchants", merchant["merchant_id"],
                    {"is_active": False, "deactivated_at": now, "updated_at": now},
                ),
            ]), self._store_timeout)
        except PreconditionFailed:
            # Renewed, cancelled or expired by someone else since the query.
            _LOGGER.info("Subscription %s is no longer active; not expiring", sub_id)
            return None

        _LOGGER.info("Subscription %s expired; merchant %s deactivated", sub_id, merchant["merchant_id"])
        data = self._context(subscription, merchant, days=0)
        await self._dispatcher.dispatch("email", merchant.get("email"), "subscription_expired", data)
        await self._dispatcher.dispatch("in_app", merchant["merchant_id"], "subscription_expired",
                                        data, severity="error")
        return "expired"

    async def _warn(self, subscription: Dict[str, Any], merchant: Dict[str, Any], days: int) -> None:
        data = self._context(subscription, merchant, days=days)
        email = await self._dispatcher.dispatch("email", merchant.get("email"), "subscription_expiry", data)
        await self._dispatcher.dispatch("in_app", merchant["merchant_id"], "subscription_expiry",
                                        data, severity="warning")
        if not email.success:
            _LOGGER.warning("Expiry warning email for subscription %s failed: %s",
                            subscription["subscription_id"], email.error)

    @staticmethod
    def _context(subscription: Dict[str, Any], merchant: Dict[str, Any], days: int) -> Dict[str, Any]:
        expiry_day, _ = local_date_time(subscription["expiry_date"])
        return {
            "subscription_id": subscription["subscription_id"],
            "plan": subscription["plan"],
            "days_left": days,
            "expiry_date": expiry_day,
            "business_name": merchant.get("business_name"),
            "owner_name": merchant.get("owner_name"),
        }
