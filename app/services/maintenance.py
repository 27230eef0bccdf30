"""Housekeeping sweeps: weekly report, daily backup, cleanup."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from app.services.notifications import NotificationDispatcher
from db.db import utcnow
from db.documents import DocumentStore, WriteOp, chunked

_LOGGER = logging.getLogger(__name__)

BACKUP_COLLECTIONS = ("merchants", "subscriptions")


def _serialise(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.isoformat() if hasattr(v, "isoformat") else v for k, v in row.items()}


class MaintenanceTasks:
    def __init__(
        self,
        documents: DocumentStore,
        dispatcher: NotificationDispatcher,
        *,
        admin_user_ids: Optional[List[str]] = None,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._documents = documents
        self._dispatcher = dispatcher
        self._admins = list(admin_user_ids or [])
        self._retention = timedelta(days=retention_days)
        self._clock = clock

    async def weekly_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        start = now - timedelta(days=7)
        since = [("created_at", ">", start), ("created_at", "<=", now)]

        new_subscriptions = await self._documents.query("subscriptions", since)
        report = {
            "period": "weekly",
            "start_date": start,
            "end_date": now,
            "new_merchants": await self._documents.count("merchants", since),
            "new_subscriptions": len(new_subscriptions),
            "new_appointments": await self._documents.count("appointments", since),
            "revenue": round(sum(s["amount"] or 0 for s in new_subscriptions), 2),
            "created_at": now,
        }
        report_id = await self._documents.create("analytics_reports", None, report)
        _LOGGER.info("Weekly report %s: %s", report_id, {k: report[k] for k in
                     ("new_merchants", "new_subscriptions", "new_appointments", "revenue")})

        summary = (f"{report['new_merchants']} new merchants, {report['new_subscriptions']} new "
                   f"subscriptions, {report['new_appointments']} new appointments, "
                   f"revenue {report['revenue']:.2f}")
        for admin_id in self._admins:
            await self._dispatcher.dispatch(
                "in_app", admin_id, "weekly_report",
                {"title": "Weekly Report", "message": summary, "report_id": report_id},
            )
        return {"report_id": report_id, **report}

    async def daily_backup(self, now: Optional[datetime] = None) -> str:
        now = now or self._clock()
        payload = {
            name: [_serialise(row) for row in await self._documents.query(name)]
            for name in BACKUP_COLLECTIONS
        }
        backup_id = await self._documents.create("backups", None, {"payload": payload, "created_at": now})
        _LOGGER.info("Backup %s: %s", backup_id, {k: len(v) for k, v in payload.items()})
        return backup_id

    async def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete read notifications past retention and slots dated before yesterday."""
        now = now or self._clock()
        notifications = await self._documents.query("notifications", [
            ("read", "==", True),
            ("created_at", "<", now - self._retention),
        ])
        slots = await self._documents.query("time_slots", [
            ("slot_date", "<", (now - timedelta(days=1)).date()),
        ])

        ops = [WriteOp.delete("notifications", n["notification_id"]) for n in notifications]
        ops += [WriteOp.delete("time_slots", s["slot_id"]) for s in slots]
        for batch in chunked(ops):
            await self._documents.batch_write(batch)

        removed = {"notifications": len(notifications), "time_slots": len(slots)}
        _LOGGER.info("Cleanup removed %s", removed)
        return removed
