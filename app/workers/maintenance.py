"""Housekeeping tasks: weekly report, daily backup, cleanup."""

from __future__ import annotations

import asyncio
import json

from app.celery_app import celery_app
from app.errors import StoreError
from app.services.wiring import SWEEPS, run_with_services


def _run(task, sweep: str):
    try:
        result = asyncio.run(run_with_services(SWEEPS[sweep]))
    except StoreError as exc:
        raise task.retry(exc=exc, countdown=300)
    # Celery's JSON serializer cannot take datetimes
    return json.loads(json.dumps(result, default=str))


@celery_app.task(name="app.workers.maintenance.weekly_report", bind=True, max_retries=3)
def weekly_report(self):
    return _run(self, "weekly-report")


@celery_app.task(name="app.workers.maintenance.daily_backup", bind=True, max_retries=3)
def daily_backup(self):
    return _run(self, "daily-backup")


@celery_app.task(name="app.workers.maintenance.cleanup", bind=True, max_retries=3)
def cleanup(self):
    return _run(self, "cleanup")
