"""Subscription expiry sweep task."""

from __future__ import annotations

import asyncio

from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.errors import StoreError
from app.services.wiring import SWEEPS, run_with_services

_LOGGER = get_task_logger(__name__)


@celery_app.task(name="app.workers.subscription.sweep_expiry", bind=True, max_retries=3)
def sweep_expiry(self) -> dict:  # noqa: D401
    """Expire lapsed subscriptions and send expiry warnings."""
    try:
        report = asyncio.run(run_with_services(SWEEPS["subscription-expiry"]))
    except StoreError as exc:
        raise self.retry(exc=exc, countdown=60)
    _LOGGER.info("Expiry sweep: %d expired, %d notified", report.expired, report.notified)
    return report.model_dump(mode="json")
