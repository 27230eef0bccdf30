"""Reminder sweep task."""

from __future__ import annotations

import asyncio

from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.errors import StoreError
from app.services.wiring import SWEEPS, run_with_services

_LOGGER = get_task_logger(__name__)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.sweep_due")
def sweep_due() -> dict:  # noqa: D401
    """Fire every reminder in the current due window."""
    try:
        report = asyncio.run(run_with_services(SWEEPS["reminders"]))
    except StoreError:
        # Nothing was claimed; the next beat tick sees the same due set.
        _LOGGER.error("Reminder sweep failed on the store; next cycle will pick it up")
        raise
    if report.errors:
        _LOGGER.warning("Reminder sweep finished with %d error(s)", len(report.errors))
    return report.model_dump(mode="json")
