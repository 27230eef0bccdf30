"""Celery application instance shared across the backend.

Start a worker with the beat scheduler embedded:
    celery -A app.celery_app worker -B -Q sweeps -l info --concurrency=2
"""

from celery import Celery
from celery.schedules import crontab

from config import settings

celery_app = Celery("booking_backend", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds
celery_app.conf.timezone = settings.DEFAULT_TIMEZONE

celery_app.conf.task_routes = {
    "app.workers.*": {"queue": "sweeps"},
}

# Beat schedule: one entry per sweep. The reminder lookback follows this cadence.
celery_app.conf.beat_schedule = {
    "sweep-due-reminders": {
        "task": "app.workers.reminder.sweep_due",
        "schedule": settings.REMINDER_SWEEP_MINUTES * 60.0,
    },
    "sweep-subscription-expiry": {
        "task": "app.workers.subscription.sweep_expiry",
        "schedule": crontab(minute=0, hour=settings.EXPIRY_SWEEP_HOUR),
    },
    "weekly-report": {
        "task": "app.workers.maintenance.weekly_report",
        "schedule": crontab(minute=0, hour=settings.WEEKLY_REPORT_HOUR,
                            day_of_week=settings.WEEKLY_REPORT_DAY),
    },
    "daily-backup": {
        "task": "app.workers.maintenance.daily_backup",
        "schedule": crontab(minute=0, hour=settings.BACKUP_HOUR),
    },
    "cleanup": {
        "task": "app.workers.maintenance.cleanup",
        "schedule": crontab(minute=0, hour=settings.CLEANUP_HOUR),
    },
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
import app.workers.subscription  # noqa: E402,F401
import app.workers.maintenance  # noqa: E402,F401
