"""Builds the service graph for one process or one ``asyncio.run``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.appointments import AppointmentLifecycle
from app.services.maintenance import MaintenanceTasks
from app.services.notifications import NotificationDispatcher
from app.services.reminder_scheduler import ReminderScheduler
from app.services.subscription_expiry import SubscriptionExpiryEngine
from app.services.subscriptions import SubscriptionService
from config import settings
from db.db import make_oneshot_engine, session_maker_for
from db.documents import DocumentStore
from db.reminder_store import ReminderStore

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Services:
    documents: DocumentStore
    reminders: ReminderStore
    dispatcher: NotificationDispatcher
    scheduler: ReminderScheduler
    expiry: SubscriptionExpiryEngine
    subscriptions: SubscriptionService
    appointments: AppointmentLifecycle
    maintenance: MaintenanceTasks


def build_services(session_maker: async_sessionmaker[AsyncSession], **channels: Any) -> Services:
    """Wire every service onto ``session_maker``.

    ``channels`` may override ``email_sender``, ``push_sender`` and
    ``sms_sender`` of the dispatcher.
    """
    documents = DocumentStore(session_maker)
    reminders = ReminderStore(session_maker)
    dispatcher = NotificationDispatcher(documents, timeout=settings.DISPATCH_TIMEOUT, **channels)
    scheduler = ReminderScheduler(
        reminders, dispatcher,
        lookback=timedelta(minutes=settings.REMINDER_LOOKBACK_MINUTES),
        concurrency=settings.SWEEP_CONCURRENCY,
        store_timeout=settings.STORE_TIMEOUT,
    )
    return Services(
        documents=documents,
        reminders=reminders,
        dispatcher=dispatcher,
        scheduler=scheduler,
        expiry=SubscriptionExpiryEngine(documents, dispatcher, store_timeout=settings.STORE_TIMEOUT),
        subscriptions=SubscriptionService(documents, dispatcher),
        appointments=AppointmentLifecycle(documents, dispatcher, scheduler, timezone=settings.DEFAULT_TIMEZONE),
        maintenance=MaintenanceTasks(
            documents, dispatcher,
            admin_user_ids=settings.ADMIN_USER_IDS,
            retention_days=settings.NOTIFICATION_RETENTION_DAYS,
        ),
    )


async def run_with_services(fn: Callable[[Services], Awaitable[T]]) -> T:
    """Run ``fn`` against a throwaway engine and dispose it afterwards."""
    engine = make_oneshot_engine()
    try:
        return await fn(build_services(session_maker_for(engine)))
    finally:
        await engine.dispose()


SWEEPS: Dict[str, Callable[[Services], Awaitable[Any]]] = {
    "reminders": lambda s: s.scheduler.sweep(),
    "subscription-expiry": lambda s: s.expiry.sweep(),
    "weekly-report": lambda s: s.maintenance.weekly_report(),
    "daily-backup": lambda s: s.maintenance.daily_backup(),
    "cleanup": lambda s: s.maintenance.cleanup(),
}
