from .db import (
    Base,
    Merchant,
    Subscription,
    Appointment,
    Reminder,
    TimeSlot,
    Notification,
    AnalyticsReport,
    Backup,
    utcnow,
    new_id,
    get_engine,
    get_session_maker,
    make_oneshot_engine,
    session_maker_for,
    session_scope,
    bounded,
    create_all,
    dispose_engine,
)  # noqa: F401
from .documents import DocumentStore, WriteOp, chunked, MAX_BATCH_SIZE  # noqa: F401
from .reminder_store import ReminderStore  # noqa: F401
