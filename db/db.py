"""
Async DB layer for the booking backend.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Awaitable, TypeVar
from uuid import uuid4

from sqlalchemy import JSON, Date, DateTime, Index, inspect
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

from app.errors import StoreError

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ──────────────────────────────────────────────────────────────────────
# 1. Column types & declarative metadata
# ──────────────────────────────────────────────────────────────────────
class UTCDateTime(TypeDecorator):
    """TIMESTAMPTZ that only accepts aware datetimes and always returns UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("timestamps must be timezone-aware")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            # SQLite has no TZ storage; values are stored as UTC wall time.
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: UTCDateTime(),
        date: Date(),
        dict[str, Any]: JSON,
        list[str]: JSON,
    }

    def to_dict(self) -> dict[str, Any]:
        return {attr.key: getattr(self, attr.key) for attr in inspect(self).mapper.column_attrs}


# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def build_url(url: str | None = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if "+asyncpg" not in url and "+aiosqlite" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url


def _connect_args(url: str) -> dict[str, Any]:
    """asyncpg connect and per-statement timeouts, from ``STORE_TIMEOUT``."""
    if "+asyncpg" not in url:
        return {}
    timeout = float(os.getenv("STORE_TIMEOUT", "10"))
    return {"timeout": timeout, "command_timeout": timeout}


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = build_url()
        _engine = create_async_engine(url, pool_size=5, max_overflow=5, connect_args=_connect_args(url))
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_maker


def make_oneshot_engine(url: str | None = None) -> AsyncEngine:
    """Engine for a single ``asyncio.run`` (Celery task, cron script).

    Pooled connections are bound to the loop that opened them, so each run gets
    its own NullPool engine and disposes it afterwards.
    """
    url = build_url(url)
    return create_async_engine(url, poolclass=NullPool, connect_args=_connect_args(url))


def session_maker_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session; connectivity failures surface as ``StoreError``."""
    try:
        async with session_maker() as session:
            yield session
    except (OperationalError, InterfaceError, OSError, asyncio.TimeoutError) as exc:
        raise StoreError(str(exc)) from exc


async def bounded(awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await one store call; overrunning ``timeout`` seconds raises ``StoreError``."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise StoreError(f"store call timed out after {timeout}s") from exc


# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Merchant(Base):
    __tablename__ = "merchants"

    merchant_id:     Mapped[str] = mapped_column(primary_key=True, default=new_id)
    business_name:   Mapped[str]
    owner_name:      Mapped[str]
    email:           Mapped[str]
    phone:           Mapped[str | None]
    category:        Mapped[str | None]
    is_active:       Mapped[bool] = mapped_column(default=True)
    deactivated_at:  Mapped[datetime | None]
    subscription_id: Mapped[str | None]
    fcm_tokens:      Mapped[list[str]] = mapped_column(default=list)
    profile_image:   Mapped[str | None]
    created_at:      Mapped[datetime] = mapped_column(default=utcnow)
    updated_at:      Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    subscription_id:        Mapped[str] = mapped_column(primary_key=True, default=new_id)
    merchant_id:            Mapped[str] = mapped_column(index=True)
    plan:                   Mapped[str]
    amount:                 Mapped[float]
    currency:               Mapped[str] = mapped_column(default="USD")
    status:                 Mapped[str] = mapped_column(default="active", index=True)
    start_date:             Mapped[datetime] = mapped_column(default=utcnow)
    expiry_date:            Mapped[datetime]
    expired_at:             Mapped[datetime | None]
    cancelled_at:           Mapped[datetime | None]
    last_payment_date:      Mapped[datetime | None]
    last_payment_attempt:   Mapped[datetime | None]
    stripe_subscription_id: Mapped[str | None] = mapped_column(index=True)
    created_at:             Mapped[datetime] = mapped_column(default=utcnow)
    updated_at:             Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Appointment(Base):
    __tablename__ = "appointments"

    appointment_id: Mapped[str] = mapped_column(primary_key=True, default=new_id)
    merchant_id:    Mapped[str] = mapped_column(index=True)
    customer_info:  Mapped[dict[str, Any]]
    service_name:   Mapped[str]
    price:          Mapped[float] = mapped_column(default=0.0)
    date_time:      Mapped[datetime]
    status:         Mapped[str] = mapped_column(default="pending")
    created_at:     Mapped[datetime] = mapped_column(default=utcnow)
    updated_at:     Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Reminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_due", "sent", "scheduled_for"),
    )

    reminder_id:    Mapped[str] = mapped_column(primary_key=True, default=new_id)
    appointment_id: Mapped[str] = mapped_column(index=True)
    recipient_type: Mapped[str]
    scheduled_for:  Mapped[datetime]
    payload:        Mapped[dict[str, Any]]
    sent:           Mapped[bool] = mapped_column(default=False)
    failed:         Mapped[bool] = mapped_column(default=False)
    error:          Mapped[str | None]
    claimed_at:     Mapped[datetime | None]
    sent_at:        Mapped[datetime | None]
    created_at:     Mapped[datetime] = mapped_column(default=utcnow)


class TimeSlot(Base):
    __tablename__ = "time_slots"
    __table_args__ = (
        Index("ix_time_slots_lookup", "merchant_id", "date", "start_time"),
    )

    slot_id:        Mapped[str] = mapped_column(primary_key=True, default=new_id)
    merchant_id:    Mapped[str]
    slot_date:      Mapped[date] = mapped_column("date")
    start_time:     Mapped[str]
    end_time:       Mapped[str]
    is_available:   Mapped[bool] = mapped_column(default=True)
    appointment_id: Mapped[str | None]
    created_at:     Mapped[datetime] = mapped_column(default=utcnow)
    updated_at:     Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    notification_id: Mapped[str] = mapped_column(primary_key=True, default=new_id)
    user_id:         Mapped[str] = mapped_column(index=True)
    title:           Mapped[str]
    message:         Mapped[str]
    severity:        Mapped[str] = mapped_column(default="info")
    data:            Mapped[dict[str, Any]] = mapped_column(default=dict)
    read:            Mapped[bool] = mapped_column(default=False)
    created_at:      Mapped[datetime] = mapped_column(default=utcnow)
    read_at:         Mapped[datetime | None]


class AnalyticsReport(Base):
    __tablename__ = "analytics_reports"

    report_id:         Mapped[str] = mapped_column(primary_key=True, default=new_id)
    period:            Mapped[str] = mapped_column(default="weekly")
    start_date:        Mapped[datetime]
    end_date:          Mapped[datetime]
    new_merchants:     Mapped[int] = mapped_column(default=0)
    new_subscriptions: Mapped[int] = mapped_column(default=0)
    new_appointments:  Mapped[int] = mapped_column(default=0)
    revenue:           Mapped[float] = mapped_column(default=0.0)
    created_at:        Mapped[datetime] = mapped_column(default=utcnow)


class Backup(Base):
    __tablename__ = "backups"

    backup_id:  Mapped[str] = mapped_column(primary_key=True, default=new_id)
    payload:    Mapped[dict[str, Any]]
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests and local dev; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine | None = None):
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
