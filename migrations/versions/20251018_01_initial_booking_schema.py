"""initial booking schema

Revision ID: 3c1f0a7d2b11
Revises:
Create Date: 2025-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1f0a7d2b11'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TZ = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("merchant_id", sa.String(), primary_key=True),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("owner_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("deactivated_at", TZ, nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("fcm_tokens", sa.JSON(), nullable=False),
        sa.Column("profile_image", sa.String(), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("updated_at", TZ, nullable=False),
    )

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(), primary_key=True),
        sa.Column("merchant_id", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("start_date", TZ, nullable=False),
        sa.Column("expiry_date", TZ, nullable=False),
        sa.Column("expired_at", TZ, nullable=True),
        sa.Column("cancelled_at", TZ, nullable=True),
        sa.Column("last_payment_date", TZ, nullable=True),
        sa.Column("last_payment_attempt", TZ, nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("updated_at", TZ, nullable=False),
    )
    op.create_index("ix_subscriptions_merchant_id", "subscriptions", ["merchant_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_stripe_subscription_id", "subscriptions", ["stripe_subscription_id"])

    op.create_table(
        "appointments",
        sa.Column("appointment_id", sa.String(), primary_key=True),
        sa.Column("merchant_id", sa.String(), nullable=False),
        sa.Column("customer_info", sa.JSON(), nullable=False),
        sa.Column("service_name", sa.String(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("date_time", TZ, nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("updated_at", TZ, nullable=False),
    )
    op.create_index("ix_appointments_merchant_id", "appointments", ["merchant_id"])

    op.create_table(
        "reminders",
        sa.Column("reminder_id", sa.String(), primary_key=True),
        sa.Column("appointment_id", sa.String(), nullable=False),
        sa.Column("recipient_type", sa.String(), nullable=False),
        sa.Column("scheduled_for", TZ, nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=False),
        sa.Column("failed", sa.Boolean(), nullable=False),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("claimed_at", TZ, nullable=True),
        sa.Column("sent_at", TZ, nullable=True),
        sa.Column("created_at", TZ, nullable=False),
    )
    op.create_index("ix_reminders_appointment_id", "reminders", ["appointment_id"])
    op.create_index("ix_reminders_due", "reminders", ["sent", "scheduled_for"])

    op.create_table(
        "time_slots",
        sa.Column("slot_id", sa.String(), primary_key=True),
        sa.Column("merchant_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(), nullable=False),
        sa.Column("end_time", sa.String(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("appointment_id", sa.String(), nullable=True),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("updated_at", TZ, nullable=False),
    )
    op.create_index("ix_time_slots_lookup", "time_slots", ["merchant_id", "date", "start_time"])

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("read_at", TZ, nullable=True),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "analytics_reports",
        sa.Column("report_id", sa.String(), primary_key=True),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("start_date", TZ, nullable=False),
        sa.Column("end_date", TZ, nullable=False),
        sa.Column("new_merchants", sa.Integer(), nullable=False),
        sa.Column("new_subscriptions", sa.Integer(), nullable=False),
        sa.Column("new_appointments", sa.Integer(), nullable=False),
        sa.Column("revenue", sa.Float(), nullable=False),
        sa.Column("created_at", TZ, nullable=False),
    )

    op.create_table(
        "backups",
        sa.Column("backup_id", sa.String(), primary_key=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", TZ, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("backups")
    op.drop_table("analytics_reports")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_time_slots_lookup", table_name="time_slots")
    op.drop_table("time_slots")
    op.drop_index("ix_reminders_due", table_name="reminders")
    op.drop_index("ix_reminders_appointment_id", table_name="reminders")
    op.drop_table("reminders")
    op.drop_index("ix_appointments_merchant_id", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_subscriptions_stripe_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_merchant_id", table_name="subscriptions")
    op.drop_table("subscriptions")
