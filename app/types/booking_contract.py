"""Pydantic models that define the contract between the HTTP layer, the
reminder/expiry sweeps and the notification channels.

These classes are intentionally framework-agnostic so they can be reused by
workers, API requests, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

AppointmentStatus = Literal["pending", "confirmed", "cancelled", "rescheduled", "completed"]
RecipientType = Literal["customer", "merchant"]
Channel = Literal["email", "push", "sms", "in_app"]
Severity = Literal["info", "warning", "error", "success"]
Plan = Literal["freeTrial", "basic", "premium", "enterprise"]
Currency = Literal["USD", "EUR", "GBP"]


# ──────────────────────────────
# Snapshots embedded in reminders
# ──────────────────────────────


class CustomerInfo(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    def _lowercase_email(cls, v):  # noqa: N805
        return v.strip().lower() if v else v


class AppointmentSnapshot(BaseModel):
    """Appointment data copied onto a reminder at schedule time.

    A reminder never re-reads the appointment when it fires, so this copy is
    what the customer sees even if the appointment row is gone by then.
    """

    appointment_id: str
    merchant_id: str
    customer_info: CustomerInfo
    service_name: str
    price: float = 0.0
    date_time: AwareDatetime
    status: AppointmentStatus = "pending"


class MerchantSnapshot(BaseModel):
    merchant_id: str
    business_name: str
    owner_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None


class ReminderPayload(BaseModel):
    appointment: AppointmentSnapshot
    merchant: MerchantSnapshot
    time_until: str  # human label, e.g. "24 hours"


class ReminderDraft(BaseModel):
    """A reminder about to be persisted."""

    appointment_id: str
    recipient_type: RecipientType
    scheduled_for: AwareDatetime
    payload: ReminderPayload


# ──────────────────────────────
# Results
# ──────────────────────────────


class DispatchResult(BaseModel):
    """Outcome of one channel call. Failures are values, never exceptions."""

    channel: Channel
    success: bool
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class PushTokenResult(BaseModel):
    token: str
    success: bool
    error: Optional[str] = None
    invalid: bool = False  # provider says the token will never work again


class SweepReport(BaseModel):
    name: str
    started_at: datetime
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    missed: int = 0
    errors: List[str] = Field(default_factory=list)


class ExpiryReport(BaseModel):
    started_at: datetime
    checked: int = 0
    notified: int = 0
    expired: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


# ──────────────────────────────
# Requests
# ──────────────────────────────


class AppointmentCreate(BaseModel):
    merchant_id: str
    customer_info: CustomerInfo
    service_name: str
    price: float = Field(default=0.0, ge=0)
    date_time: AwareDatetime
    status: AppointmentStatus = "pending"


class AppointmentUpdate(BaseModel):
    status: Optional[AppointmentStatus] = None
    date_time: Optional[AwareDatetime] = None
    service_name: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _not_empty(self):  # noqa: N805
        if not self.model_dump(exclude_none=True):
            raise ValueError("at least one field must be provided")
        return self


class SubscriptionCreate(BaseModel):
    merchant_id: str
    plan: Plan
    duration: int = Field(ge=1, le=12)  # months
    amount: float = Field(ge=0)
    currency: Currency = "USD"

    @field_validator("merchant_id")
    def _strip(cls, v):  # noqa: N805
        if not v.strip():
            raise ValueError("merchant_id must be a non-empty string")
        return v.strip()


class SubscriptionRenew(BaseModel):
    duration: int = Field(default=1, ge=1, le=12)
    amount: Optional[float] = Field(default=None, ge=0)
