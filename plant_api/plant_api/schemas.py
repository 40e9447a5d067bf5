"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------


class Page(BaseModel):
    """One page of a listing plus the unpaged total."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20


def page_offset(page: int, limit: int) -> int:
    """Row offset of a 1-based *page*."""
    return (page - 1) * limit


def day_bounds(start: date | None, end: date | None) -> tuple[datetime | None, datetime | None]:
    """Turn an inclusive date filter into ``[start 00:00 UTC, end + 1 day)``."""
    if start is not None and end is not None and start > end:
        raise ValueError("start_date must not be after end_date")
    lower = dt.datetime.combine(start, dt.time.min, tzinfo=dt.UTC) if start else None
    upper = dt.datetime.combine(end + dt.timedelta(days=1), dt.time.min, tzinfo=dt.UTC) if end else None
    return lower, upper


# ---------------------------------------------------------------------------
# Profiles and authentication
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """A profile as returned to its owner or an administrator."""

    id: str
    email: str
    full_name: str = ""
    role: str
    chapter_id: str | None = None
    chapter_name: str | None = None
    business_name: str | None = None
    business_description: str | None = None
    phone: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"extra": "allow"}


class TokenResponse(BaseModel):
    """Bearer token issued on signup, login or password setup."""

    access_token: str
    token_type: str = "bearer"
    user: ProfileResponse


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricResponse(BaseModel):
    """One recorded metric entry."""

    id: str
    user_id: str
    chapter_id: str | None = None
    metric_type: str
    value: Decimal
    description: str | None = None
    date: dt.date
    created_at: datetime | None = None


class MetricSummaryResponse(BaseModel):
    """A member's category totals for one period."""

    user_id: str
    period: str
    period_start: date
    period_end: date
    participation: Decimal
    learning: Decimal
    activity: Decimal
    networking: Decimal
    trade: Decimal
    total: Decimal


# ---------------------------------------------------------------------------
# Trades, payments and invoices
# ---------------------------------------------------------------------------


class InvoiceGenerateResponse(BaseModel):
    """Result of an (idempotent) invoice generation request."""

    invoice_id: str
    invoice_number: str
    trade_id: str
    amount: Decimal
    created: bool
    pdf_url: str


class PaymentInitiationResponse(BaseModel):
    """Accepted STK push."""

    success: bool
    checkout_token: str
    trade_id: str
    status: str


class CallbackAck(BaseModel):
    """Acknowledgement the payment provider expects."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"


# ---------------------------------------------------------------------------
# Notifications and reports
# ---------------------------------------------------------------------------


class BulkNotificationResponse(BaseModel):
    """Outcome of a bulk send, or of scheduling one."""

    success: bool
    scheduled: bool = False
    recipient_count: int
    history_id: str
    sent: int | None = None
    failed: int | None = None
    errors: list[str] = Field(default_factory=list)


class NotificationHistoryResponse(BaseModel):
    """A notification history entry."""

    id: str
    notification_type: str
    recipient_type: str
    subject: str
    message: str
    recipient_count: int
    sent_by: str | None = None
    status: str
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None


class ReportHistoryResponse(BaseModel):
    """A report history entry."""

    id: str
    report_type: str
    period: str
    format: str
    file_name: str
    date_range: dict[str, Any]
    generated_by: str | None = None
    created_at: datetime | None = None
