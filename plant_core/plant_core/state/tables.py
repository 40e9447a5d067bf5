"""SQLAlchemy 2.0 ORM table definitions for the PLANT Metrics store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

import datetime as _dt
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_Money = Numeric(12, 2, asdecimal=True)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops tzinfo on the way back; re-attach it so comparisons
    against ``datetime.now(UTC)`` work on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all PLANT tables."""


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------


class ChapterTable(Base):
    """Named local group of members with an optional leader."""

    __tablename__ = "chapters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    leader_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("profiles.id", ondelete="SET NULL", use_alter=True, name="fk_chapters_leader"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_chapters_leader", "leader_id"),)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class ProfileTable(Base):
    """A person's account.  ``id`` matches the backing auth identity."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="member")
    chapter_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    business_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    business_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "role IN ('member','chapter_leader','administrator')",
            name="ck_profiles_role",
        ),
        Index("ix_profiles_chapter", "chapter_id"),
        Index("ix_profiles_role", "role"),
    )


# ---------------------------------------------------------------------------
# Auth identities
# ---------------------------------------------------------------------------


class AuthIdentityTable(Base):
    """Login identity backing a profile.

    ``password_hash`` is NULL until the owner sets a password through the
    recovery-token flow.  Only a SHA-256 digest of the recovery token is
    stored.
    """

    __tablename__ = "auth_identities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    recovery_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recovery_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (Index("ix_auth_identities_recovery", "recovery_token_hash"),)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricTable(Base):
    """One dated, categorized observation.  Never edited after insert."""

    __tablename__ = "metrics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    chapter_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[_dt.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "metric_type IN ('participation','learning','activity','networking','trade')",
            name="ck_metrics_type",
        ),
        CheckConstraint("value >= 0", name="ck_metrics_value_non_negative"),
        Index("ix_metrics_user_date", "user_id", "date"),
        Index("ix_metrics_chapter_date", "chapter_id", "date"),
    )


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------


class TradeTable(Base):
    """A declared business transaction.  Never deleted.

    ``payment_reference`` holds the provider checkout token once a payment
    request has been accepted.  It is kept after payment so that replayed
    callbacks still resolve to the trade.
    """

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False)
    chapter_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    source_member_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    beneficiary_member_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mpesa_receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_initiated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','invoiced','paid','failed','cancelled')",
            name="ck_trades_status",
        ),
        CheckConstraint("amount > 0", name="ck_trades_amount_positive"),
        Index("ix_trades_user_created", "user_id", "created_at"),
        Index("ix_trades_chapter_created", "chapter_id", "created_at"),
        Index("ix_trades_status", "status"),
        Index("ix_trades_payment_reference", "payment_reference"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """At most one invoice per trade; amount copied from the trade at issue."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trade_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("trades.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_invoices_amount_positive"),
        Index("ix_invoices_issued", "issued_at"),
    )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only audit log with tamper-evidence via hash chaining.

    ``entry_hash`` is a SHA-256 digest of the entry's content fields and
    ``previous_hash`` links to the preceding entry's hash.  A NULL
    ``actor_id`` means the action was taken by the system.
    """

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    table_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    record_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_seq", "seq", unique=True),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_record", "table_name", "record_id"),
        Index("ix_audit_logs_created", "created_at"),
    )


# ---------------------------------------------------------------------------
# Notification history
# ---------------------------------------------------------------------------


class NotificationHistoryTable(Base):
    """One bulk-send attempt.

    For ``scheduled`` rows ``recipient_selector`` holds everything needed to
    re-resolve the recipients when the send becomes due.
    """

    __tablename__ = "notifications_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient_selector: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('sent','scheduled','failed')",
            name="ck_notifications_history_status",
        ),
        CheckConstraint(
            "recipient_type IN ('all','chapter','role','custom')",
            name="ck_notifications_history_recipient_type",
        ),
        Index("ix_notifications_history_due", "status", "scheduled_for"),
        Index("ix_notifications_history_created", "created_at"),
    )


# ---------------------------------------------------------------------------
# Report history
# ---------------------------------------------------------------------------


class ReportHistoryTable(Base):
    """One successfully generated report artifact."""

    __tablename__ = "reports_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    report_type: Mapped[str] = mapped_column(String(32), nullable=False)
    period: Mapped[str] = mapped_column(String(32), nullable=False)
    format: Mapped[str] = mapped_column(String(16), nullable=False)
    file_name: Mapped[str] = mapped_column(String(256), nullable=False)
    date_range: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    generated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "report_type IN ('metrics','trades','financial','members','chapters')",
            name="ck_reports_history_type",
        ),
        CheckConstraint("format IN ('excel','pdf')", name="ck_reports_history_format"),
        Index("ix_reports_history_created", "created_at"),
    )
