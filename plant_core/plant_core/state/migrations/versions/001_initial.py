"""Initial PLANT schema.

Creates chapters, profiles, auth identities, metrics, trades, invoices,
the hash-chained audit log and the notification/report history tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TS = sa.DateTime(timezone=True)
_MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # chapters (leader FK added after profiles exists)
    # ------------------------------------------------------------------
    op.create_table(
        "chapters",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("leader_id", sa.String(64), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_chapters_leader", "chapters", ["leader_id"])

    # ------------------------------------------------------------------
    # profiles
    # ------------------------------------------------------------------
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("full_name", sa.String(256), nullable=False, server_default=""),
        sa.Column("role", sa.String(32), nullable=False, server_default="member"),
        sa.Column(
            "chapter_id",
            sa.String(64),
            sa.ForeignKey("chapters.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("business_name", sa.String(256), nullable=True),
        sa.Column("business_description", sa.Text, nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "role IN ('member','chapter_leader','administrator')",
            name="ck_profiles_role",
        ),
    )
    op.create_index("ix_profiles_chapter", "profiles", ["chapter_id"])
    op.create_index("ix_profiles_role", "profiles", ["role"])
    op.create_foreign_key(
        "fk_chapters_leader",
        "chapters",
        "profiles",
        ["leader_id"],
        ["id"],
        ondelete="SET NULL",
    )

    # ------------------------------------------------------------------
    # auth_identities
    # ------------------------------------------------------------------
    op.create_table(
        "auth_identities",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(256), nullable=True),
        sa.Column("recovery_token_hash", sa.String(64), nullable=True),
        sa.Column("recovery_expires_at", _TS, nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("last_login_at", _TS, nullable=True),
    )
    op.create_index("ix_auth_identities_recovery", "auth_identities", ["recovery_token_hash"])

    # ------------------------------------------------------------------
    # metrics
    # ------------------------------------------------------------------
    op.create_table(
        "metrics",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "chapter_id",
            sa.String(64),
            sa.ForeignKey("chapters.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("metric_type", sa.String(32), nullable=False),
        sa.Column("value", _MONEY, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "metric_type IN ('participation','learning','activity','networking','trade')",
            name="ck_metrics_type",
        ),
        sa.CheckConstraint("value >= 0", name="ck_metrics_value_non_negative"),
    )
    op.create_index("ix_metrics_user_date", "metrics", ["user_id", "date"])
    op.create_index("ix_metrics_chapter_date", "metrics", ["chapter_id", "date"])

    # ------------------------------------------------------------------
    # trades
    # ------------------------------------------------------------------
    op.create_table(
        "trades",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "chapter_id",
            sa.String(64),
            sa.ForeignKey("chapters.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount", _MONEY, nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column(
            "source_member_id",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "beneficiary_member_id",
            sa.String(64),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("payment_reference", sa.String(128), nullable=True),
        sa.Column("mpesa_receipt", sa.String(64), nullable=True),
        sa.Column("payment_phone", sa.String(32), nullable=True),
        sa.Column("payment_initiated_at", _TS, nullable=True),
        sa.Column("paid_at", _TS, nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending','invoiced','paid','failed','cancelled')",
            name="ck_trades_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_trades_amount_positive"),
    )
    op.create_index("ix_trades_user_created", "trades", ["user_id", "created_at"])
    op.create_index("ix_trades_chapter_created", "trades", ["chapter_id", "created_at"])
    op.create_index("ix_trades_status", "trades", ["status"])
    op.create_index("ix_trades_payment_reference", "trades", ["payment_reference"])

    # ------------------------------------------------------------------
    # invoices
    # ------------------------------------------------------------------
    op.create_table(
        "invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "trade_id",
            sa.String(64),
            sa.ForeignKey("trades.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        sa.Column("invoice_number", sa.String(64), nullable=False, unique=True),
        sa.Column("amount", _MONEY, nullable=False),
        sa.Column("file_url", sa.String(1024), nullable=True),
        sa.Column("issued_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("paid_at", _TS, nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_invoices_amount_positive"),
    )
    op.create_index("ix_invoices_issued", "invoices", ["issued_at"])

    # ------------------------------------------------------------------
    # audit_logs
    # ------------------------------------------------------------------
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("table_name", sa.String(128), nullable=True),
        sa.Column("record_id", sa.String(128), nullable=True),
        sa.Column("old_values", postgresql.JSONB, nullable=True),
        sa.Column("new_values", postgresql.JSONB, nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_seq", "audit_logs", ["seq"], unique=True)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_record", "audit_logs", ["table_name", "record_id"])
    op.create_index("ix_audit_logs_created", "audit_logs", ["created_at"])

    # ------------------------------------------------------------------
    # notifications_history
    # ------------------------------------------------------------------
    op.create_table(
        "notifications_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("recipient_type", sa.String(16), nullable=False),
        sa.Column("recipient_selector", postgresql.JSONB, nullable=True),
        sa.Column("subject", sa.String(512), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("recipient_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sent_by", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("scheduled_for", _TS, nullable=True),
        sa.Column("sent_at", _TS, nullable=True),
        sa.Column("metadata_json", postgresql.JSONB, nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('sent','scheduled','failed')",
            name="ck_notifications_history_status",
        ),
        sa.CheckConstraint(
            "recipient_type IN ('all','chapter','role','custom')",
            name="ck_notifications_history_recipient_type",
        ),
    )
    op.create_index("ix_notifications_history_due", "notifications_history", ["status", "scheduled_for"])
    op.create_index("ix_notifications_history_created", "notifications_history", ["created_at"])

    # ------------------------------------------------------------------
    # reports_history
    # ------------------------------------------------------------------
    op.create_table(
        "reports_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("report_type", sa.String(32), nullable=False),
        sa.Column("period", sa.String(32), nullable=False),
        sa.Column("format", sa.String(16), nullable=False),
        sa.Column("file_name", sa.String(256), nullable=False),
        sa.Column("date_range", postgresql.JSONB, nullable=False),
        sa.Column("generated_by", sa.String(64), nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "report_type IN ('metrics','trades','financial','members','chapters')",
            name="ck_reports_history_type",
        ),
        sa.CheckConstraint("format IN ('excel','pdf')", name="ck_reports_history_format"),
    )
    op.create_index("ix_reports_history_created", "reports_history", ["created_at"])


def downgrade() -> None:
    op.drop_table("reports_history")
    op.drop_table("notifications_history")
    op.drop_table("audit_logs")
    op.drop_table("invoices")
    op.drop_table("trades")
    op.drop_table("metrics")
    op.drop_table("auth_identities")
    op.drop_constraint("fk_chapters_leader", "chapters", type_="foreignkey")
    op.drop_table("profiles")
    op.drop_table("chapters")
