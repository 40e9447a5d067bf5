"""Centralized audit logging service.

Wraps :class:`AuditRepository` with predefined action constants and a
simplified interface for use by API routers and services.  Every
administrative or payment-affecting operation should be funnelled through
this service so that the audit trail is consistent and complete.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_core.state.repository import AuditRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Action constants
# ---------------------------------------------------------------------------


class AuditAction:
    """Well-known audit action identifiers.

    Plain string constants; the column is free text so new actions need no
    migration.
    """

    # Trades and payments
    TRADE_DECLARED = "trade_declared"
    TRADE_CANCELLED = "trade_cancelled"
    PAYMENT_INITIATED = "payment_initiated"
    INVOICE_GENERATED = "invoice_generated"
    MPESA_CALLBACK_PROCESSED = "mpesa_callback_processed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECONCILED = "payment_reconciled"
    INVOICE_RESENT = "invoice_resent"

    # Users and chapters
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    CHAPTER_CREATED = "chapter_created"
    CHAPTER_UPDATED = "chapter_updated"
    CHAPTER_DELETED = "chapter_deleted"

    # Communication and reports
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_SCHEDULED = "notification_scheduled"
    REPORT_GENERATED = "report_generated"
    REMINDER_SENT = "reminder_sent"
    INVITE_RESENT = "invite_resent"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditService:
    """Thin wrapper around :class:`AuditRepository` for router-level use.

    Parameters
    ----------
    session:
        The async database session for the current request scope.
    actor_id:
        Profile id of the user performing the action.  ``None`` records
        the action as performed by the system (callbacks, sweeps).
    """

    def __init__(self, session: AsyncSession, *, actor_id: str | None = None) -> None:
        self._repo = AuditRepository(session)
        self._actor_id = actor_id

    async def log(
        self,
        action: str,
        table_name: str | None = None,
        record_id: str | None = None,
        *,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> str:
        """Record an audit event.  Returns the generated audit entry ID."""
        return await self._repo.log(
            actor_id=self._actor_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_values=old_values,
            new_values=new_values,
        )
