"""Trade declaration, cancellation and listing.

Every trade a router returns goes through :func:`trade_to_dict`, which
resolves counterpart and chapter references from batch lookups into the
same nested shape regardless of which screen asked.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.errors import (
    InvalidTradeStateError,
    ProfileNotFoundError,
    TradeNotFoundError,
)
from plant_core.models.profile import ProfileRef
from plant_core.models.trade import TradeDeclaration, TradeStatus, can_transition
from plant_core.state.repository import (
    ChapterRepository,
    InvoiceRepository,
    ProfileRepository,
    TradeRepository,
)
from plant_core.state.tables import ChapterTable, InvoiceTable, ProfileTable, TradeTable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def profile_ref(profile: ProfileTable | None) -> dict[str, Any] | None:
    if profile is None:
        return None
    return ProfileRef(
        id=profile.id,
        full_name=profile.full_name,
        business_name=profile.business_name,
        email=profile.email,
    ).model_dump()


def invoice_to_dict(invoice: InvoiceTable | None) -> dict[str, Any] | None:
    if invoice is None:
        return None
    return {
        "id": invoice.id,
        "trade_id": invoice.trade_id,
        "invoice_number": invoice.invoice_number,
        "amount": invoice.amount,
        "issued_at": invoice.issued_at,
        "due_date": invoice.due_date,
        "paid_at": invoice.paid_at,
        "pdf_url": f"/api/v1/invoices/{invoice.id}/pdf",
    }


def trade_to_dict(
    trade: TradeTable,
    *,
    profiles: Mapping[str, ProfileTable] | None = None,
    chapters: Mapping[str, ChapterTable] | None = None,
    invoices: Mapping[str, InvoiceTable] | None = None,
) -> dict[str, Any]:
    """Normalise a trade row with its resolved references.

    Missing lookups yield ``None`` for the nested objects; callers that
    render names decide on their own placeholder.
    """
    profiles = profiles or {}
    chapter = (chapters or {}).get(trade.chapter_id) if trade.chapter_id else None
    return {
        "id": trade.id,
        "user_id": trade.user_id,
        "chapter_id": trade.chapter_id,
        "source_member_id": trade.source_member_id,
        "beneficiary_member_id": trade.beneficiary_member_id,
        "amount": trade.amount,
        "description": trade.description,
        "status": trade.status,
        "payment_reference": trade.payment_reference,
        "mpesa_receipt": trade.mpesa_receipt,
        "failure_reason": trade.failure_reason,
        "paid_at": trade.paid_at,
        "created_at": trade.created_at,
        "updated_at": trade.updated_at,
        "user": profile_ref(profiles.get(trade.user_id)),
        "source_member": profile_ref(profiles.get(trade.source_member_id)) if trade.source_member_id else None,
        "beneficiary_member": (
            profile_ref(profiles.get(trade.beneficiary_member_id)) if trade.beneficiary_member_id else None
        ),
        "chapter_name": chapter.name if chapter is not None else None,
        "invoice": invoice_to_dict((invoices or {}).get(trade.id)),
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TradeService:
    """Member-facing trade operations plus the shared listing query.

    Parameters
    ----------
    session:
        Request-scoped database session.
    actor_id:
        Profile id of the caller, recorded on audit entries.
    """

    def __init__(self, session: AsyncSession, *, actor_id: str | None = None) -> None:
        self._session = session
        self._actor_id = actor_id
        self._trades = TradeRepository(session)
        self._profiles = ProfileRepository(session)
        self._chapters = ChapterRepository(session)
        self._invoices = InvoiceRepository(session)
        self._audit = AuditService(session, actor_id=actor_id)

    async def declare(self, user_id: str, declaration: TradeDeclaration) -> TradeTable:
        """Create a ``pending`` trade for *user_id*.

        Counterpart members must exist and belong to the declarer's
        chapter.  Nothing is written when validation fails.

        Raises
        ------
        ProfileNotFoundError
            If the declarer or a counterpart does not exist.
        ValueError
            If a counterpart is in a different chapter.
        """
        declarer = await self._profiles.get(user_id)
        if declarer is None:
            raise ProfileNotFoundError(user_id)

        counterpart_ids = [
            pid for pid in (declaration.source_member_id, declaration.beneficiary_member_id) if pid
        ]
        if counterpart_ids:
            found = await self._profiles.get_many(counterpart_ids)
            for pid in counterpart_ids:
                member = found.get(pid)
                if member is None:
                    raise ProfileNotFoundError(pid)
                if member.chapter_id != declarer.chapter_id:
                    raise ValueError("Counterpart members must belong to your chapter")

        trade = await self._trades.create(
            user_id=user_id,
            chapter_id=declarer.chapter_id,
            amount=declaration.amount,
            description=declaration.description,
            source_member_id=declaration.source_member_id,
            beneficiary_member_id=declaration.beneficiary_member_id,
        )
        await self._audit.log(
            AuditAction.TRADE_DECLARED,
            "trades",
            trade.id,
            new_values={"amount": trade.amount, "status": trade.status, "description": trade.description},
        )
        logger.info("Trade %s declared by %s amount=%s", trade.id, user_id, trade.amount)
        return trade

    async def get_owned(self, trade_id: str, *, requester_id: str, is_admin: bool) -> TradeTable:
        """Fetch a trade the caller may act on.

        Raises
        ------
        TradeNotFoundError
            If the trade does not exist, or belongs to someone else and the
            caller is not an administrator (existence is not disclosed).
        """
        trade = await self._trades.get(trade_id)
        if trade is None or (not is_admin and trade.user_id != requester_id):
            raise TradeNotFoundError(trade_id)
        return trade

    async def cancel(self, trade_id: str, *, requester_id: str, is_admin: bool = False) -> TradeTable:
        """Cancel a ``pending`` trade.

        Raises
        ------
        InvalidTradeStateError
            If the trade has already left ``pending``.
        """
        trade = await self.get_owned(trade_id, requester_id=requester_id, is_admin=is_admin)
        previous = trade.status
        if not can_transition(previous, TradeStatus.CANCELLED) or not await self._trades.cancel(trade.id):
            current = (await self._trades.refresh(trade)).status
            raise InvalidTradeStateError(trade.id, current, "cancel")

        await self._audit.log(
            AuditAction.TRADE_CANCELLED,
            "trades",
            trade.id,
            old_values={"status": previous},
            new_values={"status": TradeStatus.CANCELLED.value},
        )
        return await self._trades.refresh(trade)

    async def list_trades(
        self,
        *,
        user_id: str | None = None,
        chapter_id: str | None = None,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Filtered trades with names, chapter and invoice resolved in batches."""
        rows, total = await self._trades.list(
            user_id=user_id,
            chapter_id=chapter_id,
            status=status,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
        return await self.describe(rows), total

    async def describe(self, rows: list[TradeTable]) -> list[dict[str, Any]]:
        """Map trade rows through :func:`trade_to_dict` with batch lookups."""
        if not rows:
            return []
        profile_ids = [
            pid for row in rows for pid in (row.user_id, row.source_member_id, row.beneficiary_member_id)
        ]
        profiles = await self._profiles.get_many(profile_ids)
        chapters = await self._chapters.get_many(row.chapter_id for row in rows)
        invoices = await self._invoices.get_many_by_trade(row.id for row in rows)
        return [trade_to_dict(row, profiles=profiles, chapters=chapters, invoices=invoices) for row in rows]
