"""Repository classes providing CRUD access to the PLANT state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Status changes on trades and invoices are conditional updates keyed on the
current state.  They return ``True`` only when a row actually changed, which
makes a concurrent callback and manual reconciliation race-safe: exactly one
of them observes the change.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from plant_core.models.trade import TradeStatus, allowed_sources
from plant_core.state.database import advisory_xact_lock
from plant_core.state.tables import (
    AuditLogTable,
    AuthIdentityTable,
    ChapterTable,
    InvoiceTable,
    MetricTable,
    NotificationHistoryTable,
    ProfileTable,
    ReportHistoryTable,
    TradeTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters.

    Handles the backslash escape character itself first, then the ``%`` and
    ``_`` wildcards.  Use with ``escape="\\\\"`` on the LIKE clause.
    """
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _unique(ids: Iterable[str | None]) -> list[str]:
    """Distinct non-empty ids, preserving first-seen order."""
    seen: dict[str, None] = {}
    for value in ids:
        if value:
            seen.setdefault(value, None)
    return list(seen)


# ---------------------------------------------------------------------------
# ProfileRepository
# ---------------------------------------------------------------------------


class ProfileRepository:
    """CRUD operations for the ``profiles`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        profile_id: str,
        email: str,
        full_name: str,
        role: str = "member",
        chapter_id: str | None = None,
        business_name: str | None = None,
        business_description: str | None = None,
        phone: str | None = None,
    ) -> ProfileTable:
        """Insert a profile.  ``profile_id`` matches the auth identity id."""
        row = ProfileTable(
            id=profile_id,
            email=email.lower().strip(),
            full_name=full_name.strip(),
            role=role,
            chapter_id=chapter_id,
            business_name=business_name,
            business_description=business_description,
            phone=phone,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, profile_id: str) -> ProfileTable | None:
        """Fetch a profile by primary key."""
        return await self._session.get(ProfileTable, profile_id)

    async def get_by_email(self, email: str) -> ProfileTable | None:
        """Fetch a profile by email address (case-insensitive)."""
        stmt = select(ProfileTable).where(ProfileTable.email == email.lower().strip())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, profile_ids: Iterable[str | None]) -> dict[str, ProfileTable]:
        """Batch lookup keyed by id.  Missing ids are simply absent."""
        ids = _unique(profile_ids)
        if not ids:
            return {}
        result = await self._session.execute(select(ProfileTable).where(ProfileTable.id.in_(ids)))
        return {row.id: row for row in result.scalars().all()}

    async def list(
        self,
        *,
        role: str | None = None,
        chapter_id: str | None = None,
        unaffiliated: bool = False,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ProfileTable], int]:
        """List profiles newest first with optional filters.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        conditions: list[Any] = []
        if role is not None:
            conditions.append(ProfileTable.role == role)
        if unaffiliated:
            conditions.append(ProfileTable.chapter_id.is_(None))
        elif chapter_id is not None:
            conditions.append(ProfileTable.chapter_id == chapter_id)
        if search:
            pattern = f"%{_escape_like(search.strip())}%"
            conditions.append(
                or_(
                    ProfileTable.full_name.ilike(pattern, escape="\\"),
                    ProfileTable.email.ilike(pattern, escape="\\"),
                    ProfileTable.business_name.ilike(pattern, escape="\\"),
                )
            )

        count_r = await self._session.execute(select(func.count()).select_from(ProfileTable).where(*conditions))
        total = count_r.scalar_one()

        stmt = (
            select(ProfileTable)
            .where(*conditions)
            .order_by(ProfileTable.created_at.desc(), ProfileTable.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_all(
        self,
        *,
        role: str | None = None,
        chapter_id: str | None = None,
    ) -> list[ProfileTable]:
        """Every profile matching the optional role/chapter filter."""
        stmt = select(ProfileTable)
        if role is not None:
            stmt = stmt.where(ProfileTable.role == role)
        if chapter_id is not None:
            stmt = stmt.where(ProfileTable.chapter_id == chapter_id)
        result = await self._session.execute(stmt.order_by(ProfileTable.created_at, ProfileTable.id))
        return list(result.scalars().all())

    async def list_created_between(self, start: datetime, end: datetime) -> list[ProfileTable]:
        stmt = (
            select(ProfileTable)
            .where(ProfileTable.created_at >= start, ProfileTable.created_at < end)
            .order_by(ProfileTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, profile_id: str, **fields: Any) -> bool:
        """Apply a partial update.  Returns True if the profile exists."""
        if not fields:
            return await self.get(profile_id) is not None
        fields["updated_at"] = datetime.now(UTC)
        stmt = update(ProfileTable).where(ProfileTable.id == profile_id).values(**fields)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def delete(self, profile_id: str) -> bool:
        result = await self._session.execute(delete(ProfileTable).where(ProfileTable.id == profile_id))
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def count(self, *, created_before: datetime | None = None) -> int:
        stmt = select(func.count()).select_from(ProfileTable)
        if created_before is not None:
            stmt = stmt.where(ProfileTable.created_at < created_before)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_in_chapter(self, chapter_id: str, *, created_before: datetime | None = None) -> int:
        stmt = select(func.count()).select_from(ProfileTable).where(ProfileTable.chapter_id == chapter_id)
        if created_before is not None:
            stmt = stmt.where(ProfileTable.created_at < created_before)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_by_chapter(self) -> dict[str, int]:
        """``chapter_id -> member count`` for every chapter with members."""
        stmt = (
            select(ProfileTable.chapter_id, func.count())
            .where(ProfileTable.chapter_id.is_not(None))
            .group_by(ProfileTable.chapter_id)
        )
        result = await self._session.execute(stmt)
        return {chapter_id: count for chapter_id, count in result.all()}

    async def count_by_role(self, profile_ids: Iterable[str] | None = None) -> dict[str, int]:
        stmt = select(ProfileTable.role, func.count()).group_by(ProfileTable.role)
        if profile_ids is not None:
            stmt = stmt.where(ProfileTable.id.in_(list(profile_ids)))
        result = await self._session.execute(stmt)
        return {role: count for role, count in result.all()}


# ---------------------------------------------------------------------------
# AuthIdentityRepository
# ---------------------------------------------------------------------------


class AuthIdentityRepository:
    """Login identities.  Password hashing uses bcrypt."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def hash_password(plaintext: str) -> str:
        """Hash a plaintext password with bcrypt."""
        import bcrypt

        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    @staticmethod
    def check_password(plaintext: str, hashed: str) -> bool:
        """Verify a plaintext password against a bcrypt hash."""
        import bcrypt

        return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    async def create(
        self,
        email: str,
        password: str | None = None,
        *,
        identity_id: str | None = None,
    ) -> AuthIdentityTable:
        """Create an identity; ``password=None`` leaves it unusable until set."""
        row = AuthIdentityTable(
            id=identity_id or _new_id(),
            email=email.lower().strip(),
            password_hash=self.hash_password(password) if password else None,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, identity_id: str) -> AuthIdentityTable | None:
        return await self._session.get(AuthIdentityTable, identity_id)

    async def get_by_email(self, email: str) -> AuthIdentityTable | None:
        stmt = select(AuthIdentityTable).where(AuthIdentityTable.email == email.lower().strip())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def verify_password(self, email: str, password: str) -> AuthIdentityTable | None:
        """Validate credentials and return the identity if correct.

        Returns ``None`` if the email is unknown, has no password yet, or the
        password does not match.
        """
        identity = await self.get_by_email(email)
        if identity is None or identity.password_hash is None:
            # Still spend a bcrypt round so unknown emails are not faster.
            self.hash_password("dummy-password-for-timing")
            return None
        if not self.check_password(password, identity.password_hash):
            return None
        return identity

    async def set_recovery_token(self, identity_id: str, token: str, expires_at: datetime) -> bool:
        stmt = (
            update(AuthIdentityTable)
            .where(AuthIdentityTable.id == identity_id)
            .values(recovery_token_hash=self.hash_token(token), recovery_expires_at=expires_at)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def consume_recovery_token(self, token: str, new_password: str) -> AuthIdentityTable | None:
        """Set a password from a valid, unexpired recovery token.

        The token is cleared in the same statement so it works once.
        """
        digest = self.hash_token(token)
        stmt = select(AuthIdentityTable).where(AuthIdentityTable.recovery_token_hash == digest)
        identity = (await self._session.execute(stmt)).scalar_one_or_none()
        if identity is None:
            return None
        if identity.recovery_expires_at is None or identity.recovery_expires_at < datetime.now(UTC):
            return None
        result = await self._session.execute(
            update(AuthIdentityTable)
            .where(AuthIdentityTable.id == identity.id, AuthIdentityTable.recovery_token_hash == digest)
            .values(
                password_hash=self.hash_password(new_password),
                recovery_token_hash=None,
                recovery_expires_at=None,
            )
        )
        await self._session.flush()
        if result.rowcount == 0:  # type: ignore[attr-defined]
            return None
        return identity

    async def update_last_login(self, identity_id: str) -> None:
        stmt = (
            update(AuthIdentityTable)
            .where(AuthIdentityTable.id == identity_id)
            .values(last_login_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def delete(self, identity_id: str) -> bool:
        result = await self._session.execute(delete(AuthIdentityTable).where(AuthIdentityTable.id == identity_id))
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# ChapterRepository
# ---------------------------------------------------------------------------


class ChapterRepository:
    """CRUD operations for the ``chapters`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, name: str, leader_id: str | None = None) -> ChapterTable:
        row = ChapterTable(id=_new_id(), name=name.strip(), leader_id=leader_id)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, chapter_id: str) -> ChapterTable | None:
        return await self._session.get(ChapterTable, chapter_id)

    async def get_many(self, chapter_ids: Iterable[str | None]) -> dict[str, ChapterTable]:
        ids = _unique(chapter_ids)
        if not ids:
            return {}
        result = await self._session.execute(select(ChapterTable).where(ChapterTable.id.in_(ids)))
        return {row.id: row for row in result.scalars().all()}

    async def get_led_by(self, leader_id: str) -> ChapterTable | None:
        """The chapter a profile leads (oldest first if, unusually, several)."""
        stmt = (
            select(ChapterTable)
            .where(ChapterTable.leader_id == leader_id)
            .order_by(ChapterTable.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[ChapterTable]:
        result = await self._session.execute(select(ChapterTable).order_by(ChapterTable.name, ChapterTable.id))
        return list(result.scalars().all())

    async def update(self, chapter_id: str, **fields: Any) -> bool:
        fields["updated_at"] = datetime.now(UTC)
        stmt = update(ChapterTable).where(ChapterTable.id == chapter_id).values(**fields)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def clear_leader(self, leader_id: str) -> int:
        """Detach *leader_id* from every chapter it leads."""
        stmt = update(ChapterTable).where(ChapterTable.leader_id == leader_id).values(leader_id=None)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def delete(self, chapter_id: str) -> bool:
        result = await self._session.execute(delete(ChapterTable).where(ChapterTable.id == chapter_id))
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def count(self, *, created_before: datetime | None = None) -> int:
        stmt = select(func.count()).select_from(ChapterTable)
        if created_before is not None:
            stmt = stmt.where(ChapterTable.created_at < created_before)
        result = await self._session.execute(stmt)
        return result.scalar_one()


# ---------------------------------------------------------------------------
# MetricRepository
# ---------------------------------------------------------------------------


class MetricRepository:
    """Metric entries.  Insert-only apart from cascade deletes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        user_id: str,
        chapter_id: str | None,
        metric_type: str,
        value: Decimal,
        entry_date: date,
        description: str | None = None,
    ) -> MetricTable:
        row = MetricTable(
            id=_new_id(),
            user_id=user_id,
            chapter_id=chapter_id,
            metric_type=metric_type,
            value=value,
            description=description,
            date=entry_date,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_user(
        self,
        user_id: str,
        *,
        since: date | None = None,
        metric_type: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MetricTable]:
        """A member's entries, newest first."""
        stmt = select(MetricTable).where(MetricTable.user_id == user_id)
        if since is not None:
            stmt = stmt.where(MetricTable.date >= since)
        if metric_type is not None:
            stmt = stmt.where(MetricTable.metric_type == metric_type)
        stmt = stmt.order_by(MetricTable.date.desc(), MetricTable.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_user(self, user_id: str, *, metric_type: str | None = None) -> int:
        stmt = select(func.count()).select_from(MetricTable).where(MetricTable.user_id == user_id)
        if metric_type is not None:
            stmt = stmt.where(MetricTable.metric_type == metric_type)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def list_for_chapter(
        self,
        chapter_id: str,
        *,
        since: date | None = None,
        until: date | None = None,
        user_ids: Iterable[str] | None = None,
    ) -> list[MetricTable]:
        stmt = select(MetricTable).where(MetricTable.chapter_id == chapter_id)
        if since is not None:
            stmt = stmt.where(MetricTable.date >= since)
        if until is not None:
            stmt = stmt.where(MetricTable.date <= until)
        if user_ids is not None:
            stmt = stmt.where(MetricTable.user_id.in_(list(user_ids)))
        result = await self._session.execute(stmt.order_by(MetricTable.date, MetricTable.id))
        return list(result.scalars().all())

    async def list_in_range(self, start: date, end: date) -> list[MetricTable]:
        stmt = (
            select(MetricTable)
            .where(MetricTable.date >= start, MetricTable.date <= end)
            .order_by(MetricTable.date, MetricTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def latest_for_chapter(self, chapter_id: str, limit: int) -> list[MetricTable]:
        stmt = (
            select(MetricTable)
            .where(MetricTable.chapter_id == chapter_id)
            .order_by(MetricTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def last_activity(self, user_ids: Iterable[str]) -> dict[str, date]:
        """``user_id -> most recent entry date`` for users with any entries."""
        ids = list(user_ids)
        if not ids:
            return {}
        stmt = (
            select(MetricTable.user_id, func.max(MetricTable.date))
            .where(MetricTable.user_id.in_(ids))
            .group_by(MetricTable.user_id)
        )
        result = await self._session.execute(stmt)
        return {user_id: last for user_id, last in result.all()}

    async def count_since(self, since: date) -> int:
        stmt = select(func.count()).select_from(MetricTable).where(MetricTable.date >= since)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_by_chapter(self) -> dict[str, int]:
        stmt = (
            select(MetricTable.chapter_id, func.count())
            .where(MetricTable.chapter_id.is_not(None))
            .group_by(MetricTable.chapter_id)
        )
        result = await self._session.execute(stmt)
        return {chapter_id: count for chapter_id, count in result.all()}

    async def active_users_since(self, since: datetime) -> int:
        """Distinct members who recorded an entry at or after *since*."""
        stmt = select(func.count(func.distinct(MetricTable.user_id))).where(MetricTable.created_at >= since)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def delete_for_user(self, user_id: str) -> int:
        result = await self._session.execute(delete(MetricTable).where(MetricTable.user_id == user_id))
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# TradeRepository
# ---------------------------------------------------------------------------


class TradeRepository:
    """Trade declarations and their status transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        user_id: str,
        chapter_id: str | None,
        amount: Decimal,
        description: str,
        source_member_id: str | None = None,
        beneficiary_member_id: str | None = None,
    ) -> TradeTable:
        row = TradeTable(
            id=_new_id(),
            user_id=user_id,
            chapter_id=chapter_id,
            amount=amount,
            description=description,
            source_member_id=source_member_id,
            beneficiary_member_id=beneficiary_member_id,
            status=TradeStatus.PENDING.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, trade_id: str) -> TradeTable | None:
        return await self._session.get(TradeTable, trade_id)

    async def refresh(self, trade: TradeTable) -> TradeTable:
        """Reload *trade* after a conditional update changed it in SQL."""
        await self._session.refresh(trade)
        return trade

    async def get_by_payment_reference(self, reference: str) -> TradeTable | None:
        stmt = select(TradeTable).where(TradeTable.payment_reference == reference).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(
        self,
        *,
        user_id: str | None = None,
        chapter_id: str | None = None,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = 20,
        offset: int = 0,
    ) -> tuple[list[TradeTable], int]:
        """Filtered trades, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        conditions: list[Any] = []
        if user_id is not None:
            conditions.append(TradeTable.user_id == user_id)
        if chapter_id is not None:
            conditions.append(TradeTable.chapter_id == chapter_id)
        if status is not None:
            conditions.append(TradeTable.status == status)
        if start is not None:
            conditions.append(TradeTable.created_at >= start)
        if end is not None:
            conditions.append(TradeTable.created_at < end)

        count_r = await self._session.execute(select(func.count()).select_from(TradeTable).where(*conditions))
        total = count_r.scalar_one()

        stmt = select(TradeTable).where(*conditions).order_by(TradeTable.created_at.desc(), TradeTable.id)
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_awaiting_invoice(self, initiated_before: datetime, limit: int = 100) -> list[TradeTable]:
        """Invoiced trades past the grace window that still have no invoice."""
        has_invoice = select(InvoiceTable.id).where(InvoiceTable.trade_id == TradeTable.id).exists()
        stmt = (
            select(TradeTable)
            .where(
                TradeTable.status == TradeStatus.INVOICED.value,
                TradeTable.payment_initiated_at.is_not(None),
                TradeTable.payment_initiated_at <= initiated_before,
                ~has_invoice,
            )
            .order_by(TradeTable.payment_initiated_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _transition(self, trade_id: str, target: TradeStatus, **values: Any) -> bool:
        sources = [s.value for s in allowed_sources(target)]
        stmt = (
            update(TradeTable)
            .where(TradeTable.id == trade_id, TradeTable.status.in_(sources))
            .values(status=target.value, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        changed = result.rowcount > 0  # type: ignore[attr-defined]
        if changed:
            logger.info("Trade %s -> %s", trade_id, target.value)
        return changed

    async def mark_invoiced(
        self,
        trade_id: str,
        *,
        payment_reference: str | None = None,
        phone: str | None = None,
    ) -> bool:
        """``pending -> invoiced``.

        With a *payment_reference* this records an accepted payment request
        and starts the grace window; without one it marks a trade that was
        invoiced directly.
        """
        values: dict[str, Any] = {}
        if payment_reference is not None:
            values.update(
                payment_reference=payment_reference,
                payment_phone=phone,
                payment_initiated_at=datetime.now(UTC),
            )
        return await self._transition(trade_id, TradeStatus.INVOICED, **values)

    async def mark_paid(self, trade_id: str, *, receipt: str | None = None, paid_at: datetime | None = None) -> bool:
        """Set ``paid`` unless already paid (or cancelled)."""
        values: dict[str, Any] = {"paid_at": paid_at or datetime.now(UTC), "failure_reason": None}
        if receipt is not None:
            values["mpesa_receipt"] = receipt
        return await self._transition(trade_id, TradeStatus.PAID, **values)

    async def mark_failed(self, trade_id: str, reason: str) -> bool:
        return await self._transition(trade_id, TradeStatus.FAILED, failure_reason=reason)

    async def cancel(self, trade_id: str) -> bool:
        return await self._transition(trade_id, TradeStatus.CANCELLED)

    async def count_for_user(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(TradeTable).where(TradeTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_by_status(self, *, chapter_id: str | None = None) -> dict[str, int]:
        stmt = select(TradeTable.status, func.count()).group_by(TradeTable.status)
        if chapter_id is not None:
            stmt = stmt.where(TradeTable.chapter_id == chapter_id)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def paid_amounts(
        self,
        *,
        chapter_id: str | None = None,
        paid_from: datetime | None = None,
        paid_to: datetime | None = None,
    ) -> list[Decimal]:
        """Amounts of paid trades; summed by the caller with ``Decimal``."""
        stmt = select(TradeTable.amount).where(TradeTable.status == TradeStatus.PAID.value)
        if chapter_id is not None:
            stmt = stmt.where(TradeTable.chapter_id == chapter_id)
        if paid_from is not None:
            stmt = stmt.where(TradeTable.paid_at >= paid_from)
        if paid_to is not None:
            stmt = stmt.where(TradeTable.paid_at < paid_to)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def paid_amounts_by_chapter(self) -> dict[str, list[Decimal]]:
        stmt = select(TradeTable.chapter_id, TradeTable.amount).where(
            TradeTable.status == TradeStatus.PAID.value,
            TradeTable.chapter_id.is_not(None),
        )
        result = await self._session.execute(stmt)
        grouped: dict[str, list[Decimal]] = {}
        for chapter_id, amount in result.all():
            grouped.setdefault(chapter_id, []).append(amount)
        return grouped

    async def latest_for_chapter(self, chapter_id: str, limit: int) -> list[TradeTable]:
        stmt = (
            select(TradeTable)
            .where(TradeTable.chapter_id == chapter_id)
            .order_by(TradeTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def clear_counterpart(self, profile_id: str) -> None:
        """Null out source/beneficiary references to *profile_id*."""
        await self._session.execute(
            update(TradeTable).where(TradeTable.source_member_id == profile_id).values(source_member_id=None)
        )
        await self._session.execute(
            update(TradeTable)
            .where(TradeTable.beneficiary_member_id == profile_id)
            .values(beneficiary_member_id=None)
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for the ``invoices`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        trade_id: str,
        invoice_number: str,
        amount: Decimal,
        due_date: date | None = None,
        file_url: str | None = None,
    ) -> InvoiceTable:
        row = InvoiceTable(
            id=_new_id(),
            trade_id=trade_id,
            invoice_number=invoice_number,
            amount=amount,
            due_date=due_date,
            file_url=file_url,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invoice_id: str) -> InvoiceTable | None:
        return await self._session.get(InvoiceTable, invoice_id)

    async def get_by_trade(self, trade_id: str) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.trade_id == trade_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many_by_trade(self, trade_ids: Iterable[str]) -> dict[str, InvoiceTable]:
        ids = _unique(trade_ids)
        if not ids:
            return {}
        result = await self._session.execute(select(InvoiceTable).where(InvoiceTable.trade_id.in_(ids)))
        return {row.trade_id: row for row in result.scalars().all()}

    async def list_issued_between(self, start: datetime, end: datetime) -> list[InvoiceTable]:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.issued_at >= start, InvoiceTable.issued_at < end)
            .order_by(InvoiceTable.issued_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_paid(self) -> tuple[int, int]:
        """``(paid_count, total_count)`` across all invoices."""
        total = (await self._session.execute(select(func.count()).select_from(InvoiceTable))).scalar_one()
        paid = (
            await self._session.execute(
                select(func.count()).select_from(InvoiceTable).where(InvoiceTable.paid_at.is_not(None))
            )
        ).scalar_one()
        return paid, total

    async def update_file_url(self, invoice_id: str, file_url: str) -> bool:
        stmt = update(InvoiceTable).where(InvoiceTable.id == invoice_id).values(file_url=file_url)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_paid(self, invoice_id: str, paid_at: datetime | None = None) -> bool:
        """Set ``paid_at`` only if it is still NULL.  Returns True if it changed."""
        stmt = (
            update(InvoiceTable)
            .where(InvoiceTable.id == invoice_id, InvoiceTable.paid_at.is_(None))
            .values(paid_at=paid_at or datetime.now(UTC))
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def get_next_invoice_number(self, year: int | None = None) -> str:
        """Generate the next sequential invoice number.

        Format: ``INV-YYYY-NNNNNN`` where NNNNNN is a zero-padded sequence
        number for the year.  Acquires an advisory lock (PostgreSQL) before
        the COUNT query so two concurrent requests cannot mint the same
        number; the unique index is the final guard.
        """
        await advisory_xact_lock(self._session, "invoice_number")

        year = year or datetime.now(UTC).year
        prefix = f"INV-{year}-"
        stmt = (
            select(func.count())
            .select_from(InvoiceTable)
            .where(InvoiceTable.invoice_number.like(f"{_escape_like(prefix)}%", escape="\\"))
        )
        result = await self._session.execute(stmt)
        count = result.scalar_one()
        return f"{prefix}{count + 1:06d}"


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each audit entry is linked to its predecessor via ``previous_hash``,
    forming a tamper-evident chain.  ``entry_hash`` is a SHA-256 digest of
    the entry's content fields concatenated with the previous hash, so any
    modification to an existing row breaks the chain for all later entries.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _compute_hash(
        actor_id: str | None,
        action: str,
        table_name: str | None,
        record_id: str | None,
        old_values: dict | None,
        new_values: dict | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """Compute SHA-256 over the ``|``-joined content fields.

        ``None`` values are represented as the empty string.
        """
        parts = [
            actor_id or "",
            action,
            table_name or "",
            record_id or "",
            json.dumps(old_values, sort_keys=True, default=str) if old_values else "",
            json.dumps(new_values, sort_keys=True, default=str) if new_values else "",
            previous_hash or "",
            created_at.astimezone(UTC).replace(tzinfo=None).isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def _latest(self) -> tuple[str | None, int]:
        stmt = select(AuditLogTable.entry_hash, AuditLogTable.seq).order_by(AuditLogTable.seq.desc()).limit(1)
        row = (await self._session.execute(stmt)).first()
        if row is None:
            return None, 0
        return row[0], row[1]

    async def log(
        self,
        *,
        actor_id: str | None,
        action: str,
        table_name: str | None = None,
        record_id: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> str:
        """Write an audit entry.  Returns the entry ID."""
        # Serialise chain appends so two writers cannot fork the chain.
        await advisory_xact_lock(self._session, "audit_chain")

        previous_hash, last_seq = await self._latest()
        now = datetime.now(UTC).replace(microsecond=0)
        old_clean = json.loads(json.dumps(old_values, default=str)) if old_values else None
        new_clean = json.loads(json.dumps(new_values, default=str)) if new_values else None
        entry_hash = self._compute_hash(
            actor_id=actor_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_values=old_clean,
            new_values=new_clean,
            previous_hash=previous_hash,
            created_at=now,
        )
        row = AuditLogTable(
            id=_new_id(),
            actor_id=actor_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_values=old_clean,
            new_values=new_clean,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            seq=last_seq + 1,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: actor=%s action=%s record=%s/%s",
            actor_id or "system",
            action,
            table_name or "-",
            record_id or "-",
        )
        return row.id

    async def query(
        self,
        *,
        action: str | None = None,
        table_name: str | None = None,
        record_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Query audit entries, most recent first.  All filters are optional."""
        stmt = select(AuditLogTable)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if table_name is not None:
            stmt = stmt.where(AuditLogTable.table_name == table_name)
        if record_id is not None:
            stmt = stmt.where(AuditLogTable.record_id == record_id)
        if since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= since)
        stmt = stmt.order_by(AuditLogTable.seq.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, *, action: str | None = None, record_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(AuditLogTable)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if record_id is not None:
            stmt = stmt.where(AuditLogTable.record_id == record_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Verify the hash chain over the oldest *limit* entries.

        Returns
        -------
        tuple[bool, int]
            ``(is_valid, entries_checked)`` where ``is_valid`` is ``True``
            only if every entry's hash matches and the chain links are intact.
        """
        stmt = select(AuditLogTable).order_by(AuditLogTable.seq.asc()).limit(limit)
        entries = list((await self._session.execute(stmt)).scalars().all())

        checked = 0
        previous_hash: str | None = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain break at entry %s: expected previous_hash=%s, got=%s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            expected_hash = self._compute_hash(
                actor_id=entry.actor_id,
                action=entry.action,
                table_name=entry.table_name,
                record_id=entry.record_id,
                old_values=entry.old_values,
                new_values=entry.new_values,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected_hash:
                logger.warning("Audit hash mismatch at entry %s", entry.id)
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)


# ---------------------------------------------------------------------------
# NotificationHistoryRepository
# ---------------------------------------------------------------------------


class NotificationHistoryRepository:
    """History of bulk sends, including not-yet-delivered scheduled ones."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        notification_type: str,
        recipient_type: str,
        recipient_selector: dict[str, Any] | None,
        subject: str,
        message: str,
        recipient_count: int,
        sent_by: str | None,
        status: str,
        scheduled_for: datetime | None = None,
        sent_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> NotificationHistoryTable:
        row = NotificationHistoryTable(
            id=_new_id(),
            notification_type=notification_type,
            recipient_type=recipient_type,
            recipient_selector=recipient_selector,
            subject=subject,
            message=message,
            recipient_count=recipient_count,
            sent_by=sent_by,
            status=status,
            scheduled_for=scheduled_for,
            sent_at=sent_at,
            metadata_json=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, entry_id: str) -> NotificationHistoryTable | None:
        return await self._session.get(NotificationHistoryTable, entry_id)

    async def list(self, *, limit: int = 20, offset: int = 0) -> tuple[list[NotificationHistoryTable], int]:
        total = (await self._session.execute(select(func.count()).select_from(NotificationHistoryTable))).scalar_one()
        stmt = (
            select(NotificationHistoryTable)
            .order_by(NotificationHistoryTable.created_at.desc(), NotificationHistoryTable.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_due(self, now: datetime, limit: int = 20) -> list[NotificationHistoryTable]:
        """Scheduled entries whose send time has arrived, oldest first."""
        stmt = (
            select(NotificationHistoryTable)
            .where(
                NotificationHistoryTable.status == "scheduled",
                NotificationHistoryTable.scheduled_for <= now,
            )
            .order_by(NotificationHistoryTable.scheduled_for)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def complete_scheduled(
        self,
        entry_id: str,
        *,
        status: str,
        recipient_count: int,
        metadata: dict[str, Any],
    ) -> bool:
        """Move a ``scheduled`` entry to its final status.

        Conditional on the entry still being ``scheduled`` so a send that
        two sweeps picked up is only recorded once.
        """
        stmt = (
            update(NotificationHistoryTable)
            .where(
                NotificationHistoryTable.id == entry_id,
                NotificationHistoryTable.status == "scheduled",
            )
            .values(
                status=status,
                recipient_count=recipient_count,
                metadata_json=metadata,
                sent_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# ReportHistoryRepository
# ---------------------------------------------------------------------------


class ReportHistoryRepository:
    """Successfully generated reports."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        report_type: str,
        period: str,
        format: str,
        file_name: str,
        date_range: dict[str, Any],
        generated_by: str | None,
    ) -> ReportHistoryTable:
        row = ReportHistoryTable(
            id=_new_id(),
            report_type=report_type,
            period=period,
            format=format,
            file_name=file_name,
            date_range=date_range,
            generated_by=generated_by,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list(self, *, limit: int = 20, offset: int = 0) -> tuple[list[ReportHistoryTable], int]:
        total = await self.count()
        stmt = (
            select(ReportHistoryTable)
            .order_by(ReportHistoryTable.created_at.desc(), ReportHistoryTable.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def count(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(ReportHistoryTable))
        return result.scalar_one()
