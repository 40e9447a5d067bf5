"""Chapter leader dashboard: chapter statistics, members, trades and outreach.

Every operation first resolves the caller's chapter, either the chapter
they lead or, failing that, the chapter they belong to.  Members outside
that chapter are invisible to the leader.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services import email_templates
from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.auth_service import AuthService
from plant_api.services.email_client import EmailClient
from plant_api.services.errors import ChapterNotFoundError, ProfileNotFoundError
from plant_api.services.trade_service import TradeService
from plant_core.metrics.aggregation import sum_decimal
from plant_core.metrics.periods import growth_percent, month_bounds, today_utc
from plant_core.models.metric import CategoryTotals, MetricCategory
from plant_core.models.notification import ReminderType
from plant_core.models.trade import TradeStatus
from plant_core.state.repository import (
    ChapterRepository,
    MetricRepository,
    ProfileRepository,
    TradeRepository,
)
from plant_core.state.tables import ChapterTable, MetricTable, ProfileTable

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)

INACTIVE_AFTER_DAYS = 30
ACTIVITY_SOURCE_LIMIT = 25
HIGH_PRIORITY_INACTIVE = 5
MONTHLY_REPORT_DUE_DAY = 5

_UNKNOWN = "Unknown"

_METRIC_LABELS = {
    MetricCategory.PARTICIPATION.value: "participation points",
    MetricCategory.LEARNING.value: "learning hours",
    MetricCategory.ACTIVITY.value: "activity points",
    MetricCategory.NETWORKING.value: "networking points",
    MetricCategory.TRADE.value: "trade value",
}


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def _unknown_ref(profile_id: str | None) -> dict[str, Any]:
    return {"id": profile_id, "full_name": _UNKNOWN, "business_name": _UNKNOWN, "email": None}


def _totals(rows: list[MetricTable], *, since: date | None = None, until: date | None = None) -> CategoryTotals:
    totals = CategoryTotals()
    for row in rows:
        if since is not None and row.date < since:
            continue
        if until is not None and row.date >= until:
            continue
        totals.add(row.metric_type, sum_decimal([row.value]))
    return totals


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class ChapterLeaderService:
    """Read views and actions for one chapter leader.

    Parameters
    ----------
    session:
        Request-scoped database session.
    leader_id:
        Profile id of the caller; also the audit actor.
    """

    def __init__(self, session: AsyncSession, leader_id: str) -> None:
        self._session = session
        self._leader_id = leader_id
        self._profiles = ProfileRepository(session)
        self._chapters = ChapterRepository(session)
        self._metrics = MetricRepository(session)
        self._trades = TradeRepository(session)
        self._audit = AuditService(session, actor_id=leader_id)

    async def resolve_chapter(self) -> ChapterTable:
        """The chapter the caller leads, else the chapter they belong to.

        Raises
        ------
        ChapterNotFoundError
            The caller neither leads nor belongs to a chapter.
        """
        chapter = await self._chapters.get_led_by(self._leader_id)
        if chapter is not None:
            return chapter
        profile = await self._profiles.get(self._leader_id)
        if profile is not None and profile.chapter_id:
            chapter = await self._chapters.get(profile.chapter_id)
            if chapter is not None:
                return chapter
        raise ChapterNotFoundError()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def stats(self, today: date | None = None) -> dict[str, Any]:
        """Headline numbers for the current month with month-over-month growth.

        Average participation is the chapter's participation total for the
        month divided by its member count, as a rounded percentage.
        """
        chapter = await self.resolve_chapter()
        today = today or today_utc()
        this_month, last_month = month_bounds(today)

        total_members = await self._profiles.count_in_chapter(chapter.id)
        before_this_month = await self._profiles.count_in_chapter(chapter.id, created_before=_midnight(this_month))
        before_last_month = await self._profiles.count_in_chapter(chapter.id, created_before=_midnight(last_month))
        joined_this_month = total_members - before_this_month
        joined_last_month = before_this_month - before_last_month

        rows = await self._metrics.list_for_chapter(chapter.id, since=last_month, until=today)
        current = _totals(rows, since=this_month)
        previous = _totals(rows, until=this_month)

        revenue = sum_decimal(await self._trades.paid_amounts(chapter_id=chapter.id))
        revenue_this_month = sum_decimal(
            await self._trades.paid_amounts(chapter_id=chapter.id, paid_from=_midnight(this_month))
        )
        revenue_last_month = sum_decimal(
            await self._trades.paid_amounts(
                chapter_id=chapter.id, paid_from=_midnight(last_month), paid_to=_midnight(this_month)
            )
        )

        avg_participation = 0
        if current.participation > 0:
            avg_participation = round(current.participation / max(total_members, 1) * 100)

        return {
            "chapter_id": chapter.id,
            "chapter_name": chapter.name,
            "total_members": total_members,
            "avg_participation": avg_participation,
            "total_learning_hours": current.learning,
            "total_revenue": revenue,
            "monthly_growth": {
                "members": growth_percent(joined_this_month, joined_last_month),
                "participation": growth_percent(current.participation, previous.participation),
                "learning_hours": growth_percent(current.learning, previous.learning),
                "revenue": growth_percent(revenue_this_month, revenue_last_month),
            },
        }

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def members(
        self, *, limit: int = 20, offset: int = 0, today: date | None = None
    ) -> tuple[list[dict[str, Any]], int]:
        """Chapter members, newest first, with 30-day totals and activity flags."""
        chapter = await self.resolve_chapter()
        today = today or today_utc()
        cutoff = today - timedelta(days=INACTIVE_AFTER_DAYS)

        profiles, total = await self._profiles.list(chapter_id=chapter.id, limit=limit, offset=offset)
        ids = [p.id for p in profiles]
        recent = await self._metrics.list_for_chapter(chapter.id, since=cutoff, user_ids=ids) if ids else []
        last_seen = await self._metrics.last_activity(ids)

        per_user: dict[str, CategoryTotals] = {pid: CategoryTotals() for pid in ids}
        for row in recent:
            per_user[row.user_id].add(row.metric_type, sum_decimal([row.value]))

        result = []
        for profile in profiles:
            totals = per_user[profile.id]
            last = last_seen.get(profile.id)
            result.append(
                {
                    "id": profile.id,
                    "full_name": profile.full_name,
                    "business_name": profile.business_name,
                    "email": profile.email,
                    "phone": profile.phone,
                    "role": profile.role,
                    "created_at": profile.created_at,
                    "last_activity": last,
                    "is_inactive": last is None or last < cutoff,
                    "metrics": {**totals.as_dict(), "total": totals.total},
                }
            )
        return result, total

    async def _inactive_count(self, chapter_id: str, today: date) -> int:
        cutoff = today - timedelta(days=INACTIVE_AFTER_DAYS)
        members = await self._profiles.list_all(chapter_id=chapter_id)
        active = {row.user_id for row in await self._metrics.list_for_chapter(chapter_id, since=cutoff)}
        return sum(1 for m in members if m.id not in active)

    # ------------------------------------------------------------------
    # Trades and activity
    # ------------------------------------------------------------------

    async def trades(
        self,
        *,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Chapter trades; unresolvable counterpart names read ``Unknown``."""
        chapter = await self.resolve_chapter()
        if status is not None:
            TradeStatus(status)
        rows, total = await TradeService(self._session).list_trades(
            chapter_id=chapter.id, status=status, start=start, end=end, limit=limit, offset=offset
        )
        for row in rows:
            if row["user"] is None:
                row["user"] = _unknown_ref(row["user_id"])
            for key in ("source_member", "beneficiary_member"):
                ref_id = row.get(f"{key}_id")
                if row[key] is None and ref_id:
                    row[key] = _unknown_ref(ref_id)
        return rows, total

    async def activity(self, limit: int = 50) -> list[dict[str, Any]]:
        """Latest metric entries and trades merged into one feed, newest first."""
        chapter = await self.resolve_chapter()
        metrics = await self._metrics.latest_for_chapter(chapter.id, ACTIVITY_SOURCE_LIMIT)
        trades = await self._trades.latest_for_chapter(chapter.id, ACTIVITY_SOURCE_LIMIT)
        profiles = await self._profiles.get_many([m.user_id for m in metrics] + [t.user_id for t in trades])

        def user(user_id: str) -> dict[str, Any]:
            profile = profiles.get(user_id)
            if profile is None:
                return {"full_name": _UNKNOWN, "business_name": _UNKNOWN}
            return {"full_name": profile.full_name, "business_name": profile.business_name}

        feed: list[dict[str, Any]] = []
        for m in metrics:
            label = _METRIC_LABELS.get(m.metric_type, m.metric_type)
            feed.append(
                {
                    "id": m.id,
                    "type": "metric",
                    "description": f"Recorded {m.value} {label}",
                    "created_at": _as_aware(m.created_at),
                    "user": user(m.user_id),
                    "value": m.value,
                    "metric_type": m.metric_type,
                }
            )
        for t in trades:
            description = f"Recorded {email_templates.format_kes(t.amount)} trade"
            if t.description:
                description += f" - {t.description}"
            feed.append(
                {
                    "id": t.id,
                    "type": "trade",
                    "description": description,
                    "created_at": _as_aware(t.created_at),
                    "user": user(t.user_id),
                    "value": t.amount,
                    "metric_type": None,
                }
            )
        feed.sort(key=lambda item: item["created_at"], reverse=True)
        return feed[:limit]

    async def pending_actions(self, today: date | None = None) -> list[dict[str, Any]]:
        """To-do items for the leader: inactive members, open trades, the monthly report."""
        chapter = await self.resolve_chapter()
        today = today or today_utc()
        actions: list[dict[str, Any]] = []

        inactive = await self._inactive_count(chapter.id, today)
        if inactive > 0:
            actions.append(
                {
                    "type": "Members",
                    "description": f"{inactive} inactive member{'s' if inactive > 1 else ''} need attention",
                    "priority": "high" if inactive > HIGH_PRIORITY_INACTIVE else "medium",
                    "count": inactive,
                }
            )

        pending = (await self._trades.count_by_status(chapter_id=chapter.id)).get(TradeStatus.PENDING.value, 0)
        if pending > 0:
            actions.append(
                {
                    "type": "Trades",
                    "description": f"{pending} pending trade{'s' if pending > 1 else ''} to review",
                    "priority": "medium",
                    "count": pending,
                }
            )

        if today.day > MONTHLY_REPORT_DUE_DAY:
            actions.append(
                {"type": "Reports", "description": "Monthly chapter report due", "priority": "high", "count": 1}
            )
        return actions

    # ------------------------------------------------------------------
    # Outreach
    # ------------------------------------------------------------------

    async def _chapter_member(self, member_id: str) -> ProfileTable:
        chapter = await self.resolve_chapter()
        member = await self._profiles.get(member_id)
        if member is None or member.chapter_id != chapter.id:
            raise ProfileNotFoundError(member_id)
        return member

    async def send_reminder(
        self,
        member_id: str,
        reminder_type: ReminderType | str,
        message: str,
        email_client: EmailClient,
    ) -> dict[str, Any]:
        """Email one chapter member a reminder.

        Raises
        ------
        ProfileNotFoundError
            The member does not exist or is outside the leader's chapter.
        EmailDeliveryError
            The email provider rejected the message.
        """
        if not message or not message.strip():
            raise ValueError("Reminder message is required")
        kind = ReminderType(reminder_type)
        member = await self._chapter_member(member_id)
        html = email_templates.reminder_html(full_name=member.full_name or member.email, message=message)
        await email_client.send(member.email, kind.subject, html)
        await self._audit.log(
            AuditAction.REMINDER_SENT,
            "profiles",
            member.id,
            new_values={"type": kind.value, "recipient": member.email},
        )
        logger.info("Reminder (%s) sent to %s by %s", kind.value, member.id, self._leader_id)
        return {"success": True, "recipient": member.email, "type": kind.value}

    async def resend_invite(
        self, member_id: str, settings: APISettings, email_client: EmailClient
    ) -> dict[str, Any]:
        """Issue a fresh password link to a chapter member and email it."""
        member = await self._chapter_member(member_id)
        await AuthService(self._session).send_invite(member, settings, email_client)
        await self._audit.log(
            AuditAction.INVITE_RESENT,
            "profiles",
            member.id,
            new_values={"recipient": member.email},
        )
        return {"success": True, "recipient": member.email}
