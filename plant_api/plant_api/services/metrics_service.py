"""Metric recording, member summaries and chapter leaderboards."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services.errors import ChapterNotFoundError, ProfileNotFoundError
from plant_core.metrics.aggregation import build_leaderboard, summarize_entries
from plant_core.metrics.periods import period_start, today_utc
from plant_core.models.metric import LeaderboardEntry, MetricCategory, MetricSummary, SummaryPeriod
from plant_core.state.repository import ChapterRepository, MetricRepository, ProfileRepository
from plant_core.state.tables import MetricTable

logger = logging.getLogger(__name__)


def metric_to_dict(row: MetricTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "chapter_id": row.chapter_id,
        "metric_type": row.metric_type,
        "value": row.value,
        "description": row.description,
        "date": row.date,
        "created_at": row.created_at,
    }


class MetricsService:
    """Reads and writes a member's metric entries."""

    def __init__(self, session: AsyncSession) -> None:
        self._metrics = MetricRepository(session)
        self._profiles = ProfileRepository(session)
        self._chapters = ChapterRepository(session)

    async def record(
        self,
        user_id: str,
        *,
        metric_type: MetricCategory | str,
        value: Decimal,
        entry_date: date | None = None,
        description: str | None = None,
    ) -> MetricTable:
        """Record one entry for *user_id*, filed under the member's chapter.

        Raises
        ------
        ValueError
            For a negative value or an unknown category.
        ProfileNotFoundError
            If the member has no profile.
        """
        category = MetricCategory(metric_type)
        if Decimal(value) < 0:
            raise ValueError("Metric value must be non-negative")
        profile = await self._profiles.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)

        row = await self._metrics.create(
            user_id=user_id,
            chapter_id=profile.chapter_id,
            metric_type=category.value,
            value=Decimal(value),
            entry_date=entry_date or today_utc(),
            description=description.strip() if description else None,
        )
        logger.info("Metric %s recorded for %s: %s=%s", row.id, user_id, category.value, row.value)
        return row

    async def list_entries(
        self,
        user_id: str,
        *,
        metric_type: MetricCategory | str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[MetricTable], int]:
        kind = MetricCategory(metric_type).value if metric_type else None
        rows = await self._metrics.list_for_user(user_id, metric_type=kind, limit=limit, offset=offset)
        total = await self._metrics.count_for_user(user_id, metric_type=kind)
        return rows, total

    async def summary(
        self,
        user_id: str,
        period: SummaryPeriod | str = SummaryPeriod.MONTH,
        *,
        today: date | None = None,
    ) -> MetricSummary:
        """Five category totals for the current period; zeros when empty."""
        today = today or today_utc()
        rows = await self._metrics.list_for_user(user_id, since=period_start(period, today))
        return summarize_entries(user_id, rows, period, today)

    async def leaderboard(
        self,
        chapter_id: str,
        period: SummaryPeriod | str = SummaryPeriod.MONTH,
        *,
        limit: int | None = None,
        today: date | None = None,
    ) -> list[LeaderboardEntry]:
        """Rank a chapter's members by their period totals.

        Raises
        ------
        ChapterNotFoundError
            If the chapter does not exist.
        """
        if await self._chapters.get(chapter_id) is None:
            raise ChapterNotFoundError(chapter_id)
        since = period_start(period, today or today_utc())
        rows = await self._metrics.list_for_chapter(chapter_id, since=since)
        profiles = await self._profiles.get_many(row.user_id for row in rows)
        return build_leaderboard(rows, profiles, since=since, limit=limit)

    async def member_chapter(self, user_id: str) -> str:
        """The chapter id of *user_id*.

        Raises
        ------
        ChapterNotFoundError
            The member is not in a chapter.
        """
        profile = await self._profiles.get(user_id)
        if profile is None or not profile.chapter_id:
            raise ChapterNotFoundError()
        return profile.chapter_id
