"""Metric aggregation: per-member summaries and chapter leaderboards.

Both functions operate on plain rows (anything exposing ``user_id``,
``metric_type``, ``value`` and ``date`` attributes) so they can be fed
straight from ORM results or from test fixtures.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from plant_core.models.metric import (
    CategoryTotals,
    LeaderboardEntry,
    MetricCategory,
    MetricSummary,
    SummaryPeriod,
)
from plant_core.metrics.periods import period_start, today_utc

_VALID_CATEGORIES = frozenset(c.value for c in MetricCategory)


class MetricRow(Protocol):
    user_id: str
    metric_type: str
    value: Any
    date: date


def sum_decimal(values: Iterable[Any]) -> Decimal:
    """Sum money-like values exactly.  ``None`` entries are skipped."""
    total = Decimal("0")
    for value in values:
        if value is None:
            continue
        total += value if isinstance(value, Decimal) else Decimal(str(value))
    return total


def _accumulate(totals: CategoryTotals, row: MetricRow) -> None:
    if row.metric_type not in _VALID_CATEGORIES:
        return
    totals.add(row.metric_type, sum_decimal([row.value]))


def summarize_entries(
    user_id: str,
    rows: Iterable[MetricRow],
    period: SummaryPeriod | str = SummaryPeriod.MONTH,
    today: date | None = None,
) -> MetricSummary:
    """Total a member's entries for the current *period*.

    Entries dated before the period start are ignored even if the caller
    passed them in.  A member with no entries gets an all-zero summary.
    """
    today = today or today_utc()
    start = period_start(period, today)
    summary = MetricSummary(
        user_id=user_id,
        period=SummaryPeriod(period),
        period_start=start,
        period_end=today,
    )
    for row in rows:
        if row.user_id != user_id or row.date < start:
            continue
        _accumulate(summary.totals, row)
    return summary


def build_leaderboard(
    rows: Iterable[MetricRow],
    profiles: Mapping[str, Any],
    *,
    since: date | None = None,
    limit: int | None = None,
) -> list[LeaderboardEntry]:
    """Rank members by the grand total of their entries.

    Parameters
    ----------
    rows:
        Metric entries of one chapter.
    profiles:
        ``user_id -> profile`` mapping used for ``full_name`` and
        ``business_name``.  Unknown users still rank, with blank names.
    since:
        Entries dated before this are skipped.
    limit:
        Optional prefix length.

    Returns
    -------
    list[LeaderboardEntry]
        Sorted by grand total descending, then ``user_id`` ascending so
        equal totals always rank in the same order.  Ranks run ``1..N``.
    """
    per_user: dict[str, CategoryTotals] = {}
    for row in rows:
        if since is not None and row.date < since:
            continue
        totals = per_user.setdefault(row.user_id, CategoryTotals())
        _accumulate(totals, row)

    ordered = sorted(per_user.items(), key=lambda item: (-item[1].total, item[0]))
    if limit is not None:
        ordered = ordered[:limit]

    board: list[LeaderboardEntry] = []
    for position, (user_id, totals) in enumerate(ordered, start=1):
        profile = profiles.get(user_id)
        board.append(
            LeaderboardEntry(
                rank=position,
                user_id=user_id,
                full_name=getattr(profile, "full_name", None) or "",
                business_name=getattr(profile, "business_name", None),
                totals=totals,
                total=totals.total,
            )
        )
    return board
