"""Metric entry, summary and leaderboard models.

Totals are carried as :class:`~decimal.Decimal` so that summing many
two-decimal values never drifts the way binary floats do.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class MetricCategory(str, Enum):
    """The five kinds of activity a member can record."""

    PARTICIPATION = "participation"
    LEARNING = "learning"
    ACTIVITY = "activity"
    NETWORKING = "networking"
    TRADE = "trade"


class SummaryPeriod(str, Enum):
    """Window used for member summaries and chapter leaderboards."""

    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class CategoryTotals(BaseModel):
    """Per-category totals.  Every category is always present."""

    participation: Decimal = Decimal("0")
    learning: Decimal = Decimal("0")
    activity: Decimal = Decimal("0")
    networking: Decimal = Decimal("0")
    trade: Decimal = Decimal("0")

    def add(self, category: MetricCategory | str, value: Decimal) -> None:
        """Accumulate *value* into the bucket for *category*."""
        key = MetricCategory(category).value
        setattr(self, key, getattr(self, key) + Decimal(value))

    @property
    def total(self) -> Decimal:
        return self.participation + self.learning + self.activity + self.networking + self.trade

    def as_dict(self) -> dict[str, Decimal]:
        return {c.value: getattr(self, c.value) for c in MetricCategory}


class MetricSummary(BaseModel):
    """A member's totals for one period."""

    user_id: str
    period: SummaryPeriod
    period_start: dt.date
    period_end: dt.date
    totals: CategoryTotals = Field(default_factory=CategoryTotals)

    @property
    def total(self) -> Decimal:
        return self.totals.total


class LeaderboardEntry(BaseModel):
    """One ranked row of a chapter leaderboard."""

    rank: int = Field(..., ge=1)
    user_id: str
    full_name: str = Field(default="")
    business_name: str | None = None
    totals: CategoryTotals = Field(default_factory=CategoryTotals)
    total: Decimal = Decimal("0")
