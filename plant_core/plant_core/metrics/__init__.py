"""Period resolution and metric aggregation."""

from plant_core.metrics.aggregation import build_leaderboard, summarize_entries, sum_decimal
from plant_core.metrics.periods import period_start, report_date_range, resolve_report_period

__all__ = [
    "build_leaderboard",
    "period_start",
    "report_date_range",
    "resolve_report_period",
    "sum_decimal",
    "summarize_entries",
]
