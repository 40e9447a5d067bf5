"""Date-window helpers.

Summary periods (``month``, ``quarter``, ``year``) always run from the
start of the current calendar unit up to *today*.  Report periods are
rolling windows ending today (``weekly``, ``monthly``, ``quarterly``,
``yearly``) or an explicit ``custom`` range.
"""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, timedelta

from plant_core.models.metric import SummaryPeriod
from plant_core.models.report import DateRange, ReportPeriod


def today_utc() -> date:
    """Return today's date in UTC."""
    return datetime.now(UTC).date()


def period_start(period: SummaryPeriod | str, today: date | None = None) -> date:
    """Return the first day of the current month, quarter or year.

    The quarter start month is the current month index rounded down to a
    multiple of three.
    """
    today = today or today_utc()
    kind = SummaryPeriod(period)
    if kind is SummaryPeriod.MONTH:
        return today.replace(day=1)
    if kind is SummaryPeriod.QUARTER:
        first_month = ((today.month - 1) // 3) * 3 + 1
        return date(today.year, first_month, 1)
    return date(today.year, 1, 1)


def month_bounds(today: date | None = None) -> tuple[date, date]:
    """Return ``(first_day_of_this_month, first_day_of_previous_month)``."""
    today = today or today_utc()
    this_month = today.replace(day=1)
    previous_month = (this_month - timedelta(days=1)).replace(day=1)
    return this_month, previous_month


def months_before(day: date, months: int) -> date:
    """Return *day* moved back *months* calendar months.

    The day of month is clamped to the length of the target month, so
    ``2024-03-31`` minus one month is ``2024-02-29``.
    """
    index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


_ROLLING_MONTHS = {
    ReportPeriod.MONTHLY: 1,
    ReportPeriod.QUARTERLY: 3,
    ReportPeriod.YEARLY: 12,
}


def resolve_report_period(
    period: ReportPeriod | str | None,
    start: date | None = None,
    end: date | None = None,
) -> ReportPeriod:
    """Pick the effective report period for a request.

    Explicit dates without a period mean ``custom``; no period and no
    dates mean ``monthly``.

    Raises
    ------
    ValueError
        If dates are combined with a named period.
    """
    has_dates = start is not None or end is not None
    if period is None:
        return ReportPeriod.CUSTOM if has_dates else ReportPeriod.MONTHLY
    kind = ReportPeriod(period)
    if has_dates and kind is not ReportPeriod.CUSTOM:
        raise ValueError(f"start_date and end_date only apply to the custom period, not '{kind.value}'")
    return kind


def report_date_range(
    period: ReportPeriod | str | None,
    *,
    start: date | None = None,
    end: date | None = None,
    today: date | None = None,
) -> DateRange:
    """Resolve a report period into an inclusive :class:`DateRange`.

    Parameters
    ----------
    period:
        One of ``weekly`` (last 7 days), ``monthly`` (last month),
        ``quarterly`` (last three months), ``yearly`` (last year) or
        ``custom``.  ``None`` is resolved by :func:`resolve_report_period`.
    start, end:
        Required for ``custom``; rejected for the named periods.
    today:
        Reference date, defaulting to today in UTC.

    Raises
    ------
    ValueError
        If a custom range is incomplete or inverted, or dates accompany
        a named period.
    """
    today = today or today_utc()
    kind = resolve_report_period(period, start, end)
    if kind is ReportPeriod.CUSTOM:
        if start is None or end is None:
            raise ValueError("A custom report period requires both start_date and end_date")
        return DateRange(start=start, end=end)
    if kind is ReportPeriod.WEEKLY:
        return DateRange(start=today - timedelta(days=7), end=today)
    return DateRange(start=months_before(today, _ROLLING_MONTHS[kind]), end=today)


def growth_percent(current: float | int, previous: float | int) -> float:
    """Percentage change from *previous* to *current*, rounded to one decimal.

    A zero baseline reports 100% when anything appeared, else 0%.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((float(current) - float(previous)) / float(previous) * 100.0, 1)
