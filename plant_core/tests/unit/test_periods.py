"""Tests for the summary and report date-window helpers."""

from __future__ import annotations

from datetime import date

import pytest

from plant_core.metrics.periods import (
    growth_percent,
    month_bounds,
    months_before,
    period_start,
    report_date_range,
    resolve_report_period,
)
from plant_core.models.report import DateRange, ReportPeriod

TODAY = date(2024, 8, 20)


class TestPeriodStart:
    @pytest.mark.parametrize(
        "period, expected",
        [("month", date(2024, 8, 1)), ("quarter", date(2024, 7, 1)), ("year", date(2024, 1, 1))],
    )
    def test_current_unit(self, period: str, expected: date) -> None:
        assert period_start(period, TODAY) == expected

    @pytest.mark.parametrize(
        "today, expected",
        [(date(2024, 3, 31), date(2024, 1, 1)), (date(2024, 4, 1), date(2024, 4, 1)), (date(2024, 12, 5), date(2024, 10, 1))],
    )
    def test_quarter_boundaries(self, today: date, expected: date) -> None:
        assert period_start("quarter", today) == expected

    def test_unknown_period(self) -> None:
        with pytest.raises(ValueError):
            period_start("decade", TODAY)


def test_month_bounds_across_year_end() -> None:
    assert month_bounds(date(2024, 1, 15)) == (date(2024, 1, 1), date(2023, 12, 1))


class TestReportDateRange:
    def test_weekly_is_last_seven_days(self) -> None:
        assert report_date_range("weekly", today=TODAY) == DateRange(start=date(2024, 8, 13), end=TODAY)

    @pytest.mark.parametrize(
        "period, start",
        [("monthly", date(2024, 7, 20)), ("quarterly", date(2024, 5, 20)), ("yearly", date(2023, 8, 20))],
    )
    def test_rolling_periods_end_today(self, period: str, start: date) -> None:
        assert report_date_range(period, today=TODAY) == DateRange(start=start, end=TODAY)

    @pytest.mark.parametrize(
        "period, start",
        [("monthly", date(2024, 2, 15)), ("quarterly", date(2023, 12, 15)), ("yearly", date(2023, 3, 15))],
    )
    def test_rolling_periods_cross_year_end(self, period: str, start: date) -> None:
        today = date(2024, 3, 15)
        assert report_date_range(period, today=today) == DateRange(start=start, end=today)

    def test_rolling_start_clamps_to_month_length(self) -> None:
        assert report_date_range("monthly", today=date(2024, 3, 31)).start == date(2024, 2, 29)
        assert report_date_range("quarterly", today=date(2024, 5, 31)).start == date(2024, 2, 29)
        assert report_date_range("yearly", today=date(2024, 2, 29)).start == date(2023, 2, 28)

    def test_named_period_rejects_explicit_dates(self) -> None:
        with pytest.raises(ValueError, match="only apply to the custom period"):
            report_date_range("monthly", start=date(2020, 1, 1), end=date(2020, 1, 2), today=TODAY)

    def test_dates_without_period_are_custom(self) -> None:
        result = report_date_range(None, start=date(2024, 1, 1), end=date(2024, 1, 31), today=TODAY)
        assert result == DateRange(start=date(2024, 1, 1), end=date(2024, 1, 31))

    def test_no_period_no_dates_is_monthly(self) -> None:
        assert report_date_range(None, today=TODAY).start == date(2024, 7, 20)

    def test_custom_range(self) -> None:
        result = report_date_range("custom", start=date(2024, 1, 1), end=date(2024, 1, 1))
        assert result.start == result.end == date(2024, 1, 1)

    def test_custom_requires_both_dates(self) -> None:
        with pytest.raises(ValueError, match="requires both"):
            report_date_range("custom", start=date(2024, 1, 1))

    def test_custom_inverted_range(self) -> None:
        with pytest.raises(ValueError):
            report_date_range("custom", start=date(2024, 2, 1), end=date(2024, 1, 1))


class TestResolveReportPeriod:
    @pytest.mark.parametrize(
        "period, start, end, expected",
        [
            (None, None, None, ReportPeriod.MONTHLY),
            (None, date(2024, 1, 1), date(2024, 1, 31), ReportPeriod.CUSTOM),
            (None, date(2024, 1, 1), None, ReportPeriod.CUSTOM),
            ("weekly", None, None, ReportPeriod.WEEKLY),
            ("custom", date(2024, 1, 1), date(2024, 1, 31), ReportPeriod.CUSTOM),
        ],
    )
    def test_resolution(self, period, start, end, expected) -> None:
        assert resolve_report_period(period, start, end) is expected

    @pytest.mark.parametrize("period", ["weekly", "quarterly", "yearly"])
    def test_named_period_with_a_date(self, period: str) -> None:
        with pytest.raises(ValueError, match="custom"):
            resolve_report_period(period, end=date(2024, 1, 31))


def test_months_before_crosses_year_boundary() -> None:
    assert months_before(date(2024, 1, 31), 1) == date(2023, 12, 31)
    assert months_before(date(2024, 1, 15), 13) == date(2022, 12, 15)


class TestGrowthPercent:
    @pytest.mark.parametrize(
        "current, previous, expected",
        [
            (150, 100, 50.0),
            (50, 100, -50.0),
            (1, 3, -66.7),
            (5, 0, 100.0),
            (0, 0, 0.0),
            (100, 100, 0.0),
        ],
    )
    def test_values(self, current, previous, expected) -> None:
        assert growth_percent(current, previous) == expected
