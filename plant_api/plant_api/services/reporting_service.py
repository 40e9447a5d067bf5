"""Administrator reports and the member self-export.

Each report type is built as a list of :class:`ReportSheet` tables from a
handful of range queries, with every foreign reference resolved through a
single batch lookup over the distinct ids in the result set.  The history
row is written only after the artifact rendered successfully, so a failed
report leaves no trace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services import report_renderers
from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.errors import ProfileNotFoundError
from plant_core.metrics.aggregation import sum_decimal
from plant_core.metrics.periods import report_date_range, resolve_report_period, today_utc
from plant_core.models.metric import CategoryTotals
from plant_core.models.profile import ProfileRole
from plant_core.models.report import DateRange, ReportFormat, ReportPeriod, ReportSheet, ReportType, report_file_name
from plant_core.models.trade import TradeStatus
from plant_core.state.repository import (
    ChapterRepository,
    InvoiceRepository,
    MetricRepository,
    ProfileRepository,
    ReportHistoryRepository,
    TradeRepository,
)
from plant_core.state.tables import ReportHistoryTable

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"

_TITLES = {
    ReportType.METRICS: "PLANT Metrics Report",
    ReportType.TRADES: "Trade Activity Report",
    ReportType.FINANCIAL: "Financial Summary Report",
    ReportType.MEMBERS: "Member Directory Report",
    ReportType.CHAPTERS: "Chapter Performance Report",
}


@dataclass(frozen=True)
class ReportArtifact:
    """A rendered report ready to stream."""

    file_name: str
    media_type: str
    content: bytes


def _range_bounds(date_range: DateRange) -> tuple[datetime, datetime]:
    """Inclusive date range as ``[start 00:00, day-after-end 00:00)`` in UTC."""
    start = datetime.combine(date_range.start, time.min, tzinfo=UTC)
    end = datetime.combine(date_range.end + timedelta(days=1), time.min, tzinfo=UTC)
    return start, end


def _name(record: Any, attr: str = "full_name") -> str:
    if record is None:
        return NOT_AVAILABLE
    return getattr(record, attr, None) or NOT_AVAILABLE


def _label(value: str) -> str:
    return value.replace("_", " ").title()


class ReportingService:
    """Builds, renders and records reports."""

    def __init__(self, session: AsyncSession, *, actor_id: str | None = None) -> None:
        self._actor_id = actor_id
        self._profiles = ProfileRepository(session)
        self._chapters = ChapterRepository(session)
        self._metrics = MetricRepository(session)
        self._trades = TradeRepository(session)
        self._invoices = InvoiceRepository(session)
        self._history = ReportHistoryRepository(session)
        self._audit = AuditService(session, actor_id=actor_id)

    # -- Administrator reports -----------------------------------------------

    async def generate(
        self,
        report_type: ReportType | str,
        period: ReportPeriod | str | None,
        fmt: ReportFormat | str,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
        today: date | None = None,
    ) -> ReportArtifact:
        """Build and render a report, then record it.

        Raises
        ------
        ValueError
            For an unknown type, period or format, an invalid custom range,
            or explicit dates given with a named period.  A ``None`` period
            with both dates is treated as ``custom``.
        """
        kind = ReportType(report_type)
        period = resolve_report_period(period, start_date, end_date)
        fmt = ReportFormat(fmt)
        date_range = report_date_range(period, start=start_date, end=end_date, today=today)

        sheets = await self.build_sheets(kind, date_range)
        content = report_renderers.render(fmt, _TITLES[kind], date_range, sheets)
        file_name = report_file_name(kind, date_range, fmt)

        entry = await self._history.create(
            report_type=kind.value,
            period=period.value,
            format=fmt.value,
            file_name=file_name,
            date_range={"start": date_range.start.isoformat(), "end": date_range.end.isoformat()},
            generated_by=self._actor_id,
        )
        await self._audit.log(
            AuditAction.REPORT_GENERATED,
            "reports_history",
            entry.id,
            new_values={"report_type": kind.value, "format": fmt.value, "file_name": file_name},
        )
        logger.info("Generated report %s (%d bytes)", file_name, len(content))
        return ReportArtifact(file_name=file_name, media_type=fmt.media_type, content=content)

    async def build_sheets(self, kind: ReportType, date_range: DateRange) -> list[ReportSheet]:
        builders = {
            ReportType.METRICS: self._metrics_sheets,
            ReportType.TRADES: self._trades_sheets,
            ReportType.FINANCIAL: self._financial_sheets,
            ReportType.MEMBERS: self._members_sheets,
            ReportType.CHAPTERS: self._chapters_sheets,
        }
        return await builders[kind](date_range)

    async def history(self, *, limit: int = 20, offset: int = 0) -> tuple[list[ReportHistoryTable], int]:
        return await self._history.list(limit=limit, offset=offset)

    async def _metrics_sheets(self, date_range: DateRange) -> list[ReportSheet]:
        rows = await self._metrics.list_in_range(date_range.start, date_range.end)
        profiles = await self._profiles.get_many(r.user_id for r in rows)
        chapters = await self._chapters.get_many(r.chapter_id for r in rows)

        totals = CategoryTotals()
        for row in rows:
            totals.add(row.metric_type, row.value)
        summary = ReportSheet(
            name="Summary",
            columns=["Category", "Total"],
            rows=[[_label(c), v] for c, v in totals.as_dict().items()]
            + [["Grand Total", totals.total], ["Entries", len(rows)]],
        )
        detail = ReportSheet(
            name="All Metrics",
            columns=["Date", "Member", "Business", "Chapter", "Category", "Value", "Description"],
            rows=[
                [
                    r.date,
                    _name(profiles.get(r.user_id)),
                    _name(profiles.get(r.user_id), "business_name"),
                    _name(chapters.get(r.chapter_id) if r.chapter_id else None, "name"),
                    _label(r.metric_type),
                    r.value,
                    r.description or "",
                ]
                for r in rows
            ],
        )
        return [summary, detail]

    async def _trades_sheets(self, date_range: DateRange) -> list[ReportSheet]:
        start, end = _range_bounds(date_range)
        rows, _ = await self._trades.list(start=start, end=end, limit=None)
        rows.reverse()
        profiles = await self._profiles.get_many(
            pid for r in rows for pid in (r.user_id, r.source_member_id, r.beneficiary_member_id)
        )
        chapters = await self._chapters.get_many(r.chapter_id for r in rows)

        total_value = sum_decimal(r.amount for r in rows)
        average = (total_value / len(rows)).quantize(Decimal("0.01")) if rows else Decimal("0.00")
        by_status = {s.value: 0 for s in TradeStatus}
        for r in rows:
            by_status[r.status] = by_status.get(r.status, 0) + 1

        summary = ReportSheet(
            name="Summary",
            columns=["Metric", "Value"],
            rows=[["Total Trades", len(rows)], ["Total Value (KES)", total_value], ["Average Value (KES)", average]]
            + [[f"{_label(status)} Trades", count] for status, count in by_status.items()],
        )
        detail = ReportSheet(
            name="All Trades",
            columns=[
                "Date",
                "Declared By",
                "Source Member",
                "Beneficiary Member",
                "Chapter",
                "Amount (KES)",
                "Status",
                "MPESA Receipt",
                "Description",
            ],
            rows=[
                [
                    r.created_at,
                    _name(profiles.get(r.user_id)),
                    _name(profiles.get(r.source_member_id)) if r.source_member_id else NOT_AVAILABLE,
                    _name(profiles.get(r.beneficiary_member_id)) if r.beneficiary_member_id else NOT_AVAILABLE,
                    _name(chapters.get(r.chapter_id) if r.chapter_id else None, "name"),
                    r.amount,
                    r.status,
                    r.mpesa_receipt or "",
                    r.description or "",
                ]
                for r in rows
            ],
        )
        return [summary, detail]

    async def _financial_sheets(self, date_range: DateRange) -> list[ReportSheet]:
        start, end = _range_bounds(date_range)
        revenue = sum_decimal(await self._trades.paid_amounts(paid_from=start, paid_to=end))
        invoices = await self._invoices.list_issued_between(start, end)
        paid = [i for i in invoices if i.paid_at is not None]
        pending = [i for i in invoices if i.paid_at is None]
        return [
            ReportSheet(
                name="Financial Summary",
                columns=["Metric", "Value"],
                rows=[
                    ["Total Trade Revenue (KES)", revenue],
                    ["Invoices Issued", len(invoices)],
                    ["Paid Invoices", len(paid)],
                    ["Paid Amount (KES)", sum_decimal(i.amount for i in paid)],
                    ["Pending Invoices", len(pending)],
                    ["Pending Amount (KES)", sum_decimal(i.amount for i in pending)],
                ],
            )
        ]

    async def _members_sheets(self, date_range: DateRange) -> list[ReportSheet]:
        start, end = _range_bounds(date_range)
        members = await self._profiles.list_created_between(start, end)
        chapters = await self._chapters.get_many(m.chapter_id for m in members)
        by_role = {r.value: 0 for r in ProfileRole}
        for m in members:
            by_role[m.role] = by_role.get(m.role, 0) + 1

        summary = ReportSheet(
            name="Summary",
            columns=["Role", "Count"],
            rows=[[_label(role), count] for role, count in by_role.items()] + [["Total", len(members)]],
        )
        directory = ReportSheet(
            name="Member Directory",
            columns=["Name", "Email", "Role", "Chapter", "Business", "Phone", "Joined"],
            rows=[
                [
                    m.full_name or NOT_AVAILABLE,
                    m.email,
                    _label(m.role),
                    _name(chapters.get(m.chapter_id) if m.chapter_id else None, "name"),
                    m.business_name or NOT_AVAILABLE,
                    m.phone or NOT_AVAILABLE,
                    m.created_at,
                ]
                for m in members
            ],
        )
        return [summary, directory]

    async def _chapters_sheets(self, date_range: DateRange) -> list[ReportSheet]:
        # Always the current state; the range only labels the artifact.
        chapters = await self._chapters.list_all()
        leaders = await self._profiles.get_many(c.leader_id for c in chapters)
        member_counts = await self._profiles.count_by_chapter()
        return [
            ReportSheet(
                name="Chapters Overview",
                columns=["Chapter", "Leader", "Members", "Created"],
                rows=[
                    [
                        c.name,
                        _name(leaders.get(c.leader_id)) if c.leader_id else NOT_AVAILABLE,
                        member_counts.get(c.id, 0),
                        c.created_at,
                    ]
                    for c in chapters
                ],
            )
        ]

    # -- Member self export --------------------------------------------------

    async def member_export(self, user_id: str, fmt: ReportFormat | str) -> ReportArtifact:
        """Summary, every metric and every declared trade of one member.

        Raises
        ------
        ProfileNotFoundError
            If the member has no profile.
        """
        fmt = ReportFormat(fmt)
        profile = await self._profiles.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)

        metrics = await self._metrics.list_for_user(user_id)
        trades, _ = await self._trades.list(user_id=user_id, limit=None)
        counterparts = await self._profiles.get_many(
            pid for t in trades for pid in (t.source_member_id, t.beneficiary_member_id)
        )
        chapter = await self._chapters.get(profile.chapter_id) if profile.chapter_id else None

        totals = CategoryTotals()
        for m in metrics:
            totals.add(m.metric_type, m.value)

        today = today_utc()
        summary = ReportSheet(
            name="Summary",
            columns=["Field", "Value"],
            rows=[
                ["Member", profile.full_name or NOT_AVAILABLE],
                ["Email", profile.email],
                ["Business", profile.business_name or NOT_AVAILABLE],
                ["Chapter", _name(chapter, "name")],
                ["Report Date", today],
            ]
            + [[_label(c), v] for c, v in totals.as_dict().items()]
            + [["Grand Total", totals.total]],
        )
        metrics_sheet = ReportSheet(
            name="Metrics",
            columns=["Date", "Type", "Value", "Description"],
            rows=[[m.date, _label(m.metric_type), m.value, m.description or ""] for m in metrics],
        )
        trades_sheet = ReportSheet(
            name="Trades",
            columns=["Date", "Amount (KES)", "Status", "Description", "Source", "Beneficiary", "MPESA Ref"],
            rows=[
                [
                    t.created_at,
                    t.amount,
                    t.status,
                    t.description or "",
                    _name(counterparts.get(t.source_member_id)) if t.source_member_id else NOT_AVAILABLE,
                    _name(counterparts.get(t.beneficiary_member_id)) if t.beneficiary_member_id else NOT_AVAILABLE,
                    t.mpesa_receipt or "",
                ]
                for t in trades
            ],
        )
        sheets = [summary, metrics_sheet, trades_sheet]
        content = report_renderers.render(fmt, "PLANT Metrics Report", None, sheets)
        safe_name = "".join(ch if ch.isalnum() else "_" for ch in (profile.full_name or "member")).strip("_")
        file_name = f"PLANT_Report_{safe_name or 'member'}_{today.isoformat()}.{fmt.extension}"
        return ReportArtifact(file_name=file_name, media_type=fmt.media_type, content=content)
