"""Serialise report sheets to ``.xlsx`` (openpyxl) or PDF (reportlab).

Renderers work on :class:`~plant_core.models.report.ReportSheet` values
only; they never touch the database, so a renderer failure cannot leave
partial state behind.
"""

from __future__ import annotations

import io
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from plant_core.models.report import DateRange, ReportFormat, ReportSheet

# ---------------------------------------------------------------------------
# Formula injection prevention
# ---------------------------------------------------------------------------

_FORMULA_PREFIXES = frozenset({"=", "+", "-", "@", "\t", "\r"})

_MAX_COLUMN_WIDTH = 60
_SHEET_TITLE_LIMIT = 31


def _sanitize_cell(value: Any) -> Any:
    """Keep spreadsheet applications from evaluating text as a formula.

    Strings starting with ``=``, ``+``, ``-``, ``@``, ``\\t`` or ``\\r``
    get a leading single quote.  Numbers and dates pass through.
    """
    if isinstance(value, str) and value and value[0] in _FORMULA_PREFIXES:
        return "'" + value
    return value


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return f"{value:,.2f}"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _excel_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        # openpyxl cannot store timezone-aware datetimes.
        return value.replace(tzinfo=None)
    return _sanitize_cell(value)


# ---------------------------------------------------------------------------
# Spreadsheet
# ---------------------------------------------------------------------------


def render_excel(sheets: list[ReportSheet]) -> bytes:
    """One worksheet per sheet: bold header row, widths sized to content."""
    wb = Workbook()
    wb.remove(wb.active)
    bold = Font(bold=True)

    for sheet in sheets:
        ws = wb.create_sheet(title=sheet.name[:_SHEET_TITLE_LIMIT])
        ws.append(sheet.columns)
        for cell in ws[1]:
            cell.font = bold
        for row in sheet.rows:
            ws.append([_excel_value(v) for v in row])

        for idx, header in enumerate(sheet.columns, start=1):
            width = max([len(str(header))] + [len(_display(row[idx - 1])) for row in sheet.rows if len(row) >= idx])
            ws.column_dimensions[get_column_letter(idx)].width = min(width + 2, _MAX_COLUMN_WIDTH)

    if not wb.worksheets:
        wb.create_sheet(title="Report")

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


def render_pdf(title: str, date_range: DateRange | None, sheets: list[ReportSheet]) -> bytes:
    """Title, date range, then each sheet as a heading and a table."""
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=landscape(A4),
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
        leftMargin=0.5 * inch,
        rightMargin=0.5 * inch,
        title=title,
    )
    styles = getSampleStyleSheet()
    cell_style = ParagraphStyle("ReportCell", parent=styles["BodyText"], fontSize=8, leading=10)

    elements: list[Any] = [Paragraph(_escape(title), styles["Title"])]
    if date_range is not None:
        elements.append(
            Paragraph(f"Period: {date_range.start.isoformat()} to {date_range.end.isoformat()}", styles["Normal"])
        )
    elements.append(Paragraph(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}", styles["Normal"]))
    elements.append(Spacer(1, 16))

    for sheet in sheets:
        elements.append(Paragraph(_escape(sheet.name), styles["Heading2"]))
        if not sheet.rows:
            elements.append(Paragraph("No records in this period.", styles["Italic"]))
            elements.append(Spacer(1, 12))
            continue
        data = [[Paragraph(f"<b>{_escape(c)}</b>", cell_style) for c in sheet.columns]]
        data.extend([Paragraph(_escape(_display(v)), cell_style) for v in row] for row in sheet.rows)
        table = Table(data, repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e5e7eb")),
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f9fafb")]),
                ]
            )
        )
        elements.append(table)
        elements.append(Spacer(1, 16))

    doc.build(elements)
    return buf.getvalue()


def render(fmt: ReportFormat, title: str, date_range: DateRange | None, sheets: list[ReportSheet]) -> bytes:
    if fmt is ReportFormat.EXCEL:
        return render_excel(sheets)
    return render_pdf(title, date_range, sheets)


def _escape(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
