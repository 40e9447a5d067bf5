"""Report vocabulary: types, output formats and periods."""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class ReportType(str, Enum):
    """Entity a report summarises."""

    METRICS = "metrics"
    TRADES = "trades"
    FINANCIAL = "financial"
    MEMBERS = "members"
    CHAPTERS = "chapters"


class ReportFormat(str, Enum):
    """Artifact format.  ``excel`` produces ``.xlsx``; ``pdf`` a paged document."""

    EXCEL = "excel"
    PDF = "pdf"

    @property
    def extension(self) -> str:
        return "xlsx" if self is ReportFormat.EXCEL else "pdf"

    @property
    def media_type(self) -> str:
        if self is ReportFormat.EXCEL:
            return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        return "application/pdf"


class ReportPeriod(str, Enum):
    """Named date windows an administrator can pick."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class DateRange(BaseModel):
    """An inclusive date range."""

    start: date = Field(..., description="Inclusive lower bound of the range.")
    end: date = Field(..., description="Inclusive upper bound of the range.")

    @model_validator(mode="after")
    def validate_start_before_end(self) -> DateRange:
        """Ensure *start* does not come after *end*."""
        if self.start > self.end:
            raise ValueError(f"DateRange start ({self.start}) must be <= end ({self.end}).")
        return self


class ReportSheet(BaseModel):
    """One named table of a report: a header row plus data rows."""

    name: str
    columns: list[str]
    rows: list[list[object]] = Field(default_factory=list)


def report_file_name(report_type: ReportType | str, date_range: DateRange, fmt: ReportFormat) -> str:
    """Build ``<type>_Report_<start>_to_<end>.<ext>``."""
    kind = ReportType(report_type).value
    return f"{kind}_Report_{date_range.start.isoformat()}_to_{date_range.end.isoformat()}.{fmt.extension}"
