"""Domain models for PLANT Metrics."""

from plant_core.models.metric import (
    CategoryTotals,
    LeaderboardEntry,
    MetricCategory,
    MetricSummary,
    SummaryPeriod,
)
from plant_core.models.notification import NotificationStatus, RecipientType, ReminderType
from plant_core.models.profile import ProfileRef, ProfileRole
from plant_core.models.report import (
    DateRange,
    ReportFormat,
    ReportPeriod,
    ReportSheet,
    ReportType,
    report_file_name,
)
from plant_core.models.trade import (
    InvalidTransitionError,
    PaymentCallback,
    TradeDeclaration,
    TradeStatus,
    allowed_sources,
    can_transition,
    ensure_transition,
)

__all__ = [
    "CategoryTotals",
    "DateRange",
    "InvalidTransitionError",
    "LeaderboardEntry",
    "MetricCategory",
    "MetricSummary",
    "NotificationStatus",
    "PaymentCallback",
    "ProfileRef",
    "ProfileRole",
    "RecipientType",
    "ReminderType",
    "ReportFormat",
    "ReportPeriod",
    "ReportSheet",
    "ReportType",
    "SummaryPeriod",
    "TradeDeclaration",
    "TradeStatus",
    "allowed_sources",
    "can_transition",
    "ensure_transition",
    "report_file_name",
]
