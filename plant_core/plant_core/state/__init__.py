"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from plant_core.state.database import get_engine, get_session
from plant_core.state.repository import (
    AuditRepository,
    AuthIdentityRepository,
    ChapterRepository,
    InvoiceRepository,
    MetricRepository,
    NotificationHistoryRepository,
    ProfileRepository,
    ReportHistoryRepository,
    TradeRepository,
)

__all__ = [
    "AuditRepository",
    "AuthIdentityRepository",
    "ChapterRepository",
    "InvoiceRepository",
    "MetricRepository",
    "NotificationHistoryRepository",
    "ProfileRepository",
    "ReportHistoryRepository",
    "TradeRepository",
    "get_engine",
    "get_session",
]
