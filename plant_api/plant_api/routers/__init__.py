"""API router modules for the PLANT Metrics service."""

from __future__ import annotations

from plant_api.routers import (
    admin,
    audit,
    auth,
    chapters,
    health,
    invoices,
    leader,
    metrics,
    notifications,
    payments,
    reports,
    trades,
)

__all__ = [
    "admin",
    "audit",
    "auth",
    "chapters",
    "health",
    "invoices",
    "leader",
    "metrics",
    "notifications",
    "payments",
    "reports",
    "trades",
]
