"""Metric recording, summaries and chapter leaderboards."""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from plant_api.dependencies import SessionDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import MetricResponse, MetricSummaryResponse, Page, page_offset
from plant_api.services.errors import NotFoundError
from plant_api.services.metrics_service import MetricsService, metric_to_dict
from plant_core.models.metric import MetricCategory, SummaryPeriod

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["metrics"])


class RecordMetricRequest(BaseModel):
    """Request body for recording one metric entry."""

    metric_type: MetricCategory
    value: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    description: str | None = Field(None, max_length=2000)
    date: dt.date | None = Field(None, description="Effective date; defaults to today.")


@router.post("", response_model=MetricResponse, status_code=201)
async def record_metric(
    body: RecordMetricRequest,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.RECORD_METRICS)),
) -> dict[str, Any]:
    """Record an entry for the caller, filed under their chapter."""
    try:
        row = await MetricsService(session).record(
            user,
            metric_type=body.metric_type,
            value=body.value,
            entry_date=body.date,
            description=body.description,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return metric_to_dict(row)


@router.get("", response_model=Page)
async def list_metrics(
    session: SessionDep,
    user: UserDep,
    metric_type: MetricCategory | None = Query(None, description="Filter by category."),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.READ_METRICS)),
) -> Page:
    """The caller's entries, newest first."""
    rows, total = await MetricsService(session).list_entries(
        user, metric_type=metric_type, limit=limit, offset=page_offset(page, limit)
    )
    return Page(items=[metric_to_dict(r) for r in rows], total=total, page=page, limit=limit)


@router.get("/summary", response_model=MetricSummaryResponse)
async def metric_summary(
    session: SessionDep,
    user: UserDep,
    period: SummaryPeriod = Query(SummaryPeriod.MONTH),
    _role: Role = Depends(require_permission(Permission.READ_METRICS)),
) -> MetricSummaryResponse:
    """The caller's five category totals and grand total for *period*."""
    summary = await MetricsService(session).summary(user, period)
    return MetricSummaryResponse(
        user_id=summary.user_id,
        period=summary.period.value,
        period_start=summary.period_start,
        period_end=summary.period_end,
        total=summary.total,
        **summary.totals.as_dict(),
    )


@router.get("/leaderboard")
async def leaderboard(
    session: SessionDep,
    user: UserDep,
    period: SummaryPeriod = Query(SummaryPeriod.MONTH),
    chapter_id: str | None = Query(None, description="Administrators only; others get their own chapter."),
    limit: int | None = Query(None, ge=1, le=500),
    role: Role = Depends(require_permission(Permission.READ_METRICS)),
) -> list[dict[str, Any]]:
    """Chapter members ranked by period total; ties go to the lower user id."""
    service = MetricsService(session)
    try:
        if chapter_id is None or role < Role.ADMINISTRATOR:
            chapter_id = await service.member_chapter(user)
        entries = await service.leaderboard(chapter_id, period, limit=limit)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [
        {
            "rank": e.rank,
            "user_id": e.user_id,
            "full_name": e.full_name,
            "business_name": e.business_name,
            **e.totals.as_dict(),
            "total": e.total,
        }
        for e in entries
    ]
