"""Report endpoints: administrator reports and a member's own data export.

Artifacts are rendered in memory and streamed back as attachments; only
the generation record is stored.
"""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError

from plant_api.dependencies import SessionDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import Page, ReportHistoryResponse, page_offset
from plant_api.services.errors import NotFoundError
from plant_api.services.event_bus import EventType, get_event_bus
from plant_api.services.reporting_service import ReportArtifact, ReportingService
from plant_core.models.report import ReportFormat, ReportPeriod, ReportType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reports"])


class GenerateReportRequest(BaseModel):
    """Request body for an administrator report.

    ``start_date`` and ``end_date`` select a ``custom`` range.  Without a
    ``period`` they imply ``custom``; with a named period they are rejected.
    Omitting both the period and the dates gives ``monthly``.
    """

    report_type: ReportType
    period: ReportPeriod | None = None
    format: ReportFormat = ReportFormat.EXCEL
    start_date: date | None = None
    end_date: date | None = None


def _attachment(artifact: ReportArtifact) -> Response:
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.file_name}"'},
    )


@router.post("/admin/reports")
async def generate_report(
    body: GenerateReportRequest,
    session: SessionDep,
    user: UserDep,
    background_tasks: BackgroundTasks,
    _role: Role = Depends(require_permission(Permission.GENERATE_REPORTS)),
) -> Response:
    """Render a report for a named or custom period and stream it back."""
    service = ReportingService(session, actor_id=user)
    try:
        artifact = await service.generate(
            body.report_type,
            body.period,
            body.format,
            start_date=body.start_date,
            end_date=body.end_date,
        )
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    background_tasks.add_task(
        get_event_bus().emit,
        EventType.REPORT_GENERATED,
        actor_id=user,
        data={"report_type": body.report_type.value, "file_name": artifact.file_name},
    )
    return _attachment(artifact)


@router.get("/admin/reports/history", response_model=Page)
async def report_history(
    session: SessionDep,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.GENERATE_REPORTS)),
) -> Page:
    entries, total = await ReportingService(session).history(limit=limit, offset=page_offset(page, limit))
    items = [ReportHistoryResponse.model_validate(e, from_attributes=True).model_dump(mode="json") for e in entries]
    return Page(items=items, total=total, page=page, limit=limit)


@router.get("/reports/me/export")
async def export_my_data(
    session: SessionDep,
    user: UserDep,
    format: ReportFormat = Query(ReportFormat.EXCEL),
    _role: Role = Depends(require_permission(Permission.EXPORT_OWN_DATA)),
) -> Response:
    """The caller's summary, metrics and trades as one document."""
    try:
        artifact = await ReportingService(session, actor_id=user).member_export(user, format)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _attachment(artifact)
