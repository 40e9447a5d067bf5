"""Chapter leader dashboard endpoints.

All data is scoped to the chapter the caller leads, falling back to the
chapter they belong to.  A leader with neither gets 404 everywhere.
Administrators pass the same guards and see the chapter they lead or
belong to, if any.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from plant_api.dependencies import EmailDep, SessionDep, SettingsDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import Page, day_bounds, page_offset
from plant_api.services.chapter_leader_service import ChapterLeaderService
from plant_api.services.errors import ExternalServiceError, NotFoundError, http_status
from plant_core.models.notification import ReminderType
from plant_core.models.trade import TradeStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leader", tags=["leader"])


class ReminderRequest(BaseModel):
    """Request body for a member reminder."""

    type: ReminderType = ReminderType.GENERAL
    message: str = Field(..., min_length=1, max_length=4000)


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# ---------------------------------------------------------------------------
# Dashboard reads
# ---------------------------------------------------------------------------


@router.get("/stats")
async def chapter_stats(
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.VIEW_CHAPTER_DASHBOARD)),
) -> dict[str, Any]:
    """Member count, participation, learning hours and revenue with monthly growth."""
    try:
        return await ChapterLeaderService(session, user).stats()
    except NotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/members", response_model=Page)
async def chapter_members(
    session: SessionDep,
    user: UserDep,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.VIEW_CHAPTER_DASHBOARD)),
) -> Page:
    """Members with their 30-day category totals and last activity."""
    try:
        items, total = await ChapterLeaderService(session, user).members(
            limit=limit, offset=page_offset(page, limit)
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return Page(items=items, total=total, page=page, limit=limit)


@router.get("/trades", response_model=Page)
async def chapter_trades(
    session: SessionDep,
    user: UserDep,
    status: TradeStatus | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.VIEW_CHAPTER_DASHBOARD)),
) -> Page:
    try:
        start, end = day_bounds(start_date, end_date)
        items, total = await ChapterLeaderService(session, user).trades(
            status=status.value if status else None,
            start=start,
            end=end,
            limit=limit,
            offset=page_offset(page, limit),
        )
    except (NotFoundError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc
    return Page(items=items, total=total, page=page, limit=limit)


@router.get("/activity")
async def chapter_activity(
    session: SessionDep,
    user: UserDep,
    limit: int = Query(50, ge=1, le=50),
    _role: Role = Depends(require_permission(Permission.VIEW_CHAPTER_DASHBOARD)),
) -> list[dict[str, Any]]:
    """Recent metric entries and trades, newest first."""
    try:
        return await ChapterLeaderService(session, user).activity(limit)
    except NotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/pending-actions")
async def pending_actions(
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.VIEW_CHAPTER_DASHBOARD)),
) -> list[dict[str, Any]]:
    try:
        return await ChapterLeaderService(session, user).pending_actions()
    except NotFoundError as exc:
        raise _not_found(exc) from exc


# ---------------------------------------------------------------------------
# Outreach
# ---------------------------------------------------------------------------


@router.post("/members/{member_id}/reminder")
async def send_reminder(
    member_id: str,
    body: ReminderRequest,
    session: SessionDep,
    email: EmailDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.SEND_REMINDERS)),
) -> dict[str, Any]:
    """Email a reminder to one member of the caller's chapter."""
    service = ChapterLeaderService(session, user)
    try:
        return await service.send_reminder(member_id, body.type, body.message, email)
    except (NotFoundError, ExternalServiceError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc


@router.post("/members/{member_id}/resend-invite")
async def resend_invite(
    member_id: str,
    session: SessionDep,
    settings: SettingsDep,
    email: EmailDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_CHAPTER_MEMBERS)),
) -> dict[str, Any]:
    """Send a chapter member a fresh set-password link."""
    service = ChapterLeaderService(session, user)
    try:
        return await service.resend_invite(member_id, settings, email)
    except (NotFoundError, ExternalServiceError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc
