"""Bulk email notification endpoints (administrators only)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from plant_api.dependencies import EmailDep, SessionDep, SettingsDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import BulkNotificationResponse, NotificationHistoryResponse, Page, page_offset
from plant_api.services.event_bus import EventType, get_event_bus
from plant_api.services.notification_service import NotificationService
from plant_core.models.notification import RecipientType
from plant_core.state.tables import NotificationHistoryTable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


class BulkNotificationRequest(BaseModel):
    """Request body for a bulk send.

    ``chapter_id`` is required for ``chapter`` sends, ``role`` for ``role``
    sends and ``custom_emails`` for ``custom`` sends.  A ``scheduled_for``
    in the future stores the send for the scheduler instead of sending now.
    """

    notification_type: str = Field("announcement", min_length=1, max_length=64)
    recipient_type: RecipientType
    subject: str = Field(..., min_length=1, max_length=512)
    message: str = Field(..., min_length=1, max_length=20000)
    chapter_id: str | None = None
    role: str | None = None
    custom_emails: list[str] | None = Field(None, max_length=1000)
    scheduled_for: datetime | None = None


def _history_to_response(entry: NotificationHistoryTable) -> NotificationHistoryResponse:
    return NotificationHistoryResponse(
        id=entry.id,
        notification_type=entry.notification_type,
        recipient_type=entry.recipient_type,
        subject=entry.subject,
        message=entry.message,
        recipient_count=entry.recipient_count,
        sent_by=entry.sent_by,
        status=entry.status,
        scheduled_for=entry.scheduled_for,
        sent_at=entry.sent_at,
        metadata=entry.metadata_json,
        created_at=entry.created_at,
    )


@router.post("/bulk", response_model=BulkNotificationResponse)
async def send_bulk_notification(
    body: BulkNotificationRequest,
    session: SessionDep,
    settings: SettingsDep,
    email: EmailDep,
    user: UserDep,
    background_tasks: BackgroundTasks,
    _role: Role = Depends(require_permission(Permission.SEND_NOTIFICATIONS)),
) -> dict[str, Any]:
    """Send (or schedule) one email to every selected recipient."""
    service = NotificationService(session, email, settings, actor_id=user)
    try:
        result = await service.send_bulk(
            notification_type=body.notification_type,
            recipient_type=body.recipient_type,
            subject=body.subject,
            message=body.message,
            chapter_id=body.chapter_id,
            role=body.role,
            custom_emails=body.custom_emails,
            scheduled_for=body.scheduled_for,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not result["scheduled"]:
        background_tasks.add_task(
            get_event_bus().emit,
            EventType.NOTIFICATION_SENT,
            actor_id=user,
            data={
                "history_id": result["history_id"],
                "sent": result["sent"],
                "failed": result["failed"],
            },
        )
    return result


@router.get("/history", response_model=Page)
async def notification_history(
    session: SessionDep,
    settings: SettingsDep,
    email: EmailDep,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.SEND_NOTIFICATIONS)),
) -> Page:
    """Past and scheduled sends, newest first."""
    entries, total = await NotificationService(session, email, settings).history(
        limit=limit, offset=page_offset(page, limit)
    )
    items = [_history_to_response(e).model_dump(mode="json") for e in entries]
    return Page(items=items, total=total, page=page, limit=limit)
