"""Administrator endpoints: platform metrics, user management and trade oversight.

Every endpoint requires an administrator token; the permission guard
answers 403 for anyone else before a handler runs.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from pydantic import BaseModel, EmailStr, Field

from plant_api.dependencies import EmailDep, SessionDep, SettingsDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import Page, day_bounds, page_offset
from plant_api.services.admin_service import AdminService
from plant_api.services.errors import (
    ConflictError,
    NotFoundError,
    UserCreationError,
    http_status,
)
from plant_api.services.event_bus import EventType, get_event_bus
from plant_api.services.invoice_service import InvoiceService
from plant_api.services.payment_service import PaymentService
from plant_api.services.trade_service import TradeService
from plant_core.models.profile import ProfileRole
from plant_core.models.trade import TradeStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateUserRequest(BaseModel):
    """Request body for creating a user with an emailed password link."""

    email: EmailStr
    full_name: str = Field(..., min_length=1, max_length=256)
    role: ProfileRole = ProfileRole.MEMBER
    chapter_id: str | None = None
    business_name: str | None = Field(None, max_length=256)
    business_description: str | None = Field(None, max_length=4000)
    phone: str | None = Field(None, max_length=32)


class UpdateUserRequest(BaseModel):
    """Partial user update.  ``chapter_id`` of ``""`` or ``"none"`` detaches."""

    full_name: str | None = Field(None, min_length=1, max_length=256)
    role: ProfileRole | None = None
    chapter_id: str | None = None
    business_name: str | None = Field(None, max_length=256)
    business_description: str | None = Field(None, max_length=4000)
    phone: str | None = Field(None, max_length=32)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/metrics")
async def admin_metrics(
    session: SessionDep,
    _role: Role = Depends(require_permission(Permission.VIEW_ADMIN_METRICS)),
) -> dict[str, Any]:
    """System-wide counters with 30-day growth and payment outcome shares."""
    return await AdminService(session).dashboard_metrics()


@router.get("/top-chapters")
async def top_chapters(
    session: SessionDep,
    limit: int = Query(10, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.VIEW_ADMIN_METRICS)),
) -> list[dict[str, Any]]:
    """Chapters ordered by paid revenue."""
    return await AdminService(session).top_chapters(limit)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=Page)
async def list_users(
    session: SessionDep,
    role: ProfileRole | None = Query(None),
    chapter_id: str | None = Query(None, description="Chapter id, or 'none' for unaffiliated users."),
    search: str | None = Query(None, max_length=256, description="Matches name, email or business."),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.MANAGE_USERS)),
) -> Page:
    """Users newest first, each with its chapter name."""
    items, total = await AdminService(session).list_users(
        role=role.value if role else None,
        chapter_id=chapter_id,
        search=search,
        limit=limit,
        offset=page_offset(page, limit),
    )
    return Page(items=items, total=total, page=page, limit=limit)


@router.post("/users", status_code=201)
async def create_user(
    body: CreateUserRequest,
    session: SessionDep,
    settings: SettingsDep,
    email: EmailDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_USERS)),
) -> dict[str, Any]:
    """Create a login and profile, then email a set-password link."""
    service = AdminService(session, actor_id=user)
    try:
        return await service.create_user(
            email=body.email,
            full_name=body.full_name,
            role=body.role.value,
            chapter_id=body.chapter_id,
            business_name=body.business_name,
            business_description=body.business_description,
            phone=body.phone,
            settings=settings,
            email_client=email,
        )
    except (NotFoundError, ConflictError, UserCreationError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc


@router.patch("/users/{user_id}")
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_USERS)),
) -> dict[str, Any]:
    """Update role, chapter, name, business fields or phone."""
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    if isinstance(fields.get("role"), ProfileRole):
        fields["role"] = fields["role"].value
    try:
        return await AdminService(session, actor_id=user).update_user(user_id, **fields)
    except (NotFoundError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: str,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_USERS)),
) -> Response:
    """Delete a user who has never declared a trade."""
    try:
        await AdminService(session, actor_id=user).delete_user(user_id)
    except (NotFoundError, ConflictError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------


@router.get("/trades", response_model=Page)
async def list_all_trades(
    session: SessionDep,
    status: TradeStatus | None = Query(None),
    chapter_id: str | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.MANAGE_TRADES)),
) -> Page:
    """All trades with resolved names and invoices."""
    try:
        start, end = day_bounds(start_date, end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items, total = await TradeService(session).list_trades(
        chapter_id=chapter_id,
        status=status.value if status else None,
        start=start,
        end=end,
        limit=limit,
        offset=page_offset(page, limit),
    )
    return Page(items=items, total=total, page=page, limit=limit)


@router.post("/trades/{trade_id}/mark-paid")
async def mark_trade_paid(
    trade_id: str,
    session: SessionDep,
    settings: SettingsDep,
    user: UserDep,
    background_tasks: BackgroundTasks,
    _role: Role = Depends(require_permission(Permission.MANAGE_TRADES)),
) -> dict[str, Any]:
    """Settle a trade's invoice without a provider callback.  Repeats are no-ops."""
    service = PaymentService(session, None, settings=settings, actor_id=user)
    try:
        result = await service.mark_paid(trade_id)
    except (NotFoundError, ConflictError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc
    if result["status"] == TradeStatus.PAID.value:
        background_tasks.add_task(
            get_event_bus().emit,
            EventType.PAYMENT_CONFIRMED,
            actor_id=user,
            data={"trade_id": trade_id, "reconciled_by": "admin_manual"},
        )
    return result


@router.post("/trades/{trade_id}/resend-invoice")
async def resend_invoice(
    trade_id: str,
    session: SessionDep,
    settings: SettingsDep,
    email: EmailDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_TRADES)),
) -> dict[str, Any]:
    """Email the invoice PDF to the trade's declarer again."""
    service = InvoiceService(session, settings, email_client=email, actor_id=user)
    try:
        return await service.resend(trade_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
