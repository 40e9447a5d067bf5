"""Member trade endpoints: declare, list, inspect and cancel.

Declaring a trade answers as soon as the ``pending`` row is committed.
The STK push to the member's phone is started afterwards by the
``trade.declared`` event handler, so a slow payment gateway never holds
up the request.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from plant_api.dependencies import SessionDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import Page, day_bounds, page_offset
from plant_api.services.errors import ConflictError, NotFoundError, http_status
from plant_api.services.event_bus import EventType, get_event_bus
from plant_api.services.trade_service import TradeService
from plant_core.models.trade import TradeDeclaration, TradeStatus
from plant_core.state.repository import ProfileRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trades", tags=["trades"])


class DeclareTradeRequest(BaseModel):
    """Request body for declaring a trade."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=2000)
    source_member_id: str | None = None
    beneficiary_member_id: str | None = None
    phone_number: str | None = Field(None, description="MPESA number; defaults to the profile phone.")


@router.post("", status_code=201)
async def declare_trade(
    body: DeclareTradeRequest,
    session: SessionDep,
    user: UserDep,
    background_tasks: BackgroundTasks,
    _role: Role = Depends(require_permission(Permission.DECLARE_TRADES)),
) -> dict[str, Any]:
    """Declare a trade.  It starts ``pending``; payment is requested afterwards."""
    try:
        declaration = TradeDeclaration(
            amount=body.amount,
            description=body.description,
            source_member_id=body.source_member_id,
            beneficiary_member_id=body.beneficiary_member_id,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors()[0]["msg"]) from exc

    service = TradeService(session, actor_id=user)
    try:
        trade = await service.declare(user, declaration)
    except (NotFoundError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc

    phone = body.phone_number
    if not phone:
        profile = await ProfileRepository(session).get(user)
        phone = profile.phone if profile else None

    background_tasks.add_task(
        get_event_bus().emit,
        EventType.TRADE_DECLARED,
        actor_id=user,
        data={"trade_id": trade.id, "amount": str(trade.amount), "phone": phone},
    )
    (described,) = await service.describe([trade])
    return described


@router.get("", response_model=Page)
async def list_my_trades(
    session: SessionDep,
    user: UserDep,
    status: TradeStatus | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.READ_TRADES)),
) -> Page:
    """The caller's trades, newest first, with counterparts and invoice."""
    try:
        start, end = day_bounds(start_date, end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items, total = await TradeService(session).list_trades(
        user_id=user,
        status=status.value if status else None,
        start=start,
        end=end,
        limit=limit,
        offset=page_offset(page, limit),
    )
    return Page(items=items, total=total, page=page, limit=limit)


@router.get("/{trade_id}")
async def get_trade(
    trade_id: str,
    session: SessionDep,
    user: UserDep,
    role: Role = Depends(require_permission(Permission.READ_TRADES)),
) -> dict[str, Any]:
    """One trade.  Members see only their own; administrators see all."""
    service = TradeService(session)
    try:
        trade = await service.get_owned(trade_id, requester_id=user, is_admin=role >= Role.ADMINISTRATOR)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    (described,) = await service.describe([trade])
    return described


@router.post("/{trade_id}/cancel")
async def cancel_trade(
    trade_id: str,
    session: SessionDep,
    user: UserDep,
    role: Role = Depends(require_permission(Permission.DECLARE_TRADES)),
) -> dict[str, Any]:
    """Cancel a ``pending`` trade (its declarer or an administrator)."""
    service = TradeService(session, actor_id=user)
    try:
        trade = await service.cancel(trade_id, requester_id=user, is_admin=role >= Role.ADMINISTRATOR)
    except (NotFoundError, ConflictError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc
    (described,) = await service.describe([trade])
    return described
