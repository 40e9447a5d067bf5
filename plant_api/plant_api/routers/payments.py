"""MPESA payment endpoints: STK push initiation and the provider callback.

``/payments/callback`` is public.  The provider cannot carry our bearer
tokens, so the callback is trusted only through its checkout token, which
must match a trade we initiated.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from pydantic import BaseModel, Field

from plant_api.dependencies import EmailDep, MpesaDep, SessionDep, SettingsDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import CallbackAck, PaymentInitiationResponse
from plant_api.services.errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PaymentReferenceNotFoundError,
    http_status,
)
from plant_api.services.event_bus import EventType, get_event_bus
from plant_api.services.mpesa_client import parse_callback
from plant_api.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

_CALLBACK_EVENTS = {
    "paid": EventType.PAYMENT_CONFIRMED,
    "failed": EventType.PAYMENT_FAILED,
}


class InitiatePaymentRequest(BaseModel):
    """Request body for an STK push."""

    trade_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=9, max_length=20)
    amount: Decimal | None = Field(None, gt=0, description="Must equal the trade amount when given.")


@router.post("/initiate", response_model=PaymentInitiationResponse)
async def initiate_payment(
    body: InitiatePaymentRequest,
    session: SessionDep,
    settings: SettingsDep,
    mpesa: MpesaDep,
    user: UserDep,
    background_tasks: BackgroundTasks,
    role: Role = Depends(require_permission(Permission.INITIATE_PAYMENTS)),
) -> dict[str, Any]:
    """Send an STK push for a ``pending`` trade the caller declared."""
    service = PaymentService(session, mpesa, settings=settings, actor_id=user)
    try:
        result = await service.initiate(
            body.trade_id,
            body.phone_number,
            body.amount,
            requester_id=user,
            is_admin=role >= Role.ADMINISTRATOR,
        )
    except (NotFoundError, ConflictError, ExternalServiceError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc

    background_tasks.add_task(
        get_event_bus().emit,
        EventType.PAYMENT_INITIATED,
        actor_id=user,
        data={"trade_id": result["trade_id"], "checkout_token": result["checkout_token"]},
    )
    return result


@router.post("/callback", response_model=CallbackAck)
async def payment_callback(
    session: SessionDep,
    settings: SettingsDep,
    mpesa: MpesaDep,
    email: EmailDep,
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Body(...),
) -> CallbackAck:
    """Apply a Daraja ``stkCallback`` result.

    Replays and late callbacks for settled trades are acknowledged without
    any change.  An unknown checkout token answers 404.
    """
    try:
        callback = parse_callback(payload)
    except ValueError as exc:
        logger.warning("Rejected malformed MPESA callback: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    service = PaymentService(session, mpesa, settings=settings, email_client=email)
    try:
        outcome = await service.handle_callback(callback)
    except PaymentReferenceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    event = _CALLBACK_EVENTS.get(outcome["status"])
    if event is not None:
        background_tasks.add_task(
            get_event_bus().emit,
            event,
            data={
                "trade_id": outcome["trade_id"],
                "receipt": callback.receipt_number,
                "result_code": callback.result_code,
            },
        )
    logger.info("MPESA callback for trade %s: %s", outcome["trade_id"], outcome["status"])
    return CallbackAck()
