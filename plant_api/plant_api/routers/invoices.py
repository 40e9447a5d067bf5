"""Invoice endpoints: idempotent generation, detail and PDF download.

Members can only reach invoices of trades they declared; for anything
else the answer is 404 so invoice ids of other members are not disclosed.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from plant_api.dependencies import SessionDep, SettingsDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.schemas import InvoiceGenerateResponse
from plant_api.services.errors import ConflictError, NotFoundError, http_status
from plant_api.services.event_bus import EventType, get_event_bus
from plant_api.services.invoice_service import InvoiceService
from plant_api.services.trade_service import TradeService, invoice_to_dict
from plant_core.state.tables import InvoiceTable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


class GenerateInvoiceRequest(BaseModel):
    """Request body for invoice generation."""

    trade_id: str = Field(..., min_length=1)


async def _readable_invoice(
    service: InvoiceService, invoice_id: str, *, user: str, is_admin: bool
) -> InvoiceTable:
    try:
        invoice = await service.get(invoice_id)
        trade = await service.get_trade(invoice)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not is_admin and trade.user_id != user:
        raise HTTPException(status_code=404, detail=f"Invoice '{invoice_id}' not found")
    return invoice


@router.post("", response_model=InvoiceGenerateResponse)
async def generate_invoice(
    body: GenerateInvoiceRequest,
    session: SessionDep,
    settings: SettingsDep,
    user: UserDep,
    background_tasks: BackgroundTasks,
    role: Role = Depends(require_permission(Permission.READ_INVOICES)),
) -> InvoiceGenerateResponse:
    """Issue the trade's invoice, or return the one it already has."""
    is_admin = role >= Role.ADMINISTRATOR
    service = InvoiceService(session, settings, actor_id=user)
    try:
        await TradeService(session).get_owned(body.trade_id, requester_id=user, is_admin=is_admin)
        invoice, created = await service.generate(body.trade_id)
    except (NotFoundError, ConflictError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc

    if created:
        background_tasks.add_task(
            get_event_bus().emit,
            EventType.INVOICE_GENERATED,
            actor_id=user,
            data={"trade_id": invoice.trade_id, "invoice_number": invoice.invoice_number},
        )
    return InvoiceGenerateResponse(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        trade_id=invoice.trade_id,
        amount=invoice.amount,
        created=created,
        pdf_url=f"/api/v1/invoices/{invoice.id}/pdf",
    )


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    session: SessionDep,
    settings: SettingsDep,
    user: UserDep,
    role: Role = Depends(require_permission(Permission.READ_INVOICES)),
) -> dict[str, Any]:
    """Invoice detail."""
    service = InvoiceService(session, settings)
    invoice = await _readable_invoice(service, invoice_id, user=user, is_admin=role >= Role.ADMINISTRATOR)
    return invoice_to_dict(invoice)


@router.get("/{invoice_id}/pdf")
async def download_invoice_pdf(
    invoice_id: str,
    session: SessionDep,
    settings: SettingsDep,
    user: UserDep,
    role: Role = Depends(require_permission(Permission.READ_INVOICES)),
) -> Response:
    """The invoice as a PDF attachment."""
    service = InvoiceService(session, settings)
    invoice = await _readable_invoice(service, invoice_id, user=user, is_admin=role >= Role.ADMINISTRATOR)
    try:
        content = await service.get_pdf(invoice)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Invoice document not available") from exc
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{invoice.invoice_number}.pdf"'},
    )
