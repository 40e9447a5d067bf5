"""MPESA payment orchestration: initiation, callbacks, reconciliation.

All trade status writes go through the conditional transitions of
:class:`TradeRepository`, so a provider callback racing an administrator's
manual reconciliation resolves to exactly one winner.  The loser observes
``already_paid`` and writes nothing.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services import email_templates
from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.email_client import EmailClient
from plant_api.services.errors import (
    ExternalServiceError,
    InvalidTradeStateError,
    InvoiceNotFoundError,
    PaymentProviderError,
    PaymentReferenceNotFoundError,
    TradeNotFoundError,
)
from plant_api.services.invoice_service import InvoiceService
from plant_api.services.mpesa_client import MpesaClient, normalize_phone
from plant_core.models.trade import PaymentCallback, TradeStatus
from plant_core.state.repository import InvoiceRepository, ProfileRepository, TradeRepository
from plant_core.state.tables import InvoiceTable, TradeTable

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)


class PaymentService:
    """Moves trades through ``invoiced`` / ``paid`` / ``failed``.

    Parameters
    ----------
    session:
        Database session; the caller commits.
    mpesa_client:
        Gateway client.  Only :meth:`initiate` uses it.
    settings:
        Application settings.
    email_client:
        Used for invoice and confirmation mail.  Without one, no mail is
        sent and callbacks still complete.
    actor_id:
        Caller recorded on audit entries; ``None`` for provider callbacks
        and sweeps.
    """

    def __init__(
        self,
        session: AsyncSession,
        mpesa_client: MpesaClient | None,
        *,
        settings: APISettings,
        email_client: EmailClient | None = None,
        actor_id: str | None = None,
    ) -> None:
        self._session = session
        self._mpesa = mpesa_client
        self._settings = settings
        self._email = email_client
        self._trades = TradeRepository(session)
        self._invoices = InvoiceRepository(session)
        self._profiles = ProfileRepository(session)
        self._audit = AuditService(session, actor_id=actor_id)
        self._invoice_service = InvoiceService(session, settings, email_client=email_client, actor_id=actor_id)

    # -- Initiation ----------------------------------------------------------

    async def initiate(
        self,
        trade_id: str,
        phone: str,
        amount: Decimal | None = None,
        *,
        requester_id: str | None,
        is_admin: bool = False,
    ) -> dict[str, Any]:
        """Send an STK push for a ``pending`` trade.

        On acceptance the checkout token is stored as the trade's payment
        reference and the trade becomes ``invoiced``.  On rejection the
        trade stays ``pending``.

        Raises
        ------
        TradeNotFoundError
            Unknown trade, or owned by someone else.
        InvalidTradeStateError
            The trade is no longer ``pending``.
        ValueError
            The phone number is malformed or *amount* differs from the trade.
        PaymentProviderError
            The gateway is unreachable or declined the request.
        """
        if self._mpesa is None:
            raise RuntimeError("PaymentService was created without an MPESA client")

        trade = await self._trades.get(trade_id)
        if trade is None or (not is_admin and trade.user_id != requester_id):
            raise TradeNotFoundError(trade_id)
        if trade.status != TradeStatus.PENDING.value:
            raise InvalidTradeStateError(trade.id, trade.status, "initiate payment for")
        if amount is not None and Decimal(amount) != trade.amount:
            raise ValueError(f"Amount {amount} does not match the trade amount {trade.amount}")

        msisdn = normalize_phone(phone)
        result = await self._mpesa.stk_push(phone=msisdn, amount=trade.amount, reference=trade.id)
        if not result.accepted:
            logger.warning(
                "STK push for trade %s not accepted: code=%s %s",
                trade.id,
                result.response_code,
                result.description,
            )
            raise PaymentProviderError(result.description or "Payment request was not accepted")

        token = result.checkout_request_id or ""
        if not await self._trades.mark_invoiced(trade.id, payment_reference=token, phone=msisdn):
            current = (await self._trades.refresh(trade)).status
            raise InvalidTradeStateError(trade.id, current, "initiate payment for")

        await self._audit.log(
            AuditAction.PAYMENT_INITIATED,
            "trades",
            trade.id,
            old_values={"status": TradeStatus.PENDING.value},
            new_values={
                "status": TradeStatus.INVOICED.value,
                "payment_reference": token,
                "phone": msisdn,
                "amount": trade.amount,
            },
        )
        return {
            "success": True,
            "checkout_token": token,
            "trade_id": trade.id,
            "status": TradeStatus.INVOICED.value,
        }

    # -- Provider callback ---------------------------------------------------

    async def handle_callback(self, callback: PaymentCallback) -> dict[str, Any]:
        """Apply a provider result to the trade it references.

        Returns
        -------
        dict
            ``{"trade_id", "status"}`` where *status* is ``paid``,
            ``already_paid``, ``failed`` or ``ignored``.

        Raises
        ------
        PaymentReferenceNotFoundError
            If no trade carries the checkout token.
        """
        trade = await self._trades.get_by_payment_reference(callback.checkout_token)
        if trade is None:
            logger.warning("MPESA callback for unknown checkout token %s", callback.checkout_token)
            raise PaymentReferenceNotFoundError(callback.checkout_token)

        if trade.status == TradeStatus.PAID.value:
            logger.info("Replayed MPESA callback for paid trade %s ignored", trade.id)
            return {"trade_id": trade.id, "status": "already_paid"}
        if trade.status == TradeStatus.CANCELLED.value:
            logger.warning("MPESA callback for cancelled trade %s ignored", trade.id)
            return {"trade_id": trade.id, "status": "ignored"}

        if callback.succeeded:
            return await self._confirm(trade, callback)
        return await self._fail(trade, callback)

    async def _confirm(self, trade: TradeTable, callback: PaymentCallback) -> dict[str, Any]:
        if callback.amount is not None and callback.amount != trade.amount:
            logger.warning(
                "MPESA confirmed amount %s differs from trade %s amount %s",
                callback.amount,
                trade.id,
                trade.amount,
            )

        invoice, _ = await self._invoice_service.generate(trade.id)
        paid_at = callback.transaction_date or datetime.now(UTC)
        if not await self._trades.mark_paid(trade.id, receipt=callback.receipt_number, paid_at=paid_at):
            return {"trade_id": trade.id, "status": "already_paid"}
        if await self._invoices.mark_paid(invoice.id, paid_at):
            await self._refresh_invoice_pdf(invoice)

        await self._audit.log(
            AuditAction.MPESA_CALLBACK_PROCESSED,
            "trades",
            trade.id,
            new_values={
                "status": TradeStatus.PAID.value,
                "mpesa_receipt": callback.receipt_number,
                "amount": callback.amount,
                "phone": callback.phone_number,
                "invoice_number": invoice.invoice_number,
            },
        )
        logger.info("Trade %s paid receipt=%s", trade.id, callback.receipt_number)

        await self._send_confirmation(trade, invoice, callback.receipt_number, paid_at)
        return {"trade_id": trade.id, "status": TradeStatus.PAID.value}

    async def _fail(self, trade: TradeTable, callback: PaymentCallback) -> dict[str, Any]:
        reason = callback.result_desc or f"Result code {callback.result_code}"
        previous = trade.status
        if not await self._trades.mark_failed(trade.id, reason):
            logger.info("Failure callback for trade %s in status %s ignored", trade.id, previous)
            return {"trade_id": trade.id, "status": "ignored"}

        await self._audit.log(
            AuditAction.PAYMENT_FAILED,
            "trades",
            trade.id,
            old_values={"status": previous},
            new_values={
                "status": TradeStatus.FAILED.value,
                "result_code": callback.result_code,
                "reason": reason,
            },
        )
        logger.info("Trade %s payment failed: %s", trade.id, reason)
        return {"trade_id": trade.id, "status": TradeStatus.FAILED.value}

    async def _refresh_invoice_pdf(self, invoice: InvoiceTable) -> None:
        try:
            await self._invoice_service.refresh_pdf(invoice)
        except OSError as exc:
            logger.warning("Could not re-render paid invoice %s: %s", invoice.invoice_number, exc)

    async def _send_confirmation(
        self,
        trade: TradeTable,
        invoice: InvoiceTable,
        receipt: str | None,
        paid_at: datetime,
    ) -> None:
        if self._email is None:
            return
        member = await self._profiles.get(trade.user_id)
        if member is None:
            return
        html = email_templates.payment_confirmation_html(
            member_name=member.full_name or member.email,
            invoice_number=invoice.invoice_number,
            amount=trade.amount,
            receipt=receipt,
            paid_at=paid_at,
        )
        try:
            await self._email.send(member.email, email_templates.PAYMENT_CONFIRMATION_SUBJECT, html)
        except ExternalServiceError as exc:
            logger.warning("Payment confirmation email for trade %s failed: %s", trade.id, exc)

    # -- Manual reconciliation -----------------------------------------------

    async def mark_paid(self, trade_id: str) -> dict[str, Any]:
        """Administrator override: settle a trade's invoice without a callback.

        Raises
        ------
        TradeNotFoundError
            Unknown trade.
        InvoiceNotFoundError
            The trade has no invoice; nothing is written.
        InvalidTradeStateError
            The trade was cancelled.
        """
        trade = await self._trades.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)
        invoice = await self._invoices.get_by_trade(trade.id)
        if invoice is None:
            raise InvoiceNotFoundError()
        if trade.status == TradeStatus.CANCELLED.value:
            raise InvalidTradeStateError(trade.id, trade.status, "mark paid")

        previous = trade.status
        now = datetime.now(UTC)
        invoice_changed = await self._invoices.mark_paid(invoice.id, now)
        trade_changed = await self._trades.mark_paid(trade.id, paid_at=now)
        if not invoice_changed and not trade_changed:
            return {"trade_id": trade.id, "invoice_number": invoice.invoice_number, "status": "already_paid"}
        if invoice_changed:
            await self._refresh_invoice_pdf(invoice)

        await self._audit.log(
            AuditAction.PAYMENT_RECONCILED,
            "invoices",
            invoice.id,
            old_values={"trade_status": previous, "paid_at": None},
            new_values={
                "trade_id": trade.id,
                "trade_status": TradeStatus.PAID.value,
                "paid_at": now,
                "reconciled_by": "admin_manual",
            },
        )
        logger.info("Trade %s reconciled manually (invoice %s)", trade.id, invoice.invoice_number)
        return {"trade_id": trade.id, "invoice_number": invoice.invoice_number, "status": TradeStatus.PAID.value}

    # -- Grace window --------------------------------------------------------

    async def sweep_grace_window(self, now: datetime | None = None, *, limit: int = 100) -> int:
        """Invoice trades whose payment request went unanswered too long.

        Each trade runs under its own savepoint so one failure does not
        discard the others.  Returns the number of invoices issued.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self._settings.payment_grace_seconds)
        due = await self._trades.list_awaiting_invoice(cutoff, limit=limit)
        issued = 0
        for trade in due:
            try:
                async with self._session.begin_nested():
                    invoice, created = await self._invoice_service.generate(trade.id)
            except (InvalidTradeStateError, TradeNotFoundError, ValueError, OSError) as exc:
                logger.warning("Grace-window invoice for trade %s failed: %s", trade.id, exc)
                continue
            if not created:
                continue
            issued += 1
            if self._email is not None:
                try:
                    await self._invoice_service.send_invoice_email(invoice, trade)
                except (ValueError, OSError) as exc:
                    logger.warning("Grace-window invoice email for trade %s failed: %s", trade.id, exc)
        if issued:
            logger.info("Grace-window sweep issued %d invoice(s)", issued)
        return issued
