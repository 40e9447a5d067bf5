"""Invoice generation, PDF rendering, and storage service.

Issues at most one invoice per trade (idempotent on ``trade_id``), renders
the document with reportlab, stores it under the configured invoice
directory, and emails it to the declaring member.
"""

from __future__ import annotations

import io
import logging
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services import email_templates
from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.email_client import EmailAttachment, EmailClient
from plant_api.services.errors import (
    EmailDeliveryError,
    InvalidTradeStateError,
    InvoiceNotFoundError,
    TradeNotFoundError,
)
from plant_core.models.trade import TradeStatus
from plant_core.state.repository import (
    ChapterRepository,
    InvoiceRepository,
    ProfileRepository,
    TradeRepository,
)
from plant_core.state.tables import InvoiceTable, TradeTable

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Path traversal prevention
# ---------------------------------------------------------------------------

_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def _resolve_safe_path(storage_base: Path, name: str) -> Path:
    """Build ``<storage_base>/<name>.pdf`` and check it stays inside the base.

    Raises
    ------
    ValueError
        If *name* contains unsafe characters or the resolved path escapes
        the storage root.
    """
    if not _SAFE_NAME_RE.match(name):
        raise ValueError("Invalid invoice file name: contains unsafe characters")
    base_resolved = storage_base.resolve()
    full_path = (base_resolved / f"{name}.pdf").resolve()
    if not full_path.is_relative_to(base_resolved):
        raise ValueError("Path traversal detected")
    return full_path


class InvoiceService:
    """Invoice lifecycle for trades.

    Parameters
    ----------
    session:
        Database session; the caller owns the transaction.
    settings:
        Supplies storage path, due days, currency and paybill details.
    email_client:
        Needed only for :meth:`send_invoice_email` / :meth:`resend`.
    actor_id:
        Caller recorded on audit entries (``None`` for system sweeps).
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        email_client: EmailClient | None = None,
        actor_id: str | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._email = email_client
        self._trades = TradeRepository(session)
        self._invoices = InvoiceRepository(session)
        self._profiles = ProfileRepository(session)
        self._chapters = ChapterRepository(session)
        self._audit = AuditService(session, actor_id=actor_id)

    # -- Generation ----------------------------------------------------------

    async def generate(self, trade_id: str) -> tuple[InvoiceTable, bool]:
        """Issue the invoice for a trade, or return the existing one.

        A ``pending`` trade moves to ``invoiced``.  The invoice amount is
        always the trade amount.

        Returns
        -------
        tuple[InvoiceTable, bool]
            ``(invoice, created)``.

        Raises
        ------
        TradeNotFoundError
            If the trade does not exist.
        InvalidTradeStateError
            If the trade was cancelled.
        """
        trade = await self._trades.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)

        existing = await self._invoices.get_by_trade(trade.id)
        if existing is not None:
            return existing, False

        if trade.status == TradeStatus.CANCELLED.value:
            raise InvalidTradeStateError(trade.id, trade.status, "invoice")

        issued = datetime.now(UTC)
        try:
            async with self._session.begin_nested():
                number = await self._invoices.get_next_invoice_number(issued.year)
                invoice = await self._invoices.create(
                    trade_id=trade.id,
                    invoice_number=number,
                    amount=trade.amount,
                    due_date=(issued + timedelta(days=self._settings.invoice_due_days)).date(),
                )
        except IntegrityError:
            # Another request issued the invoice between our read and insert.
            existing = await self._invoices.get_by_trade(trade.id)
            if existing is None:
                raise
            return existing, False

        await self._write_pdf(invoice, trade)

        if trade.status == TradeStatus.PENDING.value:
            await self._trades.mark_invoiced(trade.id)

        await self._audit.log(
            AuditAction.INVOICE_GENERATED,
            "invoices",
            invoice.id,
            new_values={
                "trade_id": trade.id,
                "invoice_number": invoice.invoice_number,
                "amount": invoice.amount,
            },
        )
        logger.info("Generated invoice %s for trade %s amount=%s", invoice.invoice_number, trade.id, invoice.amount)
        return invoice, True

    async def get(self, invoice_id: str) -> InvoiceTable:
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice '{invoice_id}' not found")
        return invoice

    async def get_trade(self, invoice: InvoiceTable) -> TradeTable:
        trade = await self._trades.get(invoice.trade_id)
        if trade is None:
            raise TradeNotFoundError(invoice.trade_id)
        return trade

    # -- PDF -----------------------------------------------------------------

    async def get_pdf(self, invoice: InvoiceTable) -> bytes:
        """Return the stored PDF, re-rendering it when the file is gone."""
        if invoice.file_url:
            storage_base = Path(self._settings.invoice_storage_path).resolve()
            pdf_path = Path(invoice.file_url).resolve()
            if not pdf_path.is_relative_to(storage_base):
                logger.error("Path traversal attempt detected for invoice %s: %s", invoice.id, invoice.file_url)
                raise ValueError("Path traversal detected")
            try:
                return pdf_path.read_bytes()
            except FileNotFoundError:
                logger.warning("PDF not found at %s for invoice %s; re-rendering", pdf_path, invoice.id)

        return await self._write_pdf(invoice, await self.get_trade(invoice))

    async def refresh_pdf(self, invoice: InvoiceTable) -> None:
        """Re-render the stored document after ``paid_at`` changed."""
        await self._session.refresh(invoice)
        await self._write_pdf(invoice, await self.get_trade(invoice))
        logger.info("Re-rendered invoice %s (paid_at=%s)", invoice.invoice_number, invoice.paid_at)

    async def _write_pdf(self, invoice: InvoiceTable, trade: TradeTable) -> bytes:
        pdf_bytes = await self.render_pdf(invoice, trade)
        path = self._store_pdf(invoice.invoice_number, pdf_bytes)
        await self._invoices.update_file_url(invoice.id, path)
        invoice.file_url = path
        return pdf_bytes

    async def render_pdf(self, invoice: InvoiceTable, trade: TradeTable) -> bytes:
        """Gather the bill-to details and render the invoice document."""
        member = await self._profiles.get(trade.user_id)
        chapter = await self._chapters.get(trade.chapter_id) if trade.chapter_id else None
        data = {
            "invoice_number": invoice.invoice_number,
            "issued_at": invoice.issued_at or datetime.now(UTC),
            "due_date": invoice.due_date,
            "member_name": member.full_name if member and member.full_name else "N/A",
            "business_name": member.business_name if member else None,
            "email": member.email if member else None,
            "phone": member.phone if member else None,
            "chapter_name": chapter.name if chapter else "N/A",
            "amount": invoice.amount,
            "description": trade.description or "Trade declaration",
            "trade_date": trade.created_at,
            "status": "PAID" if invoice.paid_at else "UNPAID",
        }
        return self._render_pdf(data)

    def _render_pdf(self, data: dict[str, Any]) -> bytes:
        """Render the invoice layout with reportlab."""
        buf = io.BytesIO()
        doc = SimpleDocTemplate(buf, pagesize=A4, topMargin=0.75 * inch, bottomMargin=0.75 * inch)
        styles = getSampleStyleSheet()
        currency = self._settings.currency

        elements: list[Any] = []

        header_style = ParagraphStyle(
            "Header", parent=styles["Heading1"], fontSize=20, textColor=colors.HexColor("#1e3a5f")
        )
        elements.append(Paragraph("PLANT METRICS TRACKER", header_style))
        elements.append(Paragraph("TRADE INVOICE", styles["Heading2"]))
        elements.append(Spacer(1, 12))

        meta_style = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=10, textColor=colors.grey)
        elements.append(Paragraph(f"Invoice Number: {data['invoice_number']}", styles["Heading3"]))
        elements.append(Paragraph(f"Date: {data['issued_at']:%d %b %Y}", meta_style))
        due = data["due_date"]
        elements.append(Paragraph(f"Due Date: {due:%d %b %Y}" if due else "Due Date: N/A", meta_style))
        elements.append(Paragraph(f"Status: {data['status']}", meta_style))
        elements.append(Spacer(1, 18))

        elements.append(Paragraph("Bill To:", styles["Heading3"]))
        for line in (
            data["member_name"],
            data["business_name"],
            data["email"],
            data["phone"],
            f"Chapter: {data['chapter_name']}",
        ):
            if line:
                elements.append(Paragraph(_escape(line), styles["Normal"]))
        elements.append(Spacer(1, 18))

        elements.append(Paragraph("Trade Details:", styles["Heading3"]))
        trade_date = data["trade_date"]
        table_data = [
            ["Description", "Trade Date", f"Amount ({currency})"],
            [
                Paragraph(_escape(data["description"]), styles["Normal"]),
                f"{trade_date:%d %b %Y}" if trade_date else "N/A",
                f"{data['amount']:,.2f}",
            ],
            ["", "Total:", f"{data['amount']:,.2f}"],
        ]
        table = Table(table_data, colWidths=[3.5 * inch, 1.25 * inch, 1.5 * inch])
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1e3a5f")),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("BOTTOMPADDING", (0, 0), (-1, 0), 10),
                    ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
                    ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ("FONTNAME", (1, -1), (-1, -1), "Helvetica-Bold"),
                    ("LINEABOVE", (1, -1), (-1, -1), 1, colors.black),
                ]
            )
        )
        elements.append(table)
        elements.append(Spacer(1, 18))

        elements.append(Paragraph("Payment Instructions:", styles["Heading3"]))
        elements.append(Paragraph("1. Use the MPESA STK Push sent to your phone", styles["Normal"]))
        elements.append(
            Paragraph(
                f"2. Or pay manually to Paybill: {self._settings.paybill_number}, "
                f"Account: {self._settings.paybill_account}",
                styles["Normal"],
            )
        )
        elements.append(
            Paragraph(f"3. Use invoice number {data['invoice_number']} as reference", styles["Normal"])
        )
        elements.append(Spacer(1, 30))

        footer_style = ParagraphStyle("Footer", parent=styles["Normal"], fontSize=8, textColor=colors.grey)
        elements.append(
            Paragraph("This is a system-generated invoice for PLANT Metrics trade declaration.", footer_style)
        )
        elements.append(
            Paragraph(
                f"Payment is required within {self._settings.invoice_due_days} days of issue date.",
                footer_style,
            )
        )

        doc.build(elements)
        return buf.getvalue()

    def _store_pdf(self, name: str, pdf_bytes: bytes) -> str:
        """Write PDF bytes below the storage root and return the path."""
        pdf_path = _resolve_safe_path(Path(self._settings.invoice_storage_path), name)
        pdf_path.parent.mkdir(parents=True, exist_ok=True)
        pdf_path.write_bytes(pdf_bytes)
        logger.info("Stored invoice PDF: %s (%d bytes)", pdf_path, len(pdf_bytes))
        return str(pdf_path)

    # -- Delivery ------------------------------------------------------------

    async def send_invoice_email(self, invoice: InvoiceTable, trade: TradeTable) -> tuple[str | None, str | None]:
        """Email the invoice PDF to the declaring member.

        Returns
        -------
        tuple
            ``(recipient, error)``; *error* is ``None`` on success.  Delivery
            failures are reported, never raised.
        """
        if self._email is None:
            raise RuntimeError("InvoiceService was created without an email client")
        member = await self._profiles.get(trade.user_id)
        if member is None:
            return None, "Declaring member no longer exists"

        pdf_bytes = await self.get_pdf(invoice)
        html = email_templates.invoice_html(
            member_name=member.full_name or member.email,
            invoice_number=invoice.invoice_number,
            amount=invoice.amount,
            description=trade.description,
            due_date=invoice.due_date,
            paybill_number=self._settings.paybill_number,
            paybill_account=self._settings.paybill_account,
        )
        try:
            await self._email.send(
                member.email,
                email_templates.invoice_subject(invoice.invoice_number),
                html,
                attachments=[EmailAttachment(filename=f"{invoice.invoice_number}.pdf", content=pdf_bytes)],
            )
        except EmailDeliveryError as exc:
            logger.warning("Invoice %s email to %s failed: %s", invoice.invoice_number, member.email, exc)
            return member.email, str(exc)
        return member.email, None

    async def resend(self, trade_id: str) -> dict[str, Any]:
        """Re-deliver a trade's invoice.  Always audited, never mutates status.

        Raises
        ------
        TradeNotFoundError
            If the trade does not exist.
        InvoiceNotFoundError
            If the trade has no invoice.
        """
        trade = await self._trades.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)
        invoice = await self._invoices.get_by_trade(trade.id)
        if invoice is None:
            raise InvoiceNotFoundError()

        recipient, error = await self.send_invoice_email(invoice, trade)
        await self._audit.log(
            AuditAction.INVOICE_RESENT,
            "invoices",
            invoice.id,
            new_values={
                "trade_id": trade.id,
                "invoice_number": invoice.invoice_number,
                "recipient": recipient,
                "delivered": error is None,
                "error": error,
            },
        )
        return {
            "trade_id": trade.id,
            "invoice_number": invoice.invoice_number,
            "recipient": recipient,
            "delivered": error is None,
            "error": error,
        }


def _escape(value: str) -> str:
    """Escape text for reportlab's mini-markup."""
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
