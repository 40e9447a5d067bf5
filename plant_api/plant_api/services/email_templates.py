"""HTML bodies for outbound email.

Templates are plain f-strings.  Every interpolated value is HTML-escaped,
so a member's business name or an administrator's message cannot inject
markup into someone else's inbox.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from html import escape

NOTIFICATION_FOOTER = "This notification was sent from MELNET PLANT System"

INVITE_SUBJECT = "Welcome to MELNET - Complete Your Registration"
PAYMENT_CONFIRMATION_SUBJECT = "PLANT Payment Confirmation - Thank You"


def invoice_subject(invoice_number: str) -> str:
    return f"PLANT Invoice {invoice_number} - Payment Required"


def format_kes(amount: Decimal | int | float) -> str:
    """``KES 12,500.00``."""
    return f"KES {Decimal(str(amount)):,.2f}"


def _fmt_date(value: date | datetime | None) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%d %b %Y")


def personalize(message: str, name: str) -> str:
    """Replace every ``{name}`` placeholder with *name*."""
    return message.replace("{name}", name)


# ---------------------------------------------------------------------------
# Bulk notification layout
# ---------------------------------------------------------------------------


def notification_html(subject: str, body: str) -> str:
    """Wrap a bulk message: heading, pre-wrapped body, footer."""
    return (
        '<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #333;">{escape(subject)}</h2>'
        f'<div style="white-space: pre-wrap;">{escape(body)}</div>'
        '<hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;" />'
        f'<p style="color: #666; font-size: 12px;">{NOTIFICATION_FOOTER}</p>'
        "</div>"
    )


# ---------------------------------------------------------------------------
# Trade and payment mail
# ---------------------------------------------------------------------------


def invoice_html(
    *,
    member_name: str,
    invoice_number: str,
    amount: Decimal,
    description: str,
    due_date: date | None,
    paybill_number: str,
    paybill_account: str,
) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #2563eb;">PLANT Metrics Trade Invoice</h2>'
        f"<p>Dear {escape(member_name)},</p>"
        "<p>Your trade declaration has been processed and an invoice has been generated. "
        "The invoice document is attached.</p>"
        '<div style="background-color: #f3f4f6; padding: 20px; border-radius: 8px; margin: 20px 0;">'
        "<h3>Invoice Details</h3>"
        f"<p><strong>Invoice Number:</strong> {escape(invoice_number)}</p>"
        f"<p><strong>Amount:</strong> {format_kes(amount)}</p>"
        f"<p><strong>Trade Description:</strong> {escape(description)}</p>"
        f"<p><strong>Due Date:</strong> {_fmt_date(due_date)}</p>"
        "</div>"
        "<h3>Payment Options</h3>"
        "<ol>"
        "<li>Use the MPESA STK Push sent to your phone</li>"
        f"<li>Pay manually via MPESA Paybill: {escape(paybill_number)}, Account: {escape(paybill_account)}</li>"
        f"<li>Use invoice number {escape(invoice_number)} as reference</li>"
        "</ol>"
        "<p>Best regards,<br>PLANT Metrics Team</p>"
        "</div>"
    )


def payment_confirmation_html(
    *,
    member_name: str,
    invoice_number: str,
    amount: Decimal,
    receipt: str | None,
    paid_at: datetime | None,
) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #10b981;">Payment Confirmed!</h2>'
        f"<p>Dear {escape(member_name)},</p>"
        "<p>Your payment has been successfully processed. Thank you!</p>"
        '<div style="background-color: #ecfdf5; padding: 20px; border-radius: 8px; margin: 20px 0;">'
        "<h3>Payment Details</h3>"
        f"<p><strong>Invoice Number:</strong> {escape(invoice_number)}</p>"
        f"<p><strong>Amount Paid:</strong> {format_kes(amount)}</p>"
        f"<p><strong>MPESA Reference:</strong> {escape(receipt or 'N/A')}</p>"
        f"<p><strong>Payment Date:</strong> {_fmt_date(paid_at)}</p>"
        "</div>"
        "<p>Your trade declaration is now complete and has been recorded in the system.</p>"
        "<p>Best regards,<br>PLANT Metrics Team</p>"
        "</div>"
    )


# ---------------------------------------------------------------------------
# Accounts and reminders
# ---------------------------------------------------------------------------


def invite_html(*, full_name: str, set_password_url: str) -> str:
    return (
        f"<h1>Welcome to MELNET, {escape(full_name)}!</h1>"
        "<p>You've been invited to join your chapter on MELNET.</p>"
        f'<p><a href="{escape(set_password_url, quote=True)}">Set your password</a> '
        "to complete your profile and start participating in chapter activities.</p>"
        "<p>Best regards,<br>The MELNET Team</p>"
    )


def reminder_html(*, full_name: str, message: str) -> str:
    return (
        f"<h1>Hello {escape(full_name)},</h1>"
        f'<p style="white-space: pre-wrap;">{escape(message)}</p>'
        "<p>Best regards,<br>Your Chapter Leader</p>"
    )
