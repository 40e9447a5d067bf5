"""Transactional email delivery through the Resend HTTP API.

Every outbound message (bulk notifications, invoices, payment
confirmations, invites, reminders) goes through :class:`EmailClient`.
When no API key is configured the client only logs the message, which is
what local development relies on.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel

from plant_api.services.errors import EmailDeliveryError

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_BACKOFF_BASE = 1.0


class EmailAttachment(BaseModel):
    """A file attached to an outbound message."""

    filename: str
    content: bytes

    def as_payload(self) -> dict[str, str]:
        return {
            "filename": self.filename,
            "content": base64.b64encode(self.content).decode("ascii"),
        }


class EmailClient:
    """Async Resend client.

    Parameters
    ----------
    api_key:
        Resend API key.  Empty means messages are logged, not sent.
    api_url:
        The ``/emails`` endpoint.
    sender:
        ``From`` header, e.g. ``MELNET <onboarding@resend.dev>``.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    backoff_base:
        First retry delay in seconds; doubles on each attempt.
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        api_url: str = "https://api.resend.com/emails",
        sender: str = "MELNET <onboarding@resend.dev>",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._sender = sender
        self._backoff_base = backoff_base
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, settings: APISettings) -> EmailClient:
        return cls(
            api_key=settings.email_api_key.get_secret_value(),
            api_url=settings.email_api_url,
            sender=settings.email_sender,
            timeout=settings.email_timeout,
        )

    @property
    def enabled(self) -> bool:
        """Whether messages actually leave the process."""
        return bool(self._api_key)

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(
        self,
        to: str | list[str],
        subject: str,
        html: str,
        *,
        attachments: list[EmailAttachment] | None = None,
    ) -> str | None:
        """Deliver one message.

        Returns
        -------
        str | None
            The provider message id, or ``None`` when delivery is disabled
            and the message was only logged.

        Raises
        ------
        EmailDeliveryError
            When the API rejects the message or stays unreachable after
            all retries.
        """
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            raise EmailDeliveryError("No recipients given")

        if not self.enabled:
            logger.info(
                "Email delivery disabled; would send %r to %s (%d attachment(s))",
                subject,
                ", ".join(recipients),
                len(attachments or []),
            )
            return None

        payload: dict[str, Any] = {
            "from": self._sender,
            "to": recipients,
            "subject": subject,
            "html": html,
        }
        if attachments:
            payload["attachments"] = [a.as_payload() for a in attachments]
        headers = {"Authorization": f"Bearer {self._api_key}"}

        last_error = "unknown error"
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = await self._client.post(self._api_url, json=payload, headers=headers)
                if 200 <= response.status_code < 300:
                    message_id = _message_id(response)
                    logger.info("Email %r sent to %s id=%s", subject, ", ".join(recipients), message_id)
                    return message_id
                if response.status_code < 500:
                    detail = response.text[:200]
                    logger.warning(
                        "Email %r to %s rejected: %d %s",
                        subject,
                        ", ".join(recipients),
                        response.status_code,
                        detail,
                    )
                    raise EmailDeliveryError(f"Email API rejected message ({response.status_code}): {detail}")
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Email delivery failed: status=%d attempt=%d/%d",
                    response.status_code,
                    attempt,
                    _MAX_RETRIES,
                )
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("Email delivery timeout: attempt=%d/%d", attempt, _MAX_RETRIES)
            except httpx.RequestError as exc:
                last_error = str(exc)
                logger.warning("Email delivery error=%s attempt=%d/%d", exc, attempt, _MAX_RETRIES)

            if attempt < _MAX_RETRIES:
                await asyncio.sleep(self._backoff_base * (2 ** (attempt - 1)))

        logger.error("Email delivery exhausted retries for %s: %s", ", ".join(recipients), last_error)
        raise EmailDeliveryError(f"Email API unavailable: {last_error}")


def _message_id(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("id") if isinstance(body, dict) else None
