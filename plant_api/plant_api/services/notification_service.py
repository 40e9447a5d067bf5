"""Bulk notification dispatch.

Resolves a recipient set, personalises the message per recipient,
delivers in fixed-size chunks with a pause between chunks, and records one
history entry per send.  Per-recipient failures are collected; only a
send that resolves no recipients at all is rejected.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.services import email_templates
from plant_api.services.audit_service import AuditAction, AuditService
from plant_api.services.email_client import EmailClient
from plant_api.services.errors import ExternalServiceError
from plant_core.models.notification import NotificationStatus, RecipientType
from plant_core.models.profile import ProfileRole
from plant_core.state.repository import NotificationHistoryRepository, ProfileRepository
from plant_core.state.tables import NotificationHistoryTable

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str


@dataclass
class DeliveryOutcome:
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.sent + self.failed


def build_selector(
    recipient_type: RecipientType | str,
    *,
    chapter_id: str | None = None,
    role: str | None = None,
    custom_emails: list[str] | None = None,
) -> dict[str, Any]:
    """Validate and normalise a recipient selector.

    Raises
    ------
    ValueError
        If the selector is incomplete for its type.
    """
    kind = RecipientType(recipient_type)
    if kind is RecipientType.CHAPTER:
        if not chapter_id:
            raise ValueError("chapter_id is required when recipient_type is 'chapter'")
        return {"recipient_type": kind.value, "chapter_id": chapter_id}
    if kind is RecipientType.ROLE:
        valid = {r.value for r in ProfileRole}
        if role not in valid:
            raise ValueError(f"role must be one of {sorted(valid)}")
        return {"recipient_type": kind.value, "role": role}
    if kind is RecipientType.CUSTOM:
        emails = list(dict.fromkeys(e.strip().lower() for e in custom_emails or [] if e and e.strip()))
        if not emails:
            raise ValueError("custom_emails must contain at least one address")
        return {"recipient_type": kind.value, "custom_emails": emails}
    return {"recipient_type": kind.value}


class NotificationService:
    """Bulk email sends and the scheduled-send sweep.

    Parameters
    ----------
    session:
        Database session; the caller commits.
    email_client:
        Delivery channel.
    settings:
        Batch size, pause and error-sample limits.
    actor_id:
        Administrator issuing the send; ``None`` inside the scheduler.
    """

    def __init__(
        self,
        session: AsyncSession,
        email_client: EmailClient,
        settings: APISettings,
        *,
        actor_id: str | None = None,
    ) -> None:
        self._email = email_client
        self._settings = settings
        self._actor_id = actor_id
        self._profiles = ProfileRepository(session)
        self._history = NotificationHistoryRepository(session)
        self._audit = AuditService(session, actor_id=actor_id)

    # -- Recipients ----------------------------------------------------------

    async def resolve_recipients(self, selector: dict[str, Any]) -> list[Recipient]:
        """Turn a selector into a de-duplicated recipient list."""
        kind = RecipientType(selector["recipient_type"])
        if kind is RecipientType.CUSTOM:
            return [Recipient(email=e, name=e) for e in selector.get("custom_emails", [])]

        if kind is RecipientType.CHAPTER:
            profiles = await self._profiles.list_all(chapter_id=selector["chapter_id"])
        elif kind is RecipientType.ROLE:
            profiles = await self._profiles.list_all(role=selector["role"])
        else:
            profiles = await self._profiles.list_all()

        seen: set[str] = set()
        recipients: list[Recipient] = []
        for profile in profiles:
            if not profile.email or profile.email in seen:
                continue
            seen.add(profile.email)
            recipients.append(Recipient(email=profile.email, name=profile.full_name or profile.email))
        return recipients

    # -- Sending -------------------------------------------------------------

    async def send_bulk(
        self,
        *,
        notification_type: str,
        recipient_type: RecipientType | str,
        subject: str,
        message: str,
        chapter_id: str | None = None,
        role: str | None = None,
        custom_emails: list[str] | None = None,
        scheduled_for: datetime | None = None,
    ) -> dict[str, Any]:
        """Send now, or store a scheduled entry when *scheduled_for* is ahead.

        Raises
        ------
        ValueError
            If the selector is invalid or resolves no recipients.  Nothing
            is recorded in that case.
        """
        if not subject.strip() or not message.strip():
            raise ValueError("subject and message must not be empty")
        selector = build_selector(
            recipient_type,
            chapter_id=chapter_id,
            role=role,
            custom_emails=custom_emails,
        )
        recipients = await self.resolve_recipients(selector)
        if not recipients:
            raise ValueError("No recipients found for the selected criteria")

        now = datetime.now(UTC)
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=UTC)

        if scheduled_for is not None and scheduled_for > now:
            entry = await self._history.create(
                notification_type=notification_type,
                recipient_type=selector["recipient_type"],
                recipient_selector=selector,
                subject=subject,
                message=message,
                recipient_count=len(recipients),
                sent_by=self._actor_id,
                status=NotificationStatus.SCHEDULED.value,
                scheduled_for=scheduled_for,
                metadata={"selector": selector},
            )
            await self._audit.log(
                AuditAction.NOTIFICATION_SCHEDULED,
                "notifications_history",
                entry.id,
                new_values={"subject": subject, "scheduled_for": scheduled_for, "recipient_count": len(recipients)},
            )
            logger.info("Notification %s scheduled for %s (%d recipients)", entry.id, scheduled_for, len(recipients))
            return {
                "success": True,
                "scheduled": True,
                "recipient_count": len(recipients),
                "history_id": entry.id,
            }

        outcome = await self.deliver(recipients, subject, message)
        status = NotificationStatus.SENT if outcome.sent > 0 else NotificationStatus.FAILED
        errors = outcome.errors
        entry = await self._history.create(
            notification_type=notification_type,
            recipient_type=selector["recipient_type"],
            recipient_selector=selector,
            subject=subject,
            message=message,
            recipient_count=len(recipients),
            sent_by=self._actor_id,
            status=status.value,
            scheduled_for=scheduled_for,
            sent_at=datetime.now(UTC),
            metadata=self._metadata(selector, outcome),
        )
        await self._audit.log(
            AuditAction.NOTIFICATION_SENT,
            "notifications_history",
            entry.id,
            new_values={"subject": subject, "sent": outcome.sent, "failed": outcome.failed},
        )
        return {
            "success": outcome.sent > 0,
            "scheduled": False,
            "sent": outcome.sent,
            "failed": outcome.failed,
            "recipient_count": len(recipients),
            "history_id": entry.id,
            "errors": errors[: self._settings.notification_error_response_size],
        }

    async def deliver(self, recipients: list[Recipient], subject: str, message: str) -> DeliveryOutcome:
        """Send to every recipient; ``sent + failed == len(recipients)``."""
        outcome = DeliveryOutcome()
        batch_size = max(1, self._settings.notification_batch_size)
        for start in range(0, len(recipients), batch_size):
            if start > 0 and self._settings.notification_batch_pause_seconds > 0:
                await asyncio.sleep(self._settings.notification_batch_pause_seconds)
            chunk = recipients[start : start + batch_size]
            results = await asyncio.gather(*[self._send_one(r, subject, message) for r in chunk])
            for error in results:
                if error is None:
                    outcome.sent += 1
                else:
                    outcome.failed += 1
                    outcome.errors.append(error)
        logger.info("Bulk send %r: %d of %d sent, %d failed", subject, outcome.sent, outcome.attempted, outcome.failed)
        return outcome

    async def _send_one(self, recipient: Recipient, subject: str, message: str) -> str | None:
        body = email_templates.personalize(message, recipient.name)
        html = email_templates.notification_html(subject, body)
        try:
            await self._email.send(recipient.email, subject, html)
        except ExternalServiceError as exc:
            return f"{recipient.email}: {exc}"
        return None

    def _metadata(self, selector: dict[str, Any], outcome: DeliveryOutcome) -> dict[str, Any]:
        return {
            "selector": selector,
            "success_count": outcome.sent,
            "fail_count": outcome.failed,
            "errors": outcome.errors[: self._settings.notification_error_sample_size],
        }

    # -- Scheduled sends -----------------------------------------------------

    async def deliver_due(self, now: datetime | None = None, *, limit: int = 20) -> int:
        """Send every scheduled entry whose time has come.

        Recipients are resolved again at send time, so members who joined
        after scheduling are included.  Returns the number of entries
        completed.
        """
        now = now or datetime.now(UTC)
        completed = 0
        for entry in await self._history.list_due(now, limit=limit):
            if await self._deliver_scheduled(entry):
                completed += 1
        return completed

    async def _deliver_scheduled(self, entry: NotificationHistoryTable) -> bool:
        selector = entry.recipient_selector or {"recipient_type": entry.recipient_type}
        try:
            recipients = await self.resolve_recipients(selector)
        except (KeyError, ValueError) as exc:
            logger.warning("Scheduled notification %s has an unusable selector: %s", entry.id, exc)
            recipients = []

        if not recipients:
            outcome = DeliveryOutcome(errors=["No recipients found for the selected criteria"])
        else:
            outcome = await self.deliver(recipients, entry.subject, entry.message)

        status = NotificationStatus.SENT if outcome.sent > 0 else NotificationStatus.FAILED
        changed = await self._history.complete_scheduled(
            entry.id,
            status=status.value,
            recipient_count=len(recipients),
            metadata=self._metadata(selector, outcome),
        )
        if changed:
            await self._audit.log(
                AuditAction.NOTIFICATION_SENT,
                "notifications_history",
                entry.id,
                new_values={"subject": entry.subject, "sent": outcome.sent, "failed": outcome.failed},
            )
            logger.info("Scheduled notification %s delivered: %s", entry.id, status.value)
        return changed

    async def history(self, *, limit: int = 20, offset: int = 0) -> tuple[list[NotificationHistoryTable], int]:
        return await self._history.list(limit=limit, offset=offset)
