"""Bulk notification vocabulary."""

from __future__ import annotations

from enum import Enum


class RecipientType(str, Enum):
    """How the recipient set of a bulk send is selected."""

    ALL = "all"
    CHAPTER = "chapter"
    ROLE = "role"
    CUSTOM = "custom"


class NotificationStatus(str, Enum):
    """Outcome recorded on a notification history entry."""

    SENT = "sent"
    SCHEDULED = "scheduled"
    FAILED = "failed"


class ReminderType(str, Enum):
    """Reminder a chapter leader can send to one member."""

    METRICS = "metrics"
    PAYMENT = "payment"
    GENERAL = "general"

    @property
    def subject(self) -> str:
        return _REMINDER_SUBJECTS[self]


_REMINDER_SUBJECTS = {
    ReminderType.METRICS: "Reminder: Submit Your PLANT Metrics",
    ReminderType.PAYMENT: "Reminder: Payment Due",
    ReminderType.GENERAL: "Reminder from Your Chapter Leader",
}
