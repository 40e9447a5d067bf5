"""Domain exceptions raised by the service layer.

Routers translate these into HTTP responses through :func:`http_status`:
not-found errors become 404, conflicts 409, provider failures 502.
``NotFoundError`` subclasses ``LookupError`` so the application-wide
handler still answers 404 when a router lets one escape.
"""

from __future__ import annotations


class NotFoundError(LookupError):
    """A referenced record does not exist."""


class TradeNotFoundError(NotFoundError):
    def __init__(self, trade_id: str) -> None:
        self.trade_id = trade_id
        super().__init__(f"Trade '{trade_id}' not found")


class InvoiceNotFoundError(NotFoundError):
    def __init__(self, message: str = "No invoice found for this trade") -> None:
        super().__init__(message)


class ProfileNotFoundError(NotFoundError):
    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile '{profile_id}' not found")


class ChapterNotFoundError(NotFoundError):
    def __init__(self, chapter_id: str | None = None) -> None:
        self.chapter_id = chapter_id
        if chapter_id is None:
            super().__init__("No chapter is associated with this account")
        else:
            super().__init__(f"Chapter '{chapter_id}' not found")


class PaymentReferenceNotFoundError(NotFoundError):
    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"No trade matches payment reference '{reference}'")


class ConflictError(Exception):
    """The request conflicts with the current state of a record."""


class ChapterNotEmptyError(ConflictError):
    def __init__(self, chapter_id: str, member_count: int) -> None:
        self.chapter_id = chapter_id
        self.member_count = member_count
        super().__init__(f"Cannot delete chapter with {member_count} member(s); reassign them first")


class InvalidTradeStateError(ConflictError):
    def __init__(self, trade_id: str, status: str, action: str) -> None:
        self.trade_id = trade_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} trade in status '{status}'")


class ExternalServiceError(Exception):
    """An outbound provider call failed."""


class PaymentProviderError(ExternalServiceError):
    """The MPESA gateway was unreachable or rejected the request."""


class EmailDeliveryError(ExternalServiceError):
    """The email API did not accept a message."""


class UserCreationError(Exception):
    """Creating the identity/profile pair failed and was rolled back."""


def http_status(exc: Exception) -> int:
    """HTTP status a router answers with for a domain error."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, ExternalServiceError):
        return 502
    if isinstance(exc, UserCreationError):
        return 500
    return 400
