"""Trade lifecycle model.

A trade moves ``pending -> invoiced -> paid``, with ``failed`` and
``cancelled`` as alternate terminal states.  The allowed transitions are
declared once here; the repository layer turns each transition into a
conditional UPDATE keyed on the allowed source states.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class TradeStatus(str, Enum):
    """Lifecycle state of a declared trade."""

    PENDING = "pending"
    INVOICED = "invoiced"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[TradeStatus] = frozenset(
    {TradeStatus.PAID, TradeStatus.FAILED, TradeStatus.CANCELLED}
)

# Target state -> states it may be entered from.
_ALLOWED_SOURCES: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.INVOICED: frozenset({TradeStatus.PENDING}),
    TradeStatus.PAID: frozenset({TradeStatus.PENDING, TradeStatus.INVOICED, TradeStatus.FAILED}),
    TradeStatus.FAILED: frozenset({TradeStatus.PENDING, TradeStatus.INVOICED}),
    TradeStatus.CANCELLED: frozenset({TradeStatus.PENDING}),
}


class InvalidTransitionError(ValueError):
    """Raised when a trade cannot move from its current state to the target."""

    def __init__(self, current: TradeStatus | str, target: TradeStatus | str) -> None:
        self.current = TradeStatus(current)
        self.target = TradeStatus(target)
        super().__init__(f"Trade cannot move from '{self.current.value}' to '{self.target.value}'")


def allowed_sources(target: TradeStatus | str) -> frozenset[TradeStatus]:
    """Return the states from which *target* may be entered."""
    return _ALLOWED_SOURCES.get(TradeStatus(target), frozenset())


def can_transition(current: TradeStatus | str, target: TradeStatus | str) -> bool:
    """Return ``True`` when ``current -> target`` is a legal transition."""
    return TradeStatus(current) in allowed_sources(target)


def ensure_transition(current: TradeStatus | str, target: TradeStatus | str) -> None:
    """Raise :class:`InvalidTransitionError` unless the move is legal."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


class TradeDeclaration(BaseModel):
    """Validated input for declaring a trade.

    Construction fails (``pydantic.ValidationError``, a ``ValueError``)
    before anything touches the database.
    """

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=2000)
    source_member_id: str | None = None
    beneficiary_member_id: str | None = None

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("description must not be empty")
        return stripped


class PaymentCallback(BaseModel):
    """Normalised payment-provider result envelope."""

    checkout_token: str
    result_code: int
    result_desc: str = ""
    receipt_number: str | None = None
    amount: Decimal | None = None
    phone_number: str | None = None
    transaction_date: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0
