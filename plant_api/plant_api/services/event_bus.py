"""Lightweight event bus for PLANT lifecycle hooks.

Provides fire-and-forget event emission with registered handlers.
Handler errors are logged but never propagate to callers, ensuring
that event dispatch never disrupts the primary request path.

Usage::

    bus = get_event_bus()
    await bus.emit(EventType.TRADE_DECLARED, actor_id=user_id, data={"trade_id": ...})

Routers schedule ``emit`` as a background task so handlers run after the
request transaction has committed.  Handlers that touch the database open
their own session.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from plant_api.config import APISettings
    from plant_api.services.mpesa_client import MpesaClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Lifecycle events emitted by the PLANT API."""

    TRADE_DECLARED = "trade.declared"
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    INVOICE_GENERATED = "invoice.generated"
    NOTIFICATION_SENT = "notification.sent"
    REPORT_GENERATED = "report.generated"


# ---------------------------------------------------------------------------
# Event payload
# ---------------------------------------------------------------------------


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers."""

    event_type: EventType
    actor_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """In-process event bus with async handler dispatch.

    Handlers are called concurrently via ``asyncio.gather``.  Each handler
    runs in a ``try / except`` so that a single failing handler does not
    affect others or the caller.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Register a handler for a specific event type (or all events).

        Parameters
        ----------
        handler:
            Async callable that accepts an :class:`EventPayload`.
        event_type:
            If ``None``, the handler receives *all* events (wildcard).
        """
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "Registered event handler %s for %s",
            handler.__name__,
            event_type.value if event_type else "ALL",
        )

    async def emit(
        self,
        event_type: EventType,
        *,
        actor_id: str | None = None,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Emit an event to all matching handlers.

        This is fire-and-forget: handler exceptions are logged, not raised.
        """
        payload = EventPayload(
            event_type=event_type,
            actor_id=actor_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))

        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        logger.debug(
            "Emitting %s actor=%s corr=%s (%d handler(s))",
            event_type.value,
            actor_id or "system",
            payload.correlation_id[:8],
            len(handlers),
        )

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s",
                    handler.__name__,
                    event_type.value,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    @property
    def handler_count(self) -> int:
        """Total number of registered handlers across all event types."""
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def event_log_handler(payload: EventPayload) -> None:
    """Record every event as a structured log line."""
    logger.info(
        "EVENT: %s actor=%s corr=%s",
        payload.event_type.value,
        payload.actor_id or "system",
        payload.correlation_id[:8],
        extra={
            "event": {
                "type": payload.event_type.value,
                "actor_id": payload.actor_id,
                "correlation_id": payload.correlation_id,
                "data": payload.data,
            }
        },
    )


def make_payment_initiation_handler(
    session_factory: async_sessionmaker[AsyncSession],
    mpesa_client: MpesaClient,
    settings: APISettings,
) -> EventHandler:
    """Create the ``trade.declared`` handler that starts an STK push.

    The handler runs in its own session and commits independently of the
    declaring request.  Any failure leaves the trade ``pending`` and is
    only logged; the member can retry from the trade list.

    Parameters
    ----------
    session_factory:
        Async session factory for a per-event database session.
    mpesa_client:
        Gateway client used to send the payment request.
    settings:
        Application settings (grace window, currency).
    """

    async def _initiate_payment(payload: EventPayload) -> None:
        from plant_api.services.errors import ConflictError, ExternalServiceError, NotFoundError
        from plant_api.services.payment_service import PaymentService

        trade_id = payload.data.get("trade_id")
        phone = payload.data.get("phone")
        if not trade_id or not phone:
            logger.debug("trade.declared without trade_id/phone; skipping payment initiation")
            return

        async with session_factory() as session:
            service = PaymentService(session, mpesa_client, settings=settings)
            try:
                result = await service.initiate(trade_id, phone, requester_id=payload.actor_id, is_admin=True)
            except (ConflictError, ExternalServiceError, NotFoundError, ValueError) as exc:
                await session.rollback()
                logger.warning("Automatic payment initiation for trade %s failed: %s", trade_id, exc)
                return
            await session.commit()

        await get_event_bus().emit(
            EventType.PAYMENT_INITIATED,
            actor_id=payload.actor_id,
            data={"trade_id": trade_id, "checkout_token": result["checkout_token"]},
        )

    _initiate_payment.__name__ = "payment_initiation_handler"
    return _initiate_payment


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None


def init_event_bus(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    mpesa_client: MpesaClient | None = None,
    settings: APISettings | None = None,
) -> EventBus:
    """Create and configure the global event bus with built-in handlers.

    The payment-initiation handler is only registered when a session
    factory, an MPESA client and settings are all supplied.
    """
    global _event_bus  # noqa: PLW0603
    _event_bus = EventBus()
    _event_bus.register_handler(event_log_handler)

    if session_factory is not None and mpesa_client is not None and settings is not None:
        _event_bus.register_handler(
            make_payment_initiation_handler(session_factory, mpesa_client, settings),
            event_type=EventType.TRADE_DECLARED,
        )

    logger.info("Event bus initialised with %d handler(s)", _event_bus.handler_count)
    return _event_bus


def get_event_bus() -> EventBus:
    """Return the module-level event bus instance."""
    if _event_bus is None:
        return init_event_bus()
    return _event_bus
