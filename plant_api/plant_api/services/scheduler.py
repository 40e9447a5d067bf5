"""Background scheduler for the payment grace window and scheduled notifications.

Runs as an ``asyncio`` background task.  Each tick opens a fresh session
per sweep and commits it independently, so a failing notification sweep
never rolls back invoices issued by the grace-window sweep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plant_api.config import APISettings
from plant_api.services.email_client import EmailClient
from plant_api.services.notification_service import NotificationService
from plant_api.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class SweepScheduler:
    """AsyncIO background task running the periodic sweeps.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker`` used to create one session per sweep.
    settings:
        Supplies the tick interval and the grace window.
    email_client:
        Used to email late invoices and deliver scheduled notifications.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: APISettings,
        email_client: EmailClient,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._email = email_client
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("SweepScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("SweepScheduler started (interval=%ss)", self._settings.scheduler_interval_seconds)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("SweepScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("SweepScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("SweepScheduler unexpected error: %s", exc, exc_info=True)
                self._running = False
                raise
            await asyncio.sleep(self._settings.scheduler_interval_seconds)

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """Run both sweeps once.  Returns how many items each completed."""
        now = now or datetime.now(UTC)
        invoices = await self._in_session(lambda s: self._sweep_invoices(s, now))
        notifications = await self._in_session(lambda s: self._sweep_notifications(s, now))
        if invoices or notifications:
            logger.info("Sweep complete: %d late invoice(s), %d scheduled notification(s)", invoices, notifications)
        return {"invoices": invoices, "notifications": notifications}

    async def _in_session(self, sweep: Callable[[AsyncSession], Awaitable[int]]) -> int:
        async with self._session_factory() as session:
            try:
                count = await sweep(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return count

    async def _sweep_invoices(self, session: AsyncSession, now: datetime) -> int:
        service = PaymentService(session, None, settings=self._settings, email_client=self._email)
        return await service.sweep_grace_window(now)

    async def _sweep_notifications(self, session: AsyncSession, now: datetime) -> int:
        service = NotificationService(session, self._email, self._settings)
        return await service.deliver_due(now)
