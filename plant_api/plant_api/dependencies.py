"""FastAPI dependency injection for settings, database sessions and clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from plant_api.config import APISettings, load_api_settings
from plant_api.services.email_client import EmailClient
from plant_api.services.mpesa_client import MpesaClient
from plant_core.state.database import get_engine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that run outside a request (background tasks, the
    sweep scheduler, event handlers) and need their own sessions.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped ``AsyncSession``.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Outbound clients
# ---------------------------------------------------------------------------

_mpesa_client: MpesaClient | None = None
_email_client: EmailClient | None = None


def init_clients(settings: APISettings) -> tuple[MpesaClient, EmailClient]:
    """Create and cache the MPESA and email clients."""
    global _mpesa_client, _email_client  # noqa: PLW0603
    _mpesa_client = MpesaClient.from_settings(settings)
    _email_client = EmailClient.from_settings(settings)
    return _mpesa_client, _email_client


async def dispose_clients() -> None:
    """Close the clients' underlying HTTP pools."""
    global _mpesa_client, _email_client  # noqa: PLW0603
    if _mpesa_client is not None:
        await _mpesa_client.close()
        _mpesa_client = None
    if _email_client is not None:
        await _email_client.close()
        _email_client = None


def get_mpesa_client() -> MpesaClient:
    """Return the cached :class:`MpesaClient` singleton."""
    if _mpesa_client is None:
        raise RuntimeError("MPESA client has not been initialised. Ensure init_clients() is called during startup.")
    return _mpesa_client


def get_email_client() -> EmailClient:
    """Return the cached :class:`EmailClient` singleton."""
    if _email_client is None:
        raise RuntimeError("Email client has not been initialised. Ensure init_clients() is called during startup.")
    return _email_client


MpesaDep = Annotated[MpesaClient, Depends(get_mpesa_client)]
EmailDep = Annotated[EmailClient, Depends(get_email_client)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_user_identity(request: Request) -> str:
    """Return the authenticated profile id (``sub`` claim)."""
    sub = getattr(request.state, "sub", None)
    if sub is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return sub


UserDep = Annotated[str, Depends(get_user_identity)]
