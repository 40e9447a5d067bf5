"""Shared fixtures for plant_core unit tests.

Repositories run against an in-memory SQLite database via aiosqlite, so
no PostgreSQL instance is needed.  ``JSONB`` columns already fall back to
``JSON`` on SQLite and timestamps go through ``UTCDateTime``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plant_core.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest_asyncio.fixture
async def async_session() -> AsyncIterator[AsyncSession]:
    """Provide an async session backed by an in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()
