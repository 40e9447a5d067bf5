"""Tests for the SQLite adapter and engine dispatch used in local dev mode."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect, text

from plant_core.state.database import advisory_xact_lock, dialect_name, get_engine, get_session
from plant_core.state.sqlite_adapter import create_local_tables, get_local_engine

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    """Verify SQLite engine creation."""

    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        engine = get_local_engine(db_path)
        assert db_path.parent.exists()
        assert "state.db" in str(engine.url)

    @pytest.mark.asyncio
    async def test_foreign_keys_enforced(self) -> None:
        engine = get_local_engine(":memory:")
        async with engine.connect() as conn:
            result = await conn.execute(text("PRAGMA foreign_keys"))
            assert result.scalar() == 1
        await engine.dispose()


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    @pytest.mark.asyncio
    async def test_creates_every_table(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "tables.db")
        await create_local_tables(engine)
        await create_local_tables(engine)  # idempotent

        async with engine.connect() as conn:
            names = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        assert {
            "chapters",
            "profiles",
            "auth_identities",
            "metrics",
            "trades",
            "invoices",
            "audit_logs",
            "notifications_history",
            "reports_history",
        } <= names
        await engine.dispose()


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------


class TestGetSession:
    @pytest.mark.asyncio
    async def test_session_usable(self) -> None:
        engine = get_engine("sqlite+aiosqlite://")
        await create_local_tables(engine)

        async with get_session(engine) as session:
            assert (await session.execute(text("SELECT 1"))).scalar() == 1
            assert dialect_name(session) == "sqlite"
            # No-op outside PostgreSQL.
            await advisory_xact_lock(session, "invoice_number")

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_session_rollback_on_error(self) -> None:
        engine = get_engine("sqlite+aiosqlite://")
        await create_local_tables(engine)

        with pytest.raises(ValueError, match="test error"):
            async with get_session(engine):
                raise ValueError("test error")

        await engine.dispose()


class TestDatabaseDispatch:
    def test_sqlite_memory_url(self) -> None:
        assert "sqlite" in str(get_engine("sqlite+aiosqlite:///:memory:").url)

    def test_sqlite_file_url(self, tmp_path: Path) -> None:
        db_path = tmp_path / "dispatch.db"
        assert "dispatch.db" in str(get_engine(f"sqlite+aiosqlite:///{db_path}").url)
