"""Tests for plant_api/plant_api/services/invoice_service.py

Covers:
- InvoiceService.generate: numbering, idempotency, trade transition, PDF store
- InvoiceService.get_pdf: stored file, re-render, path traversal guard
- InvoiceService.resend: delivery outcome and audit, never a status change
- _resolve_safe_path: unsafe names rejected
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from conftest import make_chapter, make_profile, make_trade
from sqlalchemy import select

from plant_api.services.errors import InvalidTradeStateError, InvoiceNotFoundError, TradeNotFoundError
from plant_api.services.invoice_service import InvoiceService, _resolve_safe_path
from plant_core.state.repository import TradeRepository
from plant_core.state.tables import AuditLogTable

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def member(db_session):
    chapter = await make_chapter(db_session, "Nairobi Central")
    return await make_profile(
        db_session,
        email="wanjiku@example.com",
        full_name="Wanjiku Kamau",
        chapter_id=chapter.id,
        business_name="Kamau Catering",
    )


@pytest.fixture()
def service(db_session, test_settings, email_client) -> InvoiceService:
    return InvoiceService(db_session, test_settings, email_client=email_client, actor_id="admin-1")


# ---------------------------------------------------------------------------
# _resolve_safe_path
# ---------------------------------------------------------------------------


class TestResolveSafePath:
    def test_builds_pdf_path_inside_base(self, tmp_path: Path) -> None:
        assert _resolve_safe_path(tmp_path, "INV-2024-000001") == (tmp_path / "INV-2024-000001.pdf").resolve()

    @pytest.mark.parametrize("name", ["../etc/passwd", "a/b", "", "INV 1", "inv.2024"])
    def test_unsafe_names_rejected(self, tmp_path: Path, name: str) -> None:
        with pytest.raises(ValueError, match="unsafe"):
            _resolve_safe_path(tmp_path, name)


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.asyncio
    async def test_first_invoice_of_the_year(self, db_session, service, member, test_settings) -> None:
        trade = await make_trade(db_session, member, "2500.00")

        invoice, created = await service.generate(trade.id)

        assert created
        year = datetime.now(UTC).year
        assert invoice.invoice_number == f"INV-{year}-000001"
        assert invoice.amount == trade.amount
        assert invoice.due_date == (datetime.now(UTC) + timedelta(days=test_settings.invoice_due_days)).date()
        assert Path(invoice.file_url).read_bytes().startswith(b"%PDF")
        stored = await TradeRepository(db_session).get(trade.id)
        assert stored.status == "invoiced"

    @pytest.mark.asyncio
    async def test_numbers_are_sequential(self, db_session, service, member) -> None:
        first, _ = await service.generate((await make_trade(db_session, member)).id)
        second, _ = await service.generate((await make_trade(db_session, member)).id)
        assert int(second.invoice_number[-6:]) == int(first.invoice_number[-6:]) + 1

    @pytest.mark.asyncio
    async def test_second_call_returns_existing(self, db_session, service, member) -> None:
        trade = await make_trade(db_session, member)
        first, _ = await service.generate(trade.id)

        again, created = await service.generate(trade.id)

        assert not created
        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_paid_trade_stays_paid(self, db_session, service, member) -> None:
        trade = await make_trade(db_session, member)
        await TradeRepository(db_session).mark_paid(trade.id)

        await service.generate(trade.id)

        stored = await TradeRepository(db_session).get(trade.id)
        assert stored.status == "paid"

    @pytest.mark.asyncio
    async def test_cancelled_trade(self, db_session, service, member) -> None:
        trade = await make_trade(db_session, member)
        await TradeRepository(db_session).cancel(trade.id)
        with pytest.raises(InvalidTradeStateError):
            await service.generate(trade.id)

    @pytest.mark.asyncio
    async def test_unknown_trade(self, service) -> None:
        with pytest.raises(TradeNotFoundError):
            await service.generate("missing")


# ---------------------------------------------------------------------------
# get_pdf
# ---------------------------------------------------------------------------


class TestGetPdf:
    @pytest.mark.asyncio
    async def test_reads_stored_file(self, db_session, service, member) -> None:
        invoice, _ = await service.generate((await make_trade(db_session, member)).id)
        assert await service.get_pdf(invoice) == Path(invoice.file_url).read_bytes()

    @pytest.mark.asyncio
    async def test_rerenders_missing_file(self, db_session, service, member) -> None:
        invoice, _ = await service.generate((await make_trade(db_session, member)).id)
        Path(invoice.file_url).unlink()

        content = await service.get_pdf(invoice)

        assert content.startswith(b"%PDF")
        assert Path(invoice.file_url).exists()

    @pytest.mark.asyncio
    async def test_path_outside_storage_rejected(self, db_session, service, member, tmp_path: Path) -> None:
        invoice, _ = await service.generate((await make_trade(db_session, member)).id)
        invoice.file_url = str(tmp_path / "elsewhere.pdf")

        with pytest.raises(ValueError, match="Path traversal"):
            await service.get_pdf(invoice)


# ---------------------------------------------------------------------------
# resend
# ---------------------------------------------------------------------------


class TestResend:
    @pytest.mark.asyncio
    async def test_delivers_and_audits(self, db_session, service, member, outbox) -> None:
        trade = await make_trade(db_session, member)
        invoice, _ = await service.generate(trade.id)

        result = await service.resend(trade.id)

        assert result["delivered"] is True
        assert result["recipient"] == "wanjiku@example.com"
        [message] = outbox.to("wanjiku@example.com")
        assert message["attachments"][0]["filename"] == f"{invoice.invoice_number}.pdf"
        actions = (await db_session.execute(select(AuditLogTable.action))).scalars().all()
        assert "invoice_resent" in actions

    @pytest.mark.asyncio
    async def test_delivery_failure_is_reported(self, db_session, service, member, outbox) -> None:
        trade = await make_trade(db_session, member)
        await service.generate(trade.id)
        outbox.reject.add("wanjiku@example.com")

        result = await service.resend(trade.id)

        assert result["delivered"] is False
        assert "422" in result["error"]
        stored = await TradeRepository(db_session).get(trade.id)
        assert stored.status == "invoiced"

    @pytest.mark.asyncio
    async def test_requires_invoice(self, db_session, service, member) -> None:
        trade = await make_trade(db_session, member)
        with pytest.raises(InvoiceNotFoundError):
            await service.resend(trade.id)
