"""Tests for the trades router.

Covers:
- Declaring a trade: pending status, counterpart resolution, audit entry.
- Counterpart validation (unknown member, other chapter).
- Amount and description validation.
- Listing with status filter and pagination.
- Ownership on reads (404 for other members, admins see all).
- Cancelling pending trades and refusing anything else.
"""

from __future__ import annotations

import pytest
from conftest import make_trade

from plant_core.state.repository import AuditRepository, ProfileRepository, TradeRepository

# ---------------------------------------------------------------------------
# Declaration
# ---------------------------------------------------------------------------


class TestDeclareTrade:
    @pytest.mark.asyncio
    async def test_declare_creates_pending_trade(self, client, world, session_factory) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={
                "amount": 1500,
                "description": "Event catering for chapter mixer",
                "source_member_id": world.peer_id,
            },
            headers=world.member,
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert float(data["amount"]) == 1500.0
        assert data["user_id"] == world.member_id
        assert data["chapter_id"] == world.chapter_id
        assert data["chapter_name"] == "Nairobi Central"
        assert data["user"]["full_name"] == "Wanjiku Kamau"
        assert data["source_member"]["id"] == world.peer_id
        assert data["source_member"]["business_name"] == "Odhiambo Prints"
        assert data["beneficiary_member"] is None
        assert data["invoice"] is None
        assert data["payment_reference"] is None

        async with session_factory() as session:
            entries = await AuditRepository(session).query(action="trade_declared", record_id=data["id"])
        assert len(entries) == 1
        assert entries[0].actor_id == world.member_id

    @pytest.mark.asyncio
    async def test_description_is_trimmed(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={"amount": "200.50", "description": "   Printing job  "},
            headers=world.member,
        )
        assert resp.status_code == 201
        assert resp.json()["description"] == "Printing job"

    @pytest.mark.asyncio
    async def test_blank_description_rejected(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={"amount": 100, "description": "    "},
            headers=world.member,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, client, world, amount) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={"amount": amount, "description": "Nothing"},
            headers=world.member,
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_three_decimal_places_rejected(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={"amount": "10.005", "description": "Fractional"},
            headers=world.member,
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_counterpart_in_other_chapter_rejected(self, client, world, session_factory) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={"amount": 100, "description": "Cross-chapter", "beneficiary_member_id": world.outsider_id},
            headers=world.member,
        )
        assert resp.status_code == 400

        async with session_factory() as session:
            _, total = await TradeRepository(session).list()
        assert total == 0

    @pytest.mark.asyncio
    async def test_unknown_counterpart_is_404(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/trades",
            json={"amount": 100, "description": "Ghost", "source_member_id": "no-such-member"},
            headers=world.member,
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client) -> None:
        resp = await client.post("/api/v1/trades", json={"amount": 100, "description": "Anon"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Listing and reads
# ---------------------------------------------------------------------------


class TestListTrades:
    @pytest.mark.asyncio
    async def test_lists_own_trades_newest_first(self, client, world, seed) -> None:
        async with seed() as session:
            profiles = ProfileRepository(session)
            member = await profiles.get(world.member_id)
            peer = await profiles.get(world.peer_id)
            await make_trade(session, member, "100", description="first")
            await make_trade(session, member, "200", description="second")
            await make_trade(session, peer, "300", description="peer's")

        resp = await client.get("/api/v1/trades", headers=world.member)
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 2
        assert {item["description"] for item in page["items"]} == {"first", "second"}

    @pytest.mark.asyncio
    async def test_status_filter(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            keep = await make_trade(session, member, "100")
            cancelled = await make_trade(session, member, "200")
            await TradeRepository(session).cancel(cancelled.id)

        resp = await client.get("/api/v1/trades?status=pending", headers=world.member)
        assert [item["id"] for item in resp.json()["items"]] == [keep.id]

        resp = await client.get("/api/v1/trades?status=cancelled", headers=world.member)
        assert [item["id"] for item in resp.json()["items"]] == [cancelled.id]

    @pytest.mark.asyncio
    async def test_inverted_date_range_rejected(self, client, world) -> None:
        resp = await client.get(
            "/api/v1/trades?start_date=2024-05-10&end_date=2024-05-01",
            headers=world.member,
        )
        assert resp.status_code == 400


class TestGetTrade:
    @pytest.mark.asyncio
    async def test_owner_reads_trade(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)

        resp = await client.get(f"/api/v1/trades/{trade.id}", headers=world.member)
        assert resp.status_code == 200
        assert resp.json()["id"] == trade.id

    @pytest.mark.asyncio
    async def test_other_member_gets_404(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)

        resp = await client.get(f"/api/v1/trades/{trade.id}", headers=world.peer)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_reads_any_trade(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)

        resp = await client.get(f"/api/v1/trades/{trade.id}", headers=world.admin)
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelTrade:
    @pytest.mark.asyncio
    async def test_cancel_pending_trade(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)

        resp = await client.post(f"/api/v1/trades/{trade.id}/cancel", headers=world.member)
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_twice_is_conflict(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)

        first = await client.post(f"/api/v1/trades/{trade.id}/cancel", headers=world.member)
        assert first.status_code == 200
        second = await client.post(f"/api/v1/trades/{trade.id}/cancel", headers=world.member)
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_invoiced_trade_is_conflict(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)
            await TradeRepository(session).mark_invoiced(trade.id, payment_reference="ws_CO_1", phone="254712345678")

        resp = await client.post(f"/api/v1/trades/{trade.id}/cancel", headers=world.member)
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_other_member_cannot_cancel(self, client, world, seed) -> None:
        async with seed() as session:
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member)

        resp = await client.post(f"/api/v1/trades/{trade.id}/cancel", headers=world.peer)
        assert resp.status_code == 404
