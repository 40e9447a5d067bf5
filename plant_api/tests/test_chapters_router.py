"""Tests for the chapters router."""

from __future__ import annotations

import pytest
from conftest import make_metric, make_profile, make_trade

from plant_core.state.repository import AuditRepository, ChapterRepository, ProfileRepository, TradeRepository


class TestListChapters:
    @pytest.mark.asyncio
    async def test_any_member_lists_chapters_with_stats(self, client, world, seed) -> None:
        async with seed() as session:
            trades = TradeRepository(session)
            member = await ProfileRepository(session).get(world.member_id)
            trade = await make_trade(session, member, "1200")
            await trades.mark_paid(trade.id)
            await make_trade(session, member, "999")
            await make_metric(session, member, "trade", 1)

        resp = await client.get("/api/v1/chapters", headers=world.member)
        assert resp.status_code == 200
        chapters = resp.json()
        assert [c["name"] for c in chapters] == ["Mombasa", "Nairobi Central"]

        mombasa, nairobi = chapters
        assert mombasa["leader"] is None
        assert mombasa["member_count"] == 1
        assert nairobi["leader"]["id"] == world.leader_id
        assert nairobi["leader"]["full_name"] == "Lee Leader"
        assert nairobi["member_count"] == 3
        assert float(nairobi["total_revenue"]) == 1200.0
        assert nairobi["metrics_count"] == 1

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client) -> None:
        resp = await client.get("/api/v1/chapters")
        assert resp.status_code == 401


class TestCreateChapter:
    @pytest.mark.asyncio
    async def test_admin_creates_chapter(self, client, world, session_factory) -> None:
        resp = await client.post("/api/v1/chapters", json={"name": "Kisumu"}, headers=world.admin)
        assert resp.status_code == 201
        data = resp.json()
        assert data["name"] == "Kisumu"
        assert data["member_count"] == 0
        assert data["leader"] is None

        async with session_factory() as session:
            entries = await AuditRepository(session).query(action="chapter_created", record_id=data["id"])
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_leader_must_have_leader_role(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/chapters",
            json={"name": "Nakuru", "leader_id": world.member_id},
            headers=world.admin,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_leader_is_404(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/chapters",
            json={"name": "Nakuru", "leader_id": "missing"},
            headers=world.admin,
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_member_is_forbidden(self, client, world) -> None:
        resp = await client.post("/api/v1/chapters", json={"name": "Eldoret"}, headers=world.member)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_blank_name_is_422(self, client, world) -> None:
        resp = await client.post("/api/v1/chapters", json={"name": ""}, headers=world.admin)
        assert resp.status_code == 422


class TestUpdateChapter:
    @pytest.mark.asyncio
    async def test_rename(self, client, world) -> None:
        resp = await client.patch(
            f"/api/v1/chapters/{world.other_chapter_id}",
            json={"name": "  Mombasa Coast "},
            headers=world.admin,
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "Mombasa Coast"
        assert resp.json()["member_count"] == 1

    @pytest.mark.asyncio
    async def test_explicit_null_removes_leader(self, client, world, session_factory) -> None:
        resp = await client.patch(
            f"/api/v1/chapters/{world.chapter_id}",
            json={"leader_id": None},
            headers=world.admin,
        )
        assert resp.status_code == 200
        assert resp.json()["leader_id"] is None

        async with session_factory() as session:
            [entry] = await AuditRepository(session).query(action="chapter_updated", record_id=world.chapter_id)
        assert entry.old_values == {"leader_id": world.leader_id}

    @pytest.mark.asyncio
    async def test_assign_new_leader(self, client, world, seed) -> None:
        async with seed() as session:
            new_leader = await make_profile(session, full_name="Coast Lead", role="chapter_leader")

        resp = await client.patch(
            f"/api/v1/chapters/{world.other_chapter_id}",
            json={"leader_id": new_leader.id},
            headers=world.admin,
        )
        assert resp.status_code == 200
        assert resp.json()["leader"]["full_name"] == "Coast Lead"

    @pytest.mark.asyncio
    async def test_empty_body_is_400(self, client, world) -> None:
        resp = await client.patch(f"/api/v1/chapters/{world.chapter_id}", json={}, headers=world.admin)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_chapter_is_404(self, client, world) -> None:
        resp = await client.patch("/api/v1/chapters/missing", json={"name": "X"}, headers=world.admin)
        assert resp.status_code == 404


class TestDeleteChapter:
    @pytest.mark.asyncio
    async def test_delete_empty_chapter(self, client, world, seed, session_factory) -> None:
        async with seed() as session:
            empty = await ChapterRepository(session).create("Empty Chapter")

        resp = await client.delete(f"/api/v1/chapters/{empty.id}", headers=world.admin)
        assert resp.status_code == 204

        async with session_factory() as session:
            assert await ChapterRepository(session).get(empty.id) is None

    @pytest.mark.asyncio
    async def test_chapter_with_members_is_conflict(self, client, world, session_factory) -> None:
        resp = await client.delete(f"/api/v1/chapters/{world.other_chapter_id}", headers=world.admin)
        assert resp.status_code == 409

        async with session_factory() as session:
            assert await ChapterRepository(session).get(world.other_chapter_id) is not None

    @pytest.mark.asyncio
    async def test_leader_is_forbidden(self, client, world) -> None:
        resp = await client.delete(f"/api/v1/chapters/{world.chapter_id}", headers=world.leader)
        assert resp.status_code == 403
