"""Tests for bulk notifications.

Covers:
- Recipient selection by everyone, chapter, role and custom list.
- Per-recipient personalisation.
- Partial failures are reported, not raised.
- Scheduled sends are stored and delivered later by the sweep.
- History listing.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import make_chapter

from plant_api.services.notification_service import NotificationService, build_selector
from plant_core.state.repository import NotificationHistoryRepository


def _bulk(**overrides):
    body = {
        "recipient_type": "all",
        "subject": "Chapter mixer",
        "message": "Hi {name}, see you on Friday.",
    }
    body.update(overrides)
    return body


class TestSelector:
    def test_chapter_requires_id(self) -> None:
        with pytest.raises(ValueError, match="chapter_id"):
            build_selector("chapter")

    def test_role_must_be_known(self) -> None:
        with pytest.raises(ValueError, match="role"):
            build_selector("role", role="superuser")

    def test_custom_emails_are_normalised_and_deduplicated(self) -> None:
        selector = build_selector("custom", custom_emails=[" A@Example.com", "a@example.com", "", "b@example.com"])
        assert selector == {"recipient_type": "custom", "custom_emails": ["a@example.com", "b@example.com"]}


class TestBulkSend:
    @pytest.mark.asyncio
    async def test_send_to_everyone_personalises(self, client, world, outbox) -> None:
        resp = await client.post("/api/v1/notifications/bulk", json=_bulk(), headers=world.admin)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["scheduled"] is False
        assert data["sent"] == 5
        assert data["failed"] == 0
        assert data["recipient_count"] == 5

        [message] = outbox.to(world.emails["member"])
        assert message["subject"] == "Chapter mixer"
        assert "Hi Wanjiku Kamau, see you on Friday." in message["html"]
        assert "This notification was sent from MELNET PLANT System" in message["html"]

    @pytest.mark.asyncio
    async def test_chapter_recipients(self, client, world, outbox) -> None:
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="chapter", chapter_id=world.other_chapter_id),
            headers=world.admin,
        )
        assert resp.json()["sent"] == 1
        assert [m["to"] for m in outbox.messages] == [[world.emails["outsider"]]]

    @pytest.mark.asyncio
    async def test_role_recipients(self, client, world, outbox) -> None:
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="role", role="chapter_leader"),
            headers=world.admin,
        )
        assert resp.json()["recipient_count"] == 1
        assert outbox.to(world.emails["leader"])

    @pytest.mark.asyncio
    async def test_custom_recipients_use_address_as_name(self, client, world, outbox) -> None:
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="custom", custom_emails=["guest@example.com"]),
            headers=world.admin,
        )
        assert resp.json()["sent"] == 1
        assert "Hi guest@example.com," in outbox.messages[0]["html"]

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported(self, client, world, outbox) -> None:
        outbox.reject.add(world.emails["peer"])
        resp = await client.post("/api/v1/notifications/bulk", json=_bulk(), headers=world.admin)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["sent"] == 4
        assert data["failed"] == 1
        assert data["errors"][0].startswith(world.emails["peer"])

    @pytest.mark.asyncio
    async def test_no_recipients_is_400(self, client, world, seed, outbox) -> None:
        async with seed() as session:
            empty = await make_chapter(session, "Empty")

        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="chapter", chapter_id=empty.id),
            headers=world.admin,
        )
        assert resp.status_code == 400
        assert outbox.messages == []

    @pytest.mark.asyncio
    async def test_missing_chapter_id_is_400(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="chapter"),
            headers=world.admin,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_recipient_type_is_422(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="everyone"),
            headers=world.admin,
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_leader_is_forbidden(self, client, world) -> None:
        resp = await client.post("/api/v1/notifications/bulk", json=_bulk(), headers=world.leader)
        assert resp.status_code == 403


class TestScheduledSend:
    @pytest.mark.asyncio
    async def test_future_send_is_stored_then_swept(
        self, client, world, outbox, seed, session_factory, email_client, test_settings
    ) -> None:
        when = datetime.now(UTC) + timedelta(hours=2)
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(recipient_type="chapter", chapter_id=world.chapter_id, scheduled_for=when.isoformat()),
            headers=world.admin,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["scheduled"] is True
        assert data["recipient_count"] == 3
        assert outbox.messages == []

        # Not due yet.
        async with seed() as session:
            assert await NotificationService(session, email_client, test_settings).deliver_due() == 0

        async with seed() as session:
            service = NotificationService(session, email_client, test_settings)
            assert await service.deliver_due(now=when + timedelta(minutes=1)) == 1

        assert len(outbox.messages) == 3
        async with session_factory() as session:
            entry = await NotificationHistoryRepository(session).get(data["history_id"])
        assert entry.status == "sent"
        assert entry.sent_at is not None
        assert entry.metadata_json["success_count"] == 3

        # A second sweep finds nothing left to send.
        async with seed() as session:
            service = NotificationService(session, email_client, test_settings)
            assert await service.deliver_due(now=when + timedelta(minutes=2)) == 0
        assert len(outbox.messages) == 3

    @pytest.mark.asyncio
    async def test_past_schedule_sends_immediately(self, client, world, outbox) -> None:
        when = datetime.now(UTC) - timedelta(minutes=5)
        resp = await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(scheduled_for=when.isoformat()),
            headers=world.admin,
        )
        assert resp.json()["scheduled"] is False
        assert len(outbox.messages) == 5


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_lists_sends_with_metadata(self, client, world, outbox) -> None:
        outbox.reject.add(world.emails["outsider"])
        await client.post("/api/v1/notifications/bulk", json=_bulk(subject="First"), headers=world.admin)
        await client.post(
            "/api/v1/notifications/bulk",
            json=_bulk(subject="Second", recipient_type="custom", custom_emails=[world.emails["outsider"]]),
            headers=world.admin,
        )

        resp = await client.get("/api/v1/notifications/history", headers=world.admin)
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 2
        by_subject = {item["subject"]: item for item in page["items"]}
        assert by_subject["First"]["status"] == "sent"
        assert by_subject["First"]["metadata"]["fail_count"] == 1
        assert by_subject["First"]["sent_by"] == world.admin_id
        assert by_subject["Second"]["status"] == "failed"
        assert by_subject["Second"]["recipient_type"] == "custom"
