"""Tests for the authentication router.

Covers:
- Signup creates a member profile and returns a token that works.
- Duplicate signups are rejected with 409.
- Login with good and bad credentials.
- The set-password flow driven by an administrator invite.
- Reading and updating the caller's own profile.
"""

from __future__ import annotations

import re

import pytest
from conftest import DEFAULT_PASSWORD

# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


class TestSignup:
    @pytest.mark.asyncio
    async def test_signup_returns_token_and_member_profile(self, client) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={
                "email": "New.Member@Example.com",
                "password": "s3cure-pass",
                "full_name": "New Member",
                "business_name": "New Biz",
            },
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "new.member@example.com"
        assert data["user"]["role"] == "member"
        assert data["user"]["business_name"] == "New Biz"

        me = await client.get(
            "/api/v1/auth/me",
            headers={"Authorization": f"Bearer {data['access_token']}"},
        )
        assert me.status_code == 200
        assert me.json()["id"] == data["user"]["id"]

    @pytest.mark.asyncio
    async def test_duplicate_email_is_conflict(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": world.emails["member"], "password": "another-pass", "full_name": "Copy Cat"},
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_short_password_rejected(self, client) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "short@example.com", "password": "short", "full_name": "Short"},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, client) -> None:
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "not-an-email", "password": "long-enough", "full_name": "Nobody"},
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_with_correct_password(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/auth/login",
            json={"email": world.emails["member"], "password": DEFAULT_PASSWORD},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["id"] == world.member_id
        assert data["user"]["role"] == "member"

    @pytest.mark.asyncio
    async def test_login_is_case_insensitive_on_email(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/auth/login",
            json={"email": world.emails["member"].upper(), "password": DEFAULT_PASSWORD},
        )
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_password_is_unauthorized(self, client, world) -> None:
        resp = await client.post(
            "/api/v1/auth/login",
            json={"email": world.emails["member"], "password": "wrong-password"},
        )
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid email or password."

    @pytest.mark.asyncio
    async def test_unknown_email_is_unauthorized(self, client) -> None:
        resp = await client.post(
            "/api/v1/auth/login",
            json={"email": "ghost@example.com", "password": "whatever1"},
        )
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Password setup
# ---------------------------------------------------------------------------


class TestSetPassword:
    @pytest.mark.asyncio
    async def test_invite_link_sets_password(self, client, world, outbox) -> None:
        created = await client.post(
            "/api/v1/admin/users",
            json={"email": "invitee@example.com", "full_name": "Ivy Invitee", "chapter_id": world.chapter_id},
            headers=world.admin,
        )
        assert created.status_code == 201
        assert created.json()["invite_sent"] is True

        [invite] = outbox.to("invitee@example.com")
        match = re.search(r"set-password\?token=([A-Za-z0-9_\-]+)", invite["html"])
        assert match is not None
        token = match.group(1)

        resp = await client.post("/api/v1/auth/password", json={"token": token, "password": "brand-new-pass"})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "invitee@example.com"

        login = await client.post(
            "/api/v1/auth/login",
            json={"email": "invitee@example.com", "password": "brand-new-pass"},
        )
        assert login.status_code == 200

        # Links are single-use.
        again = await client.post("/api/v1/auth/password", json={"token": token, "password": "another-pass"})
        assert again.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_token_rejected(self, client) -> None:
        resp = await client.post("/api/v1/auth/password", json={"token": "nope", "password": "long-enough"})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Own profile
# ---------------------------------------------------------------------------


class TestMe:
    @pytest.mark.asyncio
    async def test_me_includes_chapter_name(self, client, world) -> None:
        resp = await client.get("/api/v1/auth/me", headers=world.member)
        assert resp.status_code == 200
        data = resp.json()
        assert data["full_name"] == "Wanjiku Kamau"
        assert data["chapter_id"] == world.chapter_id
        assert data["chapter_name"] == "Nairobi Central"

    @pytest.mark.asyncio
    async def test_me_requires_token(self, client) -> None:
        resp = await client.get("/api/v1/auth/me")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_update_own_business_fields(self, client, world) -> None:
        resp = await client.patch(
            "/api/v1/auth/me",
            json={"business_name": "Kamau Events", "phone": "0799111222"},
            headers=world.member,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["business_name"] == "Kamau Events"
        assert data["phone"] == "0799111222"
        assert data["role"] == "member"

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, client, world) -> None:
        resp = await client.patch("/api/v1/auth/me", json={}, headers=world.member)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_role_is_not_self_editable(self, client, world) -> None:
        resp = await client.patch(
            "/api/v1/auth/me",
            json={"full_name": "Still Member", "role": "administrator"},
            headers=world.member,
        )
        # Unknown fields are dropped by the request model.
        assert resp.status_code == 200
        assert resp.json()["role"] == "member"
