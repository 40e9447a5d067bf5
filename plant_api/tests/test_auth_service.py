"""Tests for plant_api/plant_api/services/auth_service.py

Covers the AuthService against an in-memory database:
- Signup: member profile creation, duplicate detection, validation
- Login: credential checks, invited accounts without a password
- Password links: issue, consume once, invite email
- Own profile: read with chapter name, restricted updates
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from conftest import DEFAULT_PASSWORD, make_chapter, make_profile

from plant_api.middleware.auth import get_token_manager
from plant_api.services import email_templates
from plant_api.services.auth_service import AuthError, AuthService
from plant_api.services.errors import ProfileNotFoundError
from plant_core.state.repository import AuthIdentityRepository


@pytest.fixture()
def service(db_session) -> AuthService:
    return AuthService(db_session, get_token_manager())


def _token_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


class TestSignup:
    @pytest.mark.asyncio
    async def test_creates_member_and_returns_token(self, service: AuthService) -> None:
        result = await service.signup(
            " Wanjiku@Example.com ",
            "long-enough-password",
            "Wanjiku Kamau",
            business_name="Kamau Catering",
        )

        assert result["token_type"] == "bearer"
        assert result["user"]["email"] == "wanjiku@example.com"
        assert result["user"]["role"] == "member"
        assert result["user"]["business_name"] == "Kamau Catering"

        claims = get_token_manager().validate_token(result["access_token"])
        assert claims.sub == result["user"]["id"]
        assert claims.role == "member"

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, service: AuthService) -> None:
        await service.signup("wanjiku@example.com", "long-enough-password", "Wanjiku Kamau")

        with pytest.raises(AuthError, match="already exists") as exc_info:
            await service.signup("WANJIKU@example.com", "another-password", "Someone Else")
        assert exc_info.value.status_code == 409

    @pytest.mark.parametrize(
        "email, password, full_name, message",
        [
            ("not-an-email", "long-enough-password", "Name", "valid email"),
            ("a@example.com", "short", "Name", "at least 8"),
            ("a@example.com", "long-enough-password", "   ", "Full name"),
        ],
    )
    @pytest.mark.asyncio
    async def test_validation(self, service: AuthService, email, password, full_name, message) -> None:
        with pytest.raises(AuthError, match=message) as exc_info:
            await service.signup(email, password, full_name)
        assert exc_info.value.status_code == 400


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    @pytest.mark.asyncio
    async def test_valid_credentials(self, db_session, service: AuthService) -> None:
        profile = await make_profile(db_session, email="otieno@example.com", role="chapter_leader")

        result = await service.login("otieno@example.com", DEFAULT_PASSWORD)

        assert result["user"]["id"] == profile.id
        assert get_token_manager().validate_token(result["access_token"]).role == "chapter_leader"
        identity = await AuthIdentityRepository(db_session).get(profile.id)
        assert identity.last_login_at is not None

    @pytest.mark.asyncio
    async def test_wrong_password(self, db_session, service: AuthService) -> None:
        await make_profile(db_session, email="otieno@example.com")

        with pytest.raises(AuthError, match="Invalid email or password") as exc_info:
            await service.login("otieno@example.com", "wrong-password")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_email(self, service: AuthService) -> None:
        with pytest.raises(AuthError) as exc_info:
            await service.login("nobody@example.com", DEFAULT_PASSWORD)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_invited_account_cannot_log_in_yet(self, db_session, service: AuthService) -> None:
        await make_profile(db_session, email="invited@example.com", password=None)

        with pytest.raises(AuthError):
            await service.login("invited@example.com", "")


# ---------------------------------------------------------------------------
# Password links and invites
# ---------------------------------------------------------------------------


class TestPasswordLinks:
    @pytest.mark.asyncio
    async def test_link_sets_password_once(self, db_session, service: AuthService, test_settings) -> None:
        profile = await make_profile(db_session, email="invited@example.com", password=None)

        url = await service.issue_password_link(profile.id, test_settings)
        assert url.startswith("http://localhost:3000/set-password?token=")

        result = await service.set_password(_token_from(url), "brand-new-password")
        assert result["user"]["id"] == profile.id
        assert (await service.login("invited@example.com", "brand-new-password"))["user"]["id"] == profile.id

        with pytest.raises(AuthError, match="invalid or has expired"):
            await service.set_password(_token_from(url), "another-password")

    @pytest.mark.asyncio
    async def test_short_password_rejected_before_token_use(
        self, db_session, service: AuthService, test_settings
    ) -> None:
        profile = await make_profile(db_session, email="invited@example.com", password=None)
        url = await service.issue_password_link(profile.id, test_settings)

        with pytest.raises(AuthError, match="at least 8"):
            await service.set_password(_token_from(url), "short")
        # The token survives a rejected attempt.
        await service.set_password(_token_from(url), "long-enough-password")

    @pytest.mark.asyncio
    async def test_unknown_identity(self, service: AuthService, test_settings) -> None:
        with pytest.raises(ProfileNotFoundError):
            await service.issue_password_link("missing", test_settings)

    @pytest.mark.asyncio
    async def test_invite_emails_the_link(
        self, db_session, service: AuthService, test_settings, email_client, outbox
    ) -> None:
        profile = await make_profile(
            db_session, email="invited@example.com", full_name="Amina Njeri", password=None
        )

        url = await service.send_invite(profile, test_settings, email_client)

        [message] = outbox.to("invited@example.com")
        assert message["subject"] == email_templates.INVITE_SUBJECT
        assert url in message["html"]
        assert "Amina Njeri" in message["html"]

    @pytest.mark.asyncio
    async def test_invite_creates_missing_identity(
        self, db_session, service: AuthService, test_settings, email_client, outbox, caplog
    ) -> None:
        from plant_core.state.repository import ProfileRepository

        profile = await ProfileRepository(db_session).create(
            profile_id="legacy-profile",
            email="legacy@example.com",
            full_name="Legacy Member",
            role="member",
        )

        with caplog.at_level("WARNING"):
            await service.send_invite(profile, test_settings, email_client)

        assert await AuthIdentityRepository(db_session).get("legacy-profile") is not None
        assert "had no identity" in caplog.text
        assert len(outbox.to("legacy@example.com")) == 1


# ---------------------------------------------------------------------------
# Own profile
# ---------------------------------------------------------------------------


class TestOwnProfile:
    @pytest.mark.asyncio
    async def test_me_includes_chapter_name(self, db_session, service: AuthService) -> None:
        chapter = await make_chapter(db_session, "Nairobi Central")
        profile = await make_profile(db_session, chapter_id=chapter.id)

        me = await service.me(profile.id)

        assert me["chapter_id"] == chapter.id
        assert me["chapter_name"] == "Nairobi Central"

    @pytest.mark.asyncio
    async def test_me_without_chapter(self, db_session, service: AuthService) -> None:
        profile = await make_profile(db_session)
        assert (await service.me(profile.id))["chapter_name"] is None

    @pytest.mark.asyncio
    async def test_me_unknown(self, service: AuthService) -> None:
        with pytest.raises(ProfileNotFoundError):
            await service.me("missing")

    @pytest.mark.asyncio
    async def test_update_allowed_fields(self, db_session, service: AuthService) -> None:
        profile = await make_profile(db_session)

        me = await service.update_me(profile.id, business_name="Kamau Catering", phone="0712345678")

        assert me["business_name"] == "Kamau Catering"
        assert me["phone"] == "0712345678"

    @pytest.mark.asyncio
    async def test_role_is_not_self_editable(self, db_session, service: AuthService) -> None:
        profile = await make_profile(db_session)

        with pytest.raises(ValueError, match="role"):
            await service.update_me(profile.id, role="administrator")

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, db_session, service: AuthService) -> None:
        profile = await make_profile(db_session)

        with pytest.raises(ValueError, match="must not be empty"):
            await service.update_me(profile.id, full_name="  ")
