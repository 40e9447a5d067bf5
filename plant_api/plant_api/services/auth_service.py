"""Authentication service: signup, login, password setup and the own profile.

Orchestrates identity creation, credential validation and token issuance.
Uses the :class:`TokenManager` from ``security.py`` for token generation,
and owns the recovery-token flow behind the "set your password" link that
invited members receive.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from plant_api.security import TokenManager
from plant_api.services import email_templates
from plant_api.services.email_client import EmailClient
from plant_api.services.errors import ProfileNotFoundError
from plant_core.models.profile import ProfileRole
from plant_core.state.repository import AuthIdentityRepository, ChapterRepository, ProfileRepository
from plant_core.state.tables import ProfileTable

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)

_MIN_PASSWORD_LENGTH = 8

# Fields a member may change on their own profile.
SELF_EDITABLE_FIELDS = frozenset({"full_name", "business_name", "business_description", "phone"})


class AuthError(Exception):
    """Raised on authentication or authorisation failures."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def profile_to_dict(profile: ProfileTable, *, chapter_name: str | None = None) -> dict[str, Any]:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "role": profile.role,
        "chapter_id": profile.chapter_id,
        "chapter_name": chapter_name,
        "business_name": profile.business_name,
        "business_description": profile.business_description,
        "phone": profile.phone,
        "created_at": profile.created_at,
        "updated_at": profile.updated_at,
    }


def _validate_password(password: str) -> None:
    if len(password) < _MIN_PASSWORD_LENGTH:
        raise AuthError(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.")


class AuthService:
    """High-level authentication operations.

    Parameters
    ----------
    session:
        An async database session (caller manages transaction).
    token_manager:
        Mints bearer tokens on signup, login and password setup.  Not
        needed for invites.
    """

    def __init__(self, session: AsyncSession, token_manager: TokenManager | None = None) -> None:
        self._session = session
        self._tm = token_manager
        self._identities = AuthIdentityRepository(session)
        self._profiles = ProfileRepository(session)
        self._chapters = ChapterRepository(session)

    def _token_response(self, profile: ProfileTable) -> dict[str, Any]:
        if self._tm is None:
            raise RuntimeError("AuthService was created without a token manager")
        return {
            "access_token": self._tm.generate_token(profile.id, profile.role),
            "token_type": "bearer",
            "user": profile_to_dict(profile),
        }

    # ------------------------------------------------------------------
    # Signup / login
    # ------------------------------------------------------------------

    async def signup(
        self,
        email: str,
        password: str,
        full_name: str,
        *,
        business_name: str | None = None,
        phone: str | None = None,
    ) -> dict[str, Any]:
        """Create an identity plus a ``member`` profile and return a token."""
        email = email.lower().strip()
        if not email or "@" not in email:
            raise AuthError("A valid email address is required.")
        _validate_password(password)
        if not full_name or not full_name.strip():
            raise AuthError("Full name is required.")

        if await self._identities.get_by_email(email) is not None or await self._profiles.get_by_email(email):
            raise AuthError("An account with this email already exists. Please log in instead.", status_code=409)

        identity = await self._identities.create(email, password)
        profile = await self._profiles.create(
            profile_id=identity.id,
            email=email,
            full_name=full_name,
            role=ProfileRole.MEMBER.value,
            business_name=business_name,
            phone=phone,
        )
        logger.info("Member signed up: profile=%s email=%s", profile.id, email)
        return self._token_response(profile)

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Validate credentials and return a bearer token."""
        identity = await self._identities.verify_password(email, password)
        if identity is None:
            raise AuthError("Invalid email or password.", status_code=401)

        profile = await self._profiles.get(identity.id)
        if profile is None:
            logger.error("Identity %s has no profile", identity.id)
            raise AuthError("Invalid email or password.", status_code=401)

        await self._identities.update_last_login(identity.id)
        logger.info("User logged in: profile=%s", profile.id)
        return self._token_response(profile)

    # ------------------------------------------------------------------
    # Password setup
    # ------------------------------------------------------------------

    async def set_password(self, token: str, new_password: str) -> dict[str, Any]:
        """Consume a recovery token, set the password and log the user in."""
        _validate_password(new_password)
        identity = await self._identities.consume_recovery_token(token, new_password)
        if identity is None:
            raise AuthError("This link is invalid or has expired.", status_code=400)
        profile = await self._profiles.get(identity.id)
        if profile is None:
            raise AuthError("This link is invalid or has expired.", status_code=400)
        logger.info("Password set for profile=%s", profile.id)
        return self._token_response(profile)

    async def issue_password_link(self, identity_id: str, settings: APISettings) -> str:
        """Store a fresh recovery token and return the set-password URL."""
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(UTC) + timedelta(hours=settings.password_reset_ttl_hours)
        if not await self._identities.set_recovery_token(identity_id, token, expires_at):
            raise ProfileNotFoundError(identity_id)
        return f"{settings.app_base_url.rstrip('/')}/set-password?token={token}"

    async def send_invite(
        self,
        profile: ProfileTable,
        settings: APISettings,
        email_client: EmailClient,
    ) -> str:
        """Issue a password link and email the welcome invite.

        Returns the link.  Delivery errors propagate to the caller.
        """
        if await self._identities.get(profile.id) is None:
            await self._identities.create(profile.email, identity_id=profile.id)
            logger.warning("Profile %s had no identity; created one for the invite", profile.id)
        url = await self.issue_password_link(profile.id, settings)
        html = email_templates.invite_html(full_name=profile.full_name or profile.email, set_password_url=url)
        await email_client.send(profile.email, email_templates.INVITE_SUBJECT, html)
        logger.info("Invite sent to profile=%s", profile.id)
        return url

    # ------------------------------------------------------------------
    # Own profile
    # ------------------------------------------------------------------

    async def me(self, profile_id: str) -> dict[str, Any]:
        profile = await self._profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFoundError(profile_id)
        chapter = await self._chapters.get(profile.chapter_id) if profile.chapter_id else None
        return profile_to_dict(profile, chapter_name=chapter.name if chapter else None)

    async def update_me(self, profile_id: str, **fields: Any) -> dict[str, Any]:
        """Update the caller's own name, business fields and phone.

        Raises
        ------
        ValueError
            If a field outside :data:`SELF_EDITABLE_FIELDS` is given.
        """
        unknown = set(fields) - SELF_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if "full_name" in fields and not (fields["full_name"] or "").strip():
            raise ValueError("Full name must not be empty")
        if not await self._profiles.update(profile_id, **fields):
            raise ProfileNotFoundError(profile_id)
        logger.info("Profile %s updated: %s", profile_id, ", ".join(sorted(fields)))
        return await self.me(profile_id)
